"""Terraform state backend and EC2 workstation: bring-up and local teardown."""

from eksops import console
from eksops.checks import Check, CheckResult, tool_present
from eksops.errors import ApplyError, UserAborted
from eksops.orchestrator import Pipeline
from eksops.pipelines.common import terraform_apply_stage, terraform_destroy_stage
from eksops.shell import run_command
from eksops.stage import Stage


def generate_ssh_key(context) -> str:
    key = context.settings.ssh_private_key
    key.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    key.parent.chmod(0o700)
    cmd = ["ssh-keygen", "-t", "rsa", "-b", "2048", "-f", str(key), "-N", ""]
    console.command(cmd)
    run_command(cmd)
    key.chmod(0o400)
    return f"SSH key pair generated: {key} / {key}.pub"


def restore_public_key(context) -> str:
    """Derive the missing public half from the existing private key; never overwrites it."""
    settings = context.settings
    key = settings.ssh_private_key
    key.chmod(0o400)
    cmd = ["ssh-keygen", "-y", "-f", str(key)]
    console.command(cmd)
    result = run_command(cmd)
    settings.ssh_public_key.write_text(result.stdout.strip() + "\n")
    return f"public key {settings.ssh_public_key} derived from {key}"


def ssh_key_stage(ask_first: bool = False) -> Stage:
    def apply(context) -> str:
        if context.settings.ssh_private_key.exists():
            return restore_public_key(context)
        if ask_first and not context.ask(
            f"SSH key {context.settings.ssh_public_key} not found. Generate a new SSH key?", default=True
        ):
            raise UserAborted("SSH key is required")
        return generate_ssh_key(context)

    return Stage(
        name="ssh-key",
        apply=apply,
        description="Generate the workstation SSH key pair",
        preconditions=[tool_present("ssh-keygen")],
        idempotency_check=lambda c: c.settings.ssh_private_key.exists() and c.settings.ssh_public_key.exists(),
    )


def _workstation_running(context) -> bool:
    return bool(context.aws.instances_by_tag(context.settings.workstation_tag, states=("running",)))


def build_provision(settings, options=None) -> Pipeline:
    return Pipeline(
        name="workstation",
        description="Terraform state backend and EC2 DevOps workstation",
        stages=[
            ssh_key_stage(),
            terraform_apply_stage(
                "state-backend", settings.backend_dir,
                "S3 bucket and DynamoDB table for Terraform remote state",
            ),
            terraform_apply_stage(
                "workstation", settings.workstation_dir,
                "EC2 instance with the DevOps toolchain",
                variables=lambda c: {"ssh_key_path": str(c.settings.ssh_public_key)},
                readiness=_workstation_running,
                poll_interval=settings.poll_interval,
                max_attempts=settings.load_balancer_attempts,
            ),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# TEARDOWN
# ─────────────────────────────────────────────────────────────────────────────

def _confirm_cluster_deleted(context) -> str:
    name = context.cluster_name
    if context.aws.caller_identity() is None:
        if context.ask("AWS credentials unavailable. Did you already delete the EKS cluster from the workstation?"):
            return "cluster deletion confirmed by operator"
        raise ApplyError("Delete the EKS cluster first (eksops uninstall cluster, on the workstation)")

    status = context.aws.cluster_status(name)
    if status is None:
        return f"EKS cluster '{name}' not found or already deleted"
    console.warning(f"EKS cluster '{name}' still exists!")
    if context.ask("Continue anyway? (It's recommended to delete the EKS cluster first)"):
        return f"continuing although EKS cluster '{name}' still exists"
    raise ApplyError(f"EKS cluster '{name}' still exists; run 'eksops uninstall cluster' on the workstation first")


def _cluster_gone(context) -> bool:
    aws = context.aws
    return aws.caller_identity() is not None and aws.cluster_status(context.cluster_name) is None


def _empty_state_bucket(context) -> None:
    bucket, _ = context.settings.backend_names()
    if not bucket:
        console.warning("State bucket name unknown; destroying without emptying it first")
        return
    try:
        removed = context.aws.empty_bucket(bucket)
        console.success(f"Emptied s3://{bucket} ({removed} object version(s))")
    except Exception as e:
        console.warning(f"Failed to empty S3 bucket {bucket}: {e}. It might not exist or you may lack permission.")


def _no_workstation_instances(context) -> CheckResult:
    tag = context.settings.workstation_tag
    remaining = context.aws.instances_by_tag(tag)
    if remaining:
        return CheckResult(False, f"EC2 instances tagged {tag} still exist: {', '.join(remaining)}")
    return CheckResult(True, f"No {tag} EC2 instances found in {context.region}")


def _bucket_gone(context) -> CheckResult:
    bucket, _ = context.settings.backend_names()
    if not bucket:
        return CheckResult(True, "No state bucket configured")
    if context.aws.bucket_exists(bucket):
        return CheckResult(False, f"S3 bucket '{bucket}' still exists")
    return CheckResult(True, f"S3 bucket '{bucket}' not found or already deleted")


def _table_gone(context) -> CheckResult:
    _, table = context.settings.backend_names()
    if not table:
        return CheckResult(True, "No lock table configured")
    if context.aws.table_exists(table):
        return CheckResult(False, f"DynamoDB table '{table}' still exists")
    return CheckResult(True, f"DynamoDB table '{table}' not found or already deleted")


def residual_checks() -> list[Check]:
    return [
        Check("workstation-instances", _no_workstation_instances),
        Check("state-bucket", _bucket_gone),
        Check("lock-table", _table_gone),
    ]


def build_teardown(settings, options=None) -> Pipeline:
    return Pipeline(
        name="workstation-teardown",
        description="Destroy the EC2 workstation and the Terraform state backend",
        teardown=True,
        stages=[
            Stage(
                name="confirm-cluster-deleted",
                apply=_confirm_cluster_deleted,
                description="Make sure the EKS cluster is gone before removing the workstation",
                idempotency_check=_cluster_gone,
            ),
            terraform_destroy_stage(
                "destroy-workstation", settings.workstation_dir,
                "Destroy the EC2 workstation",
                variables=lambda c: {"ssh_key_path": str(c.settings.ssh_public_key)},
            ),
            terraform_destroy_stage(
                "destroy-state-backend", settings.backend_dir,
                "Delete ALL Terraform state (S3 bucket and DynamoDB table)",
                before_destroy=_empty_state_bucket,
            ),
        ],
        residual_checks=residual_checks(),
    )
