"""EKS cluster bring-up and teardown, both the eksctl route and the Terraform route."""

import logging

from eksops import console
from eksops.checks import (
    Check,
    cluster_absent,
    cluster_reachable,
    credentials_valid,
    file_exists,
    tool_present,
    tools_present,
)
from eksops.errors import ApplyError
from eksops.orchestrator import Pipeline
from eksops.pipelines.common import (
    capture_outputs,
    http_contains,
    kubernetes_unavailable,
    require_hostname,
    service_hostname,
    terraform_apply_stage,
    terraform_destroy_stage,
)
from eksops.pipelines.monitoring import uninstall_grafana_stage, uninstall_prometheus_stage
from eksops.pipelines.workstation import ssh_key_stage
from eksops.stage import Stage

logger = logging.getLogger(__name__)

NGINX = "nginx"
NGINX_IMAGE = "nginx"
NGINX_WELCOME = "Welcome to nginx"


def ssh_public_key_present() -> Check:
    probe = file_exists(lambda c: c.settings.ssh_public_key, "SSH public key").probe
    return Check("ssh-public-key", probe, recovery=ssh_key_stage(ask_first=True))


# ─────────────────────────────────────────────────────────────────────────────
# SHARED STAGES
# ─────────────────────────────────────────────────────────────────────────────

def kubeconfig_current(context) -> bool:
    """kubectl already talks to this cluster (aws eks contexts are named by cluster ARN)."""
    current = context.kubectl.current_context() or ""
    return current.endswith(f"cluster/{context.cluster_name}") and context.kubectl.reachable()


def update_kubeconfig_stage() -> Stage:
    def apply(context) -> str:
        context.update_kubeconfig()
        return f"kubeconfig points at {context.cluster_name}"

    return Stage(
        name="update-kubeconfig",
        apply=apply,
        description="Point kubectl at the cluster",
        preconditions=[tool_present("aws")],
        idempotency_check=kubeconfig_current,
    )


def any_node_ready(context) -> bool:
    nodes = context.kubectl.get_nodes()
    ready = [n.name for n in nodes if n.ready]
    logger.debug("%d/%d nodes ready", len(ready), len(nodes))
    return bool(ready)


def verify_nodes_stage(settings) -> Stage:
    def apply(context) -> str:
        return f"{len(context.kubectl.get_nodes())} node(s) registered"

    return Stage(
        name="verify-nodes",
        apply=apply,
        description="Wait for worker nodes to report Ready",
        preconditions=[tool_present("kubectl")],
        idempotency_check=any_node_ready,
        readiness_check=any_node_ready,
        poll_interval=settings.poll_interval,
        max_attempts=settings.pod_attempts,
        fatal=False,
    )


# ─────────────────────────────────────────────────────────────────────────────
# TERRAFORM-MANAGED CLUSTER (infra)
# ─────────────────────────────────────────────────────────────────────────────

def _assume_admin_role(context) -> str:
    settings = context.settings
    outputs = capture_outputs(context, settings.infra_dir, "role_arn", "cluster_name")
    if not outputs["role_arn"]:
        raise ApplyError(f"No role_arn output in {settings.infra_dir}; apply create-network first")
    credentials = context.aws.assume_role(
        outputs["role_arn"], settings.admin_session_name, settings.session_duration,
    )
    context.use_credentials(credentials)
    return f"assumed {outputs['role_arn']} until {credentials.expires_at:%H:%M:%S}"


def _admin_session_active(context) -> bool:
    credentials = context.credentials
    return credentials is not None and not credentials.expired()


def build_infra(settings, options=None) -> Pipeline:
    return Pipeline(
        name="infra",
        description="Terraform-managed EKS network and admin role",
        stages=[
            terraform_apply_stage(
                "create-network", settings.infra_dir,
                "VPC, subnets, EKS cluster and admin role",
            ),
            Stage(
                name="assume-role",
                apply=_assume_admin_role,
                description="Switch to the EKS admin role for the rest of the run",
                preconditions=[credentials_valid()],
                idempotency_check=_admin_session_active,
            ),
            update_kubeconfig_stage(),
            verify_nodes_stage(settings),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# EKSCTL-MANAGED CLUSTER
# ─────────────────────────────────────────────────────────────────────────────

def _create_cluster(context) -> str:
    settings = context.settings
    context.eksctl.create_cluster(
        name=context.cluster_name,
        region=context.region,
        node_type=settings.node_type,
        nodes=settings.node_count,
        zones=settings.zones,
        ssh_public_key=str(settings.ssh_public_key),
    )
    return f"cluster {context.cluster_name} created ({settings.node_count} × {settings.node_type})"


def _cluster_active(context) -> bool:
    return context.aws.cluster_status(context.cluster_name) == "ACTIVE"


def _remove_partial_cluster(context) -> None:
    if context.aws.cluster_status(context.cluster_name) is not None:
        console.warning(f"Removing partially created cluster {context.cluster_name}")
        context.eksctl.delete_cluster(context.cluster_name, context.region)


def _deploy_nginx(context) -> str:
    kubectl = context.kubectl
    created = []
    if not kubectl.exists("deployment", NGINX):
        console.command(["kubectl", "create", "deployment", NGINX, f"--image={NGINX_IMAGE}"])
        kubectl.create_deployment(NGINX, NGINX_IMAGE)
        created.append("deployment")
    if not kubectl.exists("service", NGINX):
        console.command(["kubectl", "expose", "deployment", NGINX, "--port=80", "--type=LoadBalancer"])
        kubectl.expose(NGINX, 80)
        created.append("service")
    return f"created {' and '.join(created)}" if created else "deployment and service present"


def _nginx_reachable(context) -> bool:
    url = f"http://{require_hostname(context, 'default', NGINX)}"
    context.outputs["nginx_url"] = url
    return http_contains(url, NGINX_WELCOME)


def _verify_nginx(context) -> str:
    return f"checking {require_hostname(context, 'default', NGINX)}"


def build_cluster(settings, options=None) -> Pipeline:
    return Pipeline(
        name="cluster",
        description="eksctl-managed EKS cluster with a sample nginx service",
        stages=[
            Stage(
                name="create-cluster",
                apply=_create_cluster,
                description="eksctl create cluster",
                preconditions=[
                    *tools_present("aws", "eksctl", "kubectl"),
                    credentials_valid(),
                    ssh_public_key_present(),
                ],
                idempotency_check=lambda c: c.aws.cluster_status(c.cluster_name) is not None,
                readiness_check=_cluster_active,
                rollback=_remove_partial_cluster,
                poll_interval=settings.poll_interval,
                max_attempts=settings.cluster_attempts,
            ),
            update_kubeconfig_stage(),
            verify_nodes_stage(settings),
            Stage(
                name="deploy-nginx",
                apply=_deploy_nginx,
                description="Sample nginx deployment behind a LoadBalancer",
                preconditions=[cluster_reachable()],
                idempotency_check=lambda c: service_hostname(c, "default", NGINX) is not None,
                readiness_check=lambda c: service_hostname(c, "default", NGINX) is not None,
                poll_interval=settings.poll_interval,
                max_attempts=settings.load_balancer_attempts,
                fatal=False,
            ),
            Stage(
                name="verify-nginx",
                apply=_verify_nginx,
                description="The nginx welcome page is served through the load balancer",
                idempotency_check=_nginx_reachable,
                readiness_check=_nginx_reachable,
                poll_interval=settings.poll_interval,
                max_attempts=settings.load_balancer_attempts,
                fatal=False,
            ),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# TEARDOWN
# ─────────────────────────────────────────────────────────────────────────────

def _nginx_gone(context) -> bool:
    if kubernetes_unavailable(context):
        return True
    kubectl = context.kubectl
    return not kubectl.exists("deployment", NGINX) and not kubectl.exists("service", NGINX)


def _remove_nginx(context) -> str:
    context.kubectl.delete("service", NGINX)
    context.kubectl.delete("deployment", NGINX)
    return "nginx deployment and service deleted"


def _delete_with_eksctl(context) -> str:
    context.eksctl.delete_cluster(context.cluster_name, context.region)
    return f"cluster {context.cluster_name} deleted with eksctl"


def _delete_with_api(context) -> str:
    if not context.ask("eksctl failed. Delete the nodegroups and cluster through the AWS API instead?",
                       default=True):
        raise ApplyError("eksctl deletion failed and the AWS API fallback was declined")
    context.aws.delete_cluster_with_nodegroups(context.cluster_name)
    return f"cluster {context.cluster_name} deleted through the AWS API"


def delete_cluster_stage(settings) -> Stage:
    return Stage(
        name="delete-cluster",
        apply=_delete_with_eksctl,
        strategies=[_delete_with_api],
        description="Delete the EKS cluster and all its nodegroups",
        preconditions=[*tools_present("aws", "eksctl"), credentials_valid()],
        idempotency_check=lambda c: c.aws.cluster_status(c.cluster_name) is None,
        readiness_check=lambda c: c.aws.cluster_status(c.cluster_name) is None,
        poll_interval=settings.poll_interval,
        max_attempts=settings.addon_attempts,
        fatal=False,
        destructive=True,
    )


def build_cluster_teardown(settings, options=None) -> Pipeline:
    return Pipeline(
        name="cluster-teardown",
        description="Remove monitoring, sample workloads and the EKS cluster",
        teardown=True,
        stages=[
            uninstall_grafana_stage(settings),
            uninstall_prometheus_stage(settings),
            Stage(
                name="remove-nginx",
                apply=_remove_nginx,
                description="Delete the sample nginx deployment and service",
                preconditions=[tool_present("kubectl")],
                idempotency_check=_nginx_gone,
                fatal=False,
                destructive=True,
            ),
            delete_cluster_stage(settings),
        ],
        residual_checks=[cluster_absent()],
    )


def build_infra_teardown(settings, options=None) -> Pipeline:
    return Pipeline(
        name="infra-teardown",
        description="Destroy the Terraform-managed EKS network",
        teardown=True,
        stages=[
            terraform_destroy_stage(
                "destroy-network", settings.infra_dir,
                "Destroy the EKS cluster network, IAM roles and everything in it",
            ),
        ],
    )
