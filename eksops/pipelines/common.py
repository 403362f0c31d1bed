"""Building blocks shared by the concrete pipelines."""

import logging

import requests

from eksops import console
from eksops.checks import directory_exists, tool_present
from eksops.errors import ApplyError
from eksops.stage import Stage

logger = logging.getLogger(__name__)


def http_contains(url: str, text: str, timeout: float = 10) -> bool:
    """GET url and look for text in the body. Network errors mean 'not yet'."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.debug("GET %s failed: %s", url, e)
        return False
    return response.ok and text in response.text


def service_hostname(context, namespace: str, name: str) -> str | None:
    service = context.kubectl.get_service(namespace, name)
    return service.load_balancer_hostname if service else None


def require_hostname(context, namespace: str, name: str) -> str:
    hostname = service_hostname(context, namespace, name)
    if not hostname:
        raise ApplyError(
            f"LoadBalancer address not yet available; check with "
            f"'kubectl get svc -n {namespace} {name}'"
        )
    return hostname


def pods_running(context, namespace: str, selector: str | None = None, name_contains: str = "") -> bool:
    pods = [
        pod for pod in context.kubectl.get_pods(namespace, selector)
        if name_contains in pod.name
    ]
    return any(pod.running for pod in pods)


def capture_outputs(context, directory: str, *names: str) -> dict:
    """Fill context.outputs with Terraform outputs an earlier (maybe skipped) stage produced."""
    missing = [n for n in names if not context.outputs.get(n)]
    if missing:
        outputs = context.terraform(directory).outputs()
        for name in missing:
            if outputs.get(name):
                context.outputs[name] = outputs[name]
    return {n: context.outputs.get(n) for n in names}


# ─────────────────────────────────────────────────────────────────────────────
# TERRAFORM STAGES
# ─────────────────────────────────────────────────────────────────────────────

def terraform_apply_stage(name: str, directory: str, description: str, variables=None,
                          readiness=None, poll_interval: float = 10.0, max_attempts: int = 30) -> Stage:
    """Stage applying one Terraform directory; skipped when a plan shows no changes."""
    def tf_vars(context) -> dict:
        return variables(context) if callable(variables) else (variables or {})

    def up_to_date(context) -> bool:
        return not context.terraform(directory).has_changes(tf_vars(context))

    def apply(context) -> str:
        result = context.terraform(directory).apply(tf_vars(context))
        context.outputs.update({k: v for k, v in result.outputs.items() if v is not None})
        return f"{len(result.created)} resource(s) created"

    return Stage(
        name=name,
        apply=apply,
        description=description,
        preconditions=[
            tool_present("terraform"),
            directory_exists(lambda c: c.settings.path(directory), f"Terraform {name}"),
        ],
        idempotency_check=up_to_date,
        readiness_check=readiness,
        poll_interval=poll_interval,
        max_attempts=max_attempts,
    )


def terraform_destroy_stage(name: str, directory: str, description: str, variables=None,
                            before_destroy=None) -> Stage:
    """Destructive, non-fatal stage destroying one Terraform directory."""
    def tf_vars(context) -> dict:
        return variables(context) if callable(variables) else (variables or {})

    def nothing_left(context) -> bool:
        tf = context.terraform(directory)
        tf.ensure_init()
        return not tf.state_list()

    def apply(context) -> str:
        tf = context.terraform(directory)
        if before_destroy:
            before_destroy(context)
        try:
            result = tf.destroy(tf_vars(context))
        except Exception:
            remaining = tf.state_list()
            if remaining:
                console.console.print("[dim]Current Terraform state:[/dim]")
                for address in remaining:
                    console.console.print(f"  [dim]{address}[/dim]")
            console.console.print(f"[dim]Retry manually with: cd {tf.workdir} && terraform destroy[/dim]")
            raise
        return f"{len(result.destroyed)} resource(s) destroyed"

    return Stage(
        name=name,
        apply=apply,
        description=description,
        preconditions=[
            tool_present("terraform"),
            directory_exists(lambda c: c.settings.path(directory), f"Terraform {name}"),
        ],
        idempotency_check=nothing_left,
        fatal=False,
        destructive=True,
    )


def kubernetes_unavailable(context) -> bool:
    """
    True when there is no cluster to talk to.

    Used by teardown stages to skip Kubernetes cleanup once the cluster is gone.
    A stale kubeconfig is refreshed once before giving up.
    """
    if context.aws.cluster_status(context.cluster_name) is None:
        return True
    if context.kubectl.reachable():
        return False
    try:
        context.update_kubeconfig()
    except Exception as e:
        logger.debug("update-kubeconfig failed: %s", e)
        return True
    return not context.kubectl.reachable()
