"""
Precondition checks.

A Check is a stateless probe of the outside world (tools, credentials, cluster
connectivity, Kubernetes objects) that yields a CheckResult. Checks never mutate
anything themselves; a failed check may run its recovery stage exactly once and
then probe again.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from eksops import console
from eksops.shell import find_tool, tool_version
from eksops.stage import RunStatus, Stage

logger = logging.getLogger(__name__)

INSTALL_HINTS = {
    "aws": "https://docs.aws.amazon.com/cli/latest/userguide/getting-started-install.html",
    "terraform": "https://developer.hashicorp.com/terraform/install",
    "eksctl": "https://eksctl.io/installation/",
    "kubectl": "https://kubernetes.io/docs/tasks/tools/",
    "helm": "https://helm.sh/docs/intro/install/",
    "ssh-keygen": "apt-get install openssh-client",
}


@dataclass(frozen=True)
class CheckResult:
    ok: bool
    detail: str = ""


@dataclass
class Check:
    name: str
    probe: Callable
    required: bool = True
    recovery: Stage | None = None

    def evaluate(self, context) -> CheckResult:
        result = self._probe(context)
        if result.ok or self.recovery is None:
            return result

        console.warning(f"{result.detail}. Attempting recovery: {self.recovery.name}")
        recovered = self.recovery.run(context)
        if recovered.status not in (RunStatus.APPLIED, RunStatus.SKIPPED):
            return CheckResult(False, f"{result.detail} (recovery failed: {recovered.detail})")
        return self._probe(context)

    def _probe(self, context) -> CheckResult:
        try:
            return self.probe(context)
        except Exception as e:
            logger.debug("check %s raised", self.name, exc_info=True)
            return CheckResult(False, f"{self.name}: {e}")


def check(requirement: Check, context) -> CheckResult:
    return requirement.evaluate(context)


# ─────────────────────────────────────────────────────────────────────────────
# REQUIREMENTS
# ─────────────────────────────────────────────────────────────────────────────

def tool_present(tool: str) -> Check:
    def probe(context) -> CheckResult:
        path = find_tool(tool)
        if path is None:
            hint = INSTALL_HINTS.get(tool, "")
            return CheckResult(False, f"{tool} not found" + (f" (install: {hint})" if hint else ""))
        version = tool_version(tool)
        return CheckResult(True, f"{tool}: {version or path}")
    return Check(f"tool:{tool}", probe)


def tools_present(*tools: str) -> list[Check]:
    return [tool_present(tool) for tool in tools]


def credentials_valid(required: bool = True) -> Check:
    def probe(context) -> CheckResult:
        if context.credentials and context.credentials.expired():
            return CheckResult(False, "Temporary credentials have expired; run assume-role again")
        identity = context.aws.caller_identity()
        if not identity:
            return CheckResult(False, "AWS credentials are not configured correctly (run 'aws configure')")
        return CheckResult(True, f"AWS identity {identity.get('Arn', '')}")
    return Check("credentials-valid", probe, required=required)


def refresh_kubeconfig_stage() -> Stage:
    return Stage(
        name="refresh-cluster-credentials",
        apply=lambda context: context.update_kubeconfig(),
        description="aws eks update-kubeconfig",
    )


def cluster_reachable(recover: bool = True, required: bool = True) -> Check:
    def probe(context) -> CheckResult:
        if context.kubectl.reachable():
            return CheckResult(True, f"Connected to cluster '{context.cluster_name}'")
        return CheckResult(False, "Cannot connect to the Kubernetes cluster")
    return Check(
        "cluster-reachable",
        probe,
        required=required,
        recovery=refresh_kubeconfig_stage() if recover else None,
    )


def cluster_exists() -> Check:
    def probe(context) -> CheckResult:
        status = context.aws.cluster_status(context.cluster_name)
        if status is None:
            return CheckResult(False, f"EKS cluster '{context.cluster_name}' not found")
        return CheckResult(True, f"EKS cluster '{context.cluster_name}' is {status}")
    return Check("cluster-exists", probe)


def cluster_absent() -> Check:
    def probe(context) -> CheckResult:
        status = context.aws.cluster_status(context.cluster_name)
        if status is None:
            return CheckResult(True, f"EKS cluster '{context.cluster_name}' not found or already deleted")
        return CheckResult(False, f"EKS cluster '{context.cluster_name}' still exists ({status})")
    return Check("cluster-absent", probe)


def namespace_exists(namespace: str) -> Check:
    def probe(context) -> CheckResult:
        if context.kubectl.exists("namespace", namespace):
            return CheckResult(True, f"Namespace '{namespace}' exists")
        return CheckResult(False, f"Namespace '{namespace}' not found")
    return Check(f"namespace:{namespace}", probe)


def service_exists(namespace: str, name: str) -> Check:
    def probe(context) -> CheckResult:
        if context.kubectl.get_service(namespace, name):
            return CheckResult(True, f"Service {namespace}/{name} exists")
        return CheckResult(False, f"Service {namespace}/{name} not found")
    return Check(f"service:{namespace}/{name}", probe)


def release_exists(name: str, namespace: str) -> Check:
    def probe(context) -> CheckResult:
        if name in context.helm.releases(namespace):
            return CheckResult(True, f"Helm release {name} found in '{namespace}'")
        return CheckResult(False, f"Helm release {name} not found in '{namespace}'")
    return Check(f"release:{namespace}/{name}", probe)


def storageclass_available() -> Check:
    """
    The configured storage class, or the fallback when other classes exist.

    The class actually usable is recorded as context.outputs['storage_class'].
    """
    def probe(context) -> CheckResult:
        settings = context.settings
        available = context.kubectl.storage_classes()
        if settings.storage_class in available:
            context.outputs["storage_class"] = settings.storage_class
            return CheckResult(True, f"Storage class '{settings.storage_class}' found")
        if not available:
            return CheckResult(False, "No storage classes found; set up the EBS CSI driver first")
        context.outputs["storage_class"] = settings.fallback_storage_class
        console.warning(
            f"Storage class '{settings.storage_class}' not found (available: {', '.join(available)}); "
            f"using '{settings.fallback_storage_class}'"
        )
        return CheckResult(True, f"Using fallback storage class '{settings.fallback_storage_class}'")
    return Check("storageclass-exists", probe)


def file_exists(path_of: Callable, what: str) -> Check:
    def probe(context) -> CheckResult:
        path = Path(path_of(context))
        if path.exists():
            return CheckResult(True, f"{what} found at {path}")
        return CheckResult(False, f"{what} not found at {path}")
    return Check(f"file:{what}", probe)


def directory_exists(directory_of: Callable, what: str) -> Check:
    def probe(context) -> CheckResult:
        path = Path(directory_of(context))
        if path.is_dir():
            return CheckResult(True, f"{what} directory found at {path}")
        return CheckResult(False, f"{what} directory not found at {path}")
    return Check(f"dir:{what}", probe)


# ─────────────────────────────────────────────────────────────────────────────
# PRE-FLIGHT REPORT
# ─────────────────────────────────────────────────────────────────────────────

def run_preflight_checks(checks: list[Check], context) -> bool:
    """Evaluate checks up front and print one line each. True if all required pass."""
    all_passed = True
    console.console.print("[bold]Pre-flight Checks[/bold]")
    console.console.print()
    for requirement in checks:
        result = requirement.evaluate(context)
        if result.ok:
            console.console.print(f"  [green]✓[/green] [dim]{result.detail}[/dim]")
        elif requirement.required:
            console.console.print(f"  [red]✗[/red] {result.detail}")
            all_passed = False
        else:
            console.console.print(f"  [yellow]⚠[/yellow] {result.detail}")
    console.console.print()
    if not all_passed:
        console.error("Please fix the failed checks and try again.")
    return all_passed
