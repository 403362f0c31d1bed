"""
Prometheus and Grafana on the cluster, installed from their Helm charts.

An existing release is either kept (the install stage is skipped) or removed
together with its volumes for a fresh install; `--reinstall`, or the operator
under the prompt policy, decides which.
"""

import logging
import shutil
from pathlib import Path

from rich.panel import Panel

from eksops import console
from eksops.checks import (
    cluster_reachable,
    namespace_exists,
    service_exists,
    storageclass_available,
    tools_present,
)
from eksops.errors import ApplyError
from eksops.kube import HelmRepo, ReleaseRef
from eksops.orchestrator import Pipeline
from eksops.pipelines.common import (
    http_contains,
    kubernetes_unavailable,
    pods_running,
    require_hostname,
    service_hostname,
)
from eksops.stage import Stage

logger = logging.getLogger(__name__)

PROMETHEUS_REPO = HelmRepo("prometheus-community", "https://prometheus-community.github.io/helm-charts")
GRAFANA_REPO = HelmRepo("grafana", "https://grafana.github.io/helm-charts")

PROMETHEUS_SERVER = "prometheus-server"
PROMETHEUS_EXTERNAL = "prometheus-external"
PROMETHEUS_SERVER_SELECTOR = "app.kubernetes.io/name=prometheus,app.kubernetes.io/component=server"
GRAFANA = "grafana"
GRAFANA_SELECTOR = "app.kubernetes.io/name=grafana"

# gnetId -> (name, revision)
GRAFANA_DASHBOARDS = {
    3119: ("k8s-cluster-monitoring", 2),
    6417: ("k8s-pod-monitoring", 1),
}


def _limits(cpu: str, memory: str, cpu_request: str, memory_request: str) -> dict:
    return {
        "limits": {"cpu": cpu, "memory": memory},
        "requests": {"cpu": cpu_request, "memory": memory_request},
    }


def prometheus_values(storage_class: str) -> dict:
    small = _limits("100m", "128Mi", "50m", "64Mi")
    return {
        # Alertmanager persistence off, its PVC tends to stay Pending
        "alertmanager": {
            "persistentVolume": {"enabled": False},
            "resources": _limits("100m", "256Mi", "50m", "128Mi"),
        },
        "server": {
            "persistentVolume": {"enabled": True, "storageClass": storage_class, "size": "10Gi"},
            "resources": _limits("500m", "512Mi", "200m", "256Mi"),
        },
        "pushgateway": {"resources": small},
        "nodeExporter": {"resources": small},
        "kubeStateMetrics": {"resources": small},
    }


def grafana_values(storage_class: str, admin_password: str, prometheus_url: str) -> dict:
    return {
        "persistence": {"enabled": True, "storageClassName": storage_class, "size": "10Gi"},
        "adminPassword": admin_password,
        "service": {"type": "LoadBalancer"},
        "datasources": {
            "datasources.yaml": {
                "apiVersion": 1,
                "datasources": [{
                    "name": "Prometheus",
                    "type": "prometheus",
                    "url": prometheus_url,
                    "access": "proxy",
                    "isDefault": True,
                }],
            },
        },
        "dashboardProviders": {
            "dashboardproviders.yaml": {
                "apiVersion": 1,
                "providers": [{
                    "name": "kubernetes",
                    "orgId": 1,
                    "folder": "Kubernetes",
                    "type": "file",
                    "disableDeletion": False,
                    "editable": True,
                    "options": {"path": "/var/lib/grafana/dashboards/kubernetes"},
                }],
            },
        },
        "dashboards": {
            "kubernetes": {
                name: {"gnetId": gnet_id, "revision": revision, "datasource": "Prometheus"}
                for gnet_id, (name, revision) in GRAFANA_DASHBOARDS.items()
            },
        },
        "resources": _limits("500m", "512Mi", "200m", "256Mi"),
    }


def prometheus_url(namespace: str) -> str:
    return f"http://{PROMETHEUS_SERVER}.{namespace}.svc.cluster.local"


def _storage_class(context) -> str:
    return context.outputs.get("storage_class") or context.settings.storage_class


# ─────────────────────────────────────────────────────────────────────────────
# HELM RELEASES
# ─────────────────────────────────────────────────────────────────────────────

def keep_existing(context, release: ReleaseRef) -> bool:
    """
    True when the release already exists and should be left alone.

    The decision is remembered in context.outputs so the operator is asked once.
    A reinstall only ever replaces a release that predates the run; once the
    stage has installed it, the decision flips back to keep.
    """
    key = f"reinstall:{release.name}"
    exists = context.helm.release_exists(release)
    if key in context.outputs:
        return exists and not context.outputs[key]
    if not exists:
        return False

    console.warning(f"{release.name} is already installed in namespace '{release.namespace}'")
    context.outputs[f"preexisting:{release.name}"] = True
    reinstall = context.options.get("reinstall")
    if reinstall is None:
        reinstall = context.ask("Do you want to remove the existing installation and start fresh?")
    context.outputs[key] = bool(reinstall)
    if not reinstall:
        console.warning("Keeping existing installation")
    return not reinstall


def remove_release(context, release: ReleaseRef) -> None:
    """helm uninstall plus every PVC in the namespace, for a clean slate."""
    if context.helm.release_exists(release):
        context.helm.uninstall(release)
    context.kubectl.delete("pvc", namespace=release.namespace)
    # Give the controllers a moment to release the volumes
    context.cancel.wait(context.settings.poll_interval)


def helm_install_stage(name: str, release: ReleaseRef, description: str, install, readiness,
                       settings, preconditions: list) -> Stage:
    def apply(context) -> str:
        if context.helm.release_exists(release):
            console.console.print(f"[dim]Removing existing {release.name} release and its volumes...[/dim]")
            remove_release(context, release)
        context.kubectl.create_namespace(release.namespace)
        install(context)
        # The release now in place is this run's own; later checks keep it
        context.outputs[f"reinstall:{release.name}"] = False
        context.outputs.pop(f"preexisting:{release.name}", None)
        return f"{release.name} installed in namespace '{release.namespace}'"

    def rollback(context) -> None:
        if context.helm.release_exists(release):
            context.helm.uninstall(release)

    return Stage(
        name=name,
        apply=apply,
        description=description,
        preconditions=preconditions,
        idempotency_check=lambda c: keep_existing(c, release),
        readiness_check=readiness,
        rollback=rollback,
        poll_interval=settings.poll_interval,
        max_attempts=settings.pod_attempts,
    )


# ─────────────────────────────────────────────────────────────────────────────
# PROMETHEUS
# ─────────────────────────────────────────────────────────────────────────────

def external_service(namespace: str, selector: dict | None, target_port: int = 9090, port: int = 80) -> dict:
    spec = {
        "type": "LoadBalancer",
        "ports": [{"port": port, "targetPort": target_port, "protocol": "TCP"}],
    }
    if selector:
        spec["selector"] = selector
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": PROMETHEUS_EXTERNAL, "namespace": namespace},
        "spec": spec,
    }


def direct_endpoints(namespace: str, address: str, port: int = 80) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Endpoints",
        "metadata": {"name": PROMETHEUS_EXTERNAL, "namespace": namespace},
        "subsets": [{"addresses": [{"ip": address}], "ports": [{"port": port}]}],
    }


def _expose_with_selector(selector: dict, replace: bool):
    def apply(context) -> str:
        namespace = context.settings.prometheus_namespace
        if replace:
            context.kubectl.delete("service", PROMETHEUS_EXTERNAL, namespace=namespace)
        context.kubectl.apply_manifest(external_service(namespace, selector))
        return "selector " + ",".join(f"{k}={v}" for k, v in selector.items())
    return apply


def _expose_directly(context) -> str:
    """Selector-less service whose endpoints point straight at the prometheus-server ClusterIP."""
    namespace = context.settings.prometheus_namespace
    server = context.kubectl.get_service(namespace, PROMETHEUS_SERVER)
    if server is None or not server.cluster_ip:
        raise ApplyError(f"Service {namespace}/{PROMETHEUS_SERVER} has no ClusterIP")
    context.kubectl.delete("service", PROMETHEUS_EXTERNAL, namespace=namespace)
    context.kubectl.apply_manifest(
        external_service(namespace, None, target_port=80),
        direct_endpoints(namespace, server.cluster_ip),
    )
    return f"direct endpoints to {server.cluster_ip}"


def _external_ready(context) -> bool:
    namespace = context.settings.prometheus_namespace
    if not service_hostname(context, namespace, PROMETHEUS_EXTERNAL):
        return False
    return bool(context.kubectl.endpoint_addresses(namespace, PROMETHEUS_EXTERNAL))


def _verify_prometheus(context) -> str:
    hostname = require_hostname(context, context.settings.prometheus_namespace, PROMETHEUS_EXTERNAL)
    context.outputs["prometheus_url"] = f"http://{hostname}"
    return f"Prometheus is accessible at http://{hostname}"


def _prometheus_responding(context) -> bool:
    url = context.outputs.get("prometheus_url")
    return bool(url) and http_contains(f"{url}/graph", "Prometheus")


def _url_answers(context, namespace: str, service: str, key: str, path: str, text: str) -> bool:
    """The service already serves text through its load balancer; remembers the URL in outputs."""
    hostname = service_hostname(context, namespace, service)
    if not hostname:
        return False
    context.outputs[key] = f"http://{hostname}"
    return http_contains(f"http://{hostname}{path}", text)


def _prometheus_answers(context) -> bool:
    return _url_answers(
        context, context.settings.prometheus_namespace, PROMETHEUS_EXTERNAL, "prometheus_url", "/graph", "Prometheus",
    )


def build_prometheus(settings, options=None) -> Pipeline:
    namespace = settings.prometheus_namespace
    release = ReleaseRef("prometheus", namespace)

    def install(context) -> None:
        context.helm.install(PROMETHEUS_REPO, "prometheus", namespace, prometheus_values(_storage_class(context)))

    return Pipeline(
        name="prometheus",
        description="Prometheus server exposed through a LoadBalancer",
        stages=[
            helm_install_stage(
                "install-prometheus", release, "Helm install prometheus-community/prometheus",
                install=install,
                readiness=lambda c: pods_running(c, namespace, PROMETHEUS_SERVER_SELECTOR),
                settings=settings,
                preconditions=[*tools_present("kubectl", "helm"), cluster_reachable(), storageclass_available()],
            ),
            Stage(
                name="expose-prometheus",
                apply=_expose_with_selector(
                    {"app.kubernetes.io/name": "prometheus", "app.kubernetes.io/component": "server"},
                    replace=False,
                ),
                strategies=[
                    _expose_with_selector({"app": "prometheus", "component": "server"}, replace=True),
                    _expose_directly,
                ],
                description=f"LoadBalancer service {PROMETHEUS_EXTERNAL} (port 80 -> 9090)",
                idempotency_check=lambda c: service_hostname(c, namespace, PROMETHEUS_EXTERNAL) is not None,
                readiness_check=_external_ready,
                poll_interval=settings.poll_interval,
                max_attempts=max(1, settings.load_balancer_attempts // 3),
                fatal=False,
            ),
            Stage(
                name="verify-prometheus",
                apply=_verify_prometheus,
                description="Prometheus UI answers through the load balancer",
                idempotency_check=_prometheus_answers,
                readiness_check=_prometheus_responding,
                poll_interval=settings.poll_interval,
                max_attempts=settings.addon_attempts,
                fatal=False,
            ),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# GRAFANA
# ─────────────────────────────────────────────────────────────────────────────

def _grafana_endpoint(context) -> str:
    return f"waiting for a load balancer on {context.settings.grafana_namespace}/{GRAFANA}"


def _verify_grafana(context) -> str:
    settings = context.settings
    hostname = require_hostname(context, settings.grafana_namespace, GRAFANA)
    context.outputs["grafana_url"] = f"http://{hostname}"

    password = settings.grafana_admin_password
    if context.outputs.get(f"preexisting:{GRAFANA}") and not context.outputs.get(f"reinstall:{GRAFANA}"):
        password = context.kubectl.secret_value(settings.grafana_namespace, GRAFANA, "admin-password") or password

    console.console.print(Panel(
        f"[bold]URL:[/bold]      http://{hostname}\n"
        f"[bold]Username:[/bold] admin\n"
        f"[bold]Password:[/bold] {password}\n\n"
        f"[dim]Dashboards: {', '.join(str(i) for i in GRAFANA_DASHBOARDS)} (import manually if missing)[/dim]",
        title="Grafana",
        border_style="green",
    ))
    return f"Grafana is accessible at http://{hostname}"


def _grafana_responding(context) -> bool:
    url = context.outputs.get("grafana_url")
    return bool(url) and http_contains(f"{url}/login", "Grafana")


def _grafana_answers(context) -> bool:
    return _url_answers(context, context.settings.grafana_namespace, GRAFANA, "grafana_url", "/login", "Grafana")


def build_grafana(settings, options=None) -> Pipeline:
    namespace = settings.grafana_namespace
    release = ReleaseRef(GRAFANA, namespace)

    def install(context) -> None:
        values = grafana_values(
            _storage_class(context),
            context.settings.grafana_admin_password,
            prometheus_url(context.settings.prometheus_namespace),
        )
        values_dir = Path(context.settings.grafana_values_dir).expanduser()
        context.helm.install(GRAFANA_REPO, GRAFANA, namespace, values, values_dir=values_dir)

    return Pipeline(
        name="grafana",
        description="Grafana with the Prometheus datasource and Kubernetes dashboards",
        stages=[
            helm_install_stage(
                "install-grafana", release, "Helm install grafana/grafana",
                install=install,
                readiness=lambda c: pods_running(c, namespace, GRAFANA_SELECTOR),
                settings=settings,
                preconditions=[
                    *tools_present("kubectl", "helm"),
                    cluster_reachable(),
                    namespace_exists(settings.prometheus_namespace),
                    service_exists(settings.prometheus_namespace, PROMETHEUS_SERVER),
                    storageclass_available(),
                ],
            ),
            Stage(
                name="grafana-endpoint",
                apply=_grafana_endpoint,
                description="LoadBalancer hostname for the grafana service",
                idempotency_check=lambda c: service_hostname(c, namespace, GRAFANA) is not None,
                readiness_check=lambda c: service_hostname(c, namespace, GRAFANA) is not None,
                poll_interval=settings.poll_interval,
                max_attempts=settings.load_balancer_attempts,
                fatal=False,
            ),
            Stage(
                name="verify-grafana",
                apply=_verify_grafana,
                description="Grafana login page answers through the load balancer",
                idempotency_check=_grafana_answers,
                readiness_check=_grafana_responding,
                poll_interval=settings.poll_interval,
                max_attempts=settings.addon_attempts,
                fatal=False,
            ),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# UNINSTALL
# ─────────────────────────────────────────────────────────────────────────────

def uninstall_release(context, release: ReleaseRef, local_dir: Path | None = None) -> str:
    """
    Best-effort removal of a release, its volumes and its namespace.

    Every step is attempted; failures are collected and raised together at the end.
    """
    failures = []

    def attempt(what: str, fn, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            console.warning(f"Failed to {what}: {e}")
            failures.append(what)

    if context.helm.release_exists(release):
        attempt(f"uninstall {release.name}", context.helm.uninstall, release)
    else:
        console.console.print(f"[dim]No {release.name} release found[/dim]")
    attempt("delete PVCs", context.kubectl.delete, "pvc", namespace=release.namespace)
    attempt(f"delete namespace {release.namespace}", context.kubectl.delete, "namespace", release.namespace)
    if local_dir is not None and local_dir.exists():
        attempt(f"remove {local_dir}", shutil.rmtree, local_dir)

    if failures:
        raise ApplyError(f"could not {', '.join(failures)}")
    return f"{release.name} removed from namespace '{release.namespace}'"


def _release_gone(context, release: ReleaseRef, local_dir: Path | None = None) -> bool:
    if local_dir is not None and local_dir.exists():
        return False
    if kubernetes_unavailable(context):
        return True
    return not context.kubectl.exists("namespace", release.namespace)


def uninstall_grafana_stage(settings) -> Stage:
    release = ReleaseRef(GRAFANA, settings.grafana_namespace)
    local_dir = Path(settings.grafana_values_dir).expanduser()

    def apply(context) -> str:
        if kubernetes_unavailable(context):
            shutil.rmtree(local_dir, ignore_errors=True)
            return f"cluster unavailable; removed {local_dir}"
        return uninstall_release(context, release, local_dir)

    return Stage(
        name="uninstall-grafana",
        apply=apply,
        description="Helm uninstall grafana, its volumes, namespace and local values",
        preconditions=tools_present("kubectl", "helm"),
        idempotency_check=lambda c: _release_gone(c, release, local_dir),
        fatal=False,
        destructive=True,
    )


def uninstall_prometheus_stage(settings) -> Stage:
    release = ReleaseRef("prometheus", settings.prometheus_namespace)
    return Stage(
        name="uninstall-prometheus",
        apply=lambda c: uninstall_release(c, release),
        description="Helm uninstall prometheus, its volumes and namespace",
        preconditions=tools_present("kubectl", "helm"),
        idempotency_check=lambda c: _release_gone(c, release),
        fatal=False,
        destructive=True,
    )
