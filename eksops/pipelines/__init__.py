"""
Pipeline registry.

Each builder takes (settings, options) and returns a fresh Pipeline. Composite
pipelines are plain concatenations of their parts, in order.
"""

from eksops.errors import ConfigError
from eksops.orchestrator import Pipeline
from eksops.pipelines import cluster, monitoring, storage, workstation


def composite(name: str, description: str, *builders, teardown: bool = False):
    def build(settings, options=None) -> Pipeline:
        parts = [b(settings, options) for b in builders]
        return Pipeline(
            name=name,
            description=description,
            stages=[stage for part in parts for stage in part.stages],
            teardown=teardown,
            residual_checks=[c for part in parts for c in part.residual_checks],
        )
    return build


def _monitoring_teardown(settings, options=None) -> Pipeline:
    return Pipeline(
        name="monitoring-teardown",
        description="Remove Grafana and Prometheus",
        teardown=True,
        stages=[
            monitoring.uninstall_grafana_stage(settings),
            monitoring.uninstall_prometheus_stage(settings),
        ],
    )


_monitoring = composite(
    "monitoring", "EBS storage, Prometheus and Grafana",
    storage.build_provision, monitoring.build_prometheus, monitoring.build_grafana,
)

PROVISION = {
    "workstation": workstation.build_provision,
    "infra": cluster.build_infra,
    "cluster": cluster.build_cluster,
    "storage": storage.build_provision,
    "prometheus": monitoring.build_prometheus,
    "grafana": monitoring.build_grafana,
    "monitoring": _monitoring,
    "up": composite("up", "EKS cluster plus the monitoring stack", cluster.build_cluster, _monitoring),
}

TEARDOWN = {
    "monitoring": _monitoring_teardown,
    "cluster": cluster.build_cluster_teardown,
    "infra": cluster.build_infra_teardown,
    "workstation": workstation.build_teardown,
    "down": composite(
        "down", "Everything: cluster, network, workstation and state backend",
        cluster.build_cluster_teardown, cluster.build_infra_teardown, workstation.build_teardown,
        teardown=True,
    ),
}


def get_pipeline(name: str, settings, options: dict | None = None, teardown: bool = False) -> Pipeline:
    registry = TEARDOWN if teardown else PROVISION
    if name not in registry:
        action = "uninstall" if teardown else "install"
        raise ConfigError(f"Unknown pipeline for {action}: {name} (choose from {', '.join(registry)})")
    return registry[name](settings, options or {})
