"""
Configuration for eksops.

Values are layered: built-in defaults < JSON config file < EKSOPS_* environment
variables < explicit overrides (CLI flags).
"""

import json
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from eksops.errors import ConfigError

CONFIG_FILE = "eksops.json"
ENV_PREFIX = "EKSOPS_"


@dataclass(frozen=True)
class Settings:
    """Everything the pipelines need to know about the target environment."""
    project_root: Path = field(default_factory=Path.cwd)
    profile: str | None = None
    region: str = "us-east-1"

    # EKS cluster
    cluster_name: str = "eks-mundos-e"
    node_type: str = "t3.small"
    node_count: int = 3
    zones: str = "us-east-1a,us-east-1b,us-east-1c"
    ssh_key_name: str = "pin"
    ssh_dir: str = "~/.ssh"

    # Terraform working directories, relative to project_root
    backend_dir: str = "00_terraform_backend"
    workstation_dir: str = "01_ec2_workstation"
    infra_dir: str = "01_eks_infrastructure"
    state_bucket: str = ""
    lock_table: str = ""
    workstation_tag: str = "DevOps-Workstation"

    # IAM
    admin_session_name: str = "eks-admin"
    session_duration: int = 3600
    ebs_role_name: str = "AmazonEKS_EBS_CSI_DriverRole"
    ebs_policy_arn: str = "arn:aws:iam::aws:policy/service-role/AmazonEBSCSIDriverPolicy"

    # Monitoring
    prometheus_namespace: str = "prometheus"
    grafana_namespace: str = "grafana"
    storage_class: str = "ebs-sc"
    fallback_storage_class: str = "gp2"
    grafana_admin_password: str = "EKS!sAWSome"
    grafana_values_dir: str = "~/environment/grafana"

    # Poll cadence
    poll_interval: float = 10.0
    load_balancer_attempts: int = 30
    pod_attempts: int = 20
    addon_attempts: int = 10
    cluster_attempts: int = 90

    report_file: str = ".eksops-last-run.json"

    def path(self, relative: str) -> Path:
        """Resolve a project-relative directory."""
        return Path(self.project_root) / relative

    @property
    def ssh_private_key(self) -> Path:
        return Path(self.ssh_dir).expanduser() / self.ssh_key_name

    @property
    def ssh_public_key(self) -> Path:
        return Path(self.ssh_dir).expanduser() / f"{self.ssh_key_name}.pub"

    @property
    def report_path(self) -> Path:
        return self.path(self.report_file)

    def backend_names(self) -> tuple[str, str]:
        """
        State bucket and lock table names.

        Explicit settings win; otherwise the defaults declared in the backend's
        variables.tf are used.
        """
        bucket, table = self.state_bucket, self.lock_table
        if bucket and table:
            return bucket, table
        declared = read_tf_defaults(self.path(self.backend_dir) / "variables.tf")
        return (
            bucket or declared.get("name_of_s3_bucket", ""),
            table or declared.get("dynamo_db_table_name", ""),
        )


_VARIABLE_RE = re.compile(r'variable\s+"(\w+)"\s*\{(.*?)\n\}', re.S)
_DEFAULT_RE = re.compile(r'default\s*=\s*"([^"]*)"')


def read_tf_defaults(path: Path) -> dict[str, str]:
    """Read string defaults from a Terraform variables file."""
    if not path.exists():
        return {}
    defaults = {}
    for name, body in _VARIABLE_RE.findall(path.read_text()):
        match = _DEFAULT_RE.search(body)
        if match:
            defaults[name] = match.group(1)
    return defaults


def _coerce(name: str, kind, value):
    if value is None:
        return None
    try:
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
        if kind is Path:
            return Path(value).expanduser()
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


def _field_types() -> dict:
    types = {}
    for f in fields(Settings):
        kind = f.type
        if kind == (str | None):
            kind = str
        types[f.name] = kind
    return types


def load_settings(
    config_path: Path | None = None,
    overrides: dict | None = None,
    environ: dict | None = None,
) -> Settings:
    """Build Settings from defaults, config file, environment and overrides."""
    environ = os.environ if environ is None else environ
    types = _field_types()
    values: dict = {}

    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    root = Path(overrides.get("project_root") or environ.get(f"{ENV_PREFIX}PROJECT_ROOT") or Path.cwd())

    path = Path(config_path) if config_path else root / CONFIG_FILE
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a JSON object")
        unknown = sorted(set(data) - set(types))
        if unknown:
            raise ConfigError(f"{path}: unknown settings {', '.join(unknown)}")
        values.update(data)
    elif config_path:
        raise ConfigError(f"Config file not found: {path}")

    for name in types:
        env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None:
            values[name] = env_value

    values.update(overrides)
    values.setdefault("project_root", root)

    coerced = {name: _coerce(name, types[name], value) for name, value in values.items()}
    return replace(Settings(), **coerced)
