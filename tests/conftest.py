import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from eksops import console as console_module
from eksops.config import Settings
from eksops.context import ConfirmationPolicy, RunContext


@pytest.fixture(autouse=True)
def quiet_console(monkeypatch):
    """Send rich output to a buffer instead of the terminal."""
    buffer = io.StringIO()
    monkeypatch.setattr(console_module.console, "file", buffer)
    return buffer


@pytest.fixture(autouse=True)
def tools_available():
    """Pretend every external CLI is installed."""
    with patch("eksops.checks.find_tool", side_effect=lambda tool: Path(f"/usr/local/bin/{tool}")), \
         patch("eksops.checks.tool_version", return_value="v1.0.0"):
        yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        project_root=tmp_path,
        ssh_dir=str(tmp_path / ".ssh"),
        grafana_values_dir=str(tmp_path / "grafana"),
        poll_interval=0.01,
        load_balancer_attempts=3,
        pod_attempts=3,
        addon_attempts=3,
        cluster_attempts=3,
    )


@pytest.fixture
def terraform():
    return MagicMock(name="terraform")


@pytest.fixture
def ctx(settings, terraform):
    """A RunContext whose every tool client is a mock."""
    aws = MagicMock(name="aws")
    aws.caller_identity.return_value = {"Account": "123456789012", "Arn": "arn:aws:iam::123456789012:user/ops"}
    return RunContext(
        settings=settings,
        policy=ConfirmationPolicy.AUTO_APPROVE,
        confirm=MagicMock(return_value=True),
        kubectl=MagicMock(name="kubectl"),
        helm=MagicMock(name="helm"),
        eksctl=MagicMock(name="eksctl"),
        aws=aws,
        terraform_factory=MagicMock(return_value=terraform),
    )
