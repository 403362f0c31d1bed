import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import NoCredentialsError

from eksops.aws import TemporaryCredentials
from eksops.cli import build_parser, main
from eksops.context import ConfirmationPolicy
from eksops.orchestrator import RunReport
from eksops.stage import RunResult, RunStatus


def run_main(*argv) -> int:
    with pytest.raises(SystemExit) as exc:
        main(list(argv))
    return exc.value.code


class TestParser:
    def test_install_defaults(self):
        args = build_parser().parse_args(["install", "monitoring"])

        assert args.pipeline == "monitoring"
        assert args.confirm == "prompt"
        assert args.reinstall is None
        assert not args.force

    def test_keep_existing(self):
        assert build_parser().parse_args(["install", "grafana", "--keep-existing"]).reinstall is False
        assert build_parser().parse_args(["install", "grafana", "--reinstall"]).reinstall is True

    def test_reinstall_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["install", "grafana", "--reinstall", "--keep-existing"])

    def test_unknown_pipeline(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["uninstall", "up"])


class TestRun:
    def test_dry_run_changes_nothing(self, tmp_path, quiet_console):
        with patch("eksops.cli.RunContext") as context:
            code = run_main("install", "storage", "--dry-run", "--project-root", str(tmp_path))

        assert code == 0
        context.assert_not_called()
        output = quiet_console.getvalue()
        assert "ebs-csi-driver" in output
        assert "Dry run" in output

    def test_unknown_only_stage(self, tmp_path):
        with patch("eksops.cli.RunContext") as context:
            code = run_main("install", "storage", "--only", "nope", "--project-root", str(tmp_path))

        assert code == 1
        context.assert_not_called()

    def test_teardown_run_saves_report(self, tmp_path):
        report = RunReport("down", [
            RunResult("delete-cluster", RunStatus.APPLIED),
            RunResult("destroy-network", RunStatus.FAILED, "DependencyViolation"),
        ])

        with patch("eksops.cli.RunContext") as context, \
             patch("eksops.cli.Orchestrator") as orchestrator, \
             patch("eksops.cli.signal.signal"):
            orchestrator.return_value.run.return_value = report
            code = run_main("uninstall", "down", "--force", "--project-root", str(tmp_path))

        assert code == 2
        assert context.call_args.kwargs["policy"] == ConfirmationPolicy.AUTO_APPROVE
        pipeline = orchestrator.return_value.run.call_args.args[0]
        assert pipeline.teardown
        saved = json.loads((tmp_path / ".eksops-last-run.json").read_text())
        assert saved["exit_code"] == 2

    def test_install_options_reach_the_context(self, tmp_path):
        with patch("eksops.cli.RunContext") as context, \
             patch("eksops.cli.Orchestrator") as orchestrator, \
             patch("eksops.cli.signal.signal"):
            orchestrator.return_value.run.return_value = RunReport("storage", [])
            code = run_main("install", "storage", "--test-pvc", "--keep-existing",
                            "--confirm", "deny", "--project-root", str(tmp_path))

        assert code == 0
        kwargs = context.call_args.kwargs
        assert kwargs["options"] == {"reinstall": False, "test_pvc": True}
        assert kwargs["policy"] == ConfirmationPolicy.DENY

    def test_bad_config(self, tmp_path):
        (tmp_path / "eksops.json").write_text(json.dumps({"clustername": "typo"}))

        assert run_main("list", "--project-root", str(tmp_path)) == 1


class TestStatus:
    def test_no_runs(self, tmp_path, quiet_console):
        assert run_main("status", "--project-root", str(tmp_path)) == 0
        assert "No runs recorded yet" in quiet_console.getvalue()

    def test_last_run(self, tmp_path, quiet_console):
        RunReport("cluster", [RunResult("create-cluster", RunStatus.FAILED, "stack failed", fatal=True)],
                  halted_at="create-cluster").save(tmp_path / ".eksops-last-run.json")

        assert run_main("status", "--project-root", str(tmp_path)) == 1
        assert "create-cluster" in quiet_console.getvalue()


def test_list(tmp_path, quiet_console):
    assert run_main("list", "--project-root", str(tmp_path)) == 0
    assert "install-grafana" in quiet_console.getvalue()


def test_credentials_prints_exports(tmp_path, capsys):
    credentials = TemporaryCredentials("AKIA", "secret", "token", datetime.now(timezone.utc) + timedelta(hours=1))
    context = MagicMock()
    context.aws.assume_role.return_value = credentials

    with patch("eksops.cli.RunContext", return_value=context):
        code = run_main("credentials", "--role-arn", "arn:aws:iam::1:role/eks-admin",
                        "--project-root", str(tmp_path))

    assert code == 0
    out = capsys.readouterr().out
    assert "export AWS_SESSION_TOKEN=token" in out
    assert out.startswith("# arn:aws:iam::1:role/eks-admin")


def test_credentials_without_aws_credentials(tmp_path, capsys):
    context = MagicMock()
    context.aws.assume_role.side_effect = NoCredentialsError()

    with patch("eksops.cli.RunContext", return_value=context):
        code = run_main("credentials", "--role-arn", "arn:aws:iam::1:role/eks-admin",
                        "--project-root", str(tmp_path))

    assert code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Could not assume" in captured.err
