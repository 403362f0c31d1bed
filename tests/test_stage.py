from unittest.mock import MagicMock

import pytest

from eksops.checks import Check, CheckResult
from eksops.errors import ApplyError, AuthorizationRevoked, UserAborted
from eksops.stage import RunResult, RunStatus, Stage


def passing(name="ok"):
    return Check(name, lambda c: CheckResult(True, f"{name} fine"))


def failing(name="missing", required=True):
    return Check(name, lambda c: CheckResult(False, f"{name} not found"), required=required)


def fast(**kwargs):
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("max_attempts", 3)
    return Stage(**kwargs)


class TestConstruction:
    def test_stage_needs_something_to_apply(self):
        with pytest.raises(ValueError):
            Stage(name="empty")

    def test_actions_are_apply_then_strategies(self):
        first, second = MagicMock(), MagicMock()
        stage = Stage(name="s", apply=first, strategies=[second])

        assert stage.actions == [first, second]


class TestIdempotency:
    def test_satisfied_stage_is_skipped(self, ctx):
        apply = MagicMock()
        result = fast(name="s", apply=apply, idempotency_check=lambda c: True).run(ctx)

        assert result.status == RunStatus.SKIPPED
        apply.assert_not_called()

    def test_second_run_is_skipped(self, ctx):
        state = {"created": False}

        def apply(context):
            state["created"] = True

        stage = fast(name="s", apply=apply, idempotency_check=lambda c: state["created"])

        assert stage.run(ctx).status == RunStatus.APPLIED
        assert stage.run(ctx).status == RunStatus.SKIPPED

    def test_failing_check_means_not_satisfied(self, ctx):
        apply = MagicMock(return_value="created")
        check = MagicMock(side_effect=RuntimeError("api down"))

        result = fast(name="s", apply=apply, idempotency_check=check).run(ctx)

        assert result.status == RunStatus.APPLIED
        apply.assert_called_once_with(ctx)


class TestPreconditions:
    def test_required_failure_fails_before_apply(self, ctx):
        apply = MagicMock()
        result = fast(name="s", apply=apply, preconditions=[passing(), failing("kubectl")]).run(ctx)

        assert result.status == RunStatus.FAILED
        assert "kubectl not found" in result.detail
        apply.assert_not_called()

    def test_optional_failure_is_a_warning(self, ctx):
        result = fast(name="s", apply=MagicMock(), preconditions=[failing("jq", required=False)]).run(ctx)

        assert result.status == RunStatus.APPLIED
        assert result.warnings == ("jq not found",)


class TestApply:
    def test_returned_text_becomes_detail(self, ctx):
        result = fast(name="s", apply=lambda c: "3 resource(s) created").run(ctx)

        assert result.status == RunStatus.APPLIED
        assert result.detail == "3 resource(s) created"
        assert result.duration_ms >= 0

    def test_failed_apply_never_polls(self, ctx):
        readiness = MagicMock(return_value=True)
        result = fast(
            name="s",
            apply=MagicMock(side_effect=ApplyError("quota exceeded")),
            readiness_check=readiness,
        ).run(ctx)

        assert result.status == RunStatus.FAILED
        assert "quota exceeded" in result.detail
        readiness.assert_not_called()

    def test_declined_question_skips_the_stage(self, ctx):
        result = fast(name="s", apply=MagicMock(side_effect=UserAborted("SSH key is required"))).run(ctx)

        assert result.status == RunStatus.SKIPPED
        assert "SSH key is required" in result.detail

    def test_result_carries_fatal_flag(self, ctx):
        result = fast(name="s", apply=MagicMock(side_effect=ApplyError("x")), fatal=False).run(ctx)

        assert result.failed
        assert result.fatal is False


class TestReadiness:
    def test_ready_after_a_few_polls(self, ctx):
        readiness = MagicMock(side_effect=[False, False, True])
        result = fast(name="s", apply=MagicMock(), readiness_check=readiness, max_attempts=5).run(ctx)

        assert result.status == RunStatus.APPLIED
        assert readiness.call_count == 3

    def test_timeout_is_a_warning_not_a_failure(self, ctx):
        result = fast(name="s", apply=MagicMock(), readiness_check=lambda c: False).run(ctx)

        assert result.status == RunStatus.APPLIED
        assert len(result.warnings) == 1
        assert "not observed ready after 3 attempts" in result.warnings[0]

    def test_cancelled_wait_fails(self, ctx):
        ctx.cancel.set()
        result = fast(name="s", apply=MagicMock(), readiness_check=lambda c: True).run(ctx)

        assert result.status == RunStatus.FAILED
        assert "cancelled" in result.detail

    def test_fatal_error_while_waiting_fails_without_rollback(self, ctx):
        rollback = MagicMock()
        result = fast(
            name="s",
            apply=MagicMock(),
            readiness_check=MagicMock(side_effect=AuthorizationRevoked("ExpiredToken")),
            rollback=rollback,
        ).run(ctx)

        assert result.status == RunStatus.FAILED
        assert "ExpiredToken" in result.detail
        rollback.assert_not_called()


class TestRollback:
    def test_successful_rollback(self, ctx):
        rollback = MagicMock()
        result = fast(name="s", apply=MagicMock(side_effect=ApplyError("half done")), rollback=rollback).run(ctx)

        assert result.status == RunStatus.ROLLED_BACK
        rollback.assert_called_once_with(ctx)

    def test_failed_rollback_is_reported(self, ctx):
        result = fast(
            name="s",
            apply=MagicMock(side_effect=ApplyError("half done")),
            rollback=MagicMock(side_effect=RuntimeError("still in use")),
        ).run(ctx)

        assert result.status == RunStatus.FAILED
        assert "rollback failed: still in use" in result.detail


class TestStrategies:
    def test_next_strategy_after_an_exception(self, ctx):
        second = MagicMock(return_value="deleted through the API")
        result = fast(name="s", apply=MagicMock(side_effect=ApplyError("eksctl failed")), strategies=[second]).run(ctx)

        assert result.status == RunStatus.APPLIED
        assert result.detail == "deleted through the API"
        assert result.warnings == ("strategy 1 failed: eksctl failed",)

    def test_next_strategy_when_first_never_becomes_ready(self, ctx):
        state = {"strategy": 0}

        def strategy(n):
            def apply(context):
                state["strategy"] = n
            return apply

        result = fast(
            name="s",
            apply=strategy(1),
            strategies=[strategy(2), strategy(3)],
            readiness_check=lambda c: state["strategy"] == 2,
            max_attempts=2,
        ).run(ctx)

        assert result.status == RunStatus.APPLIED
        assert state["strategy"] == 2

    def test_only_last_strategy_failure_rolls_back(self, ctx):
        rollback = MagicMock()
        result = fast(
            name="s",
            apply=MagicMock(side_effect=ApplyError("first")),
            strategies=[MagicMock(side_effect=ApplyError("second"))],
            rollback=rollback,
        ).run(ctx)

        assert result.status == RunStatus.ROLLED_BACK
        assert "second" in result.detail
        rollback.assert_called_once()


class TestRunResult:
    def test_dict_round_trip(self):
        result = RunResult("create-cluster", RunStatus.ROLLED_BACK, "boom; rolled back", 1200, True, ("w",))

        assert RunResult.from_dict(result.to_dict()) == result
        assert result.to_dict()["status"] == "rolled_back"
