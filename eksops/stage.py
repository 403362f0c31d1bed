"""
Stage: one idempotent unit of provisioning or teardown work.

    idempotency check -> preconditions -> apply (strategy 1..n) -> readiness poll

A stage never raises; every outcome becomes a RunResult.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum

from eksops import console
from eksops.errors import ApplyError, FatalError, PreconditionError, TimeoutWarning, UserAborted
from eksops.poller import wait_until

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class RunResult:
    stage_name: str
    status: RunStatus
    detail: str = ""
    duration_ms: int = 0
    fatal: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def failed(self) -> bool:
        return self.status in (RunStatus.FAILED, RunStatus.ROLLED_BACK)

    def to_dict(self) -> dict:
        d = asdict(self)
        d['status'] = self.status.value
        d['warnings'] = list(self.warnings)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'RunResult':
        return cls(
            stage_name=d['stage_name'],
            status=RunStatus(d['status']),
            detail=d.get('detail', ''),
            duration_ms=d.get('duration_ms', 0),
            fatal=d.get('fatal', False),
            warnings=tuple(d.get('warnings', ())),
        )


@dataclass
class Stage:
    """
    A named unit of work.

    `apply` and then each of `strategies` are tried in order until one satisfies
    the readiness check; the next alternative is attempted when the previous one
    raised or was never observed ready. Only the last strategy's exception leads
    to rollback. `fatal` decides whether a failure halts the pipeline,
    `destructive` puts a confirmation gate in front of the stage.
    """
    name: str
    apply: Callable | None = None
    strategies: list[Callable] = field(default_factory=list)
    preconditions: list = field(default_factory=list)
    idempotency_check: Callable | None = None
    readiness_check: Callable | None = None
    rollback: Callable | None = None
    max_attempts: int = 30
    poll_interval: float = 10.0
    fatal: bool = True
    destructive: bool = False
    description: str = ""

    def __post_init__(self):
        if self.apply is None and not self.strategies:
            raise ValueError(f"Stage '{self.name}' has nothing to apply")

    @property
    def actions(self) -> list[Callable]:
        return ([self.apply] if self.apply else []) + list(self.strategies)

    def satisfied(self, context) -> bool:
        """The idempotency check alone. An error means not satisfied."""
        if self.idempotency_check is None:
            return False
        try:
            return bool(self.idempotency_check(context))
        except Exception as e:
            logger.debug("idempotency check for %s raised: %s", self.name, e)
            return False

    def run(self, context) -> RunResult:
        started = time.monotonic()
        warnings: list[str] = []

        def finish(status: RunStatus, detail: str = "") -> RunResult:
            return RunResult(
                stage_name=self.name,
                status=status,
                detail=detail,
                duration_ms=int((time.monotonic() - started) * 1000),
                fatal=self.fatal,
                warnings=tuple(warnings),
            )

        # 1. Already satisfied?
        try:
            if self.idempotency_check and self.idempotency_check(context):
                console.success(f"{self.name}: already in desired state, skipping")
                return finish(RunStatus.SKIPPED, "already satisfied")
        except FatalError as e:
            return finish(RunStatus.FAILED, str(e))
        except Exception as e:
            logger.debug("idempotency check for %s raised: %s", self.name, e)

        # 2. Preconditions, fail fast
        for requirement in self.preconditions:
            result = requirement.evaluate(context)
            if result.ok:
                continue
            if requirement.required:
                err = PreconditionError(result.detail)
                console.error(f"{self.name}: {err}")
                return finish(RunStatus.FAILED, str(err))
            console.warning(result.detail)
            warnings.append(result.detail)

        # 3-4. Apply each strategy until one becomes ready
        actions = self.actions
        for index, action in enumerate(actions, 1):
            try:
                outcome = action(context)
            except UserAborted as e:
                console.warning(f"{self.name}: {e}")
                return finish(RunStatus.SKIPPED, f"aborted: {e}")
            except Exception as e:
                if index < len(actions):
                    console.warning(f"{self.name}: strategy {index} failed ({e}), trying the next one")
                    warnings.append(f"strategy {index} failed: {e}")
                    continue
                return self._failed(context, e, finish)

            detail = outcome if isinstance(outcome, str) else ""
            if self.readiness_check is None:
                console.success(f"{self.name}: {detail or 'done'}")
                return finish(RunStatus.APPLIED, detail)

            try:
                poll = wait_until(
                    lambda: self.readiness_check(context),
                    interval=self.poll_interval,
                    max_attempts=self.max_attempts,
                    cancel=context.cancel,
                    description=f"Waiting for {self.name}",
                )
            except FatalError as e:
                console.error(f"{self.name}: {e}")
                return finish(RunStatus.FAILED, f"aborted while waiting: {e}")

            if poll.satisfied:
                console.success(f"{self.name}: {detail or 'ready'}")
                return finish(RunStatus.APPLIED, detail)
            if poll.cancelled:
                return finish(RunStatus.FAILED, "cancelled while waiting for readiness")
            if index < len(actions):
                console.warning(f"{self.name}: not ready after strategy {index}, trying the next one")
                continue

            timeout = TimeoutWarning(
                f"not observed ready after {poll.attempts} attempts "
                f"({poll.attempts * self.poll_interval:.0f}s); it may still be provisioning"
            )
            console.warning(f"{self.name}: {timeout}")
            warnings.append(str(timeout))
            return finish(RunStatus.APPLIED, detail or "applied, readiness not confirmed")

        return finish(RunStatus.FAILED, "no strategy applied")

    def _failed(self, context, exc: Exception, finish) -> RunResult:
        err = exc if isinstance(exc, ApplyError) else ApplyError(str(exc))
        console.error(f"{self.name}: {err}")
        if self.rollback is None:
            return finish(RunStatus.FAILED, str(err))
        try:
            self.rollback(context)
        except Exception as rb:
            logger.error("rollback of %s failed: %s", self.name, rb)
            console.warning(f"{self.name}: rollback failed: {rb}")
            return finish(RunStatus.FAILED, f"{err}; rollback failed: {rb}")
        console.warning(f"{self.name}: rolled back")
        return finish(RunStatus.ROLLED_BACK, f"{err}; rolled back")
