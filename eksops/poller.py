"""
Bounded wait-until-condition primitive.

Every readiness wait (load balancer hostname, pod phase, add-on activation, ...) goes
through `wait_until`. The cadence is a fixed interval with no backoff so an operator
watching the terminal gets a steady heartbeat.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from eksops.console import console
from eksops.errors import FatalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    satisfied: bool
    attempts: int
    cancelled: bool = False
    elapsed: float = 0.0
    last_error: str | None = None


def wait_until(
    predicate: Callable[[], bool],
    interval: float,
    max_attempts: int,
    cancel: threading.Event | None = None,
    description: str | None = None,
    on_attempt: Callable[[int], None] | None = None,
) -> PollResult:
    """
    Call `predicate` up to `max_attempts` times, `interval` seconds apart.

    There is no sleep after the final attempt. Setting `cancel` stops the wait at
    the next check (including mid-interval) and returns cancelled=True. A
    predicate raising FatalError aborts by propagating; any other exception
    counts as "not satisfied yet".

    With a `description`, a spinner shows progress on the shared console.
    """
    cancel = cancel or threading.Event()
    started = time.monotonic()
    attempts = 0
    last_error = None

    def result(satisfied: bool, cancelled: bool = False) -> PollResult:
        return PollResult(satisfied, attempts, cancelled, time.monotonic() - started, last_error)

    progress = None
    task = None
    if description:
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        progress.start()
        task = progress.add_task(description, total=None)

    try:
        while attempts < max_attempts:
            if cancel.is_set():
                return result(False, cancelled=True)

            attempts += 1
            if on_attempt:
                on_attempt(attempts)
            if progress:
                progress.update(task, description=f"{description} (attempt {attempts}/{max_attempts})")

            try:
                if predicate():
                    return result(True)
            except FatalError:
                raise
            except Exception as e:
                last_error = str(e)
                logger.debug("poll attempt %d raised: %s", attempts, e)

            if attempts < max_attempts and cancel.wait(interval):
                return result(False, cancelled=True)
        return result(False)
    finally:
        if progress:
            progress.stop()
