import threading
from unittest.mock import MagicMock

import pytest

from eksops.errors import AuthorizationRevoked
from eksops.poller import wait_until


def sequence(*outcomes):
    """Predicate returning (or raising) each outcome in turn."""
    remaining = iter(outcomes)

    def predicate():
        outcome = next(remaining)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
    return predicate


class TestWaitUntil:
    def test_satisfied_on_first_attempt(self):
        result = wait_until(lambda: True, interval=0.01, max_attempts=5)

        assert result.satisfied
        assert result.attempts == 1
        assert not result.cancelled

    def test_never_satisfied_makes_every_attempt(self):
        calls = []

        def predicate():
            calls.append(1)
            return False

        result = wait_until(predicate, interval=0.001, max_attempts=4)

        assert not result.satisfied
        assert result.attempts == 4
        assert len(calls) == 4
        assert not result.cancelled

    def test_elapsed_covers_the_intervals_between_attempts(self):
        result = wait_until(lambda: False, interval=0.02, max_attempts=3)

        assert result.elapsed >= 0.04

    def test_no_sleep_after_final_attempt(self):
        cancel = MagicMock()
        cancel.is_set.return_value = False
        cancel.wait.return_value = False

        wait_until(lambda: False, interval=5, max_attempts=3, cancel=cancel)

        assert cancel.wait.call_count == 2

    def test_satisfied_later(self):
        result = wait_until(sequence(False, False, True), interval=0.001, max_attempts=5)

        assert result.satisfied
        assert result.attempts == 3


class TestCancellation:
    def test_cancelled_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        predicate = MagicMock(return_value=True)

        result = wait_until(predicate, interval=0.01, max_attempts=5, cancel=cancel)

        assert result.cancelled
        assert not result.satisfied
        assert result.attempts == 0
        predicate.assert_not_called()

    def test_cancel_interrupts_a_long_interval(self):
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            result = wait_until(lambda: False, interval=10, max_attempts=100, cancel=cancel)
        finally:
            timer.cancel()

        assert result.cancelled
        assert not result.satisfied
        assert result.attempts <= 3
        assert result.elapsed < 5

    def test_cancel_after_second_attempt(self):
        cancel = threading.Event()
        predicate = MagicMock(return_value=False)

        def on_attempt(n):
            if n == 2:
                cancel.set()

        result = wait_until(predicate, interval=0.01, max_attempts=10, cancel=cancel, on_attempt=on_attempt)

        assert result.cancelled
        assert not result.satisfied
        assert result.attempts <= 3
        assert predicate.call_count <= 3


class TestPredicateErrors:
    def test_exception_counts_as_not_ready(self):
        result = wait_until(sequence(RuntimeError("boom"), False, True), interval=0.001, max_attempts=5)

        assert result.satisfied
        assert result.attempts == 3
        assert result.last_error == "boom"

    def test_fatal_error_aborts_immediately(self):
        predicate = MagicMock(side_effect=AuthorizationRevoked("token expired"))

        with pytest.raises(AuthorizationRevoked):
            wait_until(predicate, interval=0.001, max_attempts=5)

        assert predicate.call_count == 1


class TestFeedback:
    def test_on_attempt_sees_each_attempt_number(self):
        seen = []

        wait_until(lambda: False, interval=0.001, max_attempts=3, on_attempt=seen.append)

        assert seen == [1, 2, 3]

    def test_spinner_description(self, quiet_console):
        result = wait_until(sequence(False, True), interval=0.001, max_attempts=3,
                            description="Waiting for load balancer")

        assert result.satisfied
