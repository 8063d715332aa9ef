"""Tests for the retry controller and backoff policy."""

import random
import threading

import pytest

from cloud_backup.exceptions import (
    OperationCancelledError,
    ProviderError,
    RetryExhaustedError,
    TaskStoreError,
    ValidationError,
    is_retryable,
)
from cloud_backup.utils.retry import RetryController, RetryPolicy, retry_with_backoff


class Flaky:
    """Callable failing with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures, error=None, result="done"):
        self.failures = failures
        self.error = error or ProviderError("connection reset")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def _policy(**kwargs) -> RetryPolicy:
    fields = dict(initial_delay=0.01, max_delay=0.04, max_attempts=5, jitter=0.0)
    fields.update(kwargs)
    return RetryPolicy(**fields)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_delays_double_up_to_max(self):
        policy = _policy()
        assert [policy.compute_delay(i) for i in range(4)] == [0.01, 0.02, 0.04, 0.04]

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=100.0, jitter=0.25)
        rng = random.Random(42)
        for attempt in range(5):
            base = 2.0 ** attempt
            for _ in range(50):
                delay = policy.compute_delay(attempt, rng)
                assert base * 0.75 <= delay <= base * 1.25

    @pytest.mark.parametrize("fields", [
        {"max_attempts": 0},
        {"initial_delay": -1.0},
        {"jitter": 1.0},
        {"jitter": -0.1},
    ])
    def test_invalid_policy(self, fields):
        with pytest.raises(ValueError):
            RetryPolicy(**fields)


class TestRetryController:
    """Tests for RetryController.run."""

    def test_success_first_try(self):
        operation = Flaky(0)
        controller = RetryController(_policy())

        assert controller.run(operation) == "done"
        assert controller.attempts == 1

    def test_succeeds_after_failures(self):
        operation = Flaky(2)
        delays = []
        controller = RetryController(_policy(), on_retry=lambda attempt, delay, err: delays.append(delay))

        assert controller.run(operation) == "done"
        assert operation.calls == 3
        assert delays == [0.01, 0.02]

    def test_exhausted(self):
        operation = Flaky(10)
        delays = []
        controller = RetryController(_policy(), on_retry=lambda attempt, delay, err: delays.append(delay))

        with pytest.raises(RetryExhaustedError) as exc_info:
            controller.run(operation)

        assert operation.calls == 5
        assert delays == [0.01, 0.02, 0.04, 0.04]
        assert exc_info.value.attempts == 5
        assert isinstance(exc_info.value.last_error, ProviderError)
        assert str(exc_info.value) == "operation failed after 5 attempts: connection reset"

    def test_non_retryable_error_is_raised_unchanged(self):
        error = ValidationError("bad input")
        operation = Flaky(10, error=error)

        with pytest.raises(ValidationError) as exc_info:
            RetryController(_policy()).run(operation)

        assert exc_info.value is error
        assert operation.calls == 1

    def test_cancelled_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        operation = Flaky(0)

        with pytest.raises(OperationCancelledError):
            RetryController(_policy(), cancel_event=cancel).run(operation)

        assert operation.calls == 0

    def test_cancelled_during_backoff(self):
        cancel = threading.Event()
        operation = Flaky(10)
        controller = RetryController(
            _policy(initial_delay=10.0, max_delay=10.0),
            cancel_event=cancel,
            on_retry=lambda attempt, delay, err: cancel.set(),
        )

        with pytest.raises(OperationCancelledError, match="connection reset"):
            controller.run(operation)

        assert operation.calls == 1

    def test_convenience_wrapper(self):
        assert retry_with_backoff(Flaky(1), _policy()) == "done"


class TestIsRetryable:
    """Tests for the retryable classification."""

    @pytest.mark.parametrize("error,expected", [
        (ProviderError("timeout"), True),
        (TaskStoreError("disk full"), True),
        (ValidationError("missing"), False),
        (ConnectionError("reset"), True),
        (OSError("io"), True),
    ])
    def test_classification(self, error, expected):
        assert is_retryable(error) is expected
