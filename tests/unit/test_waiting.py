"""Unit tests for polling and retry helpers."""

import threading

import pytest

from cluster_hosting.exceptions import OperationTimeoutError, ProviderError, TransientProviderError
from cluster_hosting.waiting import retry_transient, wait_for


def test_wait_for_returns_when_condition_holds():
    """Test that wait_for polls until the condition is true."""
    results = iter([False, False, True])

    assert wait_for(lambda: next(results), timeout=5, poll_interval=0)


def test_wait_for_times_out():
    """Test that wait_for raises once the timeout elapses."""
    with pytest.raises(OperationTimeoutError) as exc_info:
        wait_for(lambda: False, timeout=0, poll_interval=0, description="the thing")
    assert exc_info.value.message == "Timed out waiting for the thing"


def test_timeout_is_transient():
    """Test that a timeout can be retried like other transient failures."""
    assert issubclass(OperationTimeoutError, TransientProviderError)


def test_wait_for_cancelled():
    """Test that a set cancel event stops the wait without polling."""
    cancel = threading.Event()
    cancel.set()
    polls = []

    assert not wait_for(lambda: polls.append(1), cancel_event=cancel)
    assert polls == []


def test_wait_for_propagates_condition_errors():
    """Test that an error raised by the condition aborts the wait."""

    def condition():
        raise ProviderError("unexpected state")

    with pytest.raises(ProviderError):
        wait_for(condition, timeout=5, poll_interval=0)


def test_retry_transient_succeeds_after_failures():
    """Test that transient failures are retried."""
    attempts = []

    @retry_transient(max_attempts=3, initial_delay=0)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientProviderError("throttled")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 3


def test_retry_transient_gives_up():
    """Test that the last transient failure propagates."""
    attempts = []

    @retry_transient(max_attempts=2, initial_delay=0)
    def always_throttled():
        attempts.append(1)
        raise TransientProviderError("throttled")

    with pytest.raises(TransientProviderError):
        always_throttled()
    assert len(attempts) == 2


def test_retry_transient_does_not_retry_permanent_errors():
    """Test that non-transient errors propagate immediately."""
    attempts = []

    @retry_transient(max_attempts=5, initial_delay=0)
    def broken():
        attempts.append(1)
        raise ProviderError("access denied")

    with pytest.raises(ProviderError):
        broken()
    assert len(attempts) == 1
