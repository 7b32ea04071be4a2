"""Tests for retry and polling utilities."""

from unittest.mock import MagicMock

import pytest

from ecs_ambient.core.exceptions import WaitTimeoutError
from ecs_ambient.utils.retry import pause, poll_until, retry_on_exception


class FlakyError(Exception):
    """Test exception."""


def test_retry_on_exception_success_after_retries(no_sleep: MagicMock):
    """Test successful execution after retries."""
    call_count = 0

    @retry_on_exception(exceptions=(FlakyError,), max_attempts=3)
    def func():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise FlakyError("Temporary error")
        return "success"

    assert func() == "success"
    assert call_count == 3
    assert no_sleep.call_count == 2


def test_retry_on_exception_exhausted():
    """Test the last exception is re-raised after the final attempt."""

    @retry_on_exception(exceptions=(FlakyError,), max_attempts=3)
    def func():
        raise FlakyError("Persistent error")

    with pytest.raises(FlakyError, match="Persistent error"):
        func()


def test_retry_on_exception_wrong_exception_type():
    """Test that other exception types are not retried."""
    calls = []

    @retry_on_exception(exceptions=(FlakyError,), max_attempts=3)
    def func():
        calls.append(1)
        raise ValueError("Different error")

    with pytest.raises(ValueError, match="Different error"):
        func()
    assert len(calls) == 1


def test_pause_sleeps(no_sleep: MagicMock):
    """Test pause goes through the patchable sleep."""
    pause(30, "service discovery")

    no_sleep.assert_called_once_with(30)


def test_poll_until_returns_first_done_state(no_sleep: MagicMock):
    """Test polling stops once the state is final."""
    states = iter(["PENDING", "PENDING", "ACTIVE"])

    result = poll_until(lambda: next(states), timeout=60, interval=10, description="x", done=lambda s: s == "ACTIVE")

    assert result == "ACTIVE"
    assert no_sleep.call_count == 2
    no_sleep.assert_called_with(10)


def test_poll_until_attempt_count():
    """Test timeout // interval + 1 checks are made."""
    check = MagicMock(return_value=False)

    with pytest.raises(WaitTimeoutError, match="Timed out after 120s waiting for nodes"):
        poll_until(check, timeout=120, interval=10, description="nodes")

    assert check.call_count == 13


def test_poll_until_returns_last_state_without_raising():
    """Test raise_on_timeout=False hands back the last observed state."""
    counts = iter([0, 1, 2])

    result = poll_until(
        lambda: next(counts),
        timeout=10,
        interval=5,
        description="count",
        done=lambda c: c >= 5,
        raise_on_timeout=False,
    )

    assert result == 2


def test_poll_until_propagates_exceptions():
    """Test exceptions from the check are not swallowed."""

    def check():
        raise FlakyError("boom")

    with pytest.raises(FlakyError):
        poll_until(check, timeout=30, interval=10, description="x")
