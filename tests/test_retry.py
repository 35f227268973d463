"""Tests for the bounded retry and polling policy."""
from __future__ import annotations

import pytest

from milouctl.retry import RetryPolicy


class FakeClock:
    """Clock advanced only by the policy's sleep calls."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self) -> float:
        return self.now


def test_run_returns_first_successful_result() -> None:
    """A result not flagged for retry is returned immediately."""
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=3, interval=1.0, sleep=clock.sleep, clock=clock)

    result = policy.run(lambda attempt: attempt, retry_if=lambda value: value < 2)

    assert result == 2
    assert clock.sleeps == [1.0]


def test_run_returns_last_result_when_attempts_exhausted() -> None:
    """The final retryable result is handed back rather than raised."""
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=3, interval=5.0, sleep=clock.sleep, clock=clock)
    seen: list[int] = []

    def operation(attempt: int) -> str:
        seen.append(attempt)
        return "failed"

    assert policy.run(operation, retry_if=lambda value: value == "failed") == "failed"
    assert seen == [1, 2, 3]
    assert clock.sleeps == [5.0, 5.0]


def test_run_retries_listed_exceptions_then_reraises() -> None:
    """Listed exceptions are retried and re-raised after the last attempt."""
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=2, interval=0.0, sleep=clock.sleep, clock=clock)
    calls: list[int] = []

    def operation(attempt: int) -> None:
        calls.append(attempt)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        policy.run(operation, retry_on=(ConnectionError,))

    assert calls == [1, 2]
    assert clock.sleeps == []


def test_run_propagates_unlisted_exceptions_immediately() -> None:
    """Exceptions outside ``retry_on`` are never retried."""
    policy = RetryPolicy(max_attempts=5, interval=0.0)
    calls: list[int] = []

    def operation(attempt: int) -> None:
        calls.append(attempt)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        policy.run(operation, retry_on=(ConnectionError,))

    assert calls == [1]


def test_poll_stops_when_done() -> None:
    """Polling ends as soon as the observation satisfies ``done``."""
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=1, interval=10.0, sleep=clock.sleep, clock=clock)
    values = iter([1, 2, 3, 4])

    result = policy.poll(lambda: next(values), done=lambda value: value == 3, timeout=300)

    assert result.value == 3
    assert result.timed_out is False
    assert result.ticks == 3
    assert result.elapsed == 20.0


def test_poll_reports_last_observation_on_timeout() -> None:
    """A timeout returns the final observation with ``timed_out`` set."""
    clock = FakeClock()
    policy = RetryPolicy(max_attempts=1, interval=10.0, sleep=clock.sleep, clock=clock)

    result = policy.poll(lambda: "pending", done=lambda value: False, timeout=300)

    assert result.timed_out is True
    assert result.value == "pending"
    assert result.elapsed == 300.0
    assert result.ticks == 31


def test_policy_rejects_impossible_settings() -> None:
    """Zero attempts or negative intervals are configuration errors."""
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(interval=-1)
