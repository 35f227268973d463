"""Bounded retry and polling helpers.

All waiting in milouctl goes through :class:`RetryPolicy` so that attempt
counts, intervals and the clock can be injected by callers and tests.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PollResult(Generic[T]):
    """Outcome of :meth:`RetryPolicy.poll`."""

    value: T
    timed_out: bool
    elapsed: float
    ticks: int


@dataclass(slots=True)
class RetryPolicy:
    """Attempt/interval policy with an injectable sleep function and clock."""

    max_attempts: int = 3
    interval: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        """Reject policies that could never run an attempt."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.interval < 0:
            raise ValueError("interval must be non-negative.")

    def run(
        self,
        operation: Callable[[int], T],
        *,
        retry_if: Callable[[T], bool] | None = None,
        retry_on: tuple[type[Exception], ...] = (),
    ) -> T:
        """Call *operation* until it succeeds or attempts are exhausted.

        *operation* receives the 1-based attempt number. A result for which
        ``retry_if`` returns ``True`` is retried; the last such result is
        returned once attempts run out. Exceptions listed in ``retry_on`` are
        retried and re-raised after the final attempt; anything else
        propagates immediately.
        """
        attempt = 1
        while True:
            try:
                result = operation(attempt)
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    raise
                LOGGER.debug("Attempt %s/%s failed: %s", attempt, self.max_attempts, exc)
            else:
                if retry_if is None or not retry_if(result) or attempt >= self.max_attempts:
                    return result
                LOGGER.debug("Attempt %s/%s did not succeed; retrying", attempt, self.max_attempts)
            attempt += 1
            if self.interval:
                self.sleep(self.interval)

    def poll(
        self,
        check: Callable[[], T],
        *,
        done: Callable[[T], bool],
        timeout: float,
    ) -> PollResult[T]:
        """Call *check* every ``interval`` seconds until *done* or *timeout*.

        A timeout only stops the waiting; the last observation is returned so
        callers can report partial progress.
        """
        start = self.clock()
        ticks = 0
        while True:
            value = check()
            ticks += 1
            elapsed = self.clock() - start
            if done(value):
                return PollResult(value=value, timed_out=False, elapsed=elapsed, ticks=ticks)
            if elapsed >= timeout:
                return PollResult(value=value, timed_out=True, elapsed=elapsed, ticks=ticks)
            self.sleep(min(self.interval, timeout - elapsed))


__all__ = ["PollResult", "RetryPolicy"]
