# src/conduit/engine/clock.py
"""Clock abstraction for batch ages and circuit cooldowns.

Production code uses SystemClock (the default).
Tests inject MockClock to decide exactly when a batch is old enough to
seal or a circuit is allowed to close, without sleeping.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source in seconds."""

    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by time.monotonic() (immune to wall-clock jumps)."""

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(start=0.0)
        buffer = BatchingBuffer(pipelines, hand_off=router.dispatch, clock=clock)

        buffer.append(envelope)  # batch opens at t=0
        clock.advance(5.0)
        buffer.seal_expired()  # seals if batch_max_age <= 5s
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def monotonic(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        """Move time forward.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds


DEFAULT_CLOCK: Clock = SystemClock()
