# src/conduit/engine/circuit.py
"""Per-sink circuit breaker.

Counts consecutive failed batches. When the count reaches the threshold the
circuit opens: batches go straight to the dead-letter sink without a
delivery attempt until the cooldown elapses. The first batch after the
cooldown is a trial (half-open). A delivered trial closes the circuit, a
failed trial re-opens it for another cooldown.

Thread Safety:
    Owned by a single exporter worker. state/open_until may be read from
    other threads for health reporting; reads are approximately consistent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from conduit.contracts.enums import CircuitState
from conduit.engine.clock import DEFAULT_CLOCK

if TYPE_CHECKING:
    from conduit.engine.clock import Clock


class CircuitBreaker:
    """Failure counter with a cooldown window.

    Example:
        breaker = CircuitBreaker(failure_threshold=5, cooldown=30.0)
        if not breaker.allow_request():
            dead_letter(batch, reason="circuit_open")
        elif deliver(batch):
            breaker.record_success()
        else:
            breaker.record_failure()
    """

    def __init__(self, failure_threshold: int, cooldown: float, clock: Clock | None = None) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if cooldown <= 0:
            raise ValueError(f"cooldown must be > 0, got {cooldown}")
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._consecutive_failures = 0
        self._open_until: float | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def open_until(self) -> float | None:
        """Clock reading at which the cooldown ends, None when closed."""
        return self._open_until

    @property
    def state(self) -> CircuitState:
        if self._open_until is None:
            return CircuitState.CLOSED
        if self._clock.monotonic() < self._open_until:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def allow_request(self) -> bool:
        """True unless the circuit is open and still cooling down."""
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._open_until = None

    def record_failure(self) -> None:
        """Count one failed batch; opens (or re-opens) the circuit at the threshold."""
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._failure_threshold:
            self._open_until = self._clock.monotonic() + self._cooldown
