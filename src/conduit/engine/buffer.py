# src/conduit/engine/buffer.py
"""Batching buffer and backpressure gate.

The buffer accumulates accepted envelopes into one open batch per signal
kind and seals it when either threshold is reached:
- size: the batch holds batch_max_size envelopes (checked on append)
- age: batch_max_age elapsed since the first envelope (checked by a
  per-kind timer thread, so a quiet kind never holds a partial batch
  indefinitely)

Sealed batches are handed off synchronously and the buffer keeps no
reference to them.

Backpressure is enforced by CapacityGate, which counts envelopes from
acceptance until every sink has delivered or dead-lettered them. Once the
high-water mark is reached ingest fails with BufferFull instead of growing
memory without bound.

Thread Safety:
    Each kind has its own lock (a Condition), held only for "append, or
    seal and swap in a fresh batch". Different kinds never contend. The
    hand-off runs under the kind lock so batches of one kind reach the
    router in creation order; it must therefore never block.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import structlog

from conduit.contracts.enums import SealReason, SignalKind
from conduit.contracts.envelope import Batch, Envelope
from conduit.contracts.errors import BufferFull, UnknownKind
from conduit.engine.clock import DEFAULT_CLOCK

if TYPE_CHECKING:
    from conduit.core.config import PipelineSettings
    from conduit.core.metrics import MetricsRegistry
    from conduit.engine.clock import Clock

logger = structlog.get_logger(__name__)

HandOff = Callable[[Batch], None]


class CapacityGate:
    """Counts un-flushed envelopes against the high-water mark.

    Example:
        gate = CapacityGate(high_water_mark=1000)
        gate.reserve(10)  # raises BufferFull if it would exceed 1000
        ...
        gate.release(10)  # once every sink settled those envelopes
    """

    def __init__(self, high_water_mark: int, metrics: MetricsRegistry | None = None) -> None:
        if high_water_mark < 1:
            raise ValueError(f"high_water_mark must be >= 1, got {high_water_mark}")
        self._high_water_mark = high_water_mark
        self._metrics = metrics
        self._pending = 0
        self._cond = threading.Condition()

    @property
    def high_water_mark(self) -> int:
        return self._high_water_mark

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def reserve(self, count: int, timeout: float = 0.0) -> None:
        """Reserve capacity for count envelopes.

        Args:
            count: Envelopes about to be appended
            timeout: Seconds to wait for capacity before failing (0 = fail fast)

        Raises:
            BufferFull: If the reservation would exceed the high-water mark
        """
        if count < 1:
            return
        with self._cond:
            if count > self._high_water_mark:
                # Can never fit, waiting would only delay the same answer
                raise BufferFull(self._pending, self._high_water_mark, count)
            if timeout > 0:
                self._cond.wait_for(lambda: self._pending + count <= self._high_water_mark, timeout=timeout)
            if self._pending + count > self._high_water_mark:
                raise BufferFull(self._pending, self._high_water_mark, count)
            self._pending += count
            self._publish()

    def release(self, count: int) -> None:
        """Return capacity for envelopes that reached a terminal state."""
        with self._cond:
            if count > self._pending:
                raise RuntimeError(f"Releasing {count} envelopes but only {self._pending} pending")
            self._pending -= count
            self._publish()
            self._cond.notify_all()

    def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Block until nothing is pending. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    def _publish(self) -> None:
        if self._metrics is not None:
            self._metrics.pending_envelopes.set(self._pending)


class _KindBuffer:
    """Open batch and sealing timer for one signal kind."""

    def __init__(
        self,
        settings: PipelineSettings,
        hand_off: HandOff,
        clock: Clock,
        metrics: MetricsRegistry,
    ) -> None:
        self.kind = settings.kind
        self.max_size = settings.batch_max_size
        self.max_age = settings.batch_max_age
        self._hand_off = hand_off
        self._clock = clock
        self._metrics = metrics
        self._cond = threading.Condition()
        self._batch = Batch(kind=self.kind)
        self._closed = False
        self._timer_stopped = False

    @property
    def open_size(self) -> int:
        with self._cond:
            return len(self._batch)

    def append(self, envelope: Envelope) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"'{self.kind}' buffer is closed")
            opening = len(self._batch) == 0
            self._batch.append(envelope, self._clock.monotonic())
            if len(self._batch) >= self.max_size:
                self._seal_locked(SealReason.SIZE)
            elif opening:
                # Wake the timer so it starts counting this batch's age
                self._cond.notify_all()

    def seal_if_expired(self) -> bool:
        with self._cond:
            if len(self._batch) and self._batch.age(self._clock.monotonic()) >= self.max_age:
                self._seal_locked(SealReason.AGE)
                return True
            return False

    def flush(self) -> None:
        """Force-seal the open batch and refuse further appends."""
        with self._cond:
            self._closed = True
            if len(self._batch):
                self._seal_locked(SealReason.SHUTDOWN)
            self._cond.notify_all()

    def _seal_locked(self, reason: SealReason) -> None:
        batch = self._batch
        batch.seal(reason)
        self._batch = Batch(kind=self.kind)
        self._metrics.batches_sealed.labels(kind=self.kind.value, reason=reason.value).inc()
        logger.debug(
            "batch_sealed",
            kind=self.kind.value,
            batch_id=batch.batch_id,
            size=len(batch),
            reason=reason.value,
        )
        self._hand_off(batch)

    def run_timer(self) -> None:
        """Timer thread: seal the open batch once it reaches max_age."""
        with self._cond:
            while not self._timer_stopped:
                if not len(self._batch):
                    self._cond.wait()
                    continue
                remaining = self.max_age - self._batch.age(self._clock.monotonic())
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                try:
                    self._seal_locked(SealReason.AGE)
                except Exception as e:
                    # Keep the timer alive; a dead timer would strand partial batches
                    logger.error("age_seal_failed", kind=self.kind.value, error=str(e))

    def stop_timer(self) -> None:
        with self._cond:
            self._timer_stopped = True
            self._cond.notify_all()


class BatchingBuffer:
    """Per-kind batch accumulation with size and age sealing.

    Example:
        buffer = BatchingBuffer(settings.pipelines, hand_off=router.dispatch, metrics=metrics)
        buffer.start()  # age timers
        buffer.append(envelope)
        ...
        buffer.stop()
        buffer.flush_all()  # force-seal what is left
    """

    def __init__(
        self,
        pipelines: Iterable[PipelineSettings],
        hand_off: HandOff,
        *,
        metrics: MetricsRegistry,
        clock: Clock | None = None,
    ) -> None:
        clock = clock if clock is not None else DEFAULT_CLOCK
        self._kinds: dict[SignalKind, _KindBuffer] = {
            pipeline.kind: _KindBuffer(pipeline, hand_off, clock, metrics) for pipeline in pipelines
        }
        self._timers: list[threading.Thread] = []

    @property
    def kinds(self) -> frozenset[SignalKind]:
        return frozenset(self._kinds)

    def accepts(self, kind: SignalKind) -> bool:
        return kind in self._kinds

    def append(self, envelope: Envelope) -> None:
        """Append to the open batch of the envelope's kind.

        Raises:
            UnknownKind: If no pipeline serves the envelope's kind
        """
        try:
            kind_buffer = self._kinds[envelope.kind]
        except KeyError:
            raise UnknownKind(envelope.kind) from None
        kind_buffer.append(envelope)

    def seal_expired(self) -> int:
        """Seal every open batch that reached its max age. Returns the count."""
        return sum(1 for kind_buffer in self._kinds.values() if kind_buffer.seal_if_expired())

    def open_sizes(self) -> dict[str, int]:
        return {kind.value: kind_buffer.open_size for kind, kind_buffer in self._kinds.items()}

    def start(self) -> None:
        """Start one age timer thread per kind."""
        if self._timers:
            return
        for kind, kind_buffer in self._kinds.items():
            thread = threading.Thread(
                target=kind_buffer.run_timer,
                name=f"conduit-seal-{kind.value}",
                daemon=True,
            )
            thread.start()
            self._timers.append(thread)

    def stop(self, timeout: float = 1.0) -> None:
        """Stop age timers. Open batches stay open until flush_all()."""
        for kind_buffer in self._kinds.values():
            kind_buffer.stop_timer()
        for thread in self._timers:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.error("age_timer_did_not_stop", thread=thread.name)
        self._timers = []

    def flush_all(self) -> None:
        """Force-seal every non-empty open batch; the buffer is closed afterwards."""
        for kind_buffer in self._kinds.values():
            kind_buffer.flush()
