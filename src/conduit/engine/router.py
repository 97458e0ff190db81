# src/conduit/engine/router.py
"""Router: fans sealed batches out to the exporters of their kind.

The router performs no mutation. Each exporter receives its own fork of the
batch wrapped in a DeliveryJob, so one sink's retries (and attempt counts)
never touch another sink's copy and a slow sink never blocks a fast one.

Capacity accounting:
    All jobs created from one batch share a fan-out tracker. When the last
    of them settles (delivered or dead-lettered) the batch's envelopes are
    released from the CapacityGate, which is what lets ingest recover from
    BufferFull.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING

import structlog

from conduit.contracts.enums import DeliveryOutcome, SignalKind

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch
    from conduit.core.metrics import MetricsRegistry
    from conduit.engine.buffer import CapacityGate
    from conduit.engine.exporter import Exporter

logger = structlog.get_logger(__name__)


class _FanOut:
    """Counts outstanding jobs for one batch and fires once all settled."""

    __slots__ = ("_lock", "_on_complete", "_remaining")

    def __init__(self, expected: int, on_complete: Callable[[], None]) -> None:
        self._lock = threading.Lock()
        self._remaining = expected
        self._on_complete = on_complete

    def settle_one(self) -> None:
        with self._lock:
            self._remaining -= 1
            done = self._remaining == 0
        if done:
            self._on_complete()


class DeliveryJob:
    """One batch copy destined for one sink.

    settle() is idempotent: the first caller decides the outcome. This lets
    an exporter that gave up on a stuck worker settle the job itself without
    double-counting if the worker later returns.
    """

    __slots__ = ("_fan_out", "_lock", "batch", "outcome", "sink_id")

    def __init__(self, batch: Batch, sink_id: str, fan_out: _FanOut) -> None:
        self.batch = batch
        self.sink_id = sink_id
        self.outcome: DeliveryOutcome | None = None
        self._fan_out = fan_out
        self._lock = threading.Lock()

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def settle(self, outcome: DeliveryOutcome) -> bool:
        """Record the terminal outcome. Returns False if already settled."""
        with self._lock:
            if self.outcome is not None:
                return False
            self.outcome = outcome
        self._fan_out.settle_one()
        return True


class Router:
    """Dispatches sealed batches to every exporter configured for their kind.

    Example:
        router = Router({SignalKind.TRACE: [jaeger_exporter, file_exporter]}, gate, metrics)
        buffer = BatchingBuffer(pipelines, hand_off=router.dispatch, metrics=metrics)
    """

    def __init__(
        self,
        routes: Mapping[SignalKind, Sequence[Exporter]],
        gate: CapacityGate,
        metrics: MetricsRegistry,
    ) -> None:
        self._routes = {kind: tuple(exporters) for kind, exporters in routes.items()}
        self._gate = gate
        self._metrics = metrics

    def exporters_for(self, kind: SignalKind) -> tuple[Exporter, ...]:
        return self._routes.get(kind, ())

    def dispatch(self, batch: Batch) -> None:
        """Hand one sealed batch to each exporter of its kind.

        Never blocks and never raises: exporters enqueue without waiting and
        dead-letter the job themselves if they cannot take it.
        """
        exporters = self._routes.get(batch.kind, ())
        size = len(batch)
        if not exporters:
            # Ingest rejects unconfigured kinds, so this indicates a wiring bug
            logger.error(
                "batch_without_route",
                kind=batch.kind.value,
                batch_id=batch.batch_id,
                size=size,
            )
            self._metrics.batches_dropped.labels(kind=batch.kind.value).inc()
            self._gate.release(size)
            return

        fan_out = _FanOut(len(exporters), lambda: self._gate.release(size))
        for exporter in exporters:
            exporter.enqueue(DeliveryJob(batch.fork(), exporter.sink_id, fan_out))
