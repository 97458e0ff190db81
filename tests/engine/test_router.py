# tests/engine/test_router.py
"""Tests for batch fan-out and capacity release."""

from __future__ import annotations

from conduit.contracts.enums import DeliveryOutcome, SignalKind
from conduit.core.metrics import MetricsRegistry
from conduit.engine.buffer import CapacityGate
from conduit.engine.router import DeliveryJob, Router
from tests.fixtures import make_batch


class _QueueingExporter:
    """Stands in for an Exporter: keeps jobs instead of delivering them."""

    def __init__(self, sink_id: str) -> None:
        self.sink_id = sink_id
        self.jobs: list[DeliveryJob] = []

    def enqueue(self, job: DeliveryJob) -> None:
        self.jobs.append(job)


def _reserved_gate(count: int) -> CapacityGate:
    gate = CapacityGate(high_water_mark=100)
    gate.reserve(count)
    return gate


class TestFanOut:
    def test_every_exporter_gets_its_own_copy(self, metrics: MetricsRegistry) -> None:
        first, second = _QueueingExporter("a"), _QueueingExporter("b")
        router = Router({SignalKind.LOG: [first, second]}, _reserved_gate(3), metrics)
        batch = make_batch(SignalKind.LOG, 3)

        router.dispatch(batch)

        job_a, job_b = first.jobs[0], second.jobs[0]
        assert job_a.sink_id == "a" and job_b.sink_id == "b"
        assert job_a.batch is not job_b.batch
        assert job_a.batch.batch_id == job_b.batch.batch_id == batch.batch_id
        assert [e.envelope_id for e in job_a.batch] == [e.envelope_id for e in batch]

        job_a.batch.record_retry()
        assert job_b.batch.attempt_count == 0
        assert batch.attempt_count == 0

    def test_capacity_released_after_last_sink_settles(self, metrics: MetricsRegistry) -> None:
        first, second = _QueueingExporter("a"), _QueueingExporter("b")
        gate = _reserved_gate(3)
        router = Router({SignalKind.LOG: [first, second]}, gate, metrics)

        router.dispatch(make_batch(SignalKind.LOG, 3))

        first.jobs[0].settle(DeliveryOutcome.DELIVERED)
        assert gate.pending == 3
        second.jobs[0].settle(DeliveryOutcome.DEAD_LETTERED)
        assert gate.pending == 0

    def test_only_matching_kind_receives_batch(self, metrics: MetricsRegistry) -> None:
        logs, traces = _QueueingExporter("logs"), _QueueingExporter("traces")
        router = Router({SignalKind.LOG: [logs], SignalKind.TRACE: [traces]}, _reserved_gate(2), metrics)

        router.dispatch(make_batch(SignalKind.TRACE, 2))

        assert logs.jobs == []
        assert len(traces.jobs) == 1
        assert router.exporters_for(SignalKind.TRACE) == (traces,)
        assert router.exporters_for(SignalKind.METRIC) == ()


class TestUnroutedBatch:
    def test_dropped_and_released(self, metrics: MetricsRegistry) -> None:
        gate = _reserved_gate(4)
        router = Router({}, gate, metrics)

        router.dispatch(make_batch(SignalKind.METRIC, 4))

        assert gate.pending == 0
        assert metrics.counter_value("batches_dropped", kind="metric") == 1.0


class TestDeliveryJob:
    def test_settle_is_idempotent(self, metrics: MetricsRegistry) -> None:
        exporter = _QueueingExporter("a")
        gate = _reserved_gate(2)
        Router({SignalKind.LOG: [exporter]}, gate, metrics).dispatch(make_batch(SignalKind.LOG, 2))
        job = exporter.jobs[0]

        assert not job.settled
        assert job.settle(DeliveryOutcome.DEAD_LETTERED)
        assert not job.settle(DeliveryOutcome.DELIVERED)

        assert job.outcome is DeliveryOutcome.DEAD_LETTERED
        assert gate.pending == 0
