# tests/engine/test_ingest.py
"""Tests for wire validation and admission into the buffer."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

import pytest

from conduit.contracts.enums import SignalKind
from conduit.contracts.envelope import Batch, Envelope, LogPayload, MetricPayload
from conduit.contracts.errors import BufferFull, EndpointClosed, InvalidEnvelope, UnknownKind
from conduit.core.metrics import MetricsRegistry
from conduit.engine.buffer import BatchingBuffer, CapacityGate
from conduit.engine.clock import MockClock
from conduit.engine.ingest import IngestEndpoint, parse_envelope, validate_envelope
from tests.fixtures import SPAN_ID, TRACE_ID, log_wire, make_envelope, make_settings, metric_wire, span_wire, wait_for

# =============================================================================
# parse_envelope
# =============================================================================


class TestParseEnvelope:
    def test_span(self) -> None:
        envelope = parse_envelope(span_wire(payload={"status": "error", "attributes": {"http.status_code": 500}}))

        assert envelope.kind is SignalKind.TRACE
        assert envelope.payload.trace_id == TRACE_ID
        assert envelope.payload.span_id == SPAN_ID
        assert envelope.payload.status == "error"
        assert envelope.payload.attributes["http.status_code"] == 500
        assert envelope.resource_attributes == {"service.name": "checkout"}
        assert envelope.attempt_count == 0

    def test_metric_int_value_becomes_float(self) -> None:
        envelope = parse_envelope(metric_wire(value=7))
        assert isinstance(envelope.payload, MetricPayload)
        assert envelope.payload.value == 7.0
        assert isinstance(envelope.payload.value, float)

    def test_log_defaults(self) -> None:
        envelope = parse_envelope({"kind": "log", "payload": {"body": ""}})
        assert isinstance(envelope.payload, LogPayload)
        assert envelope.payload.severity == "info"

    def test_assigns_fresh_ids(self) -> None:
        first, second = parse_envelope(log_wire()), parse_envelope(log_wire())
        assert first.envelope_id != second.envelope_id

    def test_keeps_producer_id(self) -> None:
        assert parse_envelope(log_wire(envelope_id="req-42")).envelope_id == "req-42"

    def test_missing_timestamp_stamped_now(self) -> None:
        before = datetime.now(tz=UTC)
        envelope = parse_envelope(log_wire())
        assert before <= envelope.timestamp <= datetime.now(tz=UTC)

    @pytest.mark.parametrize(
        ("timestamp", "expected"),
        [
            (1_767_225_600_000_000_000, datetime(2026, 1, 1, tzinfo=UTC)),
            ("2026-01-01T00:00:00Z", datetime(2026, 1, 1, tzinfo=UTC)),
            ("2026-01-01T00:00:00", datetime(2026, 1, 1, tzinfo=UTC)),
            ("2026-01-01T02:00:00+02:00", datetime(2026, 1, 1, tzinfo=UTC)),
        ],
    )
    def test_timestamp_normalized_to_utc(self, timestamp: Any, expected: datetime) -> None:
        envelope = parse_envelope(log_wire(timestamp=timestamp))
        assert envelope.timestamp == expected
        assert envelope.timestamp.utcoffset() == timedelta(0)
        assert envelope.timestamp.tzinfo in (UTC, timezone.utc)

    @pytest.mark.parametrize(
        ("data", "fragment"),
        [
            (["not", "an", "object"], "JSON object"),
            ({"payload": {"body": "x"}}, "kind"),
            ({"kind": "profile", "payload": {}}, "kind"),
            ({"kind": "log"}, "payload"),
            (log_wire(extra_field=1), "extra_field"),
            (log_wire(payload={"severity": "loud"}), "severity"),
            (log_wire(payload={"body": 3}), "body"),
            (log_wire(payload={"trace_id": "xyz"}), "trace_id"),
            (log_wire(timestamp=-1), "timestamp"),
            (log_wire(envelope_id=""), "envelope_id"),
            (metric_wire(value=float("nan")), "finite"),
            (metric_wire(value=True), "value"),
            (metric_wire(value="1.0"), "value"),
            (metric_wire(payload={"metric_type": "summary"}), "metric_type"),
            (span_wire(payload={"trace_id": "0" * 32}), "all zeros"),
            (span_wire(payload={"span_id": "ABCDEF0123456789"}), "span_id"),
            (span_wire(payload={"end_time_unix_nano": 0}), "end_time_unix_nano"),
            (span_wire(payload={"name": ""}), "name"),
            (log_wire(resource_attributes={"tags": ["a", "b"]}), "resource_attributes"),
            (log_wire(payload={"attributes": {"nested": {"a": 1}}}), "attributes"),
            (log_wire(payload={"attributes": {"ratio": float("inf")}}), "finite"),
            (metric_wire(value=10**400), "out of range"),
            (log_wire(timestamp=10**30), "timestamp"),
            (log_wire(timestamp="9999-12-31T23:59:00-05:00"), "timestamp"),
        ],
    )
    def test_rejects_malformed(self, data: Any, fragment: str) -> None:
        with pytest.raises(InvalidEnvelope) as exc_info:
            parse_envelope(data)
        assert fragment in str(exc_info.value)
        assert exc_info.value.index is None


class TestValidateEnvelope:
    def test_accepts_valid(self) -> None:
        envelope = make_envelope(SignalKind.TRACE)
        assert validate_envelope(envelope) is envelope

    def test_rejects_bad_in_process_payload(self) -> None:
        envelope = Envelope(
            kind=SignalKind.METRIC,
            payload=MetricPayload(name="", value=1.0),
            timestamp=datetime(2026, 1, 1, tzinfo=UTC),
        )
        with pytest.raises(InvalidEnvelope, match="name"):
            validate_envelope(envelope)


# =============================================================================
# IngestEndpoint
# =============================================================================


class _Collector:
    def __init__(self) -> None:
        self.batches: list[Batch] = []

    def __call__(self, batch: Batch) -> None:
        self.batches.append(batch)


class _Stack:
    def __init__(
        self,
        metrics: MetricsRegistry,
        clock: MockClock,
        *,
        kinds: tuple[SignalKind, ...] = (SignalKind.LOG, SignalKind.TRACE),
        high_water_mark: int = 100,
        batch_max_size: int = 100,
        block_timeout: float = 0.0,
    ) -> None:
        settings = make_settings({kind: [f"{kind.value}-out"] for kind in kinds}, batch_max_size=batch_max_size)
        self.collector = _Collector()
        self.gate = CapacityGate(high_water_mark, metrics)
        self.buffer = BatchingBuffer(settings.pipelines, self.collector, metrics=metrics, clock=clock)
        self.endpoint = IngestEndpoint(self.buffer, self.gate, metrics, block_timeout=block_timeout)


@pytest.fixture
def stack(metrics: MetricsRegistry, clock: MockClock) -> _Stack:
    return _Stack(metrics, clock)


class TestSubmit:
    def test_accepted_envelope_is_buffered(self, stack: _Stack, metrics: MetricsRegistry) -> None:
        envelope_id = stack.endpoint.submit(log_wire())

        assert isinstance(envelope_id, str) and envelope_id
        assert stack.buffer.open_sizes()["log"] == 1
        assert stack.gate.pending == 1
        assert metrics.counter_value("envelopes_ingested", kind="log") == 1.0

    def test_accepts_envelope_objects(self, stack: _Stack) -> None:
        envelope = make_envelope(SignalKind.TRACE)
        assert stack.endpoint.submit(envelope) == envelope.envelope_id

    def test_invalid_envelope_leaves_no_trace(self, stack: _Stack, metrics: MetricsRegistry) -> None:
        with pytest.raises(InvalidEnvelope):
            stack.endpoint.submit(log_wire(payload={"severity": "loud"}))

        assert stack.gate.pending == 0
        assert stack.buffer.open_sizes()["log"] == 0
        assert metrics.counter_value("envelopes_rejected", kind="log", reason="invalid") == 1.0

    def test_out_of_range_timestamp_is_invalid(self, stack: _Stack, metrics: MetricsRegistry) -> None:
        with pytest.raises(InvalidEnvelope, match="timestamp"):
            stack.endpoint.submit(log_wire(timestamp=10**30))

        assert stack.gate.pending == 0
        assert metrics.counter_value("envelopes_rejected", kind="log", reason="invalid") == 1.0

    def test_unconfigured_kind(self, stack: _Stack, metrics: MetricsRegistry) -> None:
        with pytest.raises(UnknownKind) as exc_info:
            stack.endpoint.submit(metric_wire())

        assert exc_info.value.kind is SignalKind.METRIC
        assert not exc_info.value.retryable
        assert stack.gate.pending == 0
        assert metrics.counter_value("envelopes_rejected", kind="metric", reason="unknown_kind") == 1.0

    def test_buffer_full(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, high_water_mark=2)
        stack.endpoint.submit(log_wire())
        stack.endpoint.submit(log_wire())

        with pytest.raises(BufferFull) as exc_info:
            stack.endpoint.submit(log_wire())

        assert exc_info.value.retryable
        assert exc_info.value.pending == 2
        assert stack.buffer.open_sizes()["log"] == 2
        assert metrics.counter_value("envelopes_rejected", kind="log", reason="buffer_full") == 1.0

    def test_buffer_full_recovers_after_release(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, high_water_mark=1)
        stack.endpoint.submit(log_wire())
        with pytest.raises(BufferFull):
            stack.endpoint.submit(log_wire())

        stack.gate.release(1)

        assert stack.endpoint.submit(log_wire())

    def test_block_mode_waits_for_capacity(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, high_water_mark=1, block_timeout=5.0)
        stack.endpoint.submit(log_wire())
        timer = threading.Timer(0.05, stack.gate.release, args=(1,))
        timer.start()

        assert stack.endpoint.submit(log_wire())
        timer.join()


class TestSubmitMany:
    def test_all_accepted_in_order(self, stack: _Stack) -> None:
        items = [log_wire(body=f"line {i}") for i in range(3)] + [span_wire()]

        ids = stack.endpoint.submit_many(items)

        assert len(ids) == 4
        assert stack.buffer.open_sizes() == {"log": 3, "trace": 1}

    def test_empty_request(self, stack: _Stack) -> None:
        assert stack.endpoint.submit_many([]) == []
        assert stack.gate.pending == 0

    def test_one_invalid_rejects_all(self, stack: _Stack) -> None:
        items = [log_wire(), log_wire(), {"kind": "log", "payload": {}}, log_wire()]

        with pytest.raises(InvalidEnvelope) as exc_info:
            stack.endpoint.submit_many(items)

        assert exc_info.value.index == 2
        assert str(exc_info.value).startswith("envelope[2]: ")
        assert stack.gate.pending == 0
        assert stack.buffer.open_sizes()["log"] == 0

    def test_one_unknown_kind_rejects_all(self, stack: _Stack) -> None:
        with pytest.raises(UnknownKind):
            stack.endpoint.submit_many([log_wire(), metric_wire()])
        assert stack.gate.pending == 0

    def test_reservation_is_all_or_nothing(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, high_water_mark=3)
        stack.endpoint.submit(log_wire())

        with pytest.raises(BufferFull) as exc_info:
            stack.endpoint.submit_many([log_wire()] * 3)

        assert exc_info.value.requested == 3
        assert stack.gate.pending == 1

    def test_size_sealing_through_ingest(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, batch_max_size=2)
        stack.endpoint.submit_many([log_wire(body=str(i)) for i in range(5)])

        assert [len(batch) for batch in stack.collector.batches] == [2, 2]
        assert stack.buffer.open_sizes()["log"] == 1


class TestClose:
    def test_closed_endpoint_rejects(self, stack: _Stack, metrics: MetricsRegistry) -> None:
        assert stack.endpoint.close(timeout=1.0)
        assert stack.endpoint.closed

        with pytest.raises(EndpointClosed) as exc_info:
            stack.endpoint.submit(log_wire())

        assert isinstance(exc_info.value, BufferFull)
        assert exc_info.value.retryable
        assert metrics.counter_value("envelopes_rejected", kind="log", reason="closed") == 1.0

    def test_close_waits_for_in_flight_calls(self, metrics: MetricsRegistry, clock: MockClock) -> None:
        stack = _Stack(metrics, clock, high_water_mark=1, block_timeout=5.0)
        stack.endpoint.submit(log_wire())
        blocked = threading.Thread(target=stack.endpoint.submit, args=(log_wire(),))
        blocked.start()
        assert wait_for(lambda: stack.endpoint._active == 1)

        # The second submit is waiting for capacity, so close() cannot finish yet
        assert not stack.endpoint.close(timeout=0.05)

        stack.gate.release(1)
        assert stack.endpoint.close(timeout=5.0)
        blocked.join(timeout=5.0)
        assert stack.gate.pending == 1
