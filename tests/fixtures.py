# tests/fixtures.py
"""Reusable test doubles and builders.

These fixtures provide:
1. In-memory sinks (recording, scripted failures, blocking) implementing SinkProtocol
2. MemoryDeadLetter - DeadLetterSink that keeps records for verification
3. Builders for wire envelopes, Envelope objects and CollectorSettings
4. wait_for() - poll a condition produced by background threads
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from conduit.contracts.enums import DeadLetterReason, SignalKind
from conduit.contracts.envelope import Batch, Envelope, LogPayload, MetricPayload, SpanPayload
from conduit.contracts.sink import DeadLetterRecord, DeliveryResult
from conduit.core.config import CollectorSettings

# =============================================================================
# Sinks
# =============================================================================


class RecordingSink:
    """Sink that accepts every batch and keeps it for inspection."""

    def __init__(self, name: str = "recording") -> None:
        self._name = name
        self._lock = threading.Lock()
        self.batches: list[Batch] = []
        self.calls = 0
        self.options: dict[str, Any] | None = None
        self.close_count = 0

    @property
    def name(self) -> str:
        return self._name

    def configure(self, options: dict[str, Any]) -> None:
        self.options = options

    def deliver(self, batch: Batch) -> DeliveryResult:
        with self._lock:
            self.calls += 1
            self.batches.append(batch)
        return DeliveryResult.ok()

    def close(self) -> None:
        self.close_count += 1

    @property
    def envelope_count(self) -> int:
        with self._lock:
            return sum(len(batch) for batch in self.batches)

    def envelope_ids(self) -> list[str]:
        with self._lock:
            return [envelope.envelope_id for batch in self.batches for envelope in batch]


class ScriptedSink(RecordingSink):
    """Sink whose results come from a script, then from a default.

    Example:
        sink = ScriptedSink([DeliveryResult.failed("boom")] * 2)  # fails twice, then succeeds
    """

    def __init__(
        self,
        script: Iterable[DeliveryResult | Exception] = (),
        *,
        default: DeliveryResult | Exception | None = None,
        name: str = "scripted",
    ) -> None:
        super().__init__(name)
        self._script = list(script)
        self._default = default if default is not None else DeliveryResult.ok()
        self.attempt_counts: list[int] = []

    def deliver(self, batch: Batch) -> DeliveryResult:
        with self._lock:
            self.calls += 1
            self.attempt_counts.append(batch.attempt_count)
            outcome = self._script.pop(0) if self._script else self._default
            if isinstance(outcome, DeliveryResult) and outcome.success:
                self.batches.append(batch)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def failing_sink(*, retryable: bool = True, name: str = "failing") -> ScriptedSink:
    """Sink that fails every attempt."""
    return ScriptedSink(default=DeliveryResult.failed("sink unavailable", retryable=retryable), name=name)


class BlockingSink(RecordingSink):
    """Sink whose deliver() waits until release() is called."""

    def __init__(self, name: str = "blocking") -> None:
        super().__init__(name)
        self.entered = threading.Event()
        self._release = threading.Event()

    def release(self) -> None:
        self._release.set()

    def deliver(self, batch: Batch) -> DeliveryResult:
        self.entered.set()
        self._release.wait(timeout=30)
        return super().deliver(batch)


# =============================================================================
# Dead letters
# =============================================================================


class MemoryDeadLetter:
    """DeadLetterSink that keeps records in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: list[DeadLetterRecord] = []
        self.close_count = 0

    def record(self, record: DeadLetterRecord) -> None:
        with self._lock:
            self.records.append(record)

    def close(self) -> None:
        self.close_count += 1

    def reasons(self) -> list[DeadLetterReason]:
        with self._lock:
            return [record.reason for record in self.records]

    @property
    def envelope_count(self) -> int:
        with self._lock:
            return sum(len(record.batch) for record in self.records)


# =============================================================================
# Envelopes
# =============================================================================

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"


def span_wire(name: str = "GET /checkout", **overrides: Any) -> dict[str, Any]:
    """Valid wire trace envelope."""
    payload = {
        "trace_id": TRACE_ID,
        "span_id": SPAN_ID,
        "name": name,
        "start_time_unix_nano": 1_700_000_000_000_000_000,
        "end_time_unix_nano": 1_700_000_000_250_000_000,
    }
    payload.update(overrides.pop("payload", {}))
    return {"kind": "trace", "resource_attributes": {"service.name": "checkout"}, "payload": payload, **overrides}


def metric_wire(name: str = "http.requests", value: float = 1.0, **overrides: Any) -> dict[str, Any]:
    payload = {"name": name, "value": value, "metric_type": "sum"}
    payload.update(overrides.pop("payload", {}))
    return {"kind": "metric", "payload": payload, **overrides}


def log_wire(body: str = "order placed", **overrides: Any) -> dict[str, Any]:
    payload = {"body": body, "severity": "info"}
    payload.update(overrides.pop("payload", {}))
    return {"kind": "log", "payload": payload, **overrides}


def make_envelope(kind: SignalKind = SignalKind.LOG, index: int = 0) -> Envelope:
    """In-process Envelope of the given kind."""
    timestamp = datetime(2026, 1, 1, tzinfo=UTC)
    if kind is SignalKind.TRACE:
        payload: SpanPayload | MetricPayload | LogPayload = SpanPayload(
            trace_id=TRACE_ID,
            span_id=f"{index + 1:016x}",
            name=f"span-{index}",
            start_time_unix_nano=index,
            end_time_unix_nano=index + 10,
        )
    elif kind is SignalKind.METRIC:
        payload = MetricPayload(name="queue.depth", value=float(index))
    else:
        payload = LogPayload(body=f"log line {index}")
    return Envelope(kind=kind, payload=payload, timestamp=timestamp)


def make_batch(kind: SignalKind = SignalKind.LOG, size: int = 3) -> Batch:
    """Sealed batch of `size` envelopes."""
    from conduit.contracts.enums import SealReason

    batch = Batch(kind=kind)
    for i in range(size):
        batch.append(make_envelope(kind, i), now=0.0)
    batch.seal(SealReason.SIZE)
    return batch


# =============================================================================
# Settings
# =============================================================================


def fast_retry(**overrides: Any) -> dict[str, Any]:
    """Retry policy with millisecond backoff so tests stay fast."""
    policy: dict[str, Any] = {
        "max_retries": 3,
        "backoff_base": 0.001,
        "backoff_cap": 0.01,
        "circuit_failure_threshold": 5,
        "circuit_cooldown": 30.0,
    }
    policy.update(overrides)
    return policy


def make_settings(
    sinks: dict[SignalKind, list[str]] | None = None,
    *,
    batch_max_size: int = 100,
    batch_max_age: float = 60.0,
    high_water_mark: int = 10_000,
    retry: dict[str, Any] | None = None,
    **overrides: Any,
) -> CollectorSettings:
    """CollectorSettings with "memory" sinks and the listener disabled.

    Args:
        sinks: Sink ids per kind (default: one "logs-out" sink for logs)
    """
    sinks = sinks if sinks is not None else {SignalKind.LOG: ["logs-out"]}
    pipelines = [
        {
            "kind": kind,
            "batch_max_size": batch_max_size,
            "batch_max_age": batch_max_age,
            "sinks": [{"id": sink_id, "plugin": "memory", "retry": retry or fast_retry()} for sink_id in sink_ids],
        }
        for kind, sink_ids in sinks.items()
    ]
    data: dict[str, Any] = {
        "pipelines": pipelines,
        "backpressure": {"high_water_mark": high_water_mark},
        "server": {"enabled": False},
        "shutdown": {"grace_period": 5.0},
    }
    data.update(overrides)
    return CollectorSettings(**data)


# =============================================================================
# Timing
# =============================================================================


def wait_for(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.005) -> bool:
    """Poll until condition() is true. Returns the final result."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()
