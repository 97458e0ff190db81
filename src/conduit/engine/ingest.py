# src/conduit/engine/ingest.py
"""Ingest: validation of incoming envelopes and admission into the buffer.

Wire envelopes are validated with Pydantic models discriminated on "kind".
Validation happens entirely before admission, so a rejected request leaves
no trace in the buffer.

Wire format (JSON):
    {
        "kind": "trace",
        "timestamp": "2026-01-01T00:00:00Z",   # or unix nanoseconds, optional
        "resource_attributes": {"service.name": "checkout"},
        "payload": {"trace_id": "...", "span_id": "...", "name": "GET /", ...}
    }

Admission order for a request of N envelopes:
1. validate every envelope (InvalidEnvelope names the failing index)
2. check every kind has a pipeline (UnknownKind)
3. reserve capacity for all N in one step (BufferFull)
4. append all N
Any failure before step 4 rejects the whole request.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal

import structlog
from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter, ValidationError, field_validator, model_validator

from conduit.contracts.enums import SignalKind
from conduit.contracts.envelope import Envelope, LogPayload, MetricPayload, SpanPayload, freeze_attributes, new_id, utc_now
from conduit.contracts.errors import BufferFull, EndpointClosed, InvalidEnvelope, UnknownKind

if TYPE_CHECKING:
    from conduit.core.metrics import MetricsRegistry
    from conduit.engine.buffer import BatchingBuffer, CapacityGate

logger = structlog.get_logger(__name__)

_TRACE_ID = r"^[0-9a-f]{32}$"
_SPAN_ID = r"^[0-9a-f]{16}$"

# StrictBool first so true/false are never read as 1/0
AttributeValue = StrictBool | StrictStr | StrictInt | StrictFloat


# =============================================================================
# Wire models
# =============================================================================


class _WireModel(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}


def _finite_attributes(value: dict[str, Any]) -> dict[str, Any]:
    for key, item in value.items():
        if isinstance(item, float) and not math.isfinite(item):
            raise ValueError(f"attribute '{key}' must be finite")
    return value


class SpanWire(_WireModel):
    trace_id: str = Field(pattern=_TRACE_ID)
    span_id: str = Field(pattern=_SPAN_ID)
    parent_span_id: str | None = Field(default=None, pattern=_SPAN_ID)
    name: StrictStr = Field(min_length=1)
    start_time_unix_nano: StrictInt = Field(ge=0)
    end_time_unix_nano: StrictInt = Field(ge=0)
    status: Literal["unset", "ok", "error"] = "unset"
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)

    check_attributes = field_validator("attributes")(_finite_attributes)

    @field_validator("trace_id", "span_id", "parent_span_id")
    @classmethod
    def validate_not_all_zero(cls, v: str | None) -> str | None:
        if v is not None and not v.strip("0"):
            raise ValueError("identifier must not be all zeros")
        return v

    @model_validator(mode="after")
    def validate_time_order(self) -> SpanWire:
        if self.end_time_unix_nano < self.start_time_unix_nano:
            raise ValueError("end_time_unix_nano must be >= start_time_unix_nano")
        return self

    def to_payload(self) -> SpanPayload:
        return SpanPayload(
            trace_id=self.trace_id,
            span_id=self.span_id,
            name=self.name,
            start_time_unix_nano=self.start_time_unix_nano,
            end_time_unix_nano=self.end_time_unix_nano,
            parent_span_id=self.parent_span_id,
            status=self.status,
            attributes=freeze_attributes(self.attributes),
        )


class MetricWire(_WireModel):
    name: StrictStr = Field(min_length=1)
    value: StrictInt | StrictFloat
    metric_type: Literal["gauge", "sum", "histogram"] = "gauge"
    unit: StrictStr | None = None
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)

    check_attributes = field_validator("attributes")(_finite_attributes)

    @field_validator("value")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        try:
            as_float = float(v)
        except OverflowError:
            raise ValueError("metric value is out of range for a float") from None
        if not math.isfinite(as_float):
            raise ValueError("metric value must be finite")
        return v

    def to_payload(self) -> MetricPayload:
        return MetricPayload(
            name=self.name,
            value=float(self.value),
            metric_type=self.metric_type,
            unit=self.unit,
            attributes=freeze_attributes(self.attributes),
        )


class LogWire(_WireModel):
    body: StrictStr
    severity: Literal["trace", "debug", "info", "warn", "error", "fatal"] = "info"
    trace_id: str | None = Field(default=None, pattern=_TRACE_ID)
    span_id: str | None = Field(default=None, pattern=_SPAN_ID)
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)

    check_attributes = field_validator("attributes")(_finite_attributes)

    def to_payload(self) -> LogPayload:
        return LogPayload(
            body=self.body,
            severity=self.severity,
            trace_id=self.trace_id,
            span_id=self.span_id,
            attributes=freeze_attributes(self.attributes),
        )


def _to_utc(ts: int | datetime) -> datetime:
    if isinstance(ts, int):
        return datetime.fromtimestamp(ts / 1_000_000_000, tz=UTC)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


class _EnvelopeWire(_WireModel):
    envelope_id: StrictStr | None = Field(default=None, min_length=1, max_length=128)
    # StrictInt first: integers are unix nanoseconds, never Pydantic's seconds/ms guess
    timestamp: StrictInt | datetime | None = None
    resource_attributes: dict[str, AttributeValue] = Field(default_factory=dict)

    check_resource_attributes = field_validator("resource_attributes")(_finite_attributes)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: int | datetime | None) -> int | datetime | None:
        if isinstance(v, int) and v < 0:
            raise ValueError("timestamp in unix nanoseconds must be >= 0")
        if v is None:
            return v
        try:
            _to_utc(v)
        except (OverflowError, OSError, ValueError):
            raise ValueError("timestamp is out of range") from None
        return v

    def resolved_timestamp(self) -> datetime:
        if self.timestamp is None:
            return utc_now()
        return _to_utc(self.timestamp)


class SpanEnvelopeWire(_EnvelopeWire):
    kind: Literal["trace"]
    payload: SpanWire


class MetricEnvelopeWire(_EnvelopeWire):
    kind: Literal["metric"]
    payload: MetricWire


class LogEnvelopeWire(_EnvelopeWire):
    kind: Literal["log"]
    payload: LogWire


EnvelopeWire = Annotated[SpanEnvelopeWire | MetricEnvelopeWire | LogEnvelopeWire, Field(discriminator="kind")]

_ENVELOPE_ADAPTER: TypeAdapter[SpanEnvelopeWire | MetricEnvelopeWire | LogEnvelopeWire] = TypeAdapter(EnvelopeWire)

_PAYLOAD_WIRE: dict[SignalKind, type[SpanWire | MetricWire | LogWire]] = {
    SignalKind.TRACE: SpanWire,
    SignalKind.METRIC: MetricWire,
    SignalKind.LOG: LogWire,
}


def _describe(exc: ValidationError) -> str:
    """Flatten Pydantic errors into one readable line."""
    parts = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def parse_envelope(data: Any) -> Envelope:
    """Validate one wire envelope and build the in-memory Envelope.

    Args:
        data: Decoded JSON object

    Returns:
        Envelope with a fresh envelope_id (unless the producer supplied one)
        and a UTC timestamp (stamped now if absent)

    Raises:
        InvalidEnvelope: If the data is not a well-formed envelope, including
            an unrecognised kind
    """
    if not isinstance(data, Mapping):
        raise InvalidEnvelope(f"envelope must be a JSON object, got {type(data).__name__}")
    try:
        wire = _ENVELOPE_ADAPTER.validate_python(dict(data))
    except ValidationError as e:
        raise InvalidEnvelope(_describe(e)) from None

    try:
        payload = wire.payload.to_payload()
        timestamp = wire.resolved_timestamp()
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidEnvelope(f"value out of range: {e}") from None

    return Envelope(
        kind=SignalKind(wire.kind),
        payload=payload,
        timestamp=timestamp,
        resource_attributes=freeze_attributes(wire.resource_attributes),
        envelope_id=wire.envelope_id or new_id(),
    )


def validate_envelope(envelope: Envelope) -> Envelope:
    """Apply wire validation rules to an envelope built in-process.

    Raises:
        InvalidEnvelope: If the payload breaks any envelope rule
    """
    try:
        _PAYLOAD_WIRE[envelope.kind].model_validate(envelope.payload.to_dict())
    except ValidationError as e:
        raise InvalidEnvelope(_describe(e)) from None
    return envelope


def _kind_label(item: Any) -> str:
    """Best-effort kind label for rejection metrics."""
    if isinstance(item, Envelope):
        return item.kind.value
    if isinstance(item, Mapping):
        kind = item.get("kind")
        if isinstance(kind, str) and kind in {member.value for member in SignalKind}:
            return kind
    return "unknown"


# =============================================================================
# Endpoint
# =============================================================================


class IngestEndpoint:
    """Synchronous accept-or-reject entry point for producers.

    Callers get an envelope id back once the envelope is in the buffer, or
    one of InvalidEnvelope, UnknownKind, BufferFull. Delivery happens later
    and is never reported back to the producer.

    Example:
        endpoint = IngestEndpoint(buffer, gate, metrics)
        envelope_id = endpoint.submit({"kind": "log", "payload": {"body": "hi"}})
    """

    def __init__(
        self,
        buffer: BatchingBuffer,
        gate: CapacityGate,
        metrics: MetricsRegistry,
        *,
        block_timeout: float = 0.0,
    ) -> None:
        self._buffer = buffer
        self._gate = gate
        self._metrics = metrics
        self._block_timeout = block_timeout
        self._cond = threading.Condition()
        self._closed = False
        self._active = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def submit(self, item: Envelope | Mapping[str, Any]) -> str:
        """Accept one envelope. Returns its id."""
        return self._admit([item], indexed=False)[0]

    def submit_many(self, items: Iterable[Envelope | Mapping[str, Any]]) -> list[str]:
        """Accept several envelopes atomically: all are accepted or none."""
        items = list(items)
        if not items:
            return []
        return self._admit(items, indexed=True)

    def close(self, timeout: float | None = None) -> bool:
        """Refuse new calls and wait for in-progress calls to finish.

        Returns:
            False if calls were still in progress when timeout expired
        """
        with self._cond:
            self._closed = True
            drained = self._cond.wait_for(lambda: self._active == 0, timeout=timeout)
        if not drained:
            logger.warning("ingest_close_timed_out", active_calls=self._active)
        return drained

    def _admit(self, items: list[Any], *, indexed: bool) -> list[str]:
        with self._cond:
            if self._closed:
                self._count_rejected([_kind_label(item) for item in items], "closed")
                raise EndpointClosed()
            self._active += 1
        try:
            envelopes = self._validate_all(items, indexed=indexed)
            kinds = [envelope.kind.value for envelope in envelopes]

            for envelope in envelopes:
                if not self._buffer.accepts(envelope.kind):
                    self._count_rejected(kinds, "unknown_kind")
                    raise UnknownKind(envelope.kind)

            try:
                self._gate.reserve(len(envelopes), timeout=self._block_timeout)
            except BufferFull:
                self._count_rejected(kinds, "buffer_full")
                logger.debug("ingest_buffer_full", requested=len(envelopes), pending=self._gate.pending)
                raise

            appended = 0
            try:
                for envelope in envelopes:
                    self._buffer.append(envelope)
                    appended += 1
                    self._metrics.envelopes_ingested.labels(kind=envelope.kind.value).inc()
            except Exception:
                self._gate.release(len(envelopes) - appended)
                raise
            return [envelope.envelope_id for envelope in envelopes]
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _validate_all(self, items: list[Any], *, indexed: bool) -> list[Envelope]:
        envelopes = []
        for index, item in enumerate(items):
            try:
                if isinstance(item, Envelope):
                    envelopes.append(validate_envelope(item))
                else:
                    envelopes.append(parse_envelope(item))
            except InvalidEnvelope as e:
                self._count_rejected([_kind_label(item)], "invalid")
                if indexed:
                    raise InvalidEnvelope(e.reason, index=index) from None
                raise
        return envelopes

    def _count_rejected(self, kinds: list[str], reason: str) -> None:
        for kind in kinds:
            self._metrics.envelopes_rejected.labels(kind=kind, reason=reason).inc()
