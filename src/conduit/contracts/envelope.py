# src/conduit/contracts/envelope.py
"""Canonical in-memory telemetry model: envelopes, payloads and batches.

An Envelope carries exactly one telemetry unit (span, metric sample or log
record) plus metadata about the producing service. Envelopes are grouped
into per-kind Batches by the buffer and delivered batch-at-a-time.

Mutation rules:
- Payloads are frozen dataclasses.
- Envelope fields are write-once, except attempt_count which the exporter
  responsible for the envelope increments on every retry.
- A Batch accepts appends until sealed. After hand-off each exporter works
  on its own fork(), so attempt counts never race between sinks.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, ClassVar, Literal

from conduit.contracts.enums import SealReason, SignalKind
from conduit.contracts.errors import BatchSealedError

Scalar = str | int | float | bool
Attributes = Mapping[str, Scalar]

EMPTY_ATTRIBUTES: Attributes = MappingProxyType({})


def is_scalar(value: Any) -> bool:
    """Return True for attribute values the envelope model accepts.

    Floats must be finite. Containers of any kind are rejected.
    """
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, str | int | bool)


def freeze_attributes(attributes: Mapping[str, Any] | None) -> Attributes:
    """Copy attributes into a read-only mapping, rejecting non-scalars.

    Raises:
        TypeError: If a key is not a string or a value is not a scalar
    """
    if not attributes:
        return EMPTY_ATTRIBUTES
    frozen: dict[str, Scalar] = {}
    for key, value in attributes.items():
        if not isinstance(key, str):
            raise TypeError(f"attribute keys must be strings, got {type(key).__name__}")
        if not is_scalar(value):
            raise TypeError(f"attribute '{key}' must be a scalar, got {type(value).__name__}")
        frozen[key] = value
    return MappingProxyType(frozen)


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True, slots=True)
class SpanPayload:
    """One finished span of a distributed trace."""

    kind: ClassVar[SignalKind] = SignalKind.TRACE

    trace_id: str
    span_id: str
    name: str
    start_time_unix_nano: int
    end_time_unix_nano: int
    parent_span_id: str | None = None
    status: Literal["unset", "ok", "error"] = "unset"
    attributes: Attributes = EMPTY_ATTRIBUTES

    @property
    def duration_ns(self) -> int:
        return self.end_time_unix_nano - self.start_time_unix_nano

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "start_time_unix_nano": self.start_time_unix_nano,
            "end_time_unix_nano": self.end_time_unix_nano,
            "status": self.status,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True, slots=True)
class MetricPayload:
    """One metric data point."""

    kind: ClassVar[SignalKind] = SignalKind.METRIC

    name: str
    value: float
    metric_type: Literal["gauge", "sum", "histogram"] = "gauge"
    unit: str | None = None
    attributes: Attributes = EMPTY_ATTRIBUTES

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "metric_type": self.metric_type,
            "unit": self.unit,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True, slots=True)
class LogPayload:
    """One log record, optionally correlated with a span."""

    kind: ClassVar[SignalKind] = SignalKind.LOG

    body: str
    severity: Literal["trace", "debug", "info", "warn", "error", "fatal"] = "info"
    trace_id: str | None = None
    span_id: str | None = None
    attributes: Attributes = EMPTY_ATTRIBUTES

    def to_dict(self) -> dict[str, Any]:
        return {
            "body": self.body,
            "severity": self.severity,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "attributes": dict(self.attributes),
        }


Payload = SpanPayload | MetricPayload | LogPayload


# =============================================================================
# Envelope
# =============================================================================


def new_id() -> str:
    """Generate an opaque identifier for envelopes, batches and requests."""
    return uuid.uuid4().hex


@dataclass(slots=True)
class Envelope:
    """One unit of telemetry plus metadata.

    Attributes:
        kind: Signal kind, must match the payload type
        payload: Kind-specific frozen payload
        timestamp: UTC instant the unit was produced (stamped at ingest if absent)
        resource_attributes: Read-only description of the producing service
        envelope_id: Identifier returned to the producer on acceptance
        attempt_count: Delivery retries so far, owned by one exporter
    """

    _MUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"attempt_count"})

    kind: SignalKind
    payload: Payload
    timestamp: datetime
    resource_attributes: Attributes = EMPTY_ATTRIBUTES
    envelope_id: str = field(default_factory=new_id)
    attempt_count: int = 0

    def __post_init__(self) -> None:
        if self.payload.kind != self.kind:
            raise ValueError(f"{type(self.payload).__name__} cannot be carried by a '{self.kind}' envelope")
        if self.timestamp.tzinfo is None:
            raise ValueError("Envelope timestamp must be timezone-aware")
        if not isinstance(self.resource_attributes, MappingProxyType):
            object.__setattr__(self, "resource_attributes", freeze_attributes(self.resource_attributes))

    def __setattr__(self, name: str, value: Any) -> None:
        # Unset slots are still being populated by __init__.
        if name not in self._MUTABLE_FIELDS and hasattr(self, name):
            raise AttributeError(f"Envelope.{name} is immutable once set")
        object.__setattr__(self, name, value)

    def clone(self) -> Envelope:
        """Return an independent copy that shares the immutable payload."""
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "envelope_id": self.envelope_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "resource_attributes": dict(self.resource_attributes),
            "attempt_count": self.attempt_count,
            "payload": self.payload.to_dict(),
        }


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


# =============================================================================
# Batch
# =============================================================================


@dataclass(slots=True)
class Batch:
    """An ordered group of same-kind envelopes awaiting delivery.

    Owned by the buffer until sealed and handed to the router; after that
    each exporter owns its own fork.

    Attributes:
        kind: Signal kind shared by every envelope
        created_at: Clock reading (seconds) when the first envelope arrived,
            None while the batch is still empty
        envelopes: Envelopes in insertion order
        sealed: True once no more envelopes may be appended
        seal_reason: Which threshold sealed the batch
    """

    kind: SignalKind
    batch_id: str = field(default_factory=new_id)
    created_at: float | None = None
    envelopes: list[Envelope] = field(default_factory=list)
    sealed: bool = False
    seal_reason: SealReason | None = None

    def append(self, envelope: Envelope, now: float) -> None:
        """Append an envelope, opening the batch on the first one.

        Args:
            envelope: Envelope of this batch's kind
            now: Current clock reading, recorded as created_at on first append

        Raises:
            BatchSealedError: If the batch is sealed
            ValueError: If the envelope kind differs from the batch kind
        """
        if self.sealed:
            raise BatchSealedError(f"Batch {self.batch_id} is sealed")
        if envelope.kind != self.kind:
            raise ValueError(f"Cannot add '{envelope.kind}' envelope to '{self.kind}' batch")
        if self.created_at is None:
            self.created_at = now
        self.envelopes.append(envelope)

    def seal(self, reason: SealReason) -> None:
        if self.sealed:
            raise BatchSealedError(f"Batch {self.batch_id} already sealed ({self.seal_reason})")
        self.sealed = True
        self.seal_reason = reason

    def age(self, now: float) -> float:
        """Seconds since the batch opened, 0.0 while empty."""
        if self.created_at is None:
            return 0.0
        return now - self.created_at

    def fork(self) -> Batch:
        """Return a sealed copy with cloned envelopes for one exporter."""
        return Batch(
            kind=self.kind,
            batch_id=self.batch_id,
            created_at=self.created_at,
            envelopes=[envelope.clone() for envelope in self.envelopes],
            sealed=True,
            seal_reason=self.seal_reason,
        )

    def record_retry(self) -> None:
        """Increment attempt_count on every envelope in this batch."""
        for envelope in self.envelopes:
            envelope.attempt_count += 1

    @property
    def attempt_count(self) -> int:
        if not self.envelopes:
            return 0
        return self.envelopes[0].attempt_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "kind": self.kind.value,
            "seal_reason": self.seal_reason.value if self.seal_reason is not None else None,
            "envelopes": [envelope.to_dict() for envelope in self.envelopes],
        }

    def __len__(self) -> int:
        return len(self.envelopes)

    def __iter__(self) -> Iterator[Envelope]:
        return iter(self.envelopes)
