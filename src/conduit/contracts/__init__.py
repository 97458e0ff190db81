"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes live in conduit.core.config.

Import patterns:
    from conduit.contracts import Envelope, SignalKind, DeliveryResult
    from conduit.core.config import CollectorSettings
"""

from conduit.contracts.enums import (
    BackpressureMode,
    CircuitState,
    DeadLetterReason,
    DeliveryOutcome,
    SealReason,
    SignalKind,
    SupervisorStatus,
)
from conduit.contracts.envelope import (
    Attributes,
    Batch,
    Envelope,
    LogPayload,
    MetricPayload,
    Payload,
    Scalar,
    SpanPayload,
    freeze_attributes,
    is_scalar,
    new_id,
    utc_now,
)
from conduit.contracts.errors import (
    BatchSealedError,
    BufferFull,
    EndpointClosed,
    IngestError,
    InvalidEnvelope,
    SinkConfigurationError,
    UnknownKind,
)
from conduit.contracts.sink import (
    DeadLetterRecord,
    DeadLetterSink,
    DeliveryResult,
    SinkProtocol,
)

__all__ = [
    "Attributes",
    "BackpressureMode",
    "Batch",
    "BatchSealedError",
    "BufferFull",
    "CircuitState",
    "DeadLetterReason",
    "DeadLetterRecord",
    "DeadLetterSink",
    "DeliveryOutcome",
    "DeliveryResult",
    "EndpointClosed",
    "Envelope",
    "IngestError",
    "InvalidEnvelope",
    "LogPayload",
    "MetricPayload",
    "Payload",
    "Scalar",
    "SealReason",
    "SignalKind",
    "SinkConfigurationError",
    "SinkProtocol",
    "SpanPayload",
    "SupervisorStatus",
    "UnknownKind",
    "freeze_attributes",
    "is_scalar",
    "new_id",
    "utc_now",
]
