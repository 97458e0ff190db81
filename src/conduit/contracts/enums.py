# src/conduit/contracts/enums.py
"""Status codes, modes, and kinds used across subsystem boundaries."""

from enum import StrEnum


class SignalKind(StrEnum):
    """Telemetry signal carried by an envelope.

    Each kind has at most one pipeline; envelopes of an unconfigured kind
    are rejected at ingest.
    """

    TRACE = "trace"
    METRIC = "metric"
    LOG = "log"


class SealReason(StrEnum):
    """Why a batch was sealed.

    Values:
        SIZE: Batch reached batch_max_size envelopes
        AGE: Batch reached batch_max_age since it opened
        SHUTDOWN: Force-sealed while draining for shutdown
    """

    SIZE = "size"
    AGE = "age"
    SHUTDOWN = "shutdown"


class DeliveryOutcome(StrEnum):
    """Terminal state of one batch for one sink."""

    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class DeadLetterReason(StrEnum):
    """Why a batch left the retry path without being delivered."""

    RETRIES_EXHAUSTED = "retries_exhausted"
    CIRCUIT_OPEN = "circuit_open"
    REJECTED = "rejected"
    SHUTDOWN = "shutdown"
    QUEUE_FULL = "queue_full"
    INTERNAL_ERROR = "internal_error"


class CircuitState(StrEnum):
    """Circuit breaker state for one sink."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BackpressureMode(StrEnum):
    """How ingest behaves when the high-water mark is reached.

    Values:
        REJECT: Fail immediately with BufferFull
        BLOCK: Wait up to block_timeout for capacity, then fail with BufferFull
    """

    REJECT = "reject"
    BLOCK = "block"


class SupervisorStatus(StrEnum):
    """Lifecycle status reported by the health surface."""

    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"
