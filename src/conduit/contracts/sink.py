# src/conduit/contracts/sink.py
"""Protocols for delivery destinations.

A sink is the capability an exporter calls to push one batch to an
external destination (HTTP collector, file, console, ...). Sinks are
discovered via pluggy hooks and configured from collector settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from conduit.contracts.enums import DeadLetterReason, SignalKind
from conduit.contracts.envelope import utc_now

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one delivery attempt.

    Attributes:
        success: True if the sink accepted the batch
        retryable: For failures, whether trying again could succeed.
            A non-retryable failure means the sink rejected the content.
        error: Description of the failure, None on success
    """

    success: bool
    retryable: bool = True
    error: str | None = None

    @classmethod
    def ok(cls) -> DeliveryResult:
        return cls(success=True)

    @classmethod
    def failed(cls, error: str, *, retryable: bool = True) -> DeliveryResult:
        return cls(success=False, retryable=retryable, error=error)


@runtime_checkable
class SinkProtocol(Protocol):
    """Protocol for delivery destinations.

    Lifecycle:
        1. Discovery: conduit_get_sinks hook returns sink classes
        2. Instantiation: the sink factory creates one instance per configured sink
        3. Configuration: configure() called with the sink's options
        4. Operation: deliver() called by exactly one exporter thread
        5. Shutdown: close() called after the exporter stopped

    Error handling:
        - configure() MUST raise SinkConfigurationError on invalid options
        - deliver() SHOULD report failures through DeliveryResult; exceptions
          are tolerated and treated as retryable failures
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Plugin name referenced by ``plugin:`` in sink settings."""
        ...

    def configure(self, options: dict[str, Any]) -> None:
        """Apply sink-specific options.

        Raises:
            SinkConfigurationError: If options are invalid or incomplete
        """
        ...

    def deliver(self, batch: Batch) -> DeliveryResult:
        """Push one sealed batch to the destination."""
        ...

    def close(self) -> None:
        """Release resources. Safe to call more than once."""
        ...


@dataclass(frozen=True, slots=True)
class DeadLetterRecord:
    """A batch that left the retry path undelivered for one sink.

    Attributes:
        sink_id: Sink the batch was destined for
        kind: Signal kind of the batch
        batch: The exporter's copy of the batch
        reason: Why delivery was abandoned
        attempts: Delivery attempts actually made (0 when short-circuited)
        error: Last delivery error, if any
        timestamp: When the batch was dead-lettered
    """

    sink_id: str
    kind: SignalKind
    batch: Batch
    reason: DeadLetterReason
    attempts: int
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sink_id": self.sink_id,
            "kind": self.kind.value,
            "reason": self.reason.value,
            "attempts": self.attempts,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "batch": self.batch.to_dict(),
        }


@runtime_checkable
class DeadLetterSink(Protocol):
    """Terminal destination for undeliverable batches.

    record() is called from exporter threads concurrently and MUST be
    thread-safe. It must not raise.
    """

    def record(self, record: DeadLetterRecord) -> None: ...

    def close(self) -> None: ...
