# src/conduit/contracts/errors.py
"""Exceptions that cross subsystem boundaries.

Producers only ever see the IngestError family. Delivery failures never
surface as exceptions on the ingest path: they are retried inside the
exporter and end up in the metrics and the dead-letter trail.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conduit.contracts.enums import SignalKind


class IngestError(Exception):
    """Base class for synchronous ingest rejections."""

    retryable: bool = False


class InvalidEnvelope(IngestError):
    """The envelope is malformed.

    Producers must fix the envelope before sending it again.

    Attributes:
        reason: Human-readable description of what is wrong
        index: Position of the offending envelope in a batched submit, if any
    """

    def __init__(self, reason: str, *, index: int | None = None) -> None:
        self.reason = reason
        self.index = index
        prefix = f"envelope[{index}]: " if index is not None else ""
        super().__init__(f"{prefix}{reason}")


class UnknownKind(IngestError):
    """No pipeline is configured for the envelope's signal kind.

    Never retried: the collector configuration has to change first.
    """

    def __init__(self, kind: SignalKind) -> None:
        self.kind = kind
        super().__init__(f"No pipeline configured for signal kind '{kind}'")


class BufferFull(IngestError):
    """The backpressure high-water mark was reached.

    Transient. Producers should retry after a delay.

    Attributes:
        pending: Envelopes awaiting delivery when the request was refused
        high_water_mark: Configured limit
        requested: Envelopes the refused request tried to add
    """

    retryable = True

    def __init__(self, pending: int, high_water_mark: int, requested: int = 1) -> None:
        self.pending = pending
        self.high_water_mark = high_water_mark
        self.requested = requested
        super().__init__(f"Buffer full: {pending} pending of {high_water_mark}, cannot accept {requested} more")


class EndpointClosed(BufferFull):
    """The collector is shutting down and accepts nothing new.

    Subclass of BufferFull so producers handle it the same way: back off and
    retry, presumably against a restarted collector.
    """

    def __init__(self) -> None:
        IngestError.__init__(self, "Ingest endpoint is closed")
        self.pending = 0
        self.high_water_mark = 0
        self.requested = 0


class BatchSealedError(Exception):
    """Raised when appending to a batch that has already been sealed."""


class SinkConfigurationError(Exception):
    """Raised when a sink cannot be discovered, built or configured.

    Raised during startup, never during delivery. Delivery failures are
    reported through DeliveryResult instead.

    Attributes:
        sink_id: Configured id (or plugin name) of the failing sink
        message: Human-readable error description
    """

    def __init__(self, sink_id: str, message: str) -> None:
        self.sink_id = sink_id
        self.message = message
        super().__init__(f"Sink '{sink_id}' failed: {message}")
