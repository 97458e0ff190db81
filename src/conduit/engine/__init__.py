# src/conduit/engine/__init__.py
"""Collector engine: ingest, batching, routing, delivery and lifecycle.

Data flow:
    IngestEndpoint -> BatchingBuffer -> Router -> Exporter (one per sink) -> sink
                                                        \\-> dead-letter sink
"""

from conduit.engine.buffer import BatchingBuffer, CapacityGate
from conduit.engine.circuit import CircuitBreaker
from conduit.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from conduit.engine.dead_letter import JsonlDeadLetterSink, LoggingDeadLetterSink
from conduit.engine.exporter import Exporter, ExporterState
from conduit.engine.ingest import IngestEndpoint, parse_envelope
from conduit.engine.router import DeliveryJob, Router
from conduit.engine.supervisor import PipelineSupervisor

__all__ = [
    "DEFAULT_CLOCK",
    "BatchingBuffer",
    "CapacityGate",
    "CircuitBreaker",
    "Clock",
    "DeliveryJob",
    "Exporter",
    "ExporterState",
    "IngestEndpoint",
    "JsonlDeadLetterSink",
    "LoggingDeadLetterSink",
    "MockClock",
    "PipelineSupervisor",
    "Router",
    "SystemClock",
    "parse_envelope",
]
