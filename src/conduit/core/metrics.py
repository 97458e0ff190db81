# src/conduit/core/metrics.py
"""Metrics registry for the collector's own health.

Wraps a prometheus_client CollectorRegistry. One MetricsRegistry is created
per supervisor (or injected by the caller) and handed to every component;
nothing reads metrics from module-level globals, so each test can work
against a fresh registry.

Counters (labels):
- envelopes_ingested (kind), envelopes_rejected (kind, reason)
- batches_sealed (kind, reason), batches_dropped (kind)
- delivery_attempts (sink), delivery_retries (sink)
- batches_delivered / envelopes_delivered (kind, sink)
- batches_dead_lettered / envelopes_dead_lettered (kind, sink, reason)

Gauges: pending_envelopes, exporter_queue_depth (sink)
Histogram: delivery_latency_seconds (sink)
Enum: circuit_state (sink)
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Enum, Gauge, Histogram, generate_latest

from conduit.contracts.enums import CircuitState

_PREFIX = "conduit_"

# Delivery latency buckets in seconds, from local sinks to slow remote collectors
_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsRegistry:
    """Process metrics with an explicit init/reset lifecycle.

    Example:
        >>> metrics = MetricsRegistry()
        >>> metrics.envelopes_ingested.labels(kind="trace").inc()
        >>> metrics.counter_value("envelopes_ingested", kind="trace")
        1.0
    """

    def __init__(self) -> None:
        self._build(CollectorRegistry())

    def _build(self, registry: CollectorRegistry) -> None:
        self._registry = registry

        self.envelopes_ingested = Counter(
            f"{_PREFIX}envelopes_ingested",
            "Envelopes accepted into the buffer",
            labelnames=("kind",),
            registry=registry,
        )
        self.envelopes_rejected = Counter(
            f"{_PREFIX}envelopes_rejected",
            "Envelopes refused at ingest",
            labelnames=("kind", "reason"),
            registry=registry,
        )
        self.batches_sealed = Counter(
            f"{_PREFIX}batches_sealed",
            "Batches sealed by the buffer",
            labelnames=("kind", "reason"),
            registry=registry,
        )
        self.batches_dropped = Counter(
            f"{_PREFIX}batches_dropped",
            "Sealed batches without a route",
            labelnames=("kind",),
            registry=registry,
        )
        self.delivery_attempts = Counter(
            f"{_PREFIX}delivery_attempts",
            "Calls made to a sink's deliver()",
            labelnames=("sink",),
            registry=registry,
        )
        self.delivery_retries = Counter(
            f"{_PREFIX}delivery_retries",
            "Delivery attempts that were retries",
            labelnames=("sink",),
            registry=registry,
        )
        self.batches_delivered = Counter(
            f"{_PREFIX}batches_delivered",
            "Batches delivered to a sink",
            labelnames=("kind", "sink"),
            registry=registry,
        )
        self.envelopes_delivered = Counter(
            f"{_PREFIX}envelopes_delivered",
            "Envelopes delivered to a sink",
            labelnames=("kind", "sink"),
            registry=registry,
        )
        self.batches_dead_lettered = Counter(
            f"{_PREFIX}batches_dead_lettered",
            "Batches abandoned for a sink",
            labelnames=("kind", "sink", "reason"),
            registry=registry,
        )
        self.envelopes_dead_lettered = Counter(
            f"{_PREFIX}envelopes_dead_lettered",
            "Envelopes abandoned for a sink",
            labelnames=("kind", "sink", "reason"),
            registry=registry,
        )
        self.pending_envelopes = Gauge(
            f"{_PREFIX}pending_envelopes",
            "Envelopes accepted but not yet delivered or dead-lettered everywhere",
            registry=registry,
        )
        self.exporter_queue_depth = Gauge(
            f"{_PREFIX}exporter_queue_depth",
            "Jobs waiting in an exporter's queue",
            labelnames=("sink",),
            registry=registry,
        )
        self.delivery_latency = Histogram(
            f"{_PREFIX}delivery_latency_seconds",
            "Duration of individual deliver() calls",
            labelnames=("sink",),
            buckets=_LATENCY_BUCKETS,
            registry=registry,
        )
        self.circuit_state = Enum(
            f"{_PREFIX}circuit_state",
            "Circuit breaker state per sink",
            labelnames=("sink",),
            states=[state.value for state in CircuitState],
            registry=registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def reset(self) -> None:
        """Discard all values by swapping in a fresh registry."""
        self._build(CollectorRegistry())

    def counter_value(self, name: str, **labels: str) -> float:
        """Current value of a counter, 0.0 if the label set was never touched.

        Args:
            name: Counter name without prefix or _total suffix
            labels: Exact label set
        """
        value = self._registry.get_sample_value(f"{_PREFIX}{name}_total", labels)
        return value if value is not None else 0.0

    def counter_sum(self, name: str, **labels: str) -> float:
        """Sum of a counter over every label set matching the given labels."""
        total = 0.0
        sample_name = f"{_PREFIX}{name}_total"
        for family in self._registry.collect():
            for sample in family.samples:
                if sample.name != sample_name:
                    continue
                if all(sample.labels.get(key) == value for key, value in labels.items()):
                    total += sample.value
        return total

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Counters and gauges as plain dicts for the health surface.

        Returns:
            Mapping of metric name (unprefixed) to {"label=value,...": value}.
            Unlabelled metrics use the key "value".
        """
        result: dict[str, dict[str, float]] = {}
        for family in self._registry.collect():
            if family.type not in ("counter", "gauge"):
                continue
            entries = result.setdefault(family.name.removeprefix(_PREFIX), {})
            for sample in family.samples:
                if sample.name.endswith("_created"):
                    continue
                key = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items())) or "value"
                entries[key] = sample.value
        return result

    def render(self) -> bytes:
        """Prometheus text exposition of every metric."""
        return generate_latest(self._registry)
