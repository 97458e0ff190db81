# src/conduit/engine/supervisor.py
"""PipelineSupervisor owns the collector's lifecycle.

The supervisor is the central hub of a running collector:
1. Builds sinks, exporters, router, capacity gate, buffer and ingest endpoint
   from validated settings
2. Starts them in dependency order, with the network listener last
3. Reports aggregated health
4. Drains and stops everything in order on shutdown

Shutdown order (each step completes before the next starts):
1. stop the network listener
2. close the ingest endpoint (in-progress calls finish, new calls fail)
3. stop the age timers
4. force-seal every open batch; hand-off to the exporters is synchronous
5. stop the exporters against one shared deadline (grace_period)
6. close sinks and the dead-letter sink

Every envelope accepted before step 2 therefore ends up delivered or
dead-lettered (reason "shutdown" when the grace period runs out).

Thread Safety:
    start() and shutdown() are serialised by a lock and shutdown() is
    idempotent, so a signal handler and a finally block may both call it.
"""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from conduit.contracts.enums import BackpressureMode, SignalKind, SupervisorStatus
from conduit.contracts.errors import SinkConfigurationError
from conduit.core.metrics import MetricsRegistry
from conduit.engine.buffer import BatchingBuffer, CapacityGate
from conduit.engine.dead_letter import JsonlDeadLetterSink, LoggingDeadLetterSink
from conduit.engine.exporter import Exporter
from conduit.engine.ingest import IngestEndpoint
from conduit.engine.router import Router
from conduit.sinks.factory import close_sinks, create_sinks

if TYPE_CHECKING:
    from conduit.contracts.sink import DeadLetterSink, SinkProtocol
    from conduit.core.config import CollectorSettings
    from conduit.engine.clock import Clock
    from conduit.server import IngestServer

logger = structlog.get_logger(__name__)

# Bounded wait for exporters when startup is rolled back
_ROLLBACK_TIMEOUT = 2.0


class PipelineSupervisor:
    """Builds, runs and drains one collector instance.

    Example:
        supervisor = PipelineSupervisor(load_settings(Path("conduit.yaml")))
        supervisor.start()
        supervisor.endpoint.submit({"kind": "log", "payload": {"body": "hello"}})
        ...
        supervisor.shutdown()

    Args:
        settings: Validated collector settings
        sinks: Ready sink instances keyed by sink id (skips plugin discovery)
        sink_plugins: Extra pluggy plugin objects providing sink classes
        dead_letter: Dead-letter sink (default: JSON lines file if
            dead_letter.path is set, otherwise log-only)
        metrics: Metrics registry (default: a fresh one per supervisor)
        clock: Clock for batch ages and circuit cooldowns
        serve: Start the HTTP listener (default: settings.server.enabled)
    """

    def __init__(
        self,
        settings: CollectorSettings,
        *,
        sinks: Mapping[str, SinkProtocol] | None = None,
        sink_plugins: Iterable[Any] = (),
        dead_letter: DeadLetterSink | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Clock | None = None,
        serve: bool | None = None,
    ) -> None:
        self._settings = settings
        self._provided_sinks = dict(sinks) if sinks is not None else None
        self._sink_plugins = tuple(sink_plugins)
        self._provided_dead_letter = dead_letter
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._clock = clock
        self._serve = settings.server.enabled if serve is None else serve

        self._lock = threading.Lock()
        self._status = SupervisorStatus.CREATED
        self._stop_requested = threading.Event()

        self._sinks: dict[str, SinkProtocol] = {}
        self._dead_letter: DeadLetterSink | None = None
        self._exporters: list[Exporter] = []
        self._gate: CapacityGate | None = None
        self._buffer: BatchingBuffer | None = None
        self._endpoint: IngestEndpoint | None = None
        self._server: IngestServer | None = None

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> CollectorSettings:
        return self._settings

    @property
    def status(self) -> SupervisorStatus:
        return self._status

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    @property
    def endpoint(self) -> IngestEndpoint:
        """The ingest endpoint. Only available once started."""
        if self._endpoint is None:
            raise RuntimeError("Supervisor has not been started")
        return self._endpoint

    @property
    def buffer(self) -> BatchingBuffer | None:
        return self._buffer

    @property
    def exporters(self) -> tuple[Exporter, ...]:
        return tuple(self._exporters)

    @property
    def server(self) -> IngestServer | None:
        return self._server

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Build and start every component.

        Raises:
            RuntimeError: If called more than once
            SinkConfigurationError: If a sink cannot be built or configured
            OSError: If the listener cannot bind
        """
        with self._lock:
            if self._status is not SupervisorStatus.CREATED:
                raise RuntimeError(f"Cannot start a supervisor in state '{self._status}'")
            try:
                self._build_and_start()
            except Exception as e:
                logger.error("supervisor_start_failed", error=str(e))
                self._rollback()
                self._status = SupervisorStatus.STOPPED
                raise
            self._status = SupervisorStatus.RUNNING

        logger.info(
            "supervisor_started",
            kinds=sorted(kind.value for kind in self._settings.kinds),
            sinks=[exporter.sink_id for exporter in self._exporters],
            high_water_mark=self._settings.backpressure.high_water_mark,
            listening=self._server.url if self._server is not None else None,
        )

    def _build_and_start(self) -> None:
        settings = self._settings

        if self._provided_sinks is not None:
            self._sinks = self._provided_sinks
            for pipeline in settings.pipelines:
                for sink_settings in pipeline.sinks:
                    if sink_settings.id not in self._sinks:
                        raise SinkConfigurationError(sink_settings.id, "no sink instance provided for this id")
        else:
            self._sinks = create_sinks(settings, self._sink_plugins)

        if self._provided_dead_letter is not None:
            self._dead_letter = self._provided_dead_letter
        elif settings.dead_letter.path is not None:
            self._dead_letter = JsonlDeadLetterSink(settings.dead_letter.path)
        else:
            self._dead_letter = LoggingDeadLetterSink()

        high_water_mark = settings.backpressure.high_water_mark
        self._gate = CapacityGate(high_water_mark, self._metrics)

        # Every queued job holds at least one pending envelope, so a queue of
        # high_water_mark + 1 slots can never overflow under normal operation
        routes: dict[SignalKind, list[Exporter]] = {}
        for pipeline in settings.pipelines:
            for sink_settings in pipeline.sinks:
                exporter = Exporter(
                    sink_settings.id,
                    pipeline.kind,
                    self._sinks[sink_settings.id],
                    sink_settings.retry,
                    self._dead_letter,
                    self._metrics,
                    clock=self._clock,
                    queue_size=high_water_mark + 1,
                )
                routes.setdefault(pipeline.kind, []).append(exporter)
                self._exporters.append(exporter)

        router = Router(routes, self._gate, self._metrics)
        self._buffer = BatchingBuffer(
            settings.pipelines,
            router.dispatch,
            metrics=self._metrics,
            clock=self._clock,
        )
        block_timeout = settings.backpressure.block_timeout if settings.backpressure.mode is BackpressureMode.BLOCK else 0.0
        self._endpoint = IngestEndpoint(self._buffer, self._gate, self._metrics, block_timeout=block_timeout)

        for exporter in self._exporters:
            exporter.start()
        self._buffer.start()

        if self._serve:
            from conduit.server import IngestServer, create_app

            self._server = IngestServer(create_app(self), settings.server.host, settings.server.port)
            self._server.start()

    def _rollback(self) -> None:
        """Stop whatever start() managed to bring up."""
        if self._server is not None:
            self._server.stop()
        if self._endpoint is not None:
            self._endpoint.close(timeout=_ROLLBACK_TIMEOUT)
        if self._buffer is not None:
            self._buffer.stop()
            self._buffer.flush_all()
        deadline = time.monotonic() + _ROLLBACK_TIMEOUT
        for exporter in self._exporters:
            exporter.stop(deadline)
        self._close_outputs()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self, grace_period: float | None = None) -> dict[str, Any]:
        """Drain and stop the collector. Safe to call more than once.

        Args:
            grace_period: Seconds the exporters get to finish queued work
                (default: shutdown.grace_period from settings)

        Returns:
            Final health document
        """
        with self._lock:
            if self._status is SupervisorStatus.CREATED:
                self._status = SupervisorStatus.STOPPED
                return self.health()
            if self._status is not SupervisorStatus.RUNNING:
                return self.health()
            self._status = SupervisorStatus.DRAINING

            grace = self._settings.shutdown.grace_period if grace_period is None else grace_period
            deadline = time.monotonic() + grace
            logger.info("supervisor_draining", grace_period=grace, pending=self._pending())

            if self._server is not None:
                self._server.stop()
            if self._endpoint is None or self._buffer is None:
                raise RuntimeError("Supervisor is running without an ingest endpoint or buffer")
            self._endpoint.close()
            self._buffer.stop()
            self._buffer.flush_all()
            for exporter in self._exporters:
                exporter.stop(deadline)
            self._close_outputs()

            self._status = SupervisorStatus.STOPPED
            self._stop_requested.set()

        final = self.health()
        logger.info(
            "supervisor_stopped",
            pending_envelopes=final["pending_envelopes"],
            sinks=final["sinks"],
        )
        return final

    def _close_outputs(self) -> None:
        close_sinks(self._sinks)
        if self._dead_letter is not None:
            try:
                self._dead_letter.close()
            except Exception as e:
                logger.error("dead_letter_close_failed", error=str(e))

    def _pending(self) -> int:
        return self._gate.pending if self._gate is not None else 0

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Aggregated health document.

        Returns:
            status, pending_envelopes, high_water_mark, open batch sizes per
            kind, counters snapshot and per-sink exporter state
        """
        return {
            "status": self._status.value,
            "pending_envelopes": self._pending(),
            "high_water_mark": self._settings.backpressure.high_water_mark,
            "open_batches": self._buffer.open_sizes() if self._buffer is not None else {},
            "counters": self._metrics.snapshot(),
            "sinks": {exporter.sink_id: exporter.state().to_dict() for exporter in self._exporters},
        }

    # -------------------------------------------------------------------------
    # Process integration
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask run_until_signalled() to return (thread-safe)."""
        self._stop_requested.set()

    def run_until_signalled(self, poll_interval: float = 0.5) -> dict[str, Any]:
        """Start, block until SIGINT/SIGTERM or request_stop(), then shut down.

        Signal handlers are only installed from the main thread; elsewhere
        only request_stop() ends the wait.

        Returns:
            Final health document
        """
        previous: dict[int, Any] = {}
        if threading.current_thread() is threading.main_thread():

            def _on_signal(signum: int, _frame: Any) -> None:
                logger.info("signal_received", signal=signal.Signals(signum).name)
                self._stop_requested.set()

            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, _on_signal)

        try:
            self.start()
            while not self._stop_requested.wait(poll_interval):
                pass
            return self.shutdown()
        finally:
            if self._status is not SupervisorStatus.STOPPED:
                self.shutdown()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def __enter__(self) -> PipelineSupervisor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
