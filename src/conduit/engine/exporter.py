# src/conduit/engine/exporter.py
"""Exporter: reliable delivery of batches to one sink.

Each configured sink gets one Exporter with its own worker thread, bounded
FIFO queue, retry state and circuit breaker. Exporters never share state,
so a slow or failing sink cannot starve another sink's queue.

Per-batch state machine:
    Pending -> deliver -> Delivered
                       -> Failed (retryable) -> backoff -> Pending  (while retries remain)
                       -> Failed (retries exhausted) -> DeadLettered
                       -> Rejected (non-retryable) -> DeadLettered
    circuit open  -> DeadLettered without a delivery attempt
    shutdown      -> DeadLettered at the next safe checkpoint

Backoff before retry n is backoff_base * 2**(n-1), capped at backoff_cap,
driven by tenacity. Backoff sleeps wait on the cancel event so shutdown
interrupts them immediately.

Thread Safety:
    enqueue() is called from buffer/router threads and never blocks.
    Delivery, retry and circuit state are only touched by the worker thread.
    state() reads are approximately consistent.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from conduit.contracts.enums import CircuitState, DeadLetterReason, DeliveryOutcome, SignalKind
from conduit.contracts.sink import DeadLetterRecord, DeliveryResult
from conduit.engine.circuit import CircuitBreaker

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch
    from conduit.contracts.sink import DeadLetterSink, SinkProtocol
    from conduit.core.config import RetryPolicySettings
    from conduit.core.metrics import MetricsRegistry
    from conduit.engine.clock import Clock
    from conduit.engine.router import DeliveryJob

logger = structlog.get_logger(__name__)


class _RetryableFailure(Exception):
    def __init__(self, error: str | None) -> None:
        self.error = error
        super().__init__(error)


class _Rejected(Exception):
    def __init__(self, error: str | None) -> None:
        self.error = error
        super().__init__(error)


class _Cancelled(Exception):
    pass


@dataclass(frozen=True, slots=True)
class ExporterState:
    """Health snapshot of one exporter."""

    sink_id: str
    kind: SignalKind
    circuit_state: CircuitState
    consecutive_failures: int
    circuit_open_until: float | None
    in_flight_batch: str | None
    queue_depth: int
    alive: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "circuit_state": self.circuit_state.value,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open_until": self.circuit_open_until,
            "in_flight_batch": self.in_flight_batch,
            "queue_depth": self.queue_depth,
            "alive": self.alive,
        }


class Exporter:
    """Delivery worker for one sink.

    Example:
        exporter = Exporter("jaeger", SignalKind.TRACE, sink, policy, dead_letter, metrics)
        exporter.start()
        exporter.enqueue(job)  # from the router
        ...
        exporter.stop(deadline=time.monotonic() + 10.0)
    """

    # Seconds a cancelled worker gets to wind down before it is abandoned
    _CANCEL_GRACE = 1.0

    def __init__(
        self,
        sink_id: str,
        kind: SignalKind,
        sink: SinkProtocol,
        policy: RetryPolicySettings,
        dead_letter: DeadLetterSink,
        metrics: MetricsRegistry,
        *,
        clock: Clock | None = None,
        queue_size: int = 1024,
    ) -> None:
        self._sink_id = sink_id
        self._kind = kind
        self._sink = sink
        self._policy = policy
        self._dead_letter_sink = dead_letter
        self._metrics = metrics
        self._breaker = CircuitBreaker(policy.circuit_failure_threshold, policy.circuit_cooldown, clock)

        self._queue: queue.Queue[DeliveryJob | None] = queue.Queue(maxsize=queue_size)
        self._in_flight: DeliveryJob | None = None
        self._accepting = False
        self._accept_lock = threading.Lock()
        self._cancel = threading.Event()
        self._ready = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"conduit-export-{sink_id}",
            daemon=True,
        )

    @property
    def sink_id(self) -> str:
        return self._sink_id

    @property
    def kind(self) -> SignalKind:
        return self._kind

    @property
    def sink(self) -> SinkProtocol:
        return self._sink

    def state(self) -> ExporterState:
        in_flight = self._in_flight
        circuit_state = self._breaker.state
        self._metrics.circuit_state.labels(sink=self._sink_id).state(circuit_state.value)
        return ExporterState(
            sink_id=self._sink_id,
            kind=self._kind,
            circuit_state=circuit_state,
            consecutive_failures=self._breaker.consecutive_failures,
            circuit_open_until=self._breaker.open_until,
            in_flight_batch=in_flight.batch.batch_id if in_flight is not None else None,
            queue_depth=self._queue.qsize(),
            alive=self._thread.is_alive(),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._thread.start()
        # Prevents a startup race where jobs are queued before the loop runs
        self._ready.wait(timeout=5.0)
        with self._accept_lock:
            self._accepting = True
        self._publish_circuit_state()

    def enqueue(self, job: DeliveryJob) -> None:
        """Queue a job without blocking.

        A stopped exporter or a full queue dead-letters the job right away.
        """
        with self._accept_lock:
            if not self._accepting:
                self._dead_letter(job, DeadLetterReason.SHUTDOWN, attempts=0, error="exporter not accepting")
                return
            try:
                self._queue.put_nowait(job)
            except queue.Full:
                self._dead_letter(job, DeadLetterReason.QUEUE_FULL, attempts=0, error="exporter queue full")
                return
        self._metrics.exporter_queue_depth.labels(sink=self._sink_id).set(self._queue.qsize())

    def stop(self, deadline: float) -> None:
        """Drain the queue, then stop the worker.

        Shutdown sequence:
        1. Refuse new jobs
        2. Send the sentinel behind the queued jobs and wait until deadline
        3. Past the deadline, cancel: backoff waits end, no new attempts,
           queued jobs are dead-lettered
        4. If the worker is still stuck inside a sink call, settle its
           in-flight and queued jobs here and leave the daemon thread behind

        Args:
            deadline: time.monotonic() value by which delivery should be done
        """
        with self._accept_lock:
            self._accepting = False

        if not self._thread.is_alive():
            self._abandon()
            return

        try:
            self._queue.put(None, timeout=max(deadline - time.monotonic(), 0.001))
        except queue.Full:
            # Still backed up at the deadline; cancelling makes the worker drain
            pass

        self._thread.join(timeout=max(deadline - time.monotonic(), 0.0))
        if self._thread.is_alive():
            logger.warning(
                "exporter_deadline_reached",
                sink=self._sink_id,
                queue_depth=self._queue.qsize(),
            )
            self._cancel.set()
            self._thread.join(timeout=self._CANCEL_GRACE)

        if self._thread.is_alive():
            logger.error("exporter_abandoned", sink=self._sink_id)
            self._abandon()

    def _abandon(self) -> None:
        """Dead-letter whatever the worker can no longer process."""
        in_flight = self._in_flight
        if in_flight is not None:
            self._dead_letter(in_flight, DeadLetterReason.SHUTDOWN, attempts=in_flight.batch.attempt_count + 1)
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job is not None:
                self._dead_letter(job, DeadLetterReason.SHUTDOWN, attempts=0)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _run(self) -> None:
        self._ready.set()

        while True:
            job = self._queue.get()
            try:
                if job is None:
                    break
                self._in_flight = job
                self._process(job)
            except Exception as e:
                # Log but keep the loop alive: a dead worker would strand its queue
                logger.error("exporter_loop_failed", sink=self._sink_id, error=str(e))
                if job is not None:
                    self._dead_letter(job, DeadLetterReason.INTERNAL_ERROR, attempts=job.batch.attempt_count, error=str(e))
            finally:
                self._in_flight = None
                self._queue.task_done()
                self._metrics.exporter_queue_depth.labels(sink=self._sink_id).set(self._queue.qsize())

            if self._cancel.is_set():
                self._abandon()
                break

    def _process(self, job: DeliveryJob) -> None:
        batch = job.batch

        if self._cancel.is_set():
            self._dead_letter(job, DeadLetterReason.SHUTDOWN, attempts=0)
            return

        if not self._breaker.allow_request():
            self._dead_letter(job, DeadLetterReason.CIRCUIT_OPEN, attempts=0, error="circuit open")
            return

        trial = self._breaker.state == CircuitState.HALF_OPEN
        max_attempts = 1 if trial else self._policy.max_retries + 1
        attempts = 0

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(
                    multiplier=self._policy.backoff_base,
                    exp_base=2,
                    max=self._policy.backoff_cap,
                ),
                retry=retry_if_exception_type(_RetryableFailure),
                sleep=self._interruptible_sleep,
                reraise=True,
            ):
                with attempt_state:
                    if attempts > 0:
                        if self._cancel.is_set():
                            raise _Cancelled()
                        batch.record_retry()
                        self._metrics.delivery_retries.labels(sink=self._sink_id).inc()
                    attempts += 1
                    self._attempt(batch)
        except _RetryableFailure as e:
            self._breaker.record_failure()
            self._publish_circuit_state()
            if trial:
                self._dead_letter(job, DeadLetterReason.CIRCUIT_OPEN, attempts=attempts, error=f"trial delivery failed: {e.error}")
            else:
                self._dead_letter(job, DeadLetterReason.RETRIES_EXHAUSTED, attempts=attempts, error=e.error)
            return
        except _Rejected as e:
            # The sink answered, so it is reachable: rejection ends a failure streak
            self._breaker.record_success()
            self._publish_circuit_state()
            self._dead_letter(job, DeadLetterReason.REJECTED, attempts=attempts, error=e.error)
            return
        except _Cancelled:
            self._dead_letter(job, DeadLetterReason.SHUTDOWN, attempts=attempts, error="cancelled during backoff")
            return

        self._breaker.record_success()
        self._publish_circuit_state()
        if not job.settle(DeliveryOutcome.DELIVERED):
            logger.warning("late_delivery_after_abandon", sink=self._sink_id, batch_id=batch.batch_id)
            return
        self._metrics.batches_delivered.labels(kind=self._kind.value, sink=self._sink_id).inc()
        self._metrics.envelopes_delivered.labels(kind=self._kind.value, sink=self._sink_id).inc(len(batch))
        logger.debug(
            "batch_delivered",
            sink=self._sink_id,
            batch_id=batch.batch_id,
            envelopes=len(batch),
            attempts=attempts,
        )

    def _attempt(self, batch: Batch) -> None:
        """One call to the sink. Raises on any kind of failure."""
        self._metrics.delivery_attempts.labels(sink=self._sink_id).inc()
        started = time.perf_counter()
        try:
            result = self._sink.deliver(batch)
        except Exception as e:
            # Sinks should report via DeliveryResult; a raise is a transient failure
            result = DeliveryResult.failed(f"{type(e).__name__}: {e}")
        finally:
            self._metrics.delivery_latency.labels(sink=self._sink_id).observe(time.perf_counter() - started)

        if not isinstance(result, DeliveryResult):
            result = DeliveryResult.failed(f"sink returned {type(result).__name__}, expected DeliveryResult", retryable=False)

        if result.success:
            return

        logger.info(
            "delivery_attempt_failed",
            sink=self._sink_id,
            batch_id=batch.batch_id,
            attempt=batch.attempt_count + 1,
            retryable=result.retryable,
            error=result.error,
        )
        if result.retryable:
            raise _RetryableFailure(result.error)
        raise _Rejected(result.error)

    def _interruptible_sleep(self, seconds: float) -> None:
        self._cancel.wait(seconds)

    def _dead_letter(
        self,
        job: DeliveryJob,
        reason: DeadLetterReason,
        *,
        attempts: int,
        error: str | None = None,
    ) -> None:
        if not job.settle(DeliveryOutcome.DEAD_LETTERED):
            return
        batch = job.batch
        record = DeadLetterRecord(
            sink_id=self._sink_id,
            kind=self._kind,
            batch=batch,
            reason=reason,
            attempts=attempts,
            error=error,
        )
        try:
            self._dead_letter_sink.record(record)
        except Exception as e:
            logger.error(
                "dead_letter_record_failed",
                sink=self._sink_id,
                batch_id=batch.batch_id,
                reason=reason.value,
                error=str(e),
            )
        labels = {"kind": self._kind.value, "sink": self._sink_id, "reason": reason.value}
        self._metrics.batches_dead_lettered.labels(**labels).inc()
        self._metrics.envelopes_dead_lettered.labels(**labels).inc(len(batch))

    def _publish_circuit_state(self) -> None:
        self._metrics.circuit_state.labels(sink=self._sink_id).state(self._breaker.state.value)
