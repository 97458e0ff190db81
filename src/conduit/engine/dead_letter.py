# src/conduit/engine/dead_letter.py
"""Dead-letter sinks: the terminal stop for undeliverable batches.

Every batch an exporter gives up on is recorded here with its reason, so
accepted envelopes are always either delivered or accounted for.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from conduit.contracts.sink import DeadLetterRecord

logger = structlog.get_logger(__name__)


def _log_record(record: DeadLetterRecord) -> None:
    logger.warning(
        "batch_dead_lettered",
        sink=record.sink_id,
        kind=record.kind.value,
        batch_id=record.batch.batch_id,
        envelopes=len(record.batch),
        reason=record.reason.value,
        attempts=record.attempts,
        error=record.error,
    )


class LoggingDeadLetterSink:
    """Records dead letters as structured warnings only."""

    def record(self, record: DeadLetterRecord) -> None:
        _log_record(record)

    def close(self) -> None:
        pass


class JsonlDeadLetterSink:
    """Appends dead letters to a local JSON-lines overflow log.

    One line per batch, containing the reason, attempt count and every
    envelope. Writes are serialized with a lock because several exporter
    threads dead-letter concurrently.

    A write failure is logged and swallowed: the record has already been
    logged, and raising would kill the exporter thread.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._stream: TextIO | None = None
        self._written = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def written(self) -> int:
        return self._written

    def record(self, record: DeadLetterRecord) -> None:
        _log_record(record)
        line = json.dumps(record.to_dict(), separators=(",", ":"))
        with self._lock:
            try:
                if self._stream is None:
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                    self._stream = self._path.open("a", encoding="utf-8")
                self._stream.write(line + "\n")
                self._stream.flush()
                self._written += 1
            except OSError as e:
                logger.error(
                    "dead_letter_write_failed",
                    path=str(self._path),
                    batch_id=record.batch.batch_id,
                    error=str(e),
                )

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
