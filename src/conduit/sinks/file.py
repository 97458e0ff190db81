# src/conduit/sinks/file.py
"""JSON-lines file sink.

Appends one JSON object per envelope to a local file. Useful as a local
archive and in tests that need to inspect delivered output.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

import structlog

from conduit.contracts.errors import SinkConfigurationError
from conduit.contracts.sink import DeliveryResult

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch

logger = structlog.get_logger(__name__)


class FileSink:
    """Append envelopes to a JSON-lines file.

    Configuration options:
        path: Target file (required). Parent directories are created.
        fsync: Force each batch to disk before reporting success (default false)

    The file is opened lazily on the first delivery so a sink that never
    receives data never creates an empty file.
    """

    _name = "file"

    def __init__(self) -> None:
        self._path: Path | None = None
        self._fsync = False
        self._handle: TextIO | None = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path | None:
        return self._path

    def configure(self, options: dict[str, Any]) -> None:
        unknown = sorted(set(options) - {"path", "fsync"})
        if unknown:
            raise SinkConfigurationError(self._name, f"Unknown option(s): {unknown}")

        path = options.get("path")
        if not isinstance(path, str | os.PathLike) or not str(path):
            raise SinkConfigurationError(self._name, "'path' is required and must be a string")
        fsync = options.get("fsync", False)
        if not isinstance(fsync, bool):
            raise SinkConfigurationError(self._name, f"'fsync' must be a boolean, got {type(fsync).__name__}")

        self._path = Path(path)
        self._fsync = fsync
        logger.debug("file_sink_configured", path=str(self._path), fsync=fsync)

    def deliver(self, batch: Batch) -> DeliveryResult:
        if self._path is None:
            return DeliveryResult.failed("file sink is not configured", retryable=False)

        payload = "".join(json.dumps({"batch_id": batch.batch_id, **envelope.to_dict()}) + "\n" for envelope in batch)
        try:
            with self._lock:
                if self._handle is None:
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                    self._handle = self._path.open("a", encoding="utf-8")
                self._handle.write(payload)
                self._handle.flush()
                if self._fsync:
                    os.fsync(self._handle.fileno())
        except OSError as e:
            return DeliveryResult.failed(f"write to {self._path} failed: {e}")
        return DeliveryResult.ok()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None
