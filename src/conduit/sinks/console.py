# src/conduit/sinks/console.py
"""Console sink.

Writes delivered envelopes to stdout or stderr in JSON or human-readable
format. Primarily used for local debugging and demos.
"""

from __future__ import annotations

import json
import sys
import threading
from typing import TYPE_CHECKING, Any, Literal, TextIO, TypeGuard

import structlog

from conduit.contracts.errors import SinkConfigurationError
from conduit.contracts.sink import DeliveryResult

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch, Envelope

logger = structlog.get_logger(__name__)

# Console sinks of different kinds share stdout; keep their lines whole
_WRITE_LOCK = threading.Lock()


def _is_valid_format(v: str) -> TypeGuard[Literal["json", "pretty"]]:
    return v in {"json", "pretty"}


def _is_valid_output(v: str) -> TypeGuard[Literal["stdout", "stderr"]]:
    return v in {"stdout", "stderr"}


class ConsoleSink:
    """Print each envelope of a batch, one line per envelope.

    Configuration options:
        format: "json" (default) or "pretty"
        output: "stdout" (default) or "stderr"

    Example configuration:
        sinks:
          - id: debug
            plugin: console
            options: {format: pretty, output: stderr}
    """

    _name = "console"

    _VALID_FORMATS: frozenset[str] = frozenset({"json", "pretty"})
    _VALID_OUTPUTS: frozenset[str] = frozenset({"stdout", "stderr"})

    def __init__(self) -> None:
        self._format: Literal["json", "pretty"] = "json"
        self._output: Literal["stdout", "stderr"] = "stdout"
        self._stream: TextIO = sys.stdout

    @property
    def name(self) -> str:
        return self._name

    def configure(self, options: dict[str, Any]) -> None:
        """Configure the sink.

        Raises:
            SinkConfigurationError: If option values are invalid
        """
        unknown = sorted(set(options) - {"format", "output"})
        if unknown:
            raise SinkConfigurationError(self._name, f"Unknown option(s): {unknown}")

        format_value = options.get("format", "json")
        if not isinstance(format_value, str):
            raise SinkConfigurationError(self._name, f"'format' must be a string, got {type(format_value).__name__}")
        if _is_valid_format(format_value):
            self._format = format_value
        else:
            raise SinkConfigurationError(
                self._name,
                f"Invalid format '{format_value}'. Must be one of: {', '.join(sorted(self._VALID_FORMATS))}",
            )

        output_value = options.get("output", "stdout")
        if not isinstance(output_value, str):
            raise SinkConfigurationError(self._name, f"'output' must be a string, got {type(output_value).__name__}")
        if _is_valid_output(output_value):
            self._output = output_value
        else:
            raise SinkConfigurationError(
                self._name,
                f"Invalid output '{output_value}'. Must be one of: {', '.join(sorted(self._VALID_OUTPUTS))}",
            )
        self._stream = sys.stdout if self._output == "stdout" else sys.stderr

        logger.debug("console_sink_configured", format=self._format, output=self._output)

    def deliver(self, batch: Batch) -> DeliveryResult:
        if self._format == "json":
            lines = [json.dumps({"batch_id": batch.batch_id, **envelope.to_dict()}) for envelope in batch]
        else:
            lines = [self._format_pretty(envelope) for envelope in batch]
        try:
            with _WRITE_LOCK:
                self._stream.write("\n".join(lines) + "\n")
                self._stream.flush()
        except (OSError, ValueError) as e:
            # ValueError: write to a closed stream
            return DeliveryResult.failed(f"console write failed: {e}")
        return DeliveryResult.ok()

    def _format_pretty(self, envelope: Envelope) -> str:
        """Format: [TIMESTAMP] kind: key=value, ..."""
        payload = envelope.payload.to_dict()
        details = ", ".join(f"{key}={value}" for key, value in payload.items() if value not in (None, {}))
        return f"[{envelope.timestamp.isoformat()}] {envelope.kind.value}: {details}"

    def close(self) -> None:
        # The sink does not own stdout/stderr
        pass
