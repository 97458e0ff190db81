# src/conduit/sinks/__init__.py
"""Built-in sinks.

Sinks are discovered via pluggy hooks. The BuiltinSinksPlugin in this module
registers all built-in sinks; third-party sinks register their own plugin
object implementing conduit_get_sinks.

Available sinks:
- ConsoleSink ("console"): print envelopes to stdout/stderr
- FileSink ("file"): append envelopes to a JSON-lines file
- HttpSink ("http"): POST batches to an HTTP endpoint
"""

from conduit.sinks.console import ConsoleSink
from conduit.sinks.file import FileSink
from conduit.sinks.hookspecs import hookimpl
from conduit.sinks.http import HttpSink


class BuiltinSinksPlugin:
    """Plugin that registers built-in sinks."""

    @hookimpl
    def conduit_get_sinks(self) -> list[type]:
        """Return built-in sink classes."""
        return [ConsoleSink, FileSink, HttpSink]


__all__ = [
    "BuiltinSinksPlugin",
    "ConsoleSink",
    "FileSink",
    "HttpSink",
]
