# src/conduit/sinks/hookspecs.py
"""pluggy hook specifications for sink plugins.

Sinks implement these hooks to register themselves with the collector.
The sink factory calls these hooks at startup to discover available sink
classes.

Usage (implementing a sink plugin):
    from conduit.sinks.hookspecs import hookimpl

    class MySinkPlugin:
        @hookimpl
        def conduit_get_sinks(self):
            return [MySink]
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from conduit.contracts.sink import SinkProtocol

PROJECT_NAME = "conduit"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for sink plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class ConduitSinkSpec:
    """Hook specifications for sink plugins."""

    @hookspec
    def conduit_get_sinks(self) -> list[type["SinkProtocol"]]:  # type: ignore[empty-body]
        """Return sink classes.

        Called during startup to discover available sinks. Sinks are then
        instantiated and configured from the pipeline settings, one instance
        per configured sink id.

        Returns:
            List of sink classes (not instances) that implement SinkProtocol
        """
