# src/conduit/sinks/factory.py
"""Factory functions for building sinks from configuration.

This module provides the glue between the pipeline settings and the sink
instances the exporters drive. It handles:
1. Discovering sink classes via pluggy hooks
2. Instantiating one sink per configured sink id
3. Configuring each sink with its options

Usage:
    from conduit.sinks.factory import create_sinks

    sinks = create_sinks(settings)
    # {"jaeger": <HttpSink>, "archive": <FileSink>}
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import pluggy
import structlog

from conduit.contracts.errors import SinkConfigurationError
from conduit.sinks import BuiltinSinksPlugin
from conduit.sinks.hookspecs import PROJECT_NAME, ConduitSinkSpec

if TYPE_CHECKING:
    from conduit.contracts.sink import SinkProtocol
    from conduit.core.config import CollectorSettings

logger = structlog.get_logger(__name__)

_DISCOVERY = "sink_plugins"


def _resolve_sink_name(sink_class: type[SinkProtocol]) -> str:
    """Resolve a sink's plugin name from class metadata or a temporary instance.

    Raises:
        SinkConfigurationError: If the class resolves to an invalid name
    """
    try:
        class_name = sink_class.__name__
    except AttributeError as e:  # pragma: no cover - plugin boundary
        raise SinkConfigurationError(_DISCOVERY, f"Invalid sink declaration without __name__: {sink_class!r}") from e

    # Prefer class-level _name to avoid instantiating just for the name
    class_dict = sink_class.__dict__
    if "_name" in class_dict:
        name_hint = class_dict["_name"]
        if type(name_hint) is str and name_hint != "":
            return name_hint
        raise SinkConfigurationError(class_name, f"Sink class attribute _name must be a non-empty string, got {name_hint!r}")

    try:
        instance = sink_class()
    except Exception as e:  # pragma: no cover - plugin boundary
        raise SinkConfigurationError(class_name, f"Failed to instantiate sink class during discovery: {e}") from e

    resolved = instance.name
    if type(resolved) is not str or resolved == "":
        raise SinkConfigurationError(class_name, f"Sink name must be a non-empty string, got {resolved!r}")
    return resolved


def discover_sink_registry(sink_plugins: Iterable[Any] = ()) -> dict[str, type[SinkProtocol]]:
    """Discover sink classes via pluggy hooks.

    Registers the built-in sinks plus any plugin objects provided by the
    caller, then calls the ``conduit_get_sinks`` hooks to build the
    name->class registry.

    Args:
        sink_plugins: Additional plugin objects implementing ``conduit_get_sinks``

    Returns:
        Mapping of plugin name to sink class

    Raises:
        SinkConfigurationError: If plugin registration fails, names are
            invalid, or duplicate names are discovered
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(ConduitSinkSpec)

    for plugin in [BuiltinSinksPlugin(), *list(sink_plugins)]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            # PluginValidationError: hook spec mismatch
            # ValueError: plugin object or name already registered
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise SinkConfigurationError(_DISCOVERY, f"Invalid sink plugin {type(plugin).__name__}: {e}") from e

    registry: dict[str, type[SinkProtocol]] = {}
    for hook_impl in plugin_manager.hook.conduit_get_sinks.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            sink_classes = hook_impl.function()
        except Exception as e:
            raise SinkConfigurationError(_DISCOVERY, f"Sink plugin {plugin_name} failed in conduit_get_sinks: {e}") from e

        if sink_classes is None or type(sink_classes) in (str, bytes):
            raise SinkConfigurationError(
                _DISCOVERY,
                f"conduit_get_sinks in plugin {plugin_name} returned {type(sink_classes).__name__}; expected iterable of sink classes",
            )
        try:
            sink_iter = iter(sink_classes)
        except TypeError as e:
            raise SinkConfigurationError(
                _DISCOVERY,
                f"conduit_get_sinks in plugin {plugin_name} returned {type(sink_classes).__name__}; expected iterable of sink classes",
            ) from e

        for sink_class in sink_iter:
            name = _resolve_sink_name(sink_class)
            if name in registry:
                raise SinkConfigurationError(
                    name,
                    f"Duplicate sink name '{name}' discovered: {registry[name].__name__} and {sink_class.__name__}",
                )
            registry[name] = sink_class

    return registry


def create_sinks(
    settings: CollectorSettings,
    plugins: Iterable[Any] = (),
) -> dict[str, SinkProtocol]:
    """Instantiate and configure one sink per configured sink id.

    Args:
        settings: Validated collector settings
        plugins: Additional plugin objects providing ``conduit_get_sinks``

    Returns:
        Mapping of sink id to configured sink, in configuration order

    Raises:
        SinkConfigurationError: If discovery fails, a plugin name is unknown,
            or a sink rejects its options. Sinks already built are closed.
    """
    registry = discover_sink_registry(plugins)

    sinks: dict[str, SinkProtocol] = {}
    try:
        for pipeline in settings.pipelines:
            for sink_settings in pipeline.sinks:
                try:
                    sink_class = registry[sink_settings.plugin]
                except KeyError:
                    raise SinkConfigurationError(
                        sink_settings.id,
                        f"Unknown sink plugin '{sink_settings.plugin}'. Available sinks: {sorted(registry)}",
                    ) from None

                sink = sink_class()
                try:
                    sink.configure(dict(sink_settings.options))
                except SinkConfigurationError as e:
                    raise SinkConfigurationError(sink_settings.id, e.message) from e
                except Exception as e:
                    raise SinkConfigurationError(sink_settings.id, f"configure() failed: {e}") from e

                sinks[sink_settings.id] = sink
                logger.debug(
                    "sink_configured",
                    sink=sink_settings.id,
                    plugin=sink_settings.plugin,
                    kind=pipeline.kind.value,
                    options_keys=list(sink_settings.options.keys()),
                )
    except SinkConfigurationError:
        close_sinks(sinks)
        raise

    return sinks


def close_sinks(sinks: dict[str, SinkProtocol]) -> None:
    """Close every sink, logging (not raising) individual failures."""
    for sink_id, sink in sinks.items():
        try:
            sink.close()
        except Exception as e:
            logger.error("sink_close_failed", sink=sink_id, error=str(e))
