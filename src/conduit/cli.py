# src/conduit/cli.py
"""conduit Command Line Interface.

Entry point for the conduit CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import typer
import yaml
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from conduit import __version__
from conduit.contracts.errors import SinkConfigurationError
from conduit.core.config import CollectorSettings, load_settings, resolve_config

__all__ = [
    "app",
]

app = typer.Typer(
    name="conduit",
    help="conduit: batching telemetry collector with reliable fan-out delivery.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"conduit version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """conduit: batching telemetry collector with reliable fan-out delivery."""
    # Configure logging before any subcommand runs
    from conduit.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)


def _load_or_exit(settings: str) -> CollectorSettings:
    """Load settings, reporting every problem on stderr and exiting 1."""
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        # e.problem carries the specific error, e.g. "expected ']'"
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


@app.command()
def run(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    no_server: bool = typer.Option(
        False,
        "--no-server",
        help="Do not start the HTTP listener, whatever the settings say.",
    ),
) -> None:
    """Run the collector until SIGINT/SIGTERM, then drain and exit."""
    from conduit.engine.supervisor import PipelineSupervisor

    config = _load_or_exit(settings)
    supervisor = PipelineSupervisor(config, serve=False if no_server else None)

    try:
        final = supervisor.run_until_signalled()
    except SinkConfigurationError as e:
        typer.echo(f"Error configuring sinks: {e}", err=True)
        raise typer.Exit(1) from None
    except OSError as e:
        typer.echo(f"Error starting listener: {e}", err=True)
        raise typer.Exit(1) from None

    # Anything still pending at exit was force-settled; report it
    if final["pending_envelopes"]:
        typer.echo(f"Warning: {final['pending_envelopes']} envelopes unaccounted for at exit", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Validate collector configuration and sink options without running."""
    from conduit.sinks.factory import close_sinks, create_sinks

    config = _load_or_exit(settings)

    try:
        sinks = create_sinks(config)
    except SinkConfigurationError as e:
        typer.echo(f"Error configuring sinks: {e}", err=True)
        raise typer.Exit(1) from None
    close_sinks(sinks)

    typer.echo("Configuration valid.")
    for pipeline in config.pipelines:
        sink_list = ", ".join(f"{sink.id} ({sink.plugin})" for sink in pipeline.sinks)
        typer.echo(
            f"  {pipeline.kind.value}: batch {pipeline.batch_max_size} / {pipeline.batch_max_age:g}s -> {sink_list}"
        )
    typer.echo(f"  high-water mark: {config.backpressure.high_water_mark} ({config.backpressure.mode.value})")


@app.command("show-config")
def show_config(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    output_format: Literal["yaml", "json"] = typer.Option(
        "yaml",
        "--format",
        "-f",
        help="Output format: 'yaml' or 'json'.",
    ),
) -> None:
    """Show the resolved configuration (file + environment + defaults)."""
    config_dict = resolve_config(_load_or_exit(settings))

    if output_format == "json":
        typer.echo(json.dumps(config_dict, indent=2))
    else:
        typer.echo(yaml.dump(config_dict, default_flow_style=False, sort_keys=False))


@app.command("sinks")
def sinks_list() -> None:
    """List available sink plugins."""
    from conduit.sinks.factory import discover_sink_registry

    try:
        registry = discover_sink_registry()
    except SinkConfigurationError as e:
        typer.echo(f"Error discovering sinks: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo("SINKS:")
    for name, sink_class in sorted(registry.items()):
        doc = (sink_class.__doc__ or "").strip().splitlines()
        description = doc[0] if doc else "(no description)"
        typer.echo(f"  {name:20} - {description}")


if __name__ == "__main__":
    app()
