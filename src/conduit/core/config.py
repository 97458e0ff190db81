# src/conduit/core/config.py
"""
Configuration schema and loading for the collector.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction and loaded exactly once
at startup; an invalid document aborts startup.
"""

import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

from conduit.contracts.enums import BackpressureMode, SignalKind

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> Any:
    """Convert a duration to seconds.

    Accepts numbers (seconds) or strings with an optional unit suffix:
    "250ms", "5s", "1.5m", "2h". Bare numeric strings are seconds.
    Anything else is passed through for Pydantic to reject.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match is None:
            raise ValueError(f"Invalid duration {value!r}; expected a number of seconds or e.g. '250ms', '5s', '1m'")
        amount, unit = match.groups()
        return float(amount) * _DURATION_UNITS[unit or "s"]
    return value


Duration = Annotated[float, BeforeValidator(parse_duration)]


class RetryPolicySettings(BaseModel):
    """Per-sink delivery retry and circuit breaker policy.

    Backoff before retry n is backoff_base * 2**(n-1), capped at backoff_cap.

    Example YAML:
        retry:
          max_retries: 3
          backoff_base: 100ms
          backoff_cap: 10s
          circuit_failure_threshold: 5
          circuit_cooldown: 30s
    """

    model_config = {"frozen": True, "extra": "forbid"}

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    backoff_base: Duration = Field(default=0.1, gt=0, description="Delay before the first retry")
    backoff_cap: Duration = Field(default=10.0, gt=0, description="Upper bound for any single backoff")
    circuit_failure_threshold: int = Field(default=5, gt=0, description="Consecutive failed batches that open the circuit")
    circuit_cooldown: Duration = Field(default=30.0, gt=0, description="How long an open circuit stays open")

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "RetryPolicySettings":
        if self.backoff_cap < self.backoff_base:
            raise ValueError(f"backoff_cap ({self.backoff_cap}s) must be >= backoff_base ({self.backoff_base}s)")
        return self


class SinkSettings(BaseModel):
    """One delivery destination within a pipeline."""

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(min_length=1, description="Unique sink identifier, used in metrics and dead letters")
    plugin: str = Field(min_length=1, description="Sink plugin name (console, file, http, ...)")
    options: dict[str, Any] = Field(default_factory=dict, description="Plugin-specific options")
    retry: RetryPolicySettings = Field(default_factory=RetryPolicySettings)

    @field_validator("id")
    @classmethod
    def validate_id_format(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", v):
            raise ValueError(f"sink id {v!r} may only contain letters, digits, '_', '.' and '-'")
        return v


class PipelineSettings(BaseModel):
    """Batching thresholds and sinks for one signal kind.

    A batch seals when it reaches batch_max_size envelopes or when
    batch_max_age has elapsed since its first envelope, whichever first.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    kind: SignalKind
    batch_max_size: int = Field(default=512, gt=0)
    batch_max_age: Duration = Field(default=5.0, gt=0)
    sinks: list[SinkSettings] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique_sink_ids(self) -> "PipelineSettings":
        ids = [sink.id for sink in self.sinks]
        duplicates = sorted({sink_id for sink_id in ids if ids.count(sink_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate sink id(s) in '{self.kind}' pipeline: {duplicates}")
        return self


class BackpressureSettings(BaseModel):
    """Bound on envelopes accepted but not yet delivered or dead-lettered."""

    model_config = {"frozen": True, "extra": "forbid"}

    high_water_mark: int = Field(default=10_000, gt=0)
    mode: BackpressureMode = BackpressureMode.REJECT
    block_timeout: Duration = Field(default=1.0, ge=0, description="Max wait for capacity in block mode")


class DeadLetterSettings(BaseModel):
    """Where undeliverable batches go. Without a path they are only logged."""

    model_config = {"frozen": True, "extra": "forbid"}

    path: Path | None = None


class ServerSettings(BaseModel):
    """HTTP ingest listener."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=4318, ge=0, le=65535)


class ShutdownSettings(BaseModel):
    """Drain behaviour on termination."""

    model_config = {"frozen": True, "extra": "forbid"}

    grace_period: Duration = Field(default=10.0, ge=0, description="Deadline for exporters to finish in-flight work")


class CollectorSettings(BaseModel):
    """Top-level collector configuration.

    This is the single source of truth for the running engine.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    pipelines: list[PipelineSettings] = Field(min_length=1, description="One pipeline per served signal kind")
    backpressure: BackpressureSettings = Field(default_factory=BackpressureSettings)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    shutdown: ShutdownSettings = Field(default_factory=ShutdownSettings)

    @model_validator(mode="after")
    def validate_one_pipeline_per_kind(self) -> "CollectorSettings":
        kinds = [pipeline.kind for pipeline in self.pipelines]
        duplicates = sorted({kind.value for kind in kinds if kinds.count(kind) > 1})
        if duplicates:
            raise ValueError(f"At most one pipeline per signal kind; duplicated: {duplicates}")
        return self

    @model_validator(mode="after")
    def validate_globally_unique_sink_ids(self) -> "CollectorSettings":
        ids = [sink.id for pipeline in self.pipelines for sink in pipeline.sinks]
        duplicates = sorted({sink_id for sink_id in ids if ids.count(sink_id) > 1})
        if duplicates:
            raise ValueError(f"Sink ids must be unique across pipelines; duplicated: {duplicates}")
        return self

    def pipeline_for(self, kind: SignalKind) -> PipelineSettings | None:
        for pipeline in self.pipelines:
            if pipeline.kind == kind:
                return pipeline
        return None

    @property
    def kinds(self) -> frozenset[SignalKind]:
        return frozenset(pipeline.kind for pipeline in self.pipelines)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # Unresolved - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lowercase schema keys for Pydantic.

    Dynaconf uppercases top-level keys and keeps env override keys as typed
    (CONDUIT_SERVER__PORT -> {"SERVER": {"PORT": ...}}). Plugin options are
    passed through untouched because their keys belong to the plugin.
    """
    if isinstance(value, dict):
        return {
            str(k).lower(): (v if str(k).lower() == "options" else _lower_keys(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> CollectorSettings:
    """Load settings from a YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (CONDUIT_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: CONDUIT_SERVER__PORT=9000 for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated CollectorSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="CONDUIT",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = _lower_keys({k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys})
    raw_config = _expand_env_vars(raw_config)

    return CollectorSettings(**raw_config)


def resolve_config(settings: CollectorSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-ready dict (explicit + defaults)."""
    return settings.model_dump(mode="json")
