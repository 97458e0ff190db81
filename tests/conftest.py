# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/

Test doubles (RecordingSink, ScriptedSink, MemoryDeadLetter, ...) live in
tests/fixtures.py and are imported explicitly by the modules that use them.
"""

from __future__ import annotations

import os
from collections.abc import Iterator, MutableMapping
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings
from structlog.testing import capture_logs

from conduit.core.metrics import MetricsRegistry
from conduit.engine.clock import MockClock
from tests.fixtures import MemoryDeadLetter, RecordingSink

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def metrics() -> MetricsRegistry:
    """Fresh metrics registry per test."""
    return MetricsRegistry()


@pytest.fixture
def clock() -> MockClock:
    return MockClock(start=1000.0)


@pytest.fixture
def dead_letter() -> MemoryDeadLetter:
    return MemoryDeadLetter()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(autouse=True)
def captured_logs() -> Iterator[list[MutableMapping[str, Any]]]:
    """Capture structlog events so they never reach the streams sinks write to."""
    with capture_logs() as logs:
        yield logs
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def _isolate_conduit_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep CONDUIT_* variables from the developer's shell out of config tests."""
    for key in list(os.environ):
        if key.startswith("CONDUIT_"):
            monkeypatch.delenv(key)
    yield
