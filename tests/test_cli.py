# tests/test_cli.py
"""Tests for the conduit CLI."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from typer.testing import CliRunner

from conduit import __version__
from conduit.cli import app
from conduit.engine.supervisor import PipelineSupervisor

# Stderr output is combined with stdout in result.output
runner = CliRunner()

VALID_SETTINGS = """\
pipelines:
  - kind: log
    batch_max_size: 100
    batch_max_age: 2s
    sinks:
      - id: archive
        plugin: file
        options:
          path: "{archive}"
server:
  enabled: false
shutdown:
  grace_period: 1s
"""


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """The CLI callback reconfigures root logging against the runner's streams."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "conduit.yaml"
    path.write_text(VALID_SETTINGS.format(archive=tmp_path / "archive.jsonl"), encoding="utf-8")
    return path


class TestCLIBasics:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"conduit version {__version__}" in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "validate", "show-config", "sinks"):
            assert command in result.stdout

    def test_sinks_command(self) -> None:
        result = runner.invoke(app, ["sinks"])
        assert result.exit_code == 0
        assert "SINKS:" in result.stdout
        assert "console" in result.stdout
        assert "Append envelopes to a JSON-lines file." in result.stdout
        assert "http" in result.stdout


class TestValidateCommand:
    def test_valid_settings(self, settings_file: Path) -> None:
        result = runner.invoke(app, ["validate", "-s", str(settings_file)])

        assert result.exit_code == 0, result.output
        assert "Configuration valid." in result.stdout
        assert "log: batch 100 / 2s -> archive (file)" in result.stdout
        assert "high-water mark: 10000 (reject)" in result.stdout

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", "-s", str(tmp_path / "absent.yaml")])
        assert result.exit_code == 1
        assert "Settings file not found" in result.output

    def test_schema_errors_listed(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("pipelines:\n  - kind: profiles\n    sinks: []\n", encoding="utf-8")

        result = runner.invoke(app, ["validate", "-s", str(path)])

        assert result.exit_code == 1
        assert "Configuration errors:" in result.output
        assert "pipelines.0.kind" in result.output
        assert "traceback" not in result.output.lower()

    def test_yaml_syntax_error(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("pipelines:\n  - kind: log\n    sinks: [unclosed", encoding="utf-8")

        result = runner.invoke(app, ["validate", "-s", str(path)])

        assert result.exit_code == 1
        output = result.output.lower()
        assert ("yaml" in output and "syntax" in output) or "error" in output
        assert "traceback" not in output

    def test_sink_option_error(self, tmp_path: Path) -> None:
        path = tmp_path / "http.yaml"
        path.write_text(
            "pipelines:\n  - kind: trace\n    sinks:\n      - id: remote\n        plugin: http\n        options: {}\n",
            encoding="utf-8",
        )

        result = runner.invoke(app, ["validate", "-s", str(path)])

        assert result.exit_code == 1
        assert "Error configuring sinks" in result.output
        assert "remote" in result.output


class TestShowConfigCommand:
    def test_yaml_includes_defaults(self, settings_file: Path) -> None:
        result = runner.invoke(app, ["show-config", "-s", str(settings_file)])

        assert result.exit_code == 0, result.output
        resolved = yaml.safe_load(result.stdout)
        assert resolved["pipelines"][0]["batch_max_age"] == 2.0
        assert resolved["backpressure"]["high_water_mark"] == 10000
        assert resolved["pipelines"][0]["sinks"][0]["retry"]["max_retries"] == 3

    def test_json_format(self, settings_file: Path) -> None:
        result = runner.invoke(app, ["show-config", "-s", str(settings_file), "--format", "json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["server"]["enabled"] is False

    def test_environment_override(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONDUIT_BACKPRESSURE__HIGH_WATER_MARK", "250")

        result = runner.invoke(app, ["show-config", "-s", str(settings_file), "-f", "json"])

        assert json.loads(result.stdout)["backpressure"]["high_water_mark"] == 250


class TestRunCommand:
    def test_runs_and_drains(self, settings_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """run builds the supervisor from settings and drains on stop."""

        def _run_briefly(self: PipelineSupervisor, poll_interval: float = 0.5) -> dict[str, Any]:
            self.start()
            self.endpoint.submit({"kind": "log", "payload": {"body": "from cli"}})
            return self.shutdown()

        monkeypatch.setattr(PipelineSupervisor, "run_until_signalled", _run_briefly)

        result = runner.invoke(app, ["run", "-s", str(settings_file), "--no-server"])

        assert result.exit_code == 0, result.output
        [line] = (tmp_path / "archive.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(line)["payload"]["body"] == "from cli"

    def test_sink_error_exits_1(self, tmp_path: Path) -> None:
        path = tmp_path / "unknown.yaml"
        path.write_text(
            "pipelines:\n  - kind: log\n    sinks:\n      - id: out\n        plugin: kafka\nserver:\n  enabled: false\n",
            encoding="utf-8",
        )

        result = runner.invoke(app, ["run", "-s", str(path)])

        assert result.exit_code == 1
        assert "Unknown sink plugin 'kafka'" in result.output
