"""Tests for CLI entrypoint."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from meeting2code.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run every command from an empty directory with no M2C_* overrides."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("M2C_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr("meeting2code.config.load_dotenv", lambda *args, **kwargs: False)
    return tmp_path


def invoke(*args: str):
    return runner.invoke(app, [*args, "--config-dir", "config"])


class TestCLI:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "meeting2code version" in result.stdout

    def test_help(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("serve", "extract", "analyze", "dispatch", "deploy", "validate", "reset-repo"):
            assert command in result.stdout

    def test_serve_overrides(self) -> None:
        """serve applies --port, --host and --reset before starting the server."""
        with patch("meeting2code.dashboard.server.run_server") as run_server:
            result = invoke("serve", "--mock", "--port", "8123", "--host", "0.0.0.0", "--reset")

        assert result.exit_code == 0, result.stdout
        config = run_server.call_args.args[0]
        assert (config.port, config.host, config.reset_on_start) == (8123, "0.0.0.0", True)
        assert config.mock_mode is True
        assert "Mock mode" in result.stdout

    def test_extract_mock(self) -> None:
        """Mock extraction prints the numbered requirements."""
        result = invoke("extract", "--mock")

        assert result.exit_code == 0, result.stdout
        assert "1. Add a privacy consent checkbox to the contact form" in result.stdout
        assert "3. Use the new brand font across all headings" in result.stdout

    def test_analyze_given_requirements(self) -> None:
        result = invoke("analyze", "--mock", "-r", "Add a sitemap page to the footer", "-r", "Show the office address")

        assert result.exit_code == 0, result.stdout
        assert "Gap Analysis" in result.stdout
        assert "sitemap" in result.stdout

    def test_validate_mock(self) -> None:
        result = invoke(
            "validate", "https://mock-site.azurestaticapps.net", "--mock",
            "-r", "Use the new brand font across all headings",
        )

        assert result.exit_code == 0, result.stdout
        assert "0/1 requirements passed" in result.stdout

    def test_invalid_config_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("M2C_AGENT_BACKEND", "bogus")
        result = invoke("extract")

        assert result.exit_code == 1
        assert "Unknown agent backend: bogus" in result.stdout

    def test_failed_stage_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A stage that ends with an error event gives exit status 1."""
        monkeypatch.setattr("meeting2code.session.demo_responder", lambda config, prompt: "")
        result = invoke("extract", "--mock", "--meeting", "Weekly Sync")

        assert result.exit_code == 1
        assert "Stage failed" in result.stdout
