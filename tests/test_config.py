"""Tests for configuration management."""

from __future__ import annotations

from pathlib import Path

import pytest

from meeting2code.config import Config, StagePolicy, TargetRepoSettings, load_yaml

YAML = """
target:
  repo: contoso/corporate-website
  baseline: develop
meeting:
  title: Weekly Sync
agent:
  backend: anthropic
server:
  port: 4000
stages:
  analyze:
    max_concurrency: 8
tracker:
  labels: [enhancement, from-meeting]
dispatch:
  push_branches: true
  max_depth: 2
"""


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ANTHROPIC_API_KEY", "GITHUB_TOKEN", "GH_TOKEN", "M2C_CONFIG_DIR", "M2C_MOCK_MODE",
        "M2C_AGENT_BACKEND", "M2C_MODEL", "M2C_MEETING_TITLE", "M2C_PORT", "M2C_HOST",
        "M2C_TARGET_REPO", "M2C_REPO_PATH", "M2C_PUSH_BRANCHES", "M2C_LOG_LEVEL",
        "M2C_WORKSPACE_DIR", "M2C_AZURE_SUBSCRIPTION_ID",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("meeting2code.config.load_dotenv", lambda: None)


class TestConfig:
    """Tests for Config loading."""

    def test_defaults(self) -> None:
        config = Config()
        assert config.backend == "claude-cli"
        assert config.stages.extract.max_attempts == 2
        assert config.stages.extract.timeout == 300
        assert config.stages.analyze.max_concurrency == 4
        assert config.stages.dispatch.timeout == 300
        assert config.stages.validate.max_concurrency == 4
        assert config.stages.audit.timeout == 240
        assert config.dispatch.push_branches is False

    def test_from_env_reads_yaml(self, clean_env: None, tmp_path: Path) -> None:
        (tmp_path / "pipeline.yaml").write_text(YAML)
        config = Config.from_env(tmp_path)

        assert config.target.slug == "contoso/corporate-website"
        assert config.target.baseline == "develop"
        assert config.meeting_title == "Weekly Sync"
        assert config.backend == "anthropic"
        assert config.port == 4000
        assert config.stages.analyze.max_concurrency == 8
        assert config.stages.analyze.timeout == 120
        assert config.tracker.labels == ["enhancement", "from-meeting"]
        assert config.dispatch.push_branches is True
        assert config.dispatch.max_depth == 2

    def test_env_overrides_yaml(self, clean_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        (tmp_path / "pipeline.yaml").write_text(YAML)
        monkeypatch.setenv("M2C_TARGET_REPO", "fabrikam/site")
        monkeypatch.setenv("M2C_PORT", "5050")
        monkeypatch.setenv("M2C_AGENT_BACKEND", "claude-cli")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        config = Config.from_env(tmp_path)

        assert config.target.slug == "fabrikam/site"
        assert config.target.baseline == "develop"
        assert config.port == 5050
        assert config.backend == "claude-cli"
        assert config.anthropic_api_key == "sk-test"

    def test_mock_mode_forces_mock_backend(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("M2C_MOCK_MODE", "true")
        config = Config.from_env(tmp_path)
        assert config.mock_mode is True
        assert config.backend == "mock"

    def test_missing_yaml_is_empty(self, tmp_path: Path) -> None:
        assert load_yaml(tmp_path / "missing.yaml") == {}


class TestValidate:
    """Tests for Config.validate."""

    def test_valid(self) -> None:
        config = Config(target=TargetRepoSettings(owner="contoso", name="site"))
        assert config.validate() == []

    def test_target_required_outside_mock_mode(self) -> None:
        errors = Config().validate()
        assert any("Target repository" in e for e in errors)
        assert Config(mock_mode=True, backend="mock").validate() == []

    def test_anthropic_needs_key(self) -> None:
        config = Config(backend="anthropic", target=TargetRepoSettings(owner="a", name="b"))
        assert any("ANTHROPIC_API_KEY" in e for e in config.validate())

    def test_bad_stage_policy(self) -> None:
        config = Config(target=TargetRepoSettings(owner="a", name="b"))
        config.stages.validate = StagePolicy(max_attempts=0, max_concurrency=0, timeout=0)
        errors = config.validate()
        assert len(errors) == 3


class TestProfiles:
    """Capability profiles built from config."""

    def test_meeting_profile_has_no_filesystem_tools(self) -> None:
        profile = Config().meeting_profile()
        assert profile.needs_tools
        assert "Bash" in profile.disallowed_tools
        assert profile.mcp_config()["mcpServers"]["workiq"]["command"] == "npx"

    def test_codebase_profile_uses_token(self) -> None:
        profile = Config(github_token="ghp_x").codebase_profile()
        github = profile.mcp_config()["mcpServers"]["github"]
        assert github["type"] == "http"
        assert github["headers"]["Authorization"] == "Bearer ghp_x"

    def test_no_tools_profile(self) -> None:
        assert Config.no_tools_profile().needs_tools is False

    def test_repo_path(self, tmp_path: Path) -> None:
        config = Config(workspace_dir=tmp_path, target=TargetRepoSettings(owner="a", name="site"))
        assert config.repo_path == tmp_path / "site"
        config.target.local_path = tmp_path / "elsewhere"
        assert config.repo_path == tmp_path / "elsewhere"
