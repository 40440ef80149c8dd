"""Shared test fixtures for meeting2code tests."""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from meeting2code.config import Config, StagePolicies, StagePolicy, TargetRepoSettings, ValidationSettings
from meeting2code.dashboard.events import EventType
from meeting2code.workspace import Workspace

SITE_FILES = {
    "index.html": "<html><body><h1>Contoso</h1><form id=\"contact\"></form></body></html>\n",
    "css/site.css": "h1 { font-family: Arial; }\n",
    "README.md": "# Contoso corporate website\n",
}


class EventRecorder:
    """Emit callback that keeps every event for assertions."""

    def __init__(self):
        self.events: list[tuple[EventType, dict]] = []

    def __call__(self, event_type: EventType, data: dict) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: EventType) -> list[dict]:
        return [data for kind, data in self.events if kind == event_type]

    def types(self) -> list[EventType]:
        return [kind for kind, _ in self.events]


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    """Commit identity for temporary repositories."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Bare repository with a ``main`` branch holding a small static site."""
    bare = tmp_path / "origin.git"
    git.Repo.init(bare, bare=True)

    seed_path = tmp_path / "seed"
    seed = git.Repo.init(seed_path)
    seed.git.checkout("-b", "main")
    for rel, content in SITE_FILES.items():
        target = seed_path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    seed.git.add(all=True)
    seed.index.commit("Initial site")
    seed.create_remote("origin", str(bare))
    seed.git.push("origin", "main")
    git.Repo(bare).git.symbolic_ref("HEAD", "refs/heads/main")
    return bare


@pytest.fixture
def workspace(tmp_path: Path, origin_repo: Path) -> Workspace:
    """Fresh clone of ``origin_repo`` on a clean ``main``."""
    ws = Workspace(tmp_path / "clone", clone_url=str(origin_repo))
    ws.ensure_clone()
    return ws


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Mock-mode configuration with short stage deadlines."""
    return Config(
        config_dir=tmp_path / "config",
        workspace_dir=tmp_path / "workspace",
        backend="mock",
        mock_mode=True,
        target=TargetRepoSettings(owner="contoso", name="corporate-website"),
        stages=StagePolicies(
            extract=StagePolicy(max_attempts=2, timeout=5),
            analyze=StagePolicy(timeout=5, max_concurrency=2),
            dispatch=StagePolicy(timeout=5),
            validate=StagePolicy(timeout=5, max_concurrency=2),
            audit=StagePolicy(timeout=5),
        ),
        validation=ValidationSettings(harness_dir=tmp_path),
    )
