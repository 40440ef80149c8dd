"""Local working copy of the target repository.

Wraps GitPython for the clone that Dispatch edits and Deploy ships. All
methods are blocking; async callers run them with ``asyncio.to_thread``.
The working copy is mutated in place, so callers must not use it from two
tasks at once.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .config import DispatchSettings
from .errors import PathSafetyViolation, WorkspaceError

logger = logging.getLogger(__name__)

FEATURE_PREFIX = "feature/gap-"


@dataclass(frozen=True)
class SourceFile:
    """A file read from the working copy for agent context."""

    path: str
    content: str


def branch_name(gap_id: int, requirement: str) -> str:
    """Feature branch for a gap: ``feature/gap-<id>-<slug of first 30 chars>``."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", requirement[:30]).lower()
    return f"{FEATURE_PREFIX}{gap_id}-{slug}"


def build_file_context(files: list[SourceFile], cap: int = 50_000) -> str:
    """Concatenate file blocks until adding the next one would exceed ``cap`` characters."""
    parts = []
    total = 0
    for f in files:
        block = f"\n--- FILE: {f.path} ---\n{f.content}\n"
        if total + len(block) > cap:
            break
        parts.append(block)
        total += len(block)
    return "".join(parts)


class Workspace:
    """Manages the on-disk clone of the target repository."""

    def __init__(self, path: Path, clone_url: Optional[str] = None, baseline: str = "main", remote: str = "origin"):
        """Initialize workspace.

        Args:
            path: Directory of the working copy (created by ``ensure_clone``).
            clone_url: URL or path cloned when the directory has no repository yet.
            baseline: Branch every gap starts from.
            remote: Name of the remote holding the baseline.
        """
        self.path = Path(path)
        self.clone_url = clone_url
        self.baseline = baseline
        self.remote = remote
        self._repo: Optional[git.Repo] = None

    @property
    def repo(self) -> git.Repo:
        if self._repo is None:
            try:
                self._repo = git.Repo(self.path)
            except (InvalidGitRepositoryError, NoSuchPathError) as exc:
                raise WorkspaceError(f"Not a git repository: {self.path}") from exc
        return self._repo

    @property
    def exists(self) -> bool:
        return (self.path / ".git").exists()

    def _has_remote_baseline(self) -> bool:
        try:
            refs = self.repo.remote(self.remote).refs
        except ValueError:
            return False
        return any(ref.remote_head == self.baseline for ref in refs)

    @property
    def baseline_ref(self) -> str:
        return f"{self.remote}/{self.baseline}" if self._has_remote_baseline() else self.baseline

    def ensure_clone(self) -> None:
        """Clone if needed, then fetch and reset hard to the remote baseline.

        Raises:
            WorkspaceError: Clone or reset failed.
        """
        try:
            if not self.exists:
                if not self.clone_url:
                    raise WorkspaceError(f"No clone at {self.path} and no clone URL configured")
                logger.info(f"Cloning {self.clone_url} to {self.path}")
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._repo = git.Repo.clone_from(self.clone_url, self.path)
            if any(r.name == self.remote for r in self.repo.remotes):
                self.repo.remote(self.remote).fetch()
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to prepare clone at {self.path}: {exc}") from exc
        self.reset_to_baseline()
        logger.info(f"Working copy at {self.path} is clean on {self.baseline}")

    def reset_to_baseline(self) -> None:
        """Force-checkout the baseline, reset hard to the remote and drop untracked files."""
        try:
            if self._has_remote_baseline():
                self.repo.git.checkout("-B", self.baseline, f"{self.remote}/{self.baseline}", force=True)
            else:
                self.repo.git.checkout(self.baseline, force=True)
            self.repo.git.reset("--hard", self.baseline_ref)
            self.repo.git.clean("-fd")
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to reset to {self.baseline}: {exc}") from exc

    def checkout_baseline(self) -> None:
        """Switch to the baseline branch, keeping uncommitted edits."""
        try:
            self.repo.git.checkout(self.baseline)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to check out {self.baseline}: {exc}") from exc

    def current_branch(self) -> str:
        return self.repo.active_branch.name

    def create_branch(self, name: str) -> None:
        """Create (or recreate) ``name`` at the current commit and check it out."""
        try:
            self.repo.git.checkout("-B", name)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to create branch {name}: {exc}") from exc
        logger.info(f"Created local branch: {name}")

    def snapshot(self, settings: DispatchSettings) -> list[SourceFile]:
        """Read source files for agent context.

        Only files with a configured extension, under ``max_file_bytes``, at
        most ``max_depth`` directories deep and outside ignored directories.
        """
        files: list[SourceFile] = []
        extensions = tuple(settings.extensions)
        ignored = set(settings.ignore_dirs)

        for dirpath, dirnames, filenames in os.walk(self.path):
            rel_dir = Path(dirpath).relative_to(self.path)
            depth = len(rel_dir.parts)
            dirnames[:] = sorted(d for d in dirnames if d not in ignored and depth < settings.max_depth)
            for filename in sorted(filenames):
                if not filename.endswith(extensions):
                    continue
                full = Path(dirpath) / filename
                try:
                    if full.stat().st_size >= settings.max_file_bytes:
                        continue
                    content = full.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue
                files.append(SourceFile(path=(rel_dir / filename).as_posix(), content=content))
        return files

    def resolve_safe(self, rel_path: str) -> Path:
        """Resolve ``rel_path`` inside the working copy.

        Raises:
            PathSafetyViolation: The path is absolute, escapes the root or targets ``.git``.
        """
        root = self.path.resolve()
        candidate = Path(rel_path)
        if candidate.is_absolute():
            raise PathSafetyViolation(rel_path, str(root))
        resolved = (root / candidate).resolve()
        try:
            relative = resolved.relative_to(root)
        except ValueError:
            raise PathSafetyViolation(rel_path, str(root))
        if not relative.parts or relative.parts[0] == ".git":
            raise PathSafetyViolation(rel_path, str(root))
        return resolved

    def write_files(self, edits: dict[str, str]) -> list[str]:
        """Write full-file rewrites. Every path is checked before anything is written.

        Returns:
            The relative paths written, in input order.
        """
        targets = [(path, self.resolve_safe(path), content) for path, content in edits.items()]
        for rel, target, content in targets:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content + "\n", encoding="utf-8")
            logger.info(f"Wrote: {rel}")
        return [rel for rel, _, _ in targets]

    def has_changes(self) -> bool:
        return self.repo.is_dirty(untracked_files=True)

    def changed_files(self) -> list[str]:
        """Paths with uncommitted changes, including untracked files."""
        output = self.repo.git.status("--porcelain", "--untracked-files=all")
        paths = []
        for line in output.splitlines():
            if len(line) > 3:
                path = line[3:].strip()
                if " -> " in path:
                    path = path.split(" -> ", 1)[1]
                paths.append(path.strip('"'))
        return paths

    def commit_all(self, message: str) -> Optional[str]:
        """Stage everything and commit.

        Returns:
            Short commit hash, or None when there was nothing to commit.
        """
        try:
            self.repo.git.add(all=True)
            if not self.has_changes():
                logger.info("No changes to commit")
                return None
            commit = self.repo.index.commit(message)
        except GitCommandError as exc:
            raise WorkspaceError(f"Commit failed: {exc}") from exc
        logger.info(f"Committed: {commit.hexsha[:8]} - {message[:50]}")
        return commit.hexsha[:8]

    def push(self, branch: str) -> None:
        try:
            self.repo.git.push(self.remote, branch, force=True)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to push {branch}: {exc}") from exc
        logger.info(f"Pushed branch {branch} to {self.remote}")

    def feature_branches(self) -> list[str]:
        return sorted(head.name for head in self.repo.heads if head.name.startswith(FEATURE_PREFIX))

    def merge(self, branch: str) -> bool:
        """Merge ``branch`` into the current branch; abort and return False on conflict."""
        try:
            self.repo.git.merge(branch, "--no-edit", "-m", f"Merge {branch} into {self.baseline} for deploy")
            return True
        except GitCommandError as exc:
            logger.warning(f"Merge of {branch} failed, aborting: {exc}")
            try:
                self.repo.git.merge("--abort")
            except GitCommandError:
                self.repo.git.reset("--hard", "HEAD")
            return False

    def delete_branches(self, names: list[str]) -> None:
        for name in names:
            try:
                self.repo.git.branch("-D", name)
                logger.info(f"Deleted local branch {name}")
            except GitCommandError as exc:
                logger.warning(f"Could not delete branch {name}: {exc}")

    def reset_target_repo(self) -> list[str]:
        """Restore the baseline and delete local feature branches.

        Returns:
            Names of the deleted branches.
        """
        self.ensure_clone()
        branches = self.feature_branches()
        self.delete_branches(branches)
        return branches
