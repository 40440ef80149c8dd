"""Dispatch stage: local coding agents that edit the working copy.

Gaps are processed one at a time because they share a single working
copy. Each gap starts from a clean baseline on its own feature branch.
"""

from __future__ import annotations

import asyncio
import logging

from .config import Config
from .dashboard.events import Emit, EventType, null_emit
from .errors import WorkspaceError
from .models import CodeChangeResult, GapItem
from .parsing import extract_file_edits
from .process import sanitize_error
from .prompts import dispatch_request, dispatch_system
from .session import SessionConfig, agent_session
from .workspace import Workspace, branch_name, build_file_context

logger = logging.getLogger(__name__)


class LocalAgent:
    """Implements gaps in the local clone and commits each to a feature branch."""

    def __init__(self, sessions, config: Config, workspace: Workspace):
        self.sessions = sessions
        self.config = config
        self.workspace = workspace

    async def _restore(self, branch: str) -> None:
        """Return to the baseline and drop ``branch``."""
        try:
            await asyncio.to_thread(self.workspace.reset_to_baseline)
            await asyncio.to_thread(self.workspace.delete_branches, [branch])
        except WorkspaceError as e:
            logger.error(f"Could not restore working copy after {branch}: {e}")

    async def implement(self, gap: GapItem, emit: Emit = null_emit) -> CodeChangeResult:
        """Implement one gap. Raises on any failure; ``run`` converts it."""
        ws = self.workspace
        settings = self.config.dispatch
        policy = self.config.stages.dispatch

        def progress(message: str) -> None:
            emit(EventType.ITEM_PROGRESS, {"id": gap.id, "message": message})

        branch = branch_name(gap.id, gap.requirement)
        await asyncio.to_thread(ws.reset_to_baseline)
        progress(f"Creating branch {branch} in local clone...")
        await asyncio.to_thread(ws.create_branch, branch)

        progress("Reading files from local clone...")
        files = await asyncio.to_thread(ws.snapshot, settings)
        file_context = build_file_context(files, settings.context_cap)
        emit(EventType.LOG, {"message": f"Read {len(files)} files from local clone ({len(file_context)} chars of context)"})

        progress("Sending implementation request to agent...")
        session_config = SessionConfig(
            profile=self.config.codebase_profile(),
            system_message=dispatch_system(self.config.target),
            label=f"dispatch-{gap.id}",
            model=self.config.model_for(policy),
            working_dir=ws.path,
            on_log=progress,
        )
        async with agent_session(self.sessions, session_config) as session:
            response = await session.send_and_wait(
                dispatch_request(self.config.target, gap, file_context), policy.timeout
            )

        progress("Applying changes to local clone...")
        edits = extract_file_edits(response.content)
        if edits:
            written = await asyncio.to_thread(ws.write_files, edits)
        else:
            written = await asyncio.to_thread(ws.changed_files)
            if written:
                emit(EventType.LOG, {"message": f"No file blocks in reply; agent edited {len(written)} file(s) directly"})

        commit = await asyncio.to_thread(ws.commit_all, f"Implement gap #{gap.id}: {gap.requirement[:60]}")
        if commit is None:
            await self._restore(branch)
            summary = response.content.strip()[:500] or "Agent responded but no file changes were made."
            return CodeChangeResult(gap_id=gap.id, success=True, summary=f"No changes: {summary}")

        if settings.push_branches:
            progress(f"Pushing {branch}...")
            await asyncio.to_thread(ws.push, branch)

        return CodeChangeResult(
            gap_id=gap.id,
            success=True,
            summary=f"Applied {len(written)} file change(s) to branch {branch}: {', '.join(written)}",
            files=written,
            branch=branch,
        )

    async def run(self, gaps: list[GapItem], emit: Emit = null_emit) -> list[CodeChangeResult]:
        """Dispatch every gap sequentially.

        Returns:
            One result per gap. A failed gap (timeout, unsafe path, git error)
            yields ``success=False`` and the working copy is reset.

        Raises:
            WorkspaceError: The clone could not be prepared at all.
        """
        total = len(gaps)
        emit(EventType.LOG, {"message": f"Starting local agent execution for {total} gap(s)..."})
        if gaps:
            emit(EventType.ITEM_PROGRESS, {"id": gaps[0].id, "message": "Preparing local clone..."})
        await asyncio.to_thread(self.workspace.ensure_clone)

        results = []
        for position, gap in enumerate(gaps, start=1):
            emit(EventType.LOG, {"message": f"Gap {position}/{total}: {gap.requirement[:80]}"})
            emit(EventType.ITEM_START, {"id": gap.id, "requirement": gap.requirement})
            try:
                result = await self.implement(gap, emit)
            except Exception as e:
                message = sanitize_error(str(e) or type(e).__name__)[:300]
                logger.error(f"Gap #{gap.id} failed: {message}")
                emit(EventType.LOG, {"message": f"✘ Gap #{gap.id} failed: {message[:200]}", "level": "error"})
                await self._restore(branch_name(gap.id, gap.requirement))
                result = CodeChangeResult(gap_id=gap.id, success=False, summary=message)
            else:
                emit(EventType.LOG, {"message": f"✔ Gap #{gap.id}: {result.summary[:200]}"})
            emit(EventType.ITEM_COMPLETE, result.to_dict())
            results.append(result)

        await asyncio.to_thread(self.workspace.reset_to_baseline)
        succeeded = sum(1 for r in results if r.success)
        emit(EventType.LOG, {"message": f"✔ Local agent done: {succeeded}/{total} gaps completed successfully"})
        return results
