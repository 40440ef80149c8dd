"""Analyze stage: compare each requirement against the target codebase."""

from __future__ import annotations

import logging

from .config import Config
from .dashboard.events import Emit, EventType, null_emit
from .models import Complexity, GapItem, Requirement
from .parsing import extract_json_object
from .pool import run_pool
from .process import sanitize_error
from .prompts import gap_request, gap_system
from .session import SessionConfig, agent_session

logger = logging.getLogger(__name__)


def gap_from_reply(requirement: Requirement, parsed: dict) -> GapItem:
    """Build a gap from a parsed reply, filling missing fields with defaults."""
    return GapItem(
        id=requirement.number,
        requirement=str(parsed.get("requirement") or requirement.text),
        current_state=str(parsed.get("currentState") or parsed.get("current_state") or "Not assessed"),
        gap=str(parsed.get("gap") or "Unknown"),
        complexity=Complexity.parse(parsed.get("complexity")),
        estimated_effort=str(parsed.get("estimatedEffort") or parsed.get("estimated_effort") or "TBD"),
        details=str(parsed.get("details") or "No details available"),
    )


class GapAnalyzer:
    """Runs one codebase-profile session per requirement through the pool."""

    def __init__(self, sessions, config: Config):
        self.sessions = sessions
        self.config = config

    async def analyze_one(self, requirement: Requirement, emit: Emit = null_emit) -> GapItem:
        """Analyze a single requirement. Raises on session or transport errors."""
        policy = self.config.stages.analyze
        session_config = SessionConfig(
            profile=self.config.codebase_profile(),
            system_message=gap_system(self.config.target),
            label=f"gap-{requirement.number}",
            model=self.config.model_for(policy),
            on_log=lambda message: emit(EventType.LOG, {"message": f"[gap {requirement.number}] {message}"}),
        )
        async with agent_session(self.sessions, session_config) as session:
            response = await session.send_and_wait(gap_request(self.config.target, requirement), policy.timeout)
        return gap_from_reply(requirement, extract_json_object(response.content))

    async def analyze(self, requirements: list[Requirement], emit: Emit = null_emit) -> list[GapItem]:
        """Analyze every requirement with bounded concurrency.

        Args:
            requirements: Requirements to analyze; ids follow their indices.
            emit: Event callback.

        Returns:
            One gap per requirement, in input order. Failed analyses come back
            as degraded gaps rather than raising.
        """
        total = len(requirements)
        ceiling = self.config.stages.analyze.max_concurrency
        completed = 0

        emit(EventType.PROGRESS, {"step": 3, "message": f"Analyzing {self.config.target.slug}..."})
        emit(EventType.LOG, {
            "message": f"Starting parallel gap analysis ({min(ceiling, total)} concurrent sessions)...",
        })
        logger.info(f"Analyzing {total} requirement(s), concurrency {ceiling}")

        async def worker(requirement: Requirement) -> GapItem:
            nonlocal completed
            emit(EventType.GAP_STARTED, {"id": requirement.number})
            emit(EventType.LOG, {"message": f"🔍 [{requirement.number}/{total}] Analyzing: {requirement.short()}"})
            try:
                gap = await self.analyze_one(requirement, emit)
            except Exception as e:
                logger.error(f"Analysis of requirement #{requirement.number} failed: {e}")
                gap = GapItem.degraded(requirement, sanitize_error(str(e) or type(e).__name__))
            completed += 1
            emit(EventType.GAP, {"gap": gap.to_dict()})
            emit(EventType.LOG, {"message": f"✔ [{completed}/{total}] Done: {requirement.short()}"})
            return gap

        def on_error(requirement: Requirement, error: BaseException) -> GapItem:
            return GapItem.degraded(requirement, str(error))

        gaps = await run_pool(requirements, worker, ceiling, on_error=on_error)

        emit(EventType.PROGRESS, {"step": 4, "message": "Analysis complete"})
        emit(EventType.LOG, {"message": f"✔ Analysis complete: {len(gaps)} gaps identified"})
        return gaps
