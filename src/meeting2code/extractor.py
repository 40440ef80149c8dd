"""Extract stage: pull actionable requirements out of a meeting."""

from __future__ import annotations

import logging
from typing import Optional

from .config import Config
from .dashboard.events import Emit, EventType, null_emit
from .errors import CapabilityConnectionError, NoRequirementsFound
from .issue_tracker import IssueTracker
from .models import MeetingInfo, Requirement
from .parsing import extract_requirements
from .prompts import meeting_request, meeting_system
from .session import AgentSession, SessionConfig, agent_session

logger = logging.getLogger(__name__)


class Extractor:
    """Reads one meeting through the meeting-source connector.

    States: connecting, fetching, extracting, then at most
    ``stages.extract.max_attempts - 1`` broadened retries in the same session.
    """

    def __init__(self, sessions, config: Config, tracker: Optional[IssueTracker] = None):
        """Initialize the extractor.

        Args:
            sessions: Session factory (``SessionFactory`` or ``MockSessionFactory``).
            config: Pipeline configuration.
            tracker: Used to file the optional epic issue.
        """
        self.sessions = sessions
        self.config = config
        self.tracker = tracker

    async def _ask(self, session: AgentSession, title: str, emit: Emit) -> tuple[list[str], dict, str]:
        policy = self.config.stages.extract
        content = ""
        for attempt in range(policy.max_attempts):
            broadened = attempt > 0
            if broadened:
                emit(EventType.LOG, {"message": "No requirements found; retrying with a broader search..."})
                logger.info("Retrying extraction with broadened request")
            response = await session.send_and_wait(meeting_request(title, broadened=broadened), policy.timeout)
            content = response.content or ""
            emit(EventType.LOG, {"message": f"Agent response received ({len(content)} chars)"})
            requirements, meta = extract_requirements(content)
            if requirements:
                return requirements, meta, content
        return [], {}, content

    async def extract(
        self, emit: Emit = null_emit, meeting_title: Optional[str] = None
    ) -> tuple[MeetingInfo, list[Requirement]]:
        """Extract requirements from the meeting titled ``meeting_title``.

        Returns:
            Tuple of (meeting info, requirements indexed from 0).

        Raises:
            CapabilityConnectionError: The meeting source could not be reached.
            NoRequirementsFound: Nothing usable after the broadened retry.
        """
        title = meeting_title or self.config.meeting_title

        def progress(step: int, message: str) -> None:
            emit(EventType.PROGRESS, {"step": step, "message": message})

        progress(0, "Connecting to meeting source...")
        session_config = SessionConfig(
            profile=self.config.meeting_profile(),
            system_message=meeting_system(title),
            label="extract-meeting",
            model=self.config.model_for(self.config.stages.extract),
            on_log=lambda message: emit(EventType.LOG, {"message": message}),
        )

        try:
            async with agent_session(self.sessions, session_config) as session:
                progress(1, "Fetching meeting...")
                emit(EventType.LOG, {"message": f'Searching for meeting "{title}"...'})
                texts, meta, raw = await self._ask(session, title, emit)
        except CapabilityConnectionError:
            raise
        except OSError as e:
            raise CapabilityConnectionError(f"Failed to connect to the meeting source: {e}") from e

        if not texts:
            emit(EventType.LOG, {"message": f"No requirements extracted. Raw response was: {raw[:200]}"})
            raise NoRequirementsFound(
                f'No requirements found in the meeting "{title}". The agent returned: "{raw[:100]}"'
            )

        requirements = [Requirement(index=i, text=text) for i, text in enumerate(texts)]
        participants = meta.get("participants")
        meeting = MeetingInfo(
            title=str(meta.get("title") or title),
            date=meta.get("date"),
            participants=[str(p) for p in participants] if isinstance(participants, list) else [],
            requirement_count=len(requirements),
        )
        emit(EventType.MEETING_INFO, meeting.to_dict())
        if meeting.participants:
            emit(EventType.LOG, {"message": f"Participants: {', '.join(meeting.participants)}"})

        progress(2, f"Extracted {len(requirements)} requirements from meeting")
        emit(EventType.REQUIREMENTS, {"requirements": texts})
        logger.info(f"Extracted {len(requirements)} requirements from '{meeting.title}'")

        if self.tracker is not None and self.config.tracker.create_epic:
            await self._create_epic(meeting, requirements, emit)

        progress(3, "Requirements ready")
        return meeting, requirements

    async def _create_epic(self, meeting: MeetingInfo, requirements: list[Requirement], emit: Emit) -> None:
        epic = await self.tracker.create_epic(meeting, requirements)
        if epic.created:
            emit(EventType.EPIC_CREATED, {"number": epic.number, "url": epic.url})
            emit(EventType.LOG, {"message": f"✔ Epic #{epic.number} created"})
        else:
            logger.warning(f"Epic creation failed: {epic.error}")
            emit(EventType.LOG, {"message": f"⚠ Epic creation failed: {epic.error}", "level": "warning"})
