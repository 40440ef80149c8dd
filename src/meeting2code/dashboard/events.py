"""Event protocol for streaming stage progress to the dashboard.

Each stage run owns one :class:`StageStream`. Stages push events through
an ``emit(event_type, data)`` callback; the stream ends with exactly one
terminal event (``complete`` or ``error``) and is then closed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..errors import ExternalProcessFailure, Meeting2CodeError
from ..process import sanitize_error

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Names of the events a stage can stream."""

    # Progress
    PROGRESS = "progress"
    LOG = "log"

    # Extract
    MEETING_INFO = "meeting-info"
    REQUIREMENTS = "requirements"
    EPIC_CREATED = "epic-created"

    # Analyze
    GAP_STARTED = "gap-started"
    GAP = "gap"

    # Issues and assignment
    ISSUE = "issue"
    RESULT = "result"

    # Dispatch
    ITEM_START = "item-start"
    ITEM_PROGRESS = "item-progress"
    ITEM_COMPLETE = "item-complete"

    # Validate and deploy
    VALIDATION_START = "validation-start"
    DEPLOY_URL = "deploy-url"

    # Terminal
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR)


Emit = Callable[[EventType, dict], None]


def null_emit(event_type: EventType, data: dict) -> None:
    """Emit callback that drops every event."""


@dataclass
class Event:
    """A single event sent to clients."""

    type: EventType
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps({
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        })

    def to_sse(self) -> str:
        """Serialize as one Server-Sent Events frame."""
        return f"event: {self.type.value}\ndata: {json.dumps(self.data, default=str)}\n\n"


StageBody = Callable[[Emit], Awaitable[Optional[dict]]]


class StageStream:
    """Ordered event stream for one stage run.

    ``start`` runs the stage body as a task. Whatever the body returns is
    sent as the ``complete`` payload; an exception becomes the ``error``
    payload. Events emitted after the terminal one are dropped.
    """

    def __init__(self, name: str):
        self.name = name
        self.closed = False
        self.history: list[Event] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def emit(self, event_type: EventType, data: Optional[dict] = None) -> None:
        """Queue an event. After the terminal event this is a logged no-op."""
        if self.closed:
            logger.debug(f"[{self.name}] Dropping {event_type.value} after terminal event")
            return
        event = Event(type=event_type, data=data or {})
        self.history.append(event)
        self._queue.put_nowait(event)
        if event_type.terminal:
            self.closed = True

    async def run(self, body: StageBody) -> None:
        """Run ``body`` to completion and emit the terminal event."""
        try:
            result = await body(self.emit)
        except Meeting2CodeError as e:
            logger.error(f"[{self.name}] Stage failed: {e}")
            payload = {
                "success": False,
                "error": sanitize_error(str(e)),
                "errorType": type(e).__name__,
            }
            if isinstance(e, ExternalProcessFailure):
                payload["kind"] = e.kind.value
            self.emit(EventType.ERROR, payload)
        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected stage error")
            self.emit(EventType.ERROR, {
                "success": False,
                "error": sanitize_error(str(e) or type(e).__name__),
                "errorType": type(e).__name__,
            })
        else:
            payload = {"success": True}
            payload.update(result or {})
            self.emit(EventType.COMPLETE, payload)

    def start(self, body: StageBody) -> asyncio.Task:
        self._task = asyncio.ensure_future(self.run(body))
        return self._task

    async def events(self) -> AsyncIterator[Event]:
        """Yield events in order, ending after the terminal event."""
        while True:
            event = await self._queue.get()
            yield event
            if event.type.terminal:
                return

    async def sse(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield event.to_sse()

    async def wait(self) -> Event:
        """Wait for the stage to finish and return its terminal event."""
        if self._task is not None:
            await self._task
        return self.history[-1]
