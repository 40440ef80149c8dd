"""Event streaming and HTTP surface for the meeting2code dashboard.

The FastAPI app lives in :mod:`meeting2code.dashboard.server`.
"""

from .events import (
    Emit,
    Event,
    EventType,
    StageStream,
    null_emit,
)

__all__ = [
    "Emit",
    "Event",
    "EventType",
    "StageStream",
    "null_emit",
]
