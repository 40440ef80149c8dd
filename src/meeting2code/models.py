"""Data model shared by every pipeline stage.

Cross-stage joins are by index/id: ``GapItem.id`` is the requirement index
plus one, and ``CodeChangeResult.gap_id``, ``CreatedIssue.id`` and
``ValidationResult.requirement_index`` point back to the same requirement.
``to_dict()`` renders the camelCase shape streamed to the frontend.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import FailureKind


class Complexity(str, Enum):
    """Implementation complexity of a gap."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @classmethod
    def parse(cls, value: Any) -> Complexity:
        """Parse a loosely formatted complexity label, defaulting to Medium."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if text.startswith(member.value.lower()):
                return member
        return cls.MEDIUM


class Stage(str, Enum):
    """Pipeline stage currently (or last) running."""

    IDLE = "idle"
    EXTRACT = "extract"
    ANALYZE = "analyze"
    ISSUES = "issues"
    DISPATCH = "dispatch"
    DEPLOY = "deploy"
    VALIDATE = "validate"
    FAILED = "failed"


NO_GAP_MARKERS = ("no gap", "fully met", "already implemented", "already met")


@dataclass(frozen=True)
class Requirement:
    """One actionable item extracted from a meeting."""

    index: int
    text: str

    @property
    def number(self) -> int:
        """1-based position, used as the gap id."""
        return self.index + 1

    def short(self, limit: int = 50) -> str:
        """Truncated label for log lines."""
        return self.text if len(self.text) <= limit else self.text[:limit] + "..."

    def to_dict(self) -> dict:
        return {"index": self.index, "text": self.text}


@dataclass
class MeetingInfo:
    """Metadata about the meeting the requirements came from."""

    title: str
    date: Optional[str] = None
    participants: list[str] = field(default_factory=list)
    requirement_count: int = 0

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "date": self.date,
            "participants": self.participants,
            "requirementCount": self.requirement_count,
        }


@dataclass(frozen=True)
class GapItem:
    """Comparison of one requirement against the target codebase."""

    id: int
    requirement: str
    current_state: str
    gap: str
    complexity: Complexity = Complexity.MEDIUM
    estimated_effort: str = "TBD"
    details: str = ""

    @property
    def requirement_index(self) -> int:
        return self.id - 1

    @property
    def has_gap(self) -> bool:
        text = self.gap.strip().lower()
        return not any(text.startswith(marker) or marker in text[:80] for marker in NO_GAP_MARKERS)

    @classmethod
    def degraded(cls, requirement: Requirement, error: str) -> GapItem:
        """Placeholder gap for a requirement whose analysis failed."""
        return cls(
            id=requirement.number,
            requirement=requirement.text,
            current_state="Analysis failed",
            gap=f"Error: {error}"[:200],
            complexity=Complexity.MEDIUM,
            estimated_effort="TBD",
            details="Retry recommended",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requirement": self.requirement,
            "currentState": self.current_state,
            "gap": self.gap,
            "complexity": self.complexity.value,
            "estimatedEffort": self.estimated_effort,
            "details": self.details,
            "hasGap": self.has_gap,
        }


@dataclass(frozen=True)
class CreatedIssue:
    """A tracked work item filed for a gap. ``number == 0`` marks a failure."""

    id: int
    title: str
    number: int = 0
    url: str = "#"
    error: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.number > 0

    def to_dict(self) -> dict:
        data = {"id": self.id, "title": self.title, "number": self.number, "url": self.url}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class AssignResult:
    """Acknowledgment of a hosted coding-agent assignment."""

    issue_number: int
    assigned: bool
    message: str

    def to_dict(self) -> dict:
        return {"issueNumber": self.issue_number, "assigned": self.assigned, "message": self.message}


@dataclass(frozen=True)
class CodeChangeResult:
    """Outcome of dispatching one gap to a local coding agent."""

    gap_id: int
    success: bool
    summary: str
    files: list[str] = field(default_factory=list)
    branch: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.gap_id,
            "success": self.success,
            "summary": self.summary,
            "files": list(self.files),
            "branch": self.branch,
        }


@dataclass(frozen=True)
class DeployResult:
    """Outcome of a deployment run."""

    success: bool
    message: str
    url: Optional[str] = None
    error_type: Optional[FailureKind] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"success": self.success, "message": self.message, "url": self.url}
        if self.error_type is not None:
            data["errorType"] = self.error_type.value
        return data


@dataclass(frozen=True)
class ValidationResult:
    """Verdict for one requirement against a deployed site."""

    requirement_index: int
    requirement: str
    passed: bool
    details: str
    deterministic: bool = False

    def to_dict(self) -> dict:
        return {
            "requirementIndex": self.requirement_index,
            "requirement": self.requirement,
            "passed": self.passed,
            "details": self.details,
            "deterministic": self.deterministic,
        }


@dataclass(frozen=True)
class EvidenceAudit:
    """Structured fact sheet collected from a live page. Treat as read-only."""

    data: dict = field(default_factory=dict)

    @property
    def url(self) -> str:
        return self.data.get("url", "")

    @property
    def forms(self) -> list[dict]:
        return list(self.data.get("forms") or [])

    @property
    def pages(self) -> dict[str, dict]:
        return dict(self.data.get("pages") or {})

    @property
    def cookie_consent(self) -> dict:
        return dict(self.data.get("cookieConsent") or {})

    @property
    def fatal_error(self) -> Optional[str]:
        return self.data.get("fatalError")


@dataclass
class PipelineState:
    """Accumulated results of one pipeline run.

    A fresh instance is created for every Extract; stages then attach their
    results. Never shared between runs.
    """

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    stage: Stage = Stage.IDLE
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    meeting: Optional[MeetingInfo] = None
    requirements: list[Requirement] = field(default_factory=list)
    gaps: list[GapItem] = field(default_factory=list)
    issues: list[CreatedIssue] = field(default_factory=list)
    assignments: list[AssignResult] = field(default_factory=list)
    results: list[CodeChangeResult] = field(default_factory=list)
    deployment: Optional[DeployResult] = None
    verdicts: list[ValidationResult] = field(default_factory=list)

    def gaps_by_id(self, ids: list[int]) -> list[GapItem]:
        wanted = set(ids)
        return [gap for gap in self.gaps if gap.id in wanted]

    def requirements_by_index(self, indices: list[int]) -> list[Requirement]:
        wanted = set(indices)
        return [req for req in self.requirements if req.index in wanted]

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "stage": self.stage.value,
            "startedAt": self.started_at,
            "meeting": self.meeting.to_dict() if self.meeting else None,
            "requirements": [r.text for r in self.requirements],
            "gaps": [g.to_dict() for g in self.gaps],
            "issues": [i.to_dict() for i in self.issues],
            "assignments": [a.to_dict() for a in self.assignments],
            "results": [r.to_dict() for r in self.results],
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "verdicts": [v.to_dict() for v in self.verdicts],
        }
