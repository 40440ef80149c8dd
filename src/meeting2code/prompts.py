"""Prompt and script templates.

Templates live in ``meeting2code/templates`` and are rendered with Jinja2.
Undefined variables raise instead of rendering as empty strings.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from jinja2 import Environment, PackageLoader, StrictUndefined

if TYPE_CHECKING:
    from .config import TargetRepoSettings
    from .models import GapItem, MeetingInfo, Requirement

logger = logging.getLogger(__name__)

_env = Environment(
    loader=PackageLoader("meeting2code", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=False,
    trim_blocks=True,
    lstrip_blocks=True,
    autoescape=False,
)


def render_template(name: str, /, **context) -> str:
    """Render a template by file name.

    Args:
        name: Template file name inside the templates directory.
        **context: Template variables.

    Returns:
        Rendered text, stripped of surrounding whitespace.
    """
    logger.debug(f"Rendering template '{name}'")
    return _env.get_template(name).render(**context).strip()


def meeting_system(meeting_title: str) -> str:
    return render_template("extract_system.j2", meeting_title=meeting_title)


def meeting_request(meeting_title: str, broadened: bool = False) -> str:
    """Structured extraction request; ``broadened`` asks for a wider search."""
    return render_template("extract_request.j2", meeting_title=meeting_title, broadened=broadened)


def gap_system(target: TargetRepoSettings) -> str:
    return render_template("gap_system.j2", repo=target.slug)


def gap_request(target: TargetRepoSettings, requirement: Requirement) -> str:
    return render_template("gap_request.j2", repo=target.slug, requirement=requirement.text)


def dispatch_system(target: TargetRepoSettings) -> str:
    return render_template("dispatch_system.j2", repo=target.slug, owner=target.owner, name=target.name)


def dispatch_request(target: TargetRepoSettings, gap: GapItem, file_context: str) -> str:
    return render_template(
        "dispatch_request.j2",
        repo=target.slug,
        owner=target.owner,
        name=target.name,
        gap=gap,
        file_context=file_context,
    )


def adjudicator_system() -> str:
    return render_template("adjudicator_system.j2")


def adjudicator_request(evidence: str, requirement: Requirement) -> str:
    return render_template(
        "adjudicator_request.j2",
        evidence=evidence,
        number=requirement.number,
        requirement=requirement.text,
    )


def issue_body(gap: GapItem) -> str:
    return render_template("issue_body.j2", gap=gap)


def epic_body(meeting: MeetingInfo, requirements: list[Requirement]) -> str:
    return render_template("epic_body.j2", meeting=meeting, requirements=requirements)
