"""Tests for prompt rendering."""

from __future__ import annotations

import pytest
from jinja2 import UndefinedError

from meeting2code import prompts
from meeting2code.config import TargetRepoSettings
from meeting2code.models import Complexity, GapItem, MeetingInfo, Requirement

TARGET = TargetRepoSettings(owner="contoso", name="website")
GAP = GapItem(
    id=2,
    requirement="Add a sitemap page to the footer",
    current_state="Footer has only a copyright line",
    gap="No sitemap page exists",
    complexity=Complexity.LOW,
    estimated_effort="1 hour",
    details="Add sitemap.html and link it from the footer",
)


class TestPrompts:
    """Tests for the prompt functions."""

    def test_meeting_request(self) -> None:
        text = prompts.meeting_request("Website Redesign")
        assert '"Website Redesign"' in text
        assert "Search again more broadly" not in text

    def test_broadened_meeting_request(self) -> None:
        text = prompts.meeting_request("Website Redesign", broadened=True)
        assert text.startswith("Your previous answer contained no usable requirements")
        assert "requirements: array of requirement strings" in text

    def test_gap_request_names_repo(self) -> None:
        text = prompts.gap_request(TARGET, Requirement(0, "Show the office address"))
        assert '"contoso/website"' in text
        assert '"Show the office address"' in text

    def test_issue_body_sections(self) -> None:
        body = prompts.issue_body(GAP)
        assert body.startswith("## Description\nAdd a sitemap page to the footer")
        assert "## Gap Analysis\nNo sitemap page exists" in body
        assert body.endswith("1 hour | Complexity: Low")

    def test_epic_body_lists_requirements(self) -> None:
        meeting = MeetingInfo(title="Website Redesign Sync", date="2024-05-02", participants=["Ana", "Ben"])
        body = prompts.epic_body(meeting, [Requirement(0, "Add a sitemap"), Requirement(1, "Use the brand font")])
        assert "Website Redesign Sync (2024-05-02)" in body
        assert "**Participants:** Ana, Ben" in body
        assert "- [ ] 2. Use the brand font" in body

    def test_epic_body_without_participants(self) -> None:
        body = prompts.epic_body(MeetingInfo(title="Sync"), [Requirement(0, "Add a sitemap")])
        assert "Participants" not in body
        assert "(None)" not in body

    def test_adjudicator_request(self) -> None:
        text = prompts.adjudicator_request("## Page: https://x.net", Requirement(2, "Show the office address"))
        assert text.startswith("## Evidence collected from the live deployed site\n\n## Page: https://x.net")
        assert 'Requirement #3: "Show the office address"' in text

    def test_missing_variable_raises(self) -> None:
        with pytest.raises(UndefinedError):
            prompts.render_template("gap_request.j2", repo="contoso/website")
