"""Tracked work items and hosted coding-agent assignment via the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

from .config import TargetRepoSettings, TrackerSettings
from .dashboard.events import Emit, EventType, null_emit
from .errors import ExternalProcessFailure
from .models import AssignResult, CreatedIssue, GapItem, MeetingInfo, Requirement
from .process import ProcessResult, ProcessRunner, sanitize_error
from .prompts import epic_body, issue_body

logger = logging.getLogger(__name__)

ISSUE_URL_RE = re.compile(r"/issues/(\d+)")
GITHUB_API_VERSION = "2022-11-28"


def parse_issue_number(output: str) -> int:
    """Issue number from ``gh issue create`` output, or 0 when there is none."""
    match = ISSUE_URL_RE.search(output)
    return int(match.group(1)) if match else 0


def is_agent_login(login: Optional[str]) -> bool:
    if not login:
        return False
    return login == "Copilot" or "copilot" in login or "swe-agent" in login


class GhCli:
    """Argument construction for the GitHub CLI."""

    def __init__(self, runner: ProcessRunner, repo: str, timeout: float = 30.0):
        self.runner = runner
        self.repo = repo
        self.timeout = timeout

    async def create_issue(self, title: str, body: str, labels: list[str]) -> ProcessResult:
        args = ["gh", "issue", "create", "--title", title, "--body", body]
        for label in labels:
            args += ["--label", label]
        args += ["-R", self.repo]
        return await self.runner.run(args, timeout=self.timeout)

    async def add_assignees(self, issue_number: int, payload: dict) -> ProcessResult:
        args = [
            "gh", "api",
            "--method", "POST",
            "-H", "Accept: application/vnd.github+json",
            "-H", f"X-GitHub-Api-Version: {GITHUB_API_VERSION}",
            f"/repos/{self.repo}/issues/{issue_number}/assignees",
            "--input", "-",
        ]
        return await self.runner.run(args, timeout=self.timeout, input=json.dumps(payload))


class IssueTracker:
    """Files one issue per gap and hands issues to the hosted coding agent."""

    def __init__(self, gh: GhCli, settings: TrackerSettings, target: TargetRepoSettings):
        self.gh = gh
        self.settings = settings
        self.target = target

    def title_for(self, gap: GapItem) -> str:
        return f"{self.settings.title_prefix} {gap.requirement}"

    async def _file(self, item_id: int, title: str, body: str) -> CreatedIssue:
        try:
            result = await self.gh.create_issue(title, body, self.settings.labels)
        except ExternalProcessFailure as e:
            return CreatedIssue(id=item_id, title=title, error=sanitize_error(str(e))[:200])

        if result.stderr.strip():
            logger.debug(f"gh stderr for item {item_id}: {result.stderr.strip()[:200]}")
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            return CreatedIssue(id=item_id, title=title, error=sanitize_error(detail)[:200])

        url = result.stdout.strip()
        number = parse_issue_number(url)
        if number == 0:
            return CreatedIssue(id=item_id, title=title, error=f"Unexpected CLI output: {url[:100]}")
        return CreatedIssue(id=item_id, title=title, number=number, url=url)

    async def create_issues(self, gaps: list[GapItem], emit: Emit = null_emit) -> list[CreatedIssue]:
        """Create one issue per gap, in order. Failures become ``number == 0`` items."""
        total = len(gaps)

        def log(message: str) -> None:
            logger.info(message)
            emit(EventType.LOG, {"message": message})

        emit(EventType.PROGRESS, {"current": 0, "total": total, "message": "Connecting to GitHub..."})
        log(f"Creating {total} issue(s) in {self.target.slug} via gh CLI...")

        issues: list[CreatedIssue] = []
        for position, gap in enumerate(gaps, start=1):
            label = gap.requirement if len(gap.requirement) <= 50 else gap.requirement[:50] + "..."
            emit(EventType.PROGRESS, {
                "current": position, "total": total, "message": f"Creating issue {position}/{total}: {label}",
            })
            issue = await self._file(gap.id, self.title_for(gap), issue_body(gap))
            if issue.created:
                log(f"✔ Issue #{issue.number} created: {issue.title[:60]}")
            else:
                log(f"✘ Issue for gap {gap.id} failed: {issue.error}")
            issues.append(issue)
            emit(EventType.ISSUE, {"issue": issue.to_dict()})

        created = sum(1 for issue in issues if issue.created)
        if created < total:
            log(f"⚠ Done: {created}/{total} issues created, {total - created} failed")
        else:
            log(f"✔ Done: {created} issues created successfully")
        return issues

    async def create_epic(self, meeting: MeetingInfo, requirements: list[Requirement]) -> CreatedIssue:
        """File a single tracking issue listing every extracted requirement."""
        title = f"{self.settings.title_prefix} Epic: {meeting.title}"
        return await self._file(0, title, epic_body(meeting, requirements))

    def assignment_payload(self) -> dict:
        return {
            "assignees": [self.settings.coding_agent],
            "agent_assignment": {
                "target_repo": self.target.slug,
                "base_branch": self.target.baseline,
                "custom_instructions": "",
                "custom_agent": "",
                "model": "",
            },
        }

    async def _assign_one(self, issue_number: int) -> AssignResult:
        try:
            result = await self.gh.add_assignees(issue_number, self.assignment_payload())
        except ExternalProcessFailure as e:
            return AssignResult(issue_number, False, sanitize_error(str(e))[:200])

        try:
            response = json.loads(result.stdout)
        except json.JSONDecodeError:
            message = result.stdout.strip() or result.stderr.strip() or "Request completed"
            assigned = result.ok and "error" not in result.stderr.lower()
            return AssignResult(issue_number, assigned, sanitize_error(message)[:200])

        logins = [a.get("login") for a in response.get("assignees") or [] if isinstance(a, dict)]
        if any(is_agent_login(login) for login in logins):
            return AssignResult(issue_number, True, "Coding agent assigned successfully")
        return AssignResult(issue_number, False, f"Assignees: {', '.join(filter(None, logins)) or 'none'}")

    async def assign_coding_agent(self, issue_numbers: list[int], emit: Emit = null_emit) -> list[AssignResult]:
        """Assign the hosted coding agent to each issue. Per-issue failures are not fatal."""
        total = len(issue_numbers)
        emit(EventType.PROGRESS, {"current": 0, "total": total, "message": "Connecting to GitHub..."})
        logger.info(f"Assigning {self.settings.coding_agent} to {total} issue(s)")

        results = []
        for position, number in enumerate(issue_numbers, start=1):
            emit(EventType.PROGRESS, {
                "current": position, "total": total, "message": f"Assigning coding agent to issue #{number}...",
            })
            result = await self._assign_one(number)
            marker = "✔" if result.assigned else "⚠"
            logger.info(f"#{number} assigned={result.assigned}")
            emit(EventType.LOG, {"message": f"{marker} #{number}: {result.message}"})
            emit(EventType.RESULT, {"result": result.to_dict()})
            results.append(result)

        assigned = sum(1 for r in results if r.assigned)
        emit(EventType.LOG, {"message": f"✔ Done: {assigned}/{total} issues assigned"})
        return results
