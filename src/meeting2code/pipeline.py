"""Pipeline: owns the run state and starts one stage at a time.

Every public stage method validates its inputs, takes the pipeline lock
and returns a :class:`StageStream` already running the stage. Starting a
stage while another runs raises :class:`PipelineBusy`.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Optional

from .config import Config
from .dashboard.events import Emit, StageBody, StageStream
from .deployer import AzdCli, Deployer
from .errors import ExternalProcessFailure, FailureKind, NoDataFound, PipelineBusy
from .evidence import AUDIT_END, AUDIT_START, EvidenceCollector, PlaywrightHarness
from .extractor import Extractor
from .gap_analyzer import GapAnalyzer
from .issue_tracker import GhCli, IssueTracker
from .local_agent import LocalAgent
from .models import PipelineState, Requirement, Stage
from .process import MockProcessRunner, ProcessResult, ProcessRunner
from .session import MockSessionFactory, SessionFactory
from .validator import Validator
from .workspace import Workspace

logger = logging.getLogger(__name__)


def cli_runner() -> ProcessRunner:
    """Runner for external CLIs: no pager, and the CLIs' own login instead of GITHUB_TOKEN."""
    return ProcessRunner(env={"GH_PAGER": "cat"}, drop_env=("GITHUB_TOKEN",))


def demo_runner(config: Config) -> MockProcessRunner:
    """Canned CLI output for ``--mock`` runs."""
    numbers = itertools.count(1)
    site = "https://mock-site.azurestaticapps.net"
    audit = {
        "url": site,
        "title": "Mock site",
        "forms": [],
        "pages": {},
        "cookieConsent": {"hasBanner": False},
    }
    return MockProcessRunner(responses={
        "gh issue create": lambda argv: f"https://github.com/{config.target.slug}/issues/{next(numbers)}\n",
        "gh api": json.dumps({"assignees": [{"login": "Copilot"}]}),
        "azd show": json.dumps({"services": {"web": {"endpoint": site}}}),
        "azd auth": "Logged in to Azure as mock@example.com",
        "npx playwright --version": "Version 1.49.0",
        "node": ProcessResult(args=[], exit_code=0, stdout=f"{AUDIT_START}\n{json.dumps(audit)}\n{AUDIT_END}\n"),
    })


class Pipeline:
    """Wires the stages together around one :class:`PipelineState`."""

    def __init__(
        self,
        config: Config,
        sessions=None,
        runner: Optional[ProcessRunner] = None,
        workspace: Optional[Workspace] = None,
    ):
        """Initialize the pipeline.

        Args:
            config: Pipeline configuration.
            sessions: Session factory; defaults to the configured backend.
            runner: Process runner for gh, azd, az, npx and node.
            workspace: Local clone of the target repository.
        """
        self.config = config
        if sessions is None:
            sessions = MockSessionFactory() if config.backend == "mock" else SessionFactory(config)
        if runner is None:
            runner = demo_runner(config) if config.mock_mode else cli_runner()
        self.sessions = sessions
        self.runner = runner
        self.workspace = workspace or Workspace(
            config.repo_path, clone_url=config.target.clone_url, baseline=config.target.baseline
        )

        self.tracker = IssueTracker(
            GhCli(runner, config.target.slug, config.tracker.timeout), config.tracker, config.target
        )
        self.extractor = Extractor(sessions, config, self.tracker)
        self.analyzer = GapAnalyzer(sessions, config)
        self.local_agent = LocalAgent(sessions, config, self.workspace)
        self.deployer = Deployer(
            AzdCli(runner, self.workspace.path, config.deploy),
            self.workspace,
            config.deploy,
            app_name=config.target.name or "website",
        )
        collector = EvidenceCollector(
            PlaywrightHarness(runner, config.validation.harness_dir),
            config.validation,
            timeout=config.stages.audit.timeout,
        )
        self.validator = Validator(sessions, config, collector)

        self.state = PipelineState()
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _acquire(self) -> None:
        if self._lock.locked():
            raise PipelineBusy(f"Stage '{self.state.stage.value}' is still running")
        await self._lock.acquire()

    async def start(self, stage: Stage, body: StageBody) -> StageStream:
        """Take the lock and run ``body`` in a new stream; the lock is released when it ends."""
        await self._acquire()
        self.state.stage = stage
        stream = StageStream(stage.value)
        logger.info(f"Starting stage {stage.value} (run {self.state.run_id})")

        async def guarded(emit: Emit) -> Optional[dict]:
            try:
                return await body(emit)
            except BaseException:
                self.state.stage = Stage.FAILED
                raise
            finally:
                self._lock.release()

        stream.start(guarded)
        return stream

    # Stages

    async def extract(self, meeting_title: Optional[str] = None, analyze: bool = False) -> StageStream:
        """Extract requirements into a fresh state; optionally analyze them all in the same stream."""

        async def body(emit: Emit) -> dict:
            self.state = PipelineState(stage=Stage.EXTRACT)
            logger.info(f"New run {self.state.run_id}")
            meeting, requirements = await self.extractor.extract(emit, meeting_title)
            self.state.meeting = meeting
            self.state.requirements = requirements
            if not analyze:
                return {"totalRequirements": len(requirements)}
            self.state.stage = Stage.ANALYZE
            self.state.gaps = await self.analyzer.analyze(requirements, emit)
            return {"totalRequirements": len(requirements), "totalGaps": len(self.state.gaps)}

        return await self.start(Stage.EXTRACT, body)

    def seed_requirements(self, texts: list[str]) -> list[Requirement]:
        """Start a fresh state from known requirement texts, skipping Extract."""
        requirements = [Requirement(index=i, text=text) for i, text in enumerate(texts)]
        self.state = PipelineState(requirements=requirements)
        return requirements

    async def analyze(self, indices: Optional[list[int]] = None) -> StageStream:
        requirements = (
            self.state.requirements if indices is None else self.state.requirements_by_index(indices)
        )
        if not requirements:
            raise NoDataFound("No requirements selected")

        async def body(emit: Emit) -> dict:
            gaps = await self.analyzer.analyze(requirements, emit)
            replaced = {gap.id for gap in gaps}
            kept = [gap for gap in self.state.gaps if gap.id not in replaced]
            self.state.gaps = sorted(kept + gaps, key=lambda gap: gap.id)
            return {"totalGaps": len(gaps)}

        return await self.start(Stage.ANALYZE, body)

    async def create_issues(self, gap_ids: list[int]) -> StageStream:
        gaps = self.state.gaps_by_id(gap_ids)
        if not gaps:
            raise NoDataFound("No items selected")

        async def body(emit: Emit) -> dict:
            issues = await self.tracker.create_issues(gaps, emit)
            self.state.issues = issues
            return {"total": len(issues), "created": sum(1 for issue in issues if issue.created)}

        return await self.start(Stage.ISSUES, body)

    async def assign_coding_agent(self, issue_numbers: list[int]) -> StageStream:
        if not issue_numbers:
            raise NoDataFound("No issues provided")

        async def body(emit: Emit) -> dict:
            results = await self.tracker.assign_coding_agent(issue_numbers, emit)
            self.state.assignments = results
            return {"results": [r.to_dict() for r in results]}

        return await self.start(Stage.ISSUES, body)

    async def dispatch(self, gap_ids: list[int]) -> StageStream:
        gaps = self.state.gaps_by_id(gap_ids)
        if not gaps:
            raise NoDataFound("No gaps selected")

        async def body(emit: Emit) -> dict:
            results = await self.local_agent.run(gaps, emit)
            self.state.results = results
            succeeded = sum(1 for r in results if r.success)
            return {"total": len(results), "succeeded": succeeded, "failed": len(results) - succeeded}

        return await self.start(Stage.DISPATCH, body)

    async def deploy(self) -> StageStream:
        async def body(emit: Emit) -> dict:
            result = await self.deployer.deploy(emit)
            self.state.deployment = result
            if not result.success:
                raise ExternalProcessFailure(result.message, kind=result.error_type or FailureKind.UNKNOWN)
            return {"url": result.url, "message": result.message}

        return await self.start(Stage.DEPLOY, body)

    async def validate(self, url: str, requirement_texts: Optional[list[str]] = None) -> StageStream:
        if not url:
            raise NoDataFound("No URL provided")
        if requirement_texts:
            requirements = [Requirement(index=i, text=text) for i, text in enumerate(requirement_texts)]
        else:
            requirements = list(self.state.requirements)
        if not requirements:
            raise NoDataFound("No requirements to validate")

        async def body(emit: Emit) -> dict:
            verdicts = await self.validator.validate(url, requirements, emit)
            self.state.verdicts = verdicts
            passed = sum(1 for v in verdicts if v.passed)
            return {"passed": passed, "failed": len(verdicts) - passed, "total": len(verdicts)}

        return await self.start(Stage.VALIDATE, body)

    async def reset_repo(self) -> list[str]:
        """Restore the clone to the remote baseline and delete local feature branches."""
        await self._acquire()
        try:
            deleted = await asyncio.to_thread(self.workspace.reset_target_repo)
        finally:
            self._lock.release()
        logger.info(f"Working copy reset; deleted {len(deleted)} feature branch(es)")
        return deleted
