"""Validate stage: judge each requirement against the live site.

Two tiers: deterministic pre-checks on the browser evidence first, then a
fresh tool-less adjudicator session per requirement for everything the
pre-checks cannot decide. Anything short of an explicit ``"passed": true``
is a failure.
"""

from __future__ import annotations

import logging

from .config import Config
from .dashboard.events import Emit, EventType, null_emit
from .evidence import EvidenceCollector, format_evidence
from .models import EvidenceAudit, Requirement, ValidationResult
from .parsing import extract_json_object
from .pool import run_pool
from .prechecks import check
from .process import sanitize_error
from .prompts import adjudicator_request, adjudicator_system
from .session import SessionConfig, agent_session

logger = logging.getLogger(__name__)


def _decomposition_line(item: object) -> str:
    if isinstance(item, dict):
        claim = item.get("check") or item.get("claim") or ""
        verdict = "PASS" if item.get("passed") is True else "FAIL"
        evidence = item.get("evidence")
        return f"{claim} -> {verdict}" + (f": {evidence}" if evidence else "")
    return str(item)


def verdict_from_reply(requirement: Requirement, content: str) -> ValidationResult:
    """Parse an adjudicator reply. Unparseable or non-boolean verdicts fail."""
    parsed = extract_json_object(content)
    if not parsed:
        return ValidationResult(
            requirement_index=requirement.index,
            requirement=requirement.text,
            passed=False,
            details="Adjudicator response could not be parsed; treating as FAIL",
        )
    details = str(parsed.get("details") or "No evaluation details")
    decomposition = parsed.get("decomposition")
    if isinstance(decomposition, list) and decomposition:
        details += "\nDecomposition:\n" + "\n".join(f"  • {_decomposition_line(d)}" for d in decomposition)
    return ValidationResult(
        requirement_index=requirement.index,
        requirement=requirement.text,
        passed=parsed.get("passed") is True,
        details=details,
    )


class Validator:
    """Collects evidence once, then judges requirements in parallel."""

    def __init__(self, sessions, config: Config, collector: EvidenceCollector):
        self.sessions = sessions
        self.config = config
        self.collector = collector

    async def judge(
        self, requirement: Requirement, audit: EvidenceAudit, evidence: str, emit: Emit = null_emit
    ) -> ValidationResult:
        """Verdict for one requirement. Session errors yield a failing result."""
        tag = f"[Req {requirement.number}]"
        verdict = check(audit, requirement.text)
        if verdict is not None and verdict.auto_fail:
            emit(EventType.LOG, {"message": f"{tag} Deterministic fail; skipping adjudicator"})
            return ValidationResult(
                requirement_index=requirement.index,
                requirement=requirement.text,
                passed=False,
                details=verdict.reason,
                deterministic=True,
            )

        policy = self.config.stages.validate
        session_config = SessionConfig(
            profile=self.config.no_tools_profile(),
            system_message=adjudicator_system(),
            label=f"validate-{requirement.number}",
            model=self.config.model_for(policy),
            on_log=lambda message: emit(EventType.LOG, {"message": f"{tag} {message}"}),
            backend=self.config.adjudicator_backend,
        )
        try:
            async with agent_session(self.sessions, session_config) as session:
                response = await session.send_and_wait(adjudicator_request(evidence, requirement), policy.timeout)
        except Exception as e:
            message = sanitize_error(str(e) or type(e).__name__)[:200]
            logger.error(f"{tag} Adjudicator error: {message}")
            return ValidationResult(
                requirement_index=requirement.index,
                requirement=requirement.text,
                passed=False,
                details=f"Adjudicator error: {message}",
            )

        result = verdict_from_reply(requirement, response.content)
        if not result.passed and "could not be parsed" in result.details:
            logger.warning(f"{tag} Unparseable adjudicator reply: {response.content[:400]}")
        return result

    async def validate(
        self, url: str, requirements: list[Requirement], emit: Emit = null_emit
    ) -> list[ValidationResult]:
        """Validate every requirement against ``url``.

        Raises:
            HarnessUnavailable, ExternalProcessFailure, ParseFailure: Evidence
                collection failed; no requirement is judged.
        """
        total = len(requirements)

        def progress(current: int, message: str) -> None:
            emit(EventType.PROGRESS, {"current": current, "total": total, "message": message})

        emit(EventType.LOG, {"message": f"Starting validation of {total} requirements against {url}"})
        progress(0, "Running browser site audit...")
        audit = await self.collector.collect(url)
        evidence = format_evidence(audit)

        ceiling = self.config.stages.validate.max_concurrency
        progress(0, "Judging requirements...")
        emit(EventType.LOG, {"message": f"Judging {total} requirement(s), at most {ceiling} at a time"})
        completed = 0

        async def worker(requirement: Requirement) -> ValidationResult:
            nonlocal completed
            emit(EventType.VALIDATION_START, {
                "requirementIndex": requirement.index, "requirement": requirement.text,
            })
            result = await self.judge(requirement, audit, evidence, emit)
            completed += 1
            mark = "✅" if result.passed else "❌"
            progress(completed, f"{mark} Req {requirement.number}: {requirement.short()}")
            emit(EventType.RESULT, {"result": result.to_dict()})
            return result

        def on_error(requirement: Requirement, error: BaseException) -> ValidationResult:
            return ValidationResult(
                requirement_index=requirement.index,
                requirement=requirement.text,
                passed=False,
                details=f"Validation error: {sanitize_error(str(error))[:200]}",
            )

        results = await run_pool(requirements, worker, ceiling, on_error=on_error)
        passed = sum(1 for r in results if r.passed)
        emit(EventType.LOG, {
            "message": f"Validation complete: {passed} passed, {total - passed} failed out of {total}",
        })
        return results
