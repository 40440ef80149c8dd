"""Async adapter for external command-line tools.

Every CLI the pipeline touches (``gh``, ``azd``, ``az``, ``npx``, ``node``)
goes through :class:`ProcessRunner`, with arguments passed as argv lists.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

from .errors import ExternalProcessFailure, FailureKind

logger = logging.getLogger(__name__)

# Patterns for sensitive data that should be masked in error messages
SENSITIVE_PATTERNS = [
    (re.compile(r'(Bearer\s+)[A-Za-z0-9_.-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(api[_-]?key["\s:=]+)[A-Za-z0-9_-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(Authorization["\s:=]+)[A-Za-z0-9_-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(gh[pousr]_)[A-Za-z0-9]+'), r'\1[REDACTED]'),  # GitHub token format
    (re.compile(r'(github_pat_)[A-Za-z0-9_]+'), r'\1[REDACTED]'),
    (re.compile(r'(sk-)[A-Za-z0-9_-]+'), r'\1[REDACTED]'),  # Anthropic/OpenAI key format
]

AUTH_MARKERS = ("auth", "login", "access to subscription", "reload subscriptions", "resolve user")
TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
INFRA_MARKERS = ("bicep", "infra", "provision")


def sanitize_error(message: str) -> str:
    """Sanitize error messages to remove sensitive data.

    Masks API keys, bearer tokens, and other sensitive patterns
    to prevent them from being logged or shown to users.

    Args:
        message: Error message that may contain sensitive data.

    Returns:
        Sanitized message with sensitive data masked.
    """
    result = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def classify_failure(text: str) -> FailureKind:
    """Classify CLI failure output by substring.

    Auth is checked first, so "access to subscription" counts as auth rather
    than subscription.
    """
    lower = text.lower()
    if any(marker in lower for marker in AUTH_MARKERS):
        return FailureKind.AUTH
    if "subscription" in lower:
        return FailureKind.SUBSCRIPTION
    if any(marker in lower for marker in TIMEOUT_MARKERS):
        return FailureKind.TIMEOUT
    if any(marker in lower for marker in INFRA_MARKERS):
        return FailureKind.INFRA
    return FailureKind.UNKNOWN


@dataclass
class ProcessResult:
    """Result from running an external command."""

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as shown in a terminal."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def raise_for_status(self, message: Optional[str] = None) -> ProcessResult:
        """Raise ExternalProcessFailure on a non-zero exit code."""
        if not self.ok:
            text = self.stderr.strip() or self.stdout.strip()
            raise ExternalProcessFailure(
                message or f"{self.args[0]} exited with code {self.exit_code}",
                kind=classify_failure(text),
                exit_code=self.exit_code,
                stdout=self.stdout,
                stderr=self.stderr,
            )
        return self


class ProcessRunner:
    """Runs commands with a deadline, never through a shell."""

    def __init__(self, env: Optional[dict[str, str]] = None, drop_env: Sequence[str] = ()):
        """Initialize the runner.

        Args:
            env: Extra environment variables for every command.
            drop_env: Variable names removed from the inherited environment.
        """
        self.env = dict(env or {})
        self.drop_env = tuple(drop_env)

    def _build_env(self, extra: Optional[dict[str, str]]) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in self.drop_env}
        env.update(self.env)
        env.update(extra or {})
        return env

    async def run(
        self,
        args: Sequence[str],
        timeout: float,
        cwd: Optional[Union[str, Path]] = None,
        input: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> ProcessResult:
        """Run a command and collect its output.

        Args:
            args: Program and arguments.
            timeout: Deadline in seconds; the process is killed when it elapses.
            cwd: Working directory.
            input: Text written to stdin.
            env: Extra environment variables for this call.

        Returns:
            ProcessResult; a non-zero exit code is returned, not raised.

        Raises:
            ExternalProcessFailure: The program is missing or timed out.
        """
        argv = [str(a) for a in args]
        logger.debug(f"Running: {' '.join(argv)[:200]}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(env),
            )
        except FileNotFoundError as e:
            raise ExternalProcessFailure(
                f"{argv[0]} not found. Is it installed and on PATH?", exit_code=127, stderr=str(e)
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ExternalProcessFailure(
                f"{argv[0]} timed out after {timeout:g}s", kind=FailureKind.TIMEOUT
            )

        return ProcessResult(
            args=argv,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


@dataclass
class MockProcessRunner(ProcessRunner):
    """Scripted runner for tests.

    ``responses`` maps an argv prefix (joined with spaces) to a ProcessResult,
    an exception instance, or a callable taking the argv list. The longest
    matching prefix wins; unmatched commands succeed with empty output.
    """

    responses: dict[str, object] = field(default_factory=dict)
    calls: list[list[str]] = field(default_factory=list)
    inputs: list[Optional[str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__()

    async def run(
        self,
        args: Sequence[str],
        timeout: float,
        cwd: Optional[Union[str, Path]] = None,
        input: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> ProcessResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        self.inputs.append(input)
        command = " ".join(argv)
        matches = [key for key in self.responses if command.startswith(key)]
        if not matches:
            return ProcessResult(args=argv, exit_code=0)
        response = self.responses[max(matches, key=len)]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(argv)
        if isinstance(response, ProcessResult):
            return ProcessResult(argv, response.exit_code, response.stdout, response.stderr)
        return ProcessResult(args=argv, exit_code=0, stdout=str(response))

    def called(self, prefix: str) -> list[list[str]]:
        """Calls whose joined argv starts with ``prefix``."""
        return [argv for argv in self.calls if " ".join(argv).startswith(prefix)]


