"""Exception taxonomy for the meeting-to-code pipeline.

Per-item failures inside a batch (analysis, dispatch, validation) are
caught and turned into degraded results; these exceptions only escape a
stage when the whole stage cannot continue.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Stable classification of external-process failures."""

    AUTH = "auth"
    SUBSCRIPTION = "subscription"
    TIMEOUT = "timeout"
    INFRA = "infra"
    UNKNOWN = "unknown"


class Meeting2CodeError(Exception):
    """Base class for all pipeline errors."""

    pass


class CapabilityConnectionError(Meeting2CodeError, ConnectionError):
    """An external capability (MCP server, agent runtime) could not be reached."""

    pass


class NoDataFound(Meeting2CodeError):
    """A capability was reachable but returned nothing usable."""

    pass


class NoRequirementsFound(NoDataFound):
    """Extraction recovered zero requirements after the broadened retry."""

    pass


class ParseFailure(Meeting2CodeError):
    """Response text did not match any known shape."""

    pass


class ExternalProcessFailure(Meeting2CodeError):
    """A CLI or harness exited non-zero or timed out."""

    def __init__(
        self,
        message: str,
        kind: FailureKind = FailureKind.UNKNOWN,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def detail(self) -> str:
        """Most informative text for the failure: stderr, then stdout, then message."""
        return self.stderr.strip() or self.stdout.strip() or str(self)


class HarnessUnavailable(ExternalProcessFailure):
    """The browser-automation harness is missing and could not be installed."""

    pass


class WorkspaceError(Meeting2CodeError):
    """A git operation on the working copy failed."""

    pass


class PathSafetyViolation(Meeting2CodeError):
    """A proposed file write resolves outside the permitted root."""

    def __init__(self, path: str, root: str):
        super().__init__(f"Refusing to write outside working copy: {path!r} (root: {root})")
        self.path = path
        self.root = root


class SessionTimeout(Meeting2CodeError, TimeoutError):
    """An agent session did not answer within its deadline."""

    pass


class SessionClosed(Meeting2CodeError):
    """A send was attempted on a destroyed agent session."""

    pass


class PipelineBusy(Meeting2CodeError):
    """A stage was started while another stage is still running."""

    pass
