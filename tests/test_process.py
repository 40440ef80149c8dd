"""Tests for the external process adapter."""

from __future__ import annotations

import asyncio
import sys

import pytest

from meeting2code.errors import ExternalProcessFailure, FailureKind
from meeting2code.process import (
    MockProcessRunner,
    ProcessResult,
    ProcessRunner,
    classify_failure,
    sanitize_error,
)


class TestClassifyFailure:
    """Failure classification by substring."""

    @pytest.mark.parametrize(
        "text,kind",
        [
            ("ERROR: not logged in, run azd auth login", FailureKind.AUTH),
            ("The client does not have access to subscription xyz", FailureKind.AUTH),
            ("subscription not found", FailureKind.SUBSCRIPTION),
            ("operation timed out", FailureKind.TIMEOUT),
            ("bicep compilation failed", FailureKind.INFRA),
            ("something else", FailureKind.UNKNOWN),
        ],
    )
    def test_kinds(self, text: str, kind: FailureKind) -> None:
        assert classify_failure(text) == kind


def test_sanitize_error_masks_tokens() -> None:
    message = sanitize_error("Authorization: Bearer abc.def token ghp_ABC123 key sk-ant-xyz")
    assert "abc.def" not in message
    assert "ABC123" not in message
    assert "ant-xyz" not in message
    assert "[REDACTED]" in message


class TestProcessResult:
    """Tests for ProcessResult."""

    def test_raise_for_status_classifies(self) -> None:
        result = ProcessResult(args=["azd", "up"], exit_code=1, stderr="Please run azd auth login")
        with pytest.raises(ExternalProcessFailure) as info:
            result.raise_for_status("azd up failed")
        assert info.value.kind == FailureKind.AUTH
        assert info.value.exit_code == 1
        assert info.value.detail == "Please run azd auth login"

    def test_ok_passes_through(self) -> None:
        result = ProcessResult(args=["gh"], exit_code=0, stdout="done")
        assert result.raise_for_status() is result
        assert result.output == "done"


class TestProcessRunner:
    """Tests for the real runner, using the current interpreter as the child."""

    def test_captures_output_and_exit_code(self) -> None:
        code = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
        result = asyncio.run(ProcessRunner().run([sys.executable, "-c", code], timeout=10))
        assert result.exit_code == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"

    def test_stdin_input(self) -> None:
        code = "import sys; print(sys.stdin.read().upper())"
        result = asyncio.run(ProcessRunner().run([sys.executable, "-c", code], timeout=10, input="hello"))
        assert result.stdout.strip() == "HELLO"

    def test_env_overrides_and_drops(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITHUB_TOKEN", "secret")
        code = "import os; print(os.environ.get('GITHUB_TOKEN', '-'), os.environ.get('GH_PAGER'))"
        runner = ProcessRunner(env={"GH_PAGER": "cat"}, drop_env=("GITHUB_TOKEN",))
        result = asyncio.run(runner.run([sys.executable, "-c", code], timeout=10))
        assert result.stdout.split() == ["-", "cat"]

    def test_timeout_kills(self) -> None:
        code = "import time; time.sleep(5)"
        with pytest.raises(ExternalProcessFailure) as info:
            asyncio.run(ProcessRunner().run([sys.executable, "-c", code], timeout=0.2))
        assert info.value.kind == FailureKind.TIMEOUT

    def test_missing_program(self) -> None:
        with pytest.raises(ExternalProcessFailure, match="not found") as info:
            asyncio.run(ProcessRunner().run(["definitely-not-a-real-cli-m2c"], timeout=5))
        assert info.value.exit_code == 127


class TestMockProcessRunner:
    """Tests for the scripted runner."""

    def test_longest_prefix_wins(self) -> None:
        runner = MockProcessRunner(responses={"azd": "generic", "azd show": "specific"})
        result = asyncio.run(runner.run(["azd", "show", "--output", "json"], timeout=1))
        assert result.stdout == "specific"
        assert result.args == ["azd", "show", "--output", "json"]

    def test_unmatched_succeeds_empty(self) -> None:
        runner = MockProcessRunner()
        result = asyncio.run(runner.run(["gh", "issue", "list"], timeout=1, input="x"))
        assert result.ok and result.stdout == ""
        assert runner.inputs == ["x"]

    def test_exception_and_callable(self) -> None:
        runner = MockProcessRunner(responses={
            "boom": ExternalProcessFailure("boom failed"),
            "echo": lambda argv: ProcessResult(args=[], exit_code=2, stdout=argv[-1]),
        })
        with pytest.raises(ExternalProcessFailure):
            asyncio.run(runner.run(["boom"], timeout=1))
        result = asyncio.run(runner.run(["echo", "hi"], timeout=1))
        assert (result.exit_code, result.stdout) == (2, "hi")
        assert runner.called("echo") == [["echo", "hi"]]
