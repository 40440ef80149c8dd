"""Tests for the agent session wrapper."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from meeting2code.config import CapabilityProfile, Config, McpServer
from meeting2code.errors import CapabilityConnectionError, SessionClosed, SessionTimeout
from meeting2code.parsing import extract_file_edits, extract_requirements
from meeting2code.session import (
    AnthropicSession,
    ClaudeCliSession,
    MockSession,
    MockSessionFactory,
    SessionConfig,
    SessionFactory,
    agent_session,
    demo_responder,
    preview,
)


def session_config(label: str = "test", profile: CapabilityProfile | None = None) -> SessionConfig:
    return SessionConfig(profile=profile or CapabilityProfile(name="none"), system_message="sys", label=label)


class TestAgentSession:
    """Lifecycle of sessions opened through agent_session."""

    def test_destroyed_once_on_success(self) -> None:
        factory = MockSessionFactory(responder=lambda config, prompt: f"echo: {prompt}")

        async def go() -> str:
            async with agent_session(factory, session_config()) as session:
                return (await session.send_and_wait("hi", timeout=1)).content

        assert asyncio.run(go()) == "echo: hi"
        assert factory.sessions[0].destroy_count == 1
        assert factory.sessions[0].closed is True

    def test_destroyed_once_on_error(self) -> None:
        factory = MockSessionFactory(responder=lambda config, prompt: RuntimeError("agent crashed"))

        async def go() -> None:
            async with agent_session(factory, session_config()) as session:
                await session.send_and_wait("hi", timeout=1)

        with pytest.raises(RuntimeError, match="agent crashed"):
            asyncio.run(go())
        assert factory.sessions[0].destroy_count == 1

    def test_second_destroy_is_noop(self) -> None:
        session = MockSession(session_config())

        async def go() -> None:
            await session.destroy()
            await session.destroy()

        asyncio.run(go())
        assert session.destroy_count == 1

    def test_send_after_destroy(self) -> None:
        session = MockSession(session_config(), responses=["x"])

        async def go() -> None:
            await session.destroy()
            await session.send_and_wait("hi", timeout=1)

        with pytest.raises(SessionClosed):
            asyncio.run(go())

    def test_timeout(self) -> None:
        factory = MockSessionFactory(responder=lambda config, prompt: "late", delay=1.0)

        async def go() -> None:
            async with agent_session(factory, session_config("slow")) as session:
                await session.send_and_wait("hi", timeout=0.05)

        with pytest.raises(SessionTimeout, match="slow"):
            asyncio.run(go())
        assert factory.sessions[0].destroy_count == 1

    def test_scripted_responses_in_order(self) -> None:
        session = MockSession(session_config(), responses=["one", "two"])

        async def go() -> list[str]:
            return [(await session.send_and_wait(p, timeout=1)).content for p in ("a", "b", "c")]

        assert asyncio.run(go()) == ["one", "two", ""]
        assert session.prompts == ["a", "b", "c"]


class TestClaudeCliSession:
    """Argument construction for the CLI backend."""

    def test_build_args(self) -> None:
        profile = CapabilityProfile(name="meeting", disallowed_tools=["Bash", "Read"])
        session = ClaudeCliSession(session_config(profile=profile), cli="claude")
        args = session.build_args("find requirements")

        assert args[:3] == ["claude", "-p", "find requirements"]
        assert "--dangerously-skip-permissions" in args
        assert args[args.index("--disallowedTools") + 1] == "Bash,Read"
        assert "--resume" not in args
        assert "--mcp-config" not in args

    def test_follow_up_resumes(self) -> None:
        session = ClaudeCliSession(session_config())
        session.session_id = "abc123"
        args = session.build_args("next")
        assert args[args.index("--resume") + 1] == "abc123"


class TestAnthropicSession:
    """Messages API backend with a mocked client."""

    def _session(self, create: AsyncMock) -> AnthropicSession:
        session = AnthropicSession(session_config("validate-1"), api_key="sk-test")
        session._client = MagicMock(messages=MagicMock(create=create), close=AsyncMock())
        return session

    def test_follow_up_keeps_history(self) -> None:
        replies = iter(["first", "second"])
        create = AsyncMock(side_effect=lambda **kwargs: SimpleNamespace(
            content=[SimpleNamespace(text=next(replies))], id="msg_1"
        ))
        session = self._session(create)

        async def go():
            one = await session.send_and_wait("a", timeout=1)
            two = await session.send_and_wait("b", timeout=1)
            await session.destroy()
            return one.content, two.content

        assert asyncio.run(go()) == ("first", "second")
        assert [m["role"] for m in session.messages] == ["user", "assistant", "user", "assistant"]
        assert create.call_args.kwargs["system"] == "sys"
        assert session._client is None

    def test_api_error(self) -> None:
        session = self._session(AsyncMock(side_effect=RuntimeError("overloaded")))
        with pytest.raises(CapabilityConnectionError, match="overloaded"):
            asyncio.run(session.send_and_wait("a", timeout=1))
        assert session.messages == []


class TestSessionFactory:
    """Backend selection."""

    def test_anthropic_falls_back_for_tool_profiles(self) -> None:
        factory = SessionFactory(Config(backend="anthropic"))
        tools = CapabilityProfile(name="codebase", servers=[McpServer(name="github", type="http", url="https://x")])
        assert factory._backend_for(session_config(profile=tools)) == "claude-cli"
        assert factory._backend_for(session_config()) == "anthropic"

    def test_per_session_backend_override(self) -> None:
        factory = SessionFactory(Config(backend="claude-cli"))
        config = session_config()
        config.backend = "mock"
        assert factory._backend_for(config) == "mock"

    def test_mock_backend_opens_mock_session(self) -> None:
        factory = SessionFactory(Config(backend="mock"))
        session = asyncio.run(factory.open(session_config()))
        assert isinstance(session, MockSession)


class TestDemoResponder:
    """Canned replies used by mock runs."""

    def test_extract_reply_has_requirements(self) -> None:
        requirements, meta = extract_requirements(demo_responder(session_config("extract-meeting"), ""))
        assert len(requirements) == 3
        assert meta["title"]

    def test_dispatch_reply_has_file_edit(self) -> None:
        edits = extract_file_edits(demo_responder(session_config("dispatch-1"), ""))
        assert list(edits) == ["MOCK_CHANGES.md"]


def test_preview_is_single_line_and_truncated() -> None:
    text = preview({"query": "a\nb" + "x" * 500})
    assert "\n" not in text
    assert len(text) == 200
