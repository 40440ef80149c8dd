"""Agent session wrapper.

An agent session is one sandboxed LLM conversation with a capability
profile (MCP tool servers) attached. Tool permissions are always
auto-approved and every tool call is logged with a short preview.

Backends:
    ClaudeCliSession: headless ``claude -p`` with ``stream-json`` output.
    AnthropicSession: Anthropic Messages API, for tool-less profiles only.
    MockSession: scripted replies for tests and ``--mock`` runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

from .config import DEFAULT_MODEL, BackendName, CapabilityProfile, Config
from .errors import CapabilityConnectionError, Meeting2CodeError, SessionClosed, SessionTimeout

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
PREVIEW_CHARS = 200


def preview(value: object, limit: int = PREVIEW_CHARS) -> str:
    """Compact single-line JSON preview of a tool argument or result."""
    try:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return text.replace("\n", " ")[:limit]


@dataclass
class SessionConfig:
    """Everything needed to open one agent session."""

    profile: CapabilityProfile
    system_message: str
    label: str
    model: str = DEFAULT_MODEL
    working_dir: Optional[Path] = None
    on_log: Optional[LogCallback] = None
    backend: Optional[BackendName] = None


@dataclass
class AgentResponse:
    """Final assistant text of one send, plus the tools it called."""

    content: str
    session_id: Optional[str] = None
    tool_calls: list[str] = field(default_factory=list)


class AgentSession(ABC):
    """Base class for agent sessions.

    Subclasses implement ``_send`` and optionally ``open``/``_cleanup``.
    ``send_and_wait`` enforces the deadline and ``destroy`` is idempotent.
    """

    def __init__(self, config: SessionConfig):
        self.config = config
        self.closed = False
        self.destroy_count = 0

    @property
    def label(self) -> str:
        return self.config.label

    async def open(self) -> None:
        """Acquire resources before the first send."""

    @abstractmethod
    async def _send(self, prompt: str) -> AgentResponse:
        """Send one prompt and return the final response."""

    async def _cleanup(self) -> None:
        """Release resources acquired by ``open``."""

    async def send_and_wait(self, prompt: str, timeout: float) -> AgentResponse:
        """Send a prompt and wait for the final response.

        Args:
            prompt: User message for this turn.
            timeout: Deadline in seconds for the whole turn, tool calls included.

        Returns:
            AgentResponse with the final assistant text.

        Raises:
            SessionClosed: The session was already destroyed.
            SessionTimeout: No response within ``timeout``; the call is aborted.
        """
        if self.closed:
            raise SessionClosed(f"[{self.label}] Session already destroyed")
        try:
            return await asyncio.wait_for(self._send(prompt), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.label}] No response after {timeout:g}s")
            raise SessionTimeout(f"[{self.label}] Agent did not respond within {timeout:g}s")

    async def destroy(self) -> None:
        """Release the session. A second call is a logged no-op."""
        if self.closed:
            logger.debug(f"[{self.label}] destroy() called on closed session")
            return
        self.closed = True
        self.destroy_count += 1
        await self._cleanup()

    def log(self, message: str) -> None:
        if self.config.on_log:
            self.config.on_log(message)

    def _log_tool_call(self, name: str, arguments: object) -> None:
        logger.info(f"[{self.label}] Tool call → {name}({preview(arguments)})")
        self.log(f"Calling tool: {name}")

    def _log_tool_result(self, name: str, result: object) -> None:
        logger.info(f"[{self.label}] Tool result ← {name}: {preview(result)}")
        self.log(f"Tool {name} returned: {preview(result, 80)}")


class ClaudeCliSession(AgentSession):
    """Session backed by the Claude Code CLI in headless mode.

    MCP servers are written to a temporary ``--mcp-config`` file for the
    lifetime of the session. Follow-up sends resume the same conversation.
    """

    def __init__(self, config: SessionConfig, cli: str = "claude"):
        super().__init__(config)
        self.cli = cli
        self.session_id: Optional[str] = None
        self._mcp_file: Optional[Path] = None

    async def open(self) -> None:
        if shutil.which(self.cli) is None:
            raise CapabilityConnectionError(
                f"{self.cli} not found. Install with: npm install -g @anthropic-ai/claude-code"
            )
        if self.config.profile.needs_tools:
            fd, path = tempfile.mkstemp(prefix=f"m2c-{self.config.profile.name}-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.config.profile.mcp_config(), f)
            self._mcp_file = Path(path)
        logger.debug(f"[{self.label}] Opened session with profile {self.config.profile.name}")

    async def _cleanup(self) -> None:
        if self._mcp_file is not None:
            self._mcp_file.unlink(missing_ok=True)
            self._mcp_file = None

    def build_args(self, prompt: str) -> list[str]:
        """Build the argv for one headless turn."""
        profile = self.config.profile
        args = [
            self.cli,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.config.model,
            "--append-system-prompt", self.config.system_message,
            "--dangerously-skip-permissions",
        ]
        if self._mcp_file is not None:
            args += ["--mcp-config", str(self._mcp_file), "--strict-mcp-config"]
        if profile.allowed_tools:
            args += ["--allowedTools", ",".join(profile.allowed_tools)]
        if profile.disallowed_tools:
            args += ["--disallowedTools", ",".join(profile.disallowed_tools)]
        if self.session_id:
            args += ["--resume", self.session_id]
        return args

    async def _send(self, prompt: str) -> AgentResponse:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(prompt),
                cwd=str(self.config.working_dir) if self.config.working_dir else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=16 * 1024 * 1024,
            )
        except OSError as e:
            raise CapabilityConnectionError(f"[{self.label}] Could not start {self.cli}: {e}") from e

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            response = await self._read_stream(proc)
            await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            stderr = (await stderr_task).decode(errors="replace")

        if response is None:
            raise CapabilityConnectionError(
                f"[{self.label}] {self.cli} exited with code {proc.returncode}: {stderr.strip()[:300]}"
            )
        return response

    async def _read_stream(self, proc: asyncio.subprocess.Process) -> Optional[AgentResponse]:
        """Consume stream-json events until the final ``result`` event."""
        tool_names: dict[str, str] = {}
        tool_calls: list[str] = []
        texts: list[str] = []
        response: Optional[AgentResponse] = None

        async for raw in proc.stdout:
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"[{self.label}] Non-JSON output: {line[:200]}")
                continue

            kind = event.get("type")
            if kind == "system" and event.get("subtype") == "init":
                self.session_id = event.get("session_id", self.session_id)
            elif kind == "assistant":
                for block in event.get("message", {}).get("content", []):
                    if block.get("type") == "tool_use":
                        tool_names[block.get("id", "")] = block.get("name", "?")
                        tool_calls.append(block.get("name", "?"))
                        self._log_tool_call(block.get("name", "?"), block.get("input", {}))
                    elif block.get("type") == "text":
                        texts.append(block.get("text", ""))
            elif kind == "user":
                for block in event.get("message", {}).get("content", []):
                    if isinstance(block, dict) and block.get("type") == "tool_result":
                        name = tool_names.get(block.get("tool_use_id", ""), "?")
                        self._log_tool_result(name, block.get("content"))
            elif kind == "result":
                self.session_id = event.get("session_id", self.session_id)
                if event.get("is_error"):
                    raise Meeting2CodeError(
                        f"[{self.label}] Agent returned an error: {preview(event.get('result', ''), 300)}"
                    )
                content = event.get("result")
                if content is None:
                    content = texts[-1] if texts else ""
                response = AgentResponse(content=content, session_id=self.session_id, tool_calls=tool_calls)

        return response


class AnthropicSession(AgentSession):
    """Session backed by the Anthropic Messages API. Tool-less profiles only."""

    def __init__(self, config: SessionConfig, api_key: Optional[str] = None, max_tokens: int = 8192):
        super().__init__(config)
        self.max_tokens = max_tokens
        self.messages: list[dict] = []
        self._api_key = api_key
        self._client = None

    @property
    def client(self):
        """Lazy initialization of the async Anthropic client."""
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def _send(self, prompt: str) -> AgentResponse:
        self.messages.append({"role": "user", "content": prompt})
        try:
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=self.max_tokens,
                system=self.config.system_message,
                messages=self.messages,
            )
        except Exception as e:
            self.messages.pop()
            raise CapabilityConnectionError(f"[{self.label}] Anthropic API call failed: {e}") from e

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        self.messages.append({"role": "assistant", "content": text})
        return AgentResponse(content=text, session_id=getattr(response, "id", None))

    async def _cleanup(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


Reply = Union[str, BaseException]
Responder = Callable[[SessionConfig, str], Reply]


class MockSession(AgentSession):
    """Mock session for testing without an agent runtime."""

    def __init__(
        self,
        config: SessionConfig,
        responder: Optional[Responder] = None,
        responses: Optional[list[Reply]] = None,
        delay: float = 0.0,
    ):
        """Initialize mock session.

        Args:
            config: Session configuration.
            responder: Called with (config, prompt) for each send.
            responses: Replies returned in order when no responder is given.
            delay: Seconds to wait before replying, to exercise timeouts.
        """
        super().__init__(config)
        self.responder = responder
        self.responses = list(responses or [])
        self.delay = delay
        self.prompts: list[str] = []

    async def _send(self, prompt: str) -> AgentResponse:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responder is not None:
            reply = self.responder(self.config, prompt)
        elif self.responses:
            reply = self.responses.pop(0)
        else:
            reply = ""
        if isinstance(reply, BaseException):
            raise reply
        return AgentResponse(content=reply, session_id=f"mock-{self.label}")


class MockSessionFactory:
    """Factory handing out MockSessions and remembering them for assertions."""

    def __init__(
        self,
        responder: Optional[Responder] = None,
        delay: float = 0.0,
        open_error: Optional[BaseException] = None,
    ):
        self.responder = responder if responder is not None else demo_responder
        self.delay = delay
        self.open_error = open_error
        self.sessions: list[MockSession] = []

    async def open(self, config: SessionConfig) -> AgentSession:
        if self.open_error is not None:
            raise self.open_error
        session = MockSession(config, responder=self.responder, delay=self.delay)
        await session.open()
        self.sessions.append(session)
        return session

    def labels(self) -> list[str]:
        return [s.label for s in self.sessions]


class SessionFactory:
    """Opens sessions on the configured backend."""

    def __init__(self, config: Config):
        self.config = config

    def _backend_for(self, session_config: SessionConfig) -> BackendName:
        backend = session_config.backend or self.config.backend
        if backend == "anthropic" and session_config.profile.needs_tools:
            logger.info(
                f"[{session_config.label}] Profile {session_config.profile.name} needs tool servers; "
                "using claude-cli backend"
            )
            return "claude-cli"
        return backend

    async def open(self, session_config: SessionConfig) -> AgentSession:
        """Open a session for ``session_config``.

        Raises:
            CapabilityConnectionError: The agent runtime could not be reached.
        """
        backend = self._backend_for(session_config)
        session: AgentSession
        if backend == "mock":
            return await MockSessionFactory().open(session_config)
        if backend == "anthropic":
            session = AnthropicSession(session_config, api_key=self.config.anthropic_api_key)
        else:
            session = ClaudeCliSession(session_config, cli=self.config.claude_cli)
        await session.open()
        return session


@asynccontextmanager
async def agent_session(factory, config: SessionConfig) -> AsyncIterator[AgentSession]:
    """Open a session and destroy it exactly once on every exit path."""
    session = await factory.open(config)
    try:
        yield session
    finally:
        await session.destroy()


def demo_responder(config: SessionConfig, prompt: str) -> str:
    """Canned replies used by ``--mock`` runs, keyed on the session label."""
    label = config.label
    if label.startswith("extract"):
        return json.dumps({
            "title": "Website Redesign Sync (mock)",
            "date": "2025-01-15",
            "participants": ["Product", "Design", "Engineering"],
            "requirements": [
                "Add a privacy consent checkbox to the contact form",
                "Publish a dedicated sustainability page before launch",
                "Use the new brand font across all headings",
            ],
        })
    if label.startswith("gap"):
        return json.dumps({
            "currentState": "Not present in the current codebase (mock)",
            "gap": "Feature needs to be implemented",
            "complexity": "Medium",
            "estimatedEffort": "2-4 hours",
            "details": "Mock analysis; no repository was read.",
        })
    if label.startswith("dispatch"):
        return "FILE: MOCK_CHANGES.md\n```markdown\n# Mock change\n\nGenerated in mock mode.\n```"
    if label.startswith("validate"):
        return json.dumps({
            "passed": False,
            "decomposition": [{"check": "mock", "evidence": "none", "passed": False}],
            "details": "Mock adjudicator does not inspect evidence.",
        })
    return ""
