"""Configuration management for meeting2code."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv


# Type alias for agent session backends
BackendName = Literal["claude-cli", "anthropic", "mock"]

DEFAULT_MODEL = "claude-sonnet-4-20250514"
GITHUB_MCP_URL = "https://api.githubcopilot.com/mcp/"

# Tools the meeting profile must not use; it answers from the meeting source only.
FILESYSTEM_TOOLS = ["Bash", "Read", "Write", "Edit", "MultiEdit", "Glob", "Grep", "LS", "NotebookEdit"]


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class StagePolicy:
    """Retry, deadline and concurrency policy for one pipeline stage."""

    max_attempts: int = 1
    timeout: float = 120.0
    max_concurrency: int = 1
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict, defaults: Optional[StagePolicy] = None) -> StagePolicy:
        """Create a StagePolicy from dictionary, falling back to ``defaults``."""
        base = defaults or cls()
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            timeout=float(data.get("timeout", base.timeout)),
            max_concurrency=int(data.get("max_concurrency", base.max_concurrency)),
            model=data.get("model", base.model),
        )


@dataclass
class StagePolicies:
    """Named per-stage policies. Extract gets one broadened retry."""

    extract: StagePolicy = field(default_factory=lambda: StagePolicy(max_attempts=2, timeout=300))
    analyze: StagePolicy = field(default_factory=lambda: StagePolicy(timeout=120, max_concurrency=4))
    dispatch: StagePolicy = field(default_factory=lambda: StagePolicy(timeout=300))
    validate: StagePolicy = field(default_factory=lambda: StagePolicy(timeout=120, max_concurrency=4))
    audit: StagePolicy = field(default_factory=lambda: StagePolicy(timeout=240))

    @classmethod
    def from_dict(cls, data: dict) -> StagePolicies:
        """Create StagePolicies from the ``stages`` mapping of the YAML file."""
        defaults = cls()
        return cls(
            extract=StagePolicy.from_dict(data.get("extract", {}), defaults.extract),
            analyze=StagePolicy.from_dict(data.get("analyze", {}), defaults.analyze),
            dispatch=StagePolicy.from_dict(data.get("dispatch", {}), defaults.dispatch),
            validate=StagePolicy.from_dict(data.get("validate", {}), defaults.validate),
            audit=StagePolicy.from_dict(data.get("audit", {}), defaults.audit),
        )


@dataclass
class McpServer:
    """One MCP server reachable by an agent session."""

    name: str
    type: Literal["stdio", "http"] = "stdio"
    command: Optional[str] = None
    args: list[str] = field(default_factory=list)
    url: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)

    def to_mcp_json(self) -> dict:
        """Render the entry used in an ``--mcp-config`` file."""
        if self.type == "http":
            entry: dict = {"type": "http", "url": self.url}
            if self.headers:
                entry["headers"] = dict(self.headers)
            return entry
        return {"type": "stdio", "command": self.command, "args": list(self.args)}


@dataclass
class CapabilityProfile:
    """Named set of tool servers plus tool allow/deny lists for a session."""

    name: str
    servers: list[McpServer] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)

    @property
    def needs_tools(self) -> bool:
        return bool(self.servers)

    def mcp_config(self) -> dict:
        return {"mcpServers": {server.name: server.to_mcp_json() for server in self.servers}}


@dataclass
class TargetRepoSettings:
    """The codebase the agents change and deploy."""

    owner: str = ""
    name: str = ""
    baseline: str = "main"
    local_path: Optional[Path] = None

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def clone_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}.git"

    @classmethod
    def from_dict(cls, data: dict) -> TargetRepoSettings:
        """Create TargetRepoSettings from dictionary."""
        owner, name = data.get("owner", ""), data.get("name", "")
        if "repo" in data and "/" in str(data["repo"]):
            owner, name = str(data["repo"]).split("/", 1)
        local_path = data.get("local_path")
        return cls(
            owner=owner,
            name=name,
            baseline=data.get("baseline", "main"),
            local_path=Path(local_path).expanduser() if local_path else None,
        )


@dataclass
class TrackerSettings:
    """Issue tracker and hosted coding-agent settings."""

    title_prefix: str = "[Contoso Redesign]"
    labels: list[str] = field(default_factory=lambda: ["enhancement"])
    create_epic: bool = False
    coding_agent: str = "copilot-swe-agent[bot]"
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: dict) -> TrackerSettings:
        """Create TrackerSettings from dictionary."""
        return cls(
            title_prefix=data.get("title_prefix", "[Contoso Redesign]"),
            labels=list(data.get("labels", ["enhancement"])),
            create_epic=bool(data.get("create_epic", False)),
            coding_agent=data.get("coding_agent", "copilot-swe-agent[bot]"),
            timeout=float(data.get("timeout", 30.0)),
        )


@dataclass
class DispatchSettings:
    """Local coding-agent settings."""

    push_branches: bool = False
    context_cap: int = 50_000
    max_file_bytes: int = 100_000
    max_depth: int = 3
    extensions: list[str] = field(
        default_factory=lambda: [".html", ".css", ".js", ".ts", ".tsx", ".jsx", ".json", ".md"]
    )
    ignore_dirs: list[str] = field(
        default_factory=lambda: ["node_modules", ".git", ".azure", "dist", ".apm"]
    )

    @classmethod
    def from_dict(cls, data: dict) -> DispatchSettings:
        """Create DispatchSettings from dictionary."""
        defaults = cls()
        return cls(
            push_branches=bool(data.get("push_branches", False)),
            context_cap=int(data.get("context_cap", defaults.context_cap)),
            max_file_bytes=int(data.get("max_file_bytes", defaults.max_file_bytes)),
            max_depth=int(data.get("max_depth", defaults.max_depth)),
            extensions=list(data.get("extensions", defaults.extensions)),
            ignore_dirs=list(data.get("ignore_dirs", defaults.ignore_dirs)),
        )


@dataclass
class DeploySettings:
    """Deployment CLI settings."""

    env_name: str = "corporate-website-dev"
    location: str = "eastus2"
    subscription_id: Optional[str] = None
    deploy_timeout: float = 600.0
    init_timeout: float = 60.0

    @classmethod
    def from_dict(cls, data: dict) -> DeploySettings:
        """Create DeploySettings from dictionary."""
        return cls(
            env_name=data.get("env_name", "corporate-website-dev"),
            location=data.get("location", "eastus2"),
            subscription_id=data.get("subscription_id"),
            deploy_timeout=float(data.get("deploy_timeout", 600.0)),
            init_timeout=float(data.get("init_timeout", 60.0)),
        )


DEFAULT_PROBE_PATHS = [
    "/sustainability", "/sustainability.html",
    "/privacy", "/privacy-policy", "/privacy.html",
    "/cookie-policy", "/cookies", "/cookie-policy.html",
    "/about", "/about-us", "/about.html",
    "/contact", "/contact.html",
]


@dataclass
class ValidationSettings:
    """Browser-evidence settings for the Validate stage."""

    harness_dir: Path = field(default_factory=Path.cwd)
    probe_paths: list[str] = field(default_factory=lambda: list(DEFAULT_PROBE_PATHS))
    max_cta_clicks: int = 5
    nav_timeout: float = 15.0
    verify_redirects: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> ValidationSettings:
        """Create ValidationSettings from dictionary."""
        harness_dir = data.get("harness_dir")
        return cls(
            harness_dir=Path(harness_dir).expanduser() if harness_dir else Path.cwd(),
            probe_paths=list(data.get("probe_paths", DEFAULT_PROBE_PATHS)),
            max_cta_clicks=int(data.get("max_cta_clicks", 5)),
            nav_timeout=float(data.get("nav_timeout", 15.0)),
            verify_redirects=bool(data.get("verify_redirects", True)),
        )


@dataclass
class Config:
    """Configuration settings for meeting2code."""

    # API Keys
    anthropic_api_key: Optional[str] = None
    github_token: Optional[str] = None

    # Paths
    config_dir: Path = field(default_factory=lambda: Path.cwd() / "config")
    workspace_dir: Path = field(default_factory=lambda: Path.cwd() / "workspace")

    # Agent runtime
    backend: BackendName = "claude-cli"
    claude_cli: str = "claude"
    model: str = DEFAULT_MODEL
    adjudicator_backend: Optional[BackendName] = None

    meeting_title: str = "Contoso Industries Redesign"

    # Runtime Settings
    log_level: str = "INFO"
    mock_mode: bool = False
    host: str = "127.0.0.1"
    port: int = 3000
    reset_on_start: bool = False

    target: TargetRepoSettings = field(default_factory=TargetRepoSettings)
    stages: StagePolicies = field(default_factory=StagePolicies)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    deploy: DeploySettings = field(default_factory=DeploySettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)

    @classmethod
    def from_dict(cls, data: dict, **overrides) -> Config:
        """Create Config from a parsed ``pipeline.yaml`` mapping."""
        agent = data.get("agent", {})
        server = data.get("server", {})
        values = dict(
            backend=agent.get("backend", "claude-cli"),
            claude_cli=agent.get("claude_cli", "claude"),
            model=agent.get("model", DEFAULT_MODEL),
            adjudicator_backend=agent.get("adjudicator_backend"),
            meeting_title=data.get("meeting", {}).get("title", "Contoso Industries Redesign"),
            host=server.get("host", "127.0.0.1"),
            port=int(server.get("port", 3000)),
            reset_on_start=bool(server.get("reset_on_start", False)),
            target=TargetRepoSettings.from_dict(data.get("target", {})),
            stages=StagePolicies.from_dict(data.get("stages", {})),
            tracker=TrackerSettings.from_dict(data.get("tracker", {})),
            dispatch=DispatchSettings.from_dict(data.get("dispatch", {})),
            deploy=DeploySettings.from_dict(data.get("deploy", {})),
            validation=ValidationSettings.from_dict(data.get("validation", {})),
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, config_dir: Optional[Path] = None) -> Config:
        """Load configuration from ``pipeline.yaml`` and environment variables.

        Environment variables override the YAML file.

        Args:
            config_dir: Optional path to the config directory. Defaults to ./config.

        Returns:
            Config instance populated from file and environment.
        """
        load_dotenv()

        config_dir = Path(config_dir) if config_dir else Path(os.getenv("M2C_CONFIG_DIR", "config"))
        data = load_yaml(config_dir / "pipeline.yaml")
        config = cls.from_dict(
            data,
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            github_token=os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN"),
            config_dir=config_dir,
            workspace_dir=Path(os.getenv("M2C_WORKSPACE_DIR", str(Path.cwd() / "workspace"))),
            log_level=os.getenv("M2C_LOG_LEVEL", "INFO"),
            mock_mode=_env_flag("M2C_MOCK_MODE"),
        )

        if os.getenv("M2C_AGENT_BACKEND"):
            config.backend = os.environ["M2C_AGENT_BACKEND"]  # type: ignore[assignment]
        if os.getenv("M2C_MODEL"):
            config.model = os.environ["M2C_MODEL"]
        if os.getenv("M2C_MEETING_TITLE"):
            config.meeting_title = os.environ["M2C_MEETING_TITLE"]
        if os.getenv("M2C_PORT"):
            config.port = int(os.environ["M2C_PORT"])
        if os.getenv("M2C_HOST"):
            config.host = os.environ["M2C_HOST"]
        if os.getenv("M2C_TARGET_REPO"):
            config.target = TargetRepoSettings.from_dict(
                {"repo": os.environ["M2C_TARGET_REPO"], "baseline": config.target.baseline,
                 "local_path": config.target.local_path}
            )
        if os.getenv("M2C_REPO_PATH"):
            config.target.local_path = Path(os.environ["M2C_REPO_PATH"]).expanduser()
        if os.getenv("M2C_PUSH_BRANCHES"):
            config.dispatch.push_branches = _env_flag("M2C_PUSH_BRANCHES")
        if os.getenv("M2C_AZURE_SUBSCRIPTION_ID"):
            config.deploy.subscription_id = os.environ["M2C_AZURE_SUBSCRIPTION_ID"]
        if config.mock_mode:
            config.backend = "mock"
        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.backend not in ("claude-cli", "anthropic", "mock"):
            errors.append(f"Unknown agent backend: {self.backend}")

        if self.backend == "anthropic" and not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is required for the anthropic backend")

        if not self.mock_mode and (not self.target.owner or not self.target.name):
            errors.append("Target repository is not set (M2C_TARGET_REPO=owner/name)")

        for name in ("extract", "analyze", "dispatch", "validate", "audit"):
            policy: StagePolicy = getattr(self.stages, name)
            if policy.max_attempts < 1:
                errors.append(f"stages.{name}.max_attempts must be at least 1")
            if policy.max_concurrency < 1:
                errors.append(f"stages.{name}.max_concurrency must be at least 1")
            if policy.timeout <= 0:
                errors.append(f"stages.{name}.timeout must be positive")

        return errors

    @property
    def repo_path(self) -> Path:
        """Local clone of the target repository."""
        if self.target.local_path:
            return self.target.local_path
        return self.workspace_dir / (self.target.name or "target")

    def model_for(self, policy: StagePolicy) -> str:
        return policy.model or self.model

    def meeting_profile(self) -> CapabilityProfile:
        """Meeting-source connector: WorkIQ MCP, no filesystem tools."""
        return CapabilityProfile(
            name="meeting",
            servers=[McpServer(name="workiq", command="npx", args=["-y", "@microsoft/workiq", "mcp"])],
            disallowed_tools=list(FILESYSTEM_TOOLS),
        )

    def codebase_profile(self) -> CapabilityProfile:
        """Codebase-read connector: GitHub MCP over HTTP."""
        headers = {"Authorization": f"Bearer {self.github_token}"} if self.github_token else {}
        return CapabilityProfile(
            name="codebase",
            servers=[McpServer(name="github", type="http", url=GITHUB_MCP_URL, headers=headers)],
        )

    @staticmethod
    def no_tools_profile() -> CapabilityProfile:
        return CapabilityProfile(name="none")


def load_yaml(path: Path) -> dict:
    """Load a YAML mapping, returning {} when the file is missing or empty."""
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping in {path}")
    return data
