"""Workbench agent configuration management."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

WORKBENCH_HOME = Path(
    os.environ.get("WORKBENCH_AGENT_HOME") or Path.home() / ".workbench-agent"
).expanduser()
WORKBENCH_DB = Path(os.environ.get("WORKBENCH_AGENT_DB") or WORKBENCH_HOME / "workbench.db")
WORKBENCH_CONFIG = WORKBENCH_HOME / "config.json"
WORKBENCH_LOGS = WORKBENCH_HOME / "logs"
WORKBENCH_TOOLING = WORKBENCH_HOME / "agent"

DEFAULT_CODEX_ARGS = ["exec", "--skip-git-repo-check", "--color", "never", "--json"]
DEFAULT_DIRECT_CHANNEL_ARGS = ["mcp-server"]

DEFAULT_TEMPLATE_PATTERNS = [
    "Hi! I'm Codex. How can I help you today?",
    "Hello! How can I help you today?",
    "I'm Codex, an AI coding assistant. What would you like to work on?",
    "How can I assist you today?",
    "你好！我是 Codex，有什么可以帮你的吗？",
    "你好，有什么可以帮你的吗？",
]

DEFAULT_REINFORCED_PROMPT = (
    "Do not introduce yourself and do not answer with a generic greeting or template. "
    "Read the workbench context and the conversation above, then answer the user's "
    "latest message directly with the required JSON object."
)


@dataclass
class ProviderDefaults:
    """Connection defaults for one remote provider (never holds credentials)."""

    base_url: str = ""
    model: str = ""
    api_version: str | None = None


@dataclass
class CodexDefaults:
    """Local codex runtime defaults."""

    enabled: bool = True
    binary_path_override: str | None = None
    prefer_direct_channel: bool = False
    invocation_args: list[str] = field(default_factory=lambda: list(DEFAULT_CODEX_ARGS))
    direct_channel_args: list[str] = field(
        default_factory=lambda: list(DEFAULT_DIRECT_CHANNEL_ARGS)
    )
    timeout_ms: int = 90_000


@dataclass
class AgentConfig:
    """Agent behavior knobs.

    ``template_patterns`` are the canned self-introductions that trigger a
    single reinforced re-prompt of the local runtime. They drift with model
    versions, so keep them here rather than in code.
    ``tooling_dir`` overrides where skills and MCP servers are listed from.
    """

    template_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_TEMPLATE_PATTERNS)
    )
    reinforced_prompt: str = DEFAULT_REINFORCED_PROMPT
    event_queue_size: int = 1000
    http_timeout_s: float = 60.0
    max_tokens: int = 1200
    temperature: float = 0.2
    tooling_dir: str | None = None


@dataclass
class LoggingConfig:
    """Log level and optional log file name (relative to the logs dir)."""

    level: str = "INFO"
    file: str | None = None


@dataclass
class WorkbenchConfig:
    """Top-level workbench agent configuration."""

    default_provider: str = "openai"
    openai: ProviderDefaults = field(
        default_factory=lambda: ProviderDefaults(
            base_url="https://api.openai.com/v1", model="gpt-4o-mini"
        )
    )
    anthropic: ProviderDefaults = field(
        default_factory=lambda: ProviderDefaults(
            base_url="https://api.anthropic.com/v1",
            model="claude-3-5-sonnet-latest",
            api_version="2023-06-01",
        )
    )
    minimax: ProviderDefaults = field(
        default_factory=lambda: ProviderDefaults(
            base_url="https://api.minimax.chat/v1", model="MiniMax-M2.1"
        )
    )
    codex: CodexDefaults = field(default_factory=CodexDefaults)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db_path: Path = field(default_factory=lambda: WORKBENCH_DB)

    @classmethod
    def load(cls, path: Path | None = None) -> "WorkbenchConfig":
        """Load config from disk or return defaults.

        Env vars override file config for the log level and database path.
        """
        config = cls()
        path = path or WORKBENCH_CONFIG
        if path.exists():
            data = json.loads(path.read_text())
            if "default_provider" in data:
                config.default_provider = data["default_provider"]
            for section in ("openai", "anthropic", "minimax", "codex", "agent", "logging"):
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        if hasattr(target, k):
                            setattr(target, k, v)
            if data.get("db_path"):
                config.db_path = Path(data["db_path"]).expanduser()

        log_level = os.environ.get("WORKBENCH_AGENT_LOG_LEVEL")
        db_path = os.environ.get("WORKBENCH_AGENT_DB")
        if log_level:
            config.logging.level = log_level
        if db_path:
            config.db_path = Path(db_path).expanduser()

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk. Provider credentials are never part of it."""
        path = path or WORKBENCH_CONFIG
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_provider": self.default_provider,
            "openai": _provider_dict(self.openai),
            "anthropic": _provider_dict(self.anthropic),
            "minimax": _provider_dict(self.minimax),
            "codex": {
                "enabled": self.codex.enabled,
                "binary_path_override": self.codex.binary_path_override,
                "prefer_direct_channel": self.codex.prefer_direct_channel,
                "invocation_args": self.codex.invocation_args,
                "direct_channel_args": self.codex.direct_channel_args,
                "timeout_ms": self.codex.timeout_ms,
            },
            "agent": {
                "template_patterns": self.agent.template_patterns,
                "reinforced_prompt": self.agent.reinforced_prompt,
                "event_queue_size": self.agent.event_queue_size,
                "http_timeout_s": self.agent.http_timeout_s,
                "max_tokens": self.agent.max_tokens,
                "temperature": self.agent.temperature,
                "tooling_dir": self.agent.tooling_dir,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
            "db_path": str(self.db_path),
        }
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))


def _provider_dict(defaults: ProviderDefaults) -> dict:
    return {
        "base_url": defaults.base_url,
        "model": defaults.model,
        "api_version": defaults.api_version,
    }


def ensure_home() -> None:
    """Create the workbench agent home directory structure."""
    WORKBENCH_HOME.mkdir(parents=True, exist_ok=True)
    WORKBENCH_LOGS.mkdir(parents=True, exist_ok=True)
