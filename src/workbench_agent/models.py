"""Request, response, event and audit types shared across the agent core.

Every type has a ``to_dict`` that produces the camelCase wire shape the
workbench UI consumes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from workbench_agent.actions import ActionProposal
from workbench_agent.config import WorkbenchConfig

PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_MINIMAX = "minimax"
PROVIDER_LOCAL = "local_runtime"
PROVIDERS = (PROVIDER_OPENAI, PROVIDER_ANTHROPIC, PROVIDER_MINIMAX, PROVIDER_LOCAL)
_PROVIDER_ALIASES = {"codex_local": PROVIDER_LOCAL, "codex": PROVIDER_LOCAL}

# Request stages, in lifecycle order
STAGE_RUNTIME_DETECT = "runtime_detect"
STAGE_MCP_CONNECT = "mcp_connect"
STAGE_EXEC_FALLBACK = "exec_fallback"
STAGE_PLANNING = "planning"
STAGE_EXECUTING = "executing"
STAGE_ERROR = "error"
STAGE_FALLBACK = "fallback"
STAGE_COMPLETED = "completed"
STAGES = (
    STAGE_RUNTIME_DETECT,
    STAGE_MCP_CONNECT,
    STAGE_EXEC_FALLBACK,
    STAGE_PLANNING,
    STAGE_EXECUTING,
    STAGE_ERROR,
    STAGE_FALLBACK,
    STAGE_COMPLETED,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Message:
    role: str  # user, assistant, system
    content: str

    @classmethod
    def from_dict(cls, data: Mapping) -> Message:
        data = _mapping(data)
        role = str(data.get("role") or "user")
        if role not in ("user", "assistant", "system"):
            role = "user"
        return cls(role=role, content=str(data.get("content") or ""))


@dataclass
class ProviderConfig:
    """Connection config for one remote provider."""

    base_url: str = ""
    api_key: str = ""
    model: str = ""
    api_version: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None, defaults: Any = None) -> ProviderConfig:
        data = _mapping(data)
        return cls(
            base_url=_pick_str(data, "baseUrl", "base_url") or getattr(defaults, "base_url", ""),
            api_key=_pick_str(data, "apiKey", "api_key") or "",
            model=_pick_str(data, "model") or getattr(defaults, "model", ""),
            api_version=_pick_str(data, "apiVersion", "api_version")
            or getattr(defaults, "api_version", None),
        )


@dataclass
class CodexConfig:
    """Local runtime settings for one request."""

    enabled: bool = True
    binary_path_override: str | None = None
    prefer_direct_channel: bool = False
    invocation_args: list[str] = field(default_factory=list)
    direct_channel_args: list[str] = field(default_factory=list)
    timeout_ms: int = 90_000

    @classmethod
    def from_dict(cls, data: Mapping | None, defaults: Any = None) -> CodexConfig:
        """Bad values fall back to the defaults instead of failing the request."""
        data = _mapping(data)

        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        return cls(
            enabled=bool(pick("enabled", default=getattr(defaults, "enabled", True))),
            binary_path_override=_str_or_none(pick(
                "binaryPathOverride", "binaryPath", "binary_path_override",
                default=getattr(defaults, "binary_path_override", None),
            )),
            prefer_direct_channel=bool(pick(
                "preferDirectChannel", "preferMcp", "prefer_direct_channel",
                default=getattr(defaults, "prefer_direct_channel", False),
            )),
            invocation_args=_str_list(
                pick("invocationArgs", "execArgs", "invocation_args"),
                getattr(defaults, "invocation_args", []),
            ),
            direct_channel_args=_str_list(
                pick("directChannelArgs", "mcpArgs", "direct_channel_args"),
                getattr(defaults, "direct_channel_args", []),
            ),
            timeout_ms=_int(
                pick("timeoutMs", "requestTimeoutMs", "timeout_ms"),
                getattr(defaults, "timeout_ms", 90_000),
            ),
        )


@dataclass
class ProviderSettings:
    """Exactly one active provider plus inert config for the others."""

    provider: str = PROVIDER_OPENAI
    openai: ProviderConfig = field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = field(default_factory=ProviderConfig)
    minimax: ProviderConfig = field(default_factory=ProviderConfig)
    codex: CodexConfig = field(default_factory=CodexConfig)

    @classmethod
    def from_dict(
        cls, data: Mapping | None, config: WorkbenchConfig | None = None
    ) -> ProviderSettings:
        data = _mapping(data)
        config = config or WorkbenchConfig()
        provider = str(data.get("provider") or config.default_provider).strip().lower()
        provider = _PROVIDER_ALIASES.get(provider, provider)
        return cls(
            provider=provider,
            openai=ProviderConfig.from_dict(data.get("openai"), config.openai),
            anthropic=ProviderConfig.from_dict(data.get("anthropic"), config.anthropic),
            minimax=ProviderConfig.from_dict(data.get("minimax"), config.minimax),
            codex=CodexConfig.from_dict(data.get("codex"), config.codex),
        )

    def active_config(self) -> ProviderConfig | CodexConfig | None:
        if self.provider == PROVIDER_LOCAL:
            return self.codex
        return getattr(self, self.provider, None) if self.provider in PROVIDERS else None


@dataclass
class ChatRequest:
    messages: list[Message]
    settings: ProviderSettings = field(default_factory=ProviderSettings)
    request_id: str = field(default_factory=new_id)

    @classmethod
    def from_dict(cls, data: Mapping, config: WorkbenchConfig | None = None) -> ChatRequest:
        """Lenient parse: malformed messages are skipped, bad settings use defaults."""
        data = _mapping(data)
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raw_messages = []
        return cls(
            messages=[Message.from_dict(m) for m in raw_messages if isinstance(m, Mapping)],
            settings=ProviderSettings.from_dict(data.get("settings"), config),
            request_id=_pick_str(data, "requestId", "request_id") or new_id(),
        )

    @property
    def last_user_message(self) -> str | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return None


@dataclass
class AgentReply:
    reply: str
    actions: list[ActionProposal] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"reply": self.reply, "actions": [a.to_dict() for a in self.actions]}


@dataclass
class ExecuteResult:
    success: bool
    message: str

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message}


@dataclass
class AgentStreamEvent:
    """A progress marker for one chat request. Never mutated."""

    request_id: str
    stage: str
    message: str
    seq: int
    meta: dict | None = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = {
            "requestId": self.request_id,
            "stage": self.stage,
            "message": self.message,
            "seq": self.seq,
            "createdAt": self.created_at,
        }
        if self.meta is not None:
            data["meta"] = self.meta
        return data


@dataclass
class ChatSession:
    """One answered chat turn."""

    request_id: str
    provider: str
    user_message: str | None
    reply: str
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)


@dataclass
class ExecutionAuditRecord:
    """Outcome of one attempted action. Written exactly once."""

    batch_id: str
    action_id: str
    action_type: str
    payload: Any
    success: bool
    before_state: dict | None = None
    after_state: dict | None = None
    error: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "batchId": self.batch_id,
            "actionId": self.action_id,
            "actionType": self.action_type,
            "payload": self.payload,
            "success": self.success,
            "createdAt": self.created_at,
        }
        if self.before_state is not None:
            data["beforeState"] = self.before_state
        if self.after_state is not None:
            data["afterState"] = self.after_state
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BatchResult:
    success: bool
    batch_id: str
    message: str
    records: list[ExecutionAuditRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "batchId": self.batch_id,
            "message": self.message,
            "records": [r.to_dict() for r in self.records],
        }


@dataclass
class CodexHealth:
    found: bool
    binary: str | None = None
    direct_channel_available: bool = False
    exec_available: bool = False
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "binary": self.binary,
            "mcpAvailable": self.direct_channel_available,
            "execAvailable": self.exec_available,
            "message": self.message,
        }


def _pick(data: Mapping, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _pick_str(data: Mapping, *keys: str) -> str | None:
    value = _pick(data, *keys)
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def _int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _str_list(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    return list(default)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None
