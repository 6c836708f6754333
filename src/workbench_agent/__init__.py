"""Workbench agent: provider routing, local codex runtime, and audited action execution."""

__version__ = "0.1.0"

from workbench_agent.actions import ACTION_TYPES, ActionProposal
from workbench_agent.audit import AuditSink
from workbench_agent.codex_runtime import CodexRuntime
from workbench_agent.config import WorkbenchConfig
from workbench_agent.events import StageBroadcaster
from workbench_agent.executor import BatchExecutor
from workbench_agent.models import (
    AgentReply,
    AgentStreamEvent,
    BatchResult,
    ChatRequest,
    ExecuteResult,
    ExecutionAuditRecord,
)
from workbench_agent.normalizer import normalize
from workbench_agent.router import AgentRouter
from workbench_agent.runtime import AgentRuntime, open_runtime
from workbench_agent.store import WorkbenchStore

__all__ = [
    "ACTION_TYPES",
    "ActionProposal",
    "AuditSink",
    "CodexRuntime",
    "WorkbenchConfig",
    "StageBroadcaster",
    "BatchExecutor",
    "AgentReply",
    "AgentStreamEvent",
    "BatchResult",
    "ChatRequest",
    "ExecuteResult",
    "ExecutionAuditRecord",
    "normalize",
    "AgentRouter",
    "AgentRuntime",
    "open_runtime",
    "WorkbenchStore",
]
