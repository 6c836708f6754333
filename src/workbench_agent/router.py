"""Agent router: drive one chat request through its stages.

runtime_detect -> [mcp_connect | exec_fallback] -> planning -> executing -> completed
                                                   planning -> error -> fallback -> completed

``chat`` never raises. Every provider path that fails ends in the local
fallback reply, which always carries one approval-required snapshot action.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import httpx

from workbench_agent import config as config_module
from workbench_agent.actions import ACTION_TYPES, QUERY_SNAPSHOT, ActionProposal
from workbench_agent.audit import AuditSink
from workbench_agent.codex_runtime import CHANNEL_DIRECT, CodexRuntime, build_prompt
from workbench_agent.config import WorkbenchConfig
from workbench_agent.errors import (
    LocalRuntimeError,
    NormalizationError,
    ProviderError,
)
from workbench_agent.events import StageBroadcaster
from workbench_agent.executor import BatchExecutor
from workbench_agent.models import (
    PROVIDER_LOCAL,
    STAGE_COMPLETED,
    STAGE_ERROR,
    STAGE_EXEC_FALLBACK,
    STAGE_EXECUTING,
    STAGE_FALLBACK,
    STAGE_MCP_CONNECT,
    STAGE_PLANNING,
    STAGE_RUNTIME_DETECT,
    AgentReply,
    BatchResult,
    ChatRequest,
    ChatSession,
    CodexConfig,
    CodexHealth,
    ExecuteResult,
    ProviderSettings,
    new_id,
)
from workbench_agent.normalizer import normalize
from workbench_agent.providers import RemoteProvider, build_providers, build_system_prompt
from workbench_agent.store import WorkbenchStore
from workbench_agent.tooling import load_tooling

logger = logging.getLogger(__name__)


class AgentRouter:
    """Routes chat requests to a provider and executes proposed actions."""

    def __init__(
        self,
        store: WorkbenchStore,
        broadcaster: StageBroadcaster,
        executor: BatchExecutor,
        codex: CodexRuntime | None = None,
        config: WorkbenchConfig | None = None,
        providers: dict[str, RemoteProvider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sink: AuditSink | None = None,
    ):
        self._config = config or WorkbenchConfig()
        self._store = store
        self._sink = sink or AuditSink(store)
        self._events = broadcaster
        self._executor = executor
        self._codex = codex or CodexRuntime(self._config.agent)
        self._providers = providers or build_providers(self._config.agent, transport=transport)
        self._routing_stats = {
            "chats": 0,
            "remote": 0,
            "local": 0,
            "fallback": 0,
            "batches": 0,
            "batch_failures": 0,
        }

    # --- Chat ---

    async def chat(self, request: ChatRequest | Mapping) -> AgentReply:
        """Answer one chat request. Always returns a reply."""
        parse_error = None
        if not isinstance(request, ChatRequest):
            try:
                request = ChatRequest.from_dict(request, self._config)
            except Exception as e:
                logger.warning(f"Unparseable chat request: {e}")
                parse_error = f"invalid request: {type(e).__name__}: {e}"
                request = ChatRequest(messages=[], settings=ProviderSettings.from_dict(None, self._config))
        rid = request.request_id
        provider = request.settings.provider
        self._routing_stats["chats"] += 1

        self._events.emit(
            rid, STAGE_RUNTIME_DETECT, f"Using provider {provider}", meta={"provider": provider}
        )

        snapshot: dict = {}
        try:
            if parse_error is not None:
                raise ProviderError(parse_error)
            if provider == PROVIDER_LOCAL and request.settings.codex.prefer_direct_channel:
                await self._connect_direct(rid, request.settings.codex)
            self._events.emit(rid, STAGE_PLANNING, "Building context and asking the model")
            snapshot = self._store.build_snapshot()
            reply = await self._dispatch(request, snapshot)
        except (ProviderError, NormalizationError) as e:
            logger.warning(f"[{rid}] {provider} failed: {e}")
            reply = self._fall_back(request, snapshot, str(e))
        except Exception as e:
            logger.exception(f"[{rid}] unexpected failure while planning")
            reply = self._fall_back(request, snapshot, f"{type(e).__name__}: {e}")
        else:
            if reply.actions:
                reply = self._execute_proposed(rid, reply)

        self._events.emit(rid, STAGE_COMPLETED, "Request completed")
        self._record_session(request, reply)
        self._events.finish(rid)
        return reply

    async def _connect_direct(self, rid: str, codex: CodexConfig) -> None:
        try:
            await self._codex.probe(codex, CHANNEL_DIRECT)
        except LocalRuntimeError as e:
            self._events.emit(
                rid, STAGE_EXEC_FALLBACK, f"Direct channel unavailable, using exec: {e}"
            )
        else:
            self._events.emit(rid, STAGE_MCP_CONNECT, "Direct channel available")

    async def _dispatch(self, request: ChatRequest, snapshot: dict) -> AgentReply:
        settings = request.settings
        system_prompt = build_system_prompt(snapshot)

        if settings.provider == PROVIDER_LOCAL:
            if not settings.codex.enabled:
                raise LocalRuntimeError("local runtime is disabled")
            self._routing_stats["local"] += 1
            prompt = build_prompt(request.messages, system_prompt)
            return await self._codex.run(settings.codex, prompt)

        remote = self._providers.get(settings.provider)
        if remote is None:
            raise ProviderError(f"Unknown provider: {settings.provider}")
        self._routing_stats["remote"] += 1
        raw = await remote.complete(settings.active_config(), request.messages, snapshot)
        return normalize(raw)

    def _execute_proposed(self, rid: str, reply: AgentReply) -> AgentReply:
        self._events.emit(
            rid,
            STAGE_EXECUTING,
            f"Executing {len(reply.actions)} proposed action(s)",
            meta={"total": len(reply.actions), "completed": 0, "success": 0, "failed": 0},
        )
        try:
            batch = self._run_batch(reply.actions, rid)
            summary = batch.message
        except Exception as e:
            # TransactionAbortError included: chat still has to answer
            logger.exception(f"[{rid}] batch execution aborted")
            summary = f"Execution aborted: {e}"
        return AgentReply(reply=f"{reply.reply}\n\n{summary}", actions=[])

    def _fall_back(self, request: ChatRequest, snapshot: dict, reason: str) -> AgentReply:
        rid = request.request_id
        self._routing_stats["fallback"] += 1
        self._events.emit(rid, STAGE_ERROR, reason)
        self._events.emit(rid, STAGE_FALLBACK, "Switched to local fallback reply")
        return self._fallback_response(request, snapshot, reason)

    @staticmethod
    def _fallback_response(request: ChatRequest, snapshot: dict, reason: str) -> AgentReply:
        """Deterministic reply built only from the snapshot."""
        latest = request.last_user_message or "Give me suggestions based on my workbench"
        pending = len(snapshot.get("pendingTodos") or [])
        today = len(snapshot.get("todayEvents") or [])
        reply = (
            f'I read your workbench. You said: "{latest}". '
            f"You have {pending} pending todos and {today} events today. "
            f"The model service is unavailable ({reason}), so this is a local suggestion."
        )
        return AgentReply(
            reply=reply,
            actions=[
                ActionProposal(
                    id=f"snapshot-{new_id()}",
                    type=QUERY_SNAPSHOT,
                    title="Generate a current snapshot",
                    reason="Used for further planning and action confirmation",
                    payload={},
                    requires_approval=True,
                )
            ],
        )

    def _record_session(self, request: ChatRequest, reply: AgentReply) -> None:
        self._sink.submit(ChatSession(
            request_id=request.request_id,
            provider=request.settings.provider,
            user_message=request.last_user_message,
            reply=reply.reply,
        ))

    # --- Direct execution ---

    def _run_batch(self, actions: list[ActionProposal], rid: str) -> BatchResult:
        self._routing_stats["batches"] += 1
        batch = self._executor.execute_batch(actions, request_id=rid)
        if not batch.success:
            self._routing_stats["batch_failures"] += 1
        return batch

    async def execute_actions(
        self,
        actions: list[ActionProposal | Mapping],
        request_id: str | None = None,
    ) -> BatchResult:
        """Execute approved actions as one atomic batch.

        Raises:
            MalformedActionsError: an element is not a proposal.
            TransactionAbortError: rollback failed.
        """
        proposals = [a if isinstance(a, ActionProposal) else ActionProposal.from_dict(a) for a in actions]
        rid = request_id or new_id()
        batch = self._run_batch(proposals, rid)
        self._events.emit(rid, STAGE_COMPLETED, batch.message, meta={"batchId": batch.batch_id})
        self._events.finish(rid)
        return batch

    async def execute_action(
        self,
        action: ActionProposal | Mapping,
        request_id: str | None = None,
    ) -> ExecuteResult:
        """Execute one approved action (audited as a batch of one)."""
        batch = await self.execute_actions([action], request_id=request_id)
        if batch.success and batch.records:
            message = batch.records[0].after_state["message"]
        else:
            message = batch.message
        return ExecuteResult(success=batch.success, message=message)

    # --- Diagnostics ---

    async def codex_health(self, settings: ProviderSettings | Mapping | None = None) -> CodexHealth:
        if not isinstance(settings, ProviderSettings):
            settings = ProviderSettings.from_dict(settings, self._config)
        return await self._codex.health(settings.codex)

    def _tooling_root(self) -> Path:
        override = self._config.agent.tooling_dir
        return Path(override).expanduser() if override else config_module.WORKBENCH_TOOLING

    async def capabilities(self, settings: ProviderSettings | Mapping | None = None) -> dict:
        """Built-in action tools, enabled skills and MCP servers."""
        if not isinstance(settings, ProviderSettings):
            settings = ProviderSettings.from_dict(settings, self._config)
        tooling = load_tooling(self._tooling_root())
        mcp_servers = tooling.enabled_server_names()
        if settings.codex.enabled:
            health = await self._codex.health(settings.codex)
            if health.direct_channel_available and "codex" not in mcp_servers:
                mcp_servers.append("codex")
        return {
            "builtinTools": list(ACTION_TYPES),
            "skills": tooling.enabled_skill_ids(),
            "mcpServers": mcp_servers,
        }

    def get_stats(self) -> dict[str, Any]:
        """Get routing statistics."""
        chats = self._routing_stats["chats"]
        return {
            **self._routing_stats,
            "fallback_pct": (self._routing_stats["fallback"] / chats * 100) if chats else 0,
            "codex_invocations": self._codex.invocations,
            "codex_reinforced_retries": self._codex.reinforced_retries,
        }
