"""Tests for workbench_agent.router — stage machine, fallback, execution."""

import json
import sys

import httpx
import pytest

from workbench_agent.config import WorkbenchConfig
from workbench_agent.errors import MalformedActionsError, TransactionAbortError
from workbench_agent.models import ChatSession
from workbench_agent.router import AgentRouter

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="shell-script codex stand-in")


def _openai_transport(content, status=200):
    def handler(request):
        if status != 200:
            return httpx.Response(status, text="upstream down")
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    return httpx.MockTransport(handler)


def _request(provider="openai", api_key="sk-test", message="What should I do today?", **extra):
    data = {
        "requestId": "req-1",
        "messages": [{"role": "user", "content": message}],
        "settings": {"provider": provider, provider: {"apiKey": api_key}, **extra},
    }
    return data


@pytest.fixture
def make_router(store, sink, broadcaster, executor, tmp_path):
    def _make(transport=None, config=None):
        if config is None:
            config = WorkbenchConfig()
            config.agent.tooling_dir = str(tmp_path / "tooling")
        return AgentRouter(
            store, broadcaster, executor, config=config, transport=transport, sink=sink
        )

    return _make


def _stages(store, request_id="req-1"):
    return [e.stage for e in store.get_events(request_id)]


class TestFallback:
    """Any planning failure ends in the deterministic local reply."""

    @pytest.mark.asyncio
    async def test_empty_key_falls_back(self, make_router, store):
        router = make_router(transport=_openai_transport("unused"))
        reply = await router.chat(_request(api_key=""))

        assert len(reply.actions) == 1
        action = reply.actions[0]
        assert action.type == "query.snapshot"
        assert action.requires_approval is True
        assert action.payload == {}
        assert action.id.startswith("snapshot-")
        assert "What should I do today?" in reply.reply
        assert "API key is empty" in reply.reply
        assert _stages(store) == ["runtime_detect", "planning", "error", "fallback", "completed"]

    @pytest.mark.asyncio
    async def test_fallback_counts_snapshot(self, make_router, store):
        with store.transaction() as conn:
            conn.execute("INSERT INTO todos (id, title) VALUES ('t1', 'A')")
            conn.execute("INSERT INTO todos (id, title) VALUES ('t2', 'B')")
        router = make_router(transport=_openai_transport("", status=503))
        reply = await router.chat(_request())
        assert "2 pending todos and 0 events today" in reply.reply
        assert "503" in reply.reply

    @pytest.mark.asyncio
    async def test_malformed_actions_fall_back(self, make_router):
        content = json.dumps({"reply": "x", "actions": [{"id": "a1"}]})
        reply = await make_router(transport=_openai_transport(content)).chat(_request())
        assert [a.type for a in reply.actions] == ["query.snapshot"]

    @pytest.mark.asyncio
    async def test_unknown_provider_falls_back(self, make_router):
        reply = await make_router().chat(_request(provider="gemini"))
        assert "Unknown provider: gemini" in reply.reply
        assert len(reply.actions) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, make_router, monkeypatch):
        router = make_router(transport=_openai_transport("{}"))

        async def explode(*args, **kwargs):
            raise KeyError("surprise")

        monkeypatch.setattr(router._providers["openai"], "complete", explode)
        reply = await router.chat(_request())
        assert "KeyError" in reply.reply
        assert router.get_stats()["fallback"] == 1

    @pytest.mark.asyncio
    async def test_disabled_local_runtime_falls_back(self, make_router):
        reply = await make_router().chat(
            _request(provider="local_runtime", codex={"enabled": False})
        )
        assert "local runtime is disabled" in reply.reply


class TestSuccessfulChat:

    @pytest.mark.asyncio
    async def test_plain_reply(self, make_router, store):
        router = make_router(transport=_openai_transport("Focus on the rent."))
        reply = await router.chat(_request())

        assert reply.reply == "Focus on the rent."
        assert reply.actions == []
        assert _stages(store) == ["runtime_detect", "planning", "completed"]

    @pytest.mark.asyncio
    async def test_actions_executed_and_folded(self, make_router, store):
        content = json.dumps({
            "reply": "Added it.",
            "actions": [{
                "id": "a1", "type": "todo.create", "title": "Add", "reason": "asked",
                "payload": {"title": "Buy milk"}, "requiresApproval": False,
            }],
        })
        reply = await make_router(transport=_openai_transport(content)).chat(_request())

        assert reply.actions == []
        assert reply.reply.startswith("Added it.")
        assert "Todo created" in reply.reply
        assert store.count_rows("todos") == 1
        stages = _stages(store)
        assert stages[:3] == ["runtime_detect", "planning", "executing"]
        assert stages[-1] == "completed"
        seqs = [e.seq for e in store.get_events("req-1")]
        assert seqs == sorted(seqs) == list(range(1, len(seqs) + 1))

    @pytest.mark.asyncio
    async def test_failed_batch_folded(self, make_router, store):
        content = json.dumps({
            "reply": "Trying.",
            "actions": [{
                "id": "a1", "type": "todo.delete", "title": "Del", "reason": "asked",
                "payload": {"id": "ghost"}, "requiresApproval": True,
            }],
        })
        reply = await make_router(transport=_openai_transport(content)).chat(_request())
        assert "rolled back" in reply.reply
        assert reply.actions == []

    @pytest.mark.asyncio
    async def test_transaction_abort_folded_into_reply(self, make_router, executor, monkeypatch):
        def abort(actions, request_id=None):
            raise TransactionAbortError("rollback failed: disk gone")

        monkeypatch.setattr(executor, "execute_batch", abort)
        content = json.dumps({
            "reply": "Ok.",
            "actions": [{
                "id": "a1", "type": "todo.create", "title": "Add", "reason": "r",
                "payload": {"title": "x"}, "requiresApproval": True,
            }],
        })
        reply = await make_router(transport=_openai_transport(content)).chat(_request())
        assert "Execution aborted" in reply.reply

    @pytest.mark.asyncio
    async def test_session_recorded(self, make_router, store):
        await make_router(transport=_openai_transport("Sure.")).chat(_request())
        sessions = store.get_sessions()
        assert len(sessions) == 1
        assert sessions[0]["request_id"] == "req-1"
        assert sessions[0]["provider"] == "openai"
        assert sessions[0]["user_message"] == "What should I do today?"
        assert sessions[0]["reply"] == "Sure."

    @pytest.mark.asyncio
    async def test_session_goes_through_sink(self, make_router, sink, store, monkeypatch):
        submitted = []
        submit = sink.submit
        monkeypatch.setattr(sink, "submit", lambda item: (submitted.append(item), submit(item)))
        sink.start()
        try:
            await make_router(transport=_openai_transport("Sure.")).chat(_request())
            assert [type(i) for i in submitted].count(ChatSession) == 1
            await sink.flush()
            assert store.get_sessions()[0]["reply"] == "Sure."
        finally:
            await sink.close()

    @pytest.mark.asyncio
    async def test_malformed_request_fields_still_answered(self, make_router, store):
        request = _request(codex={"timeoutMs": "slow"})
        request["messages"].insert(0, "oops")
        reply = await make_router(transport=_openai_transport("Sure.")).chat(request)
        assert reply.reply == "Sure."
        assert store.get_sessions()[0]["user_message"] == "What should I do today?"

    @pytest.mark.asyncio
    async def test_provider_alias(self, make_router, store):
        reply = await make_router().chat(
            _request(provider="codex_local", codex={"binaryPath": "/definitely/missing/codex"})
        )
        assert store.get_sessions()[0]["provider"] == "local_runtime"
        assert "codex binary not found" in reply.reply


@posix_only
class TestLocalRuntime:

    @pytest.mark.asyncio
    async def test_exec_channel(self, make_router, make_codex, store):
        text = json.dumps({"reply": "From codex", "actions": []})
        record = json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": text}})
        binary = make_codex(f"cat <<'EOF'\n{record}\nEOF\n")
        reply = await make_router().chat(
            _request(provider="local_runtime", codex={"binaryPathOverride": binary})
        )
        assert reply.reply == "From codex"
        assert _stages(store) == ["runtime_detect", "planning", "completed"]

    @pytest.mark.asyncio
    async def test_direct_channel_probe_falls_back_to_exec(self, make_router, make_codex, store):
        binary = make_codex('case "$1" in mcp-server) exit 1 ;; esac\necho "plain codex answer"\n')
        reply = await make_router().chat(
            _request(
                provider="local_runtime",
                codex={"binaryPathOverride": binary, "preferDirectChannel": True},
            )
        )
        assert reply.reply == "plain codex answer"
        assert _stages(store)[:3] == ["runtime_detect", "exec_fallback", "planning"]

    @pytest.mark.asyncio
    async def test_direct_channel_available(self, make_router, make_codex, store):
        binary = make_codex('echo "answer"\n')
        await make_router().chat(
            _request(
                provider="local_runtime",
                codex={"binaryPathOverride": binary, "preferMcp": True},
            )
        )
        assert _stages(store)[:2] == ["runtime_detect", "mcp_connect"]


class TestDirectExecution:

    @pytest.mark.asyncio
    async def test_execute_action(self, make_router, store):
        result = await make_router().execute_action({
            "id": "a1", "type": "project.create", "title": "New", "reason": "r",
            "payload": {"title": "Launch", "deadline": "2026-12-01"}, "requiresApproval": True,
        }, request_id="exec-1")

        assert result.success is True
        assert result.message == "Project created"
        assert store.count_rows("projects") == 1
        assert len(store.get_audits()) == 1
        assert _stages(store, "exec-1") == ["executing", "completed"]

    @pytest.mark.asyncio
    async def test_execute_action_failure(self, make_router, store):
        result = await make_router().execute_action({
            "id": "a1", "type": "project.create", "title": "New", "reason": "r",
            "payload": {"title": "Launch"}, "requiresApproval": True,
        })
        assert result.success is False
        assert "deadline" in result.message
        assert store.count_rows("projects") == 0

    @pytest.mark.asyncio
    async def test_execute_actions_atomic(self, make_router, store):
        batch = await make_router().execute_actions([
            {"id": "a1", "type": "todo.create", "title": "t", "reason": "r",
             "payload": {"title": "One"}, "requiresApproval": True},
            {"id": "a2", "type": "todo.update", "title": "t", "reason": "r",
             "payload": {"id": "ghost", "title": "x"}, "requiresApproval": True},
        ])
        assert batch.success is False
        assert store.count_rows("todos") == 0
        assert [r.action_id for r in batch.records] == ["a2"]

    @pytest.mark.asyncio
    async def test_malformed_action_rejected(self, make_router):
        with pytest.raises(MalformedActionsError):
            await make_router().execute_actions([{"id": "a1"}])

    @pytest.mark.asyncio
    async def test_transaction_abort_propagates(self, make_router, executor, monkeypatch):
        def abort(actions, request_id=None):
            raise TransactionAbortError("rollback failed")

        monkeypatch.setattr(executor, "execute_batch", abort)
        with pytest.raises(TransactionAbortError):
            await make_router().execute_action({
                "id": "a1", "type": "todo.create", "title": "t", "reason": "r",
                "payload": {"title": "x"}, "requiresApproval": True,
            })


class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_capabilities_without_codex(self, make_router, tmp_path):
        caps = await make_router().capabilities(
            {"codex": {"binaryPathOverride": str(tmp_path / "missing")}}
        )
        assert "todo.create" in caps["builtinTools"]
        assert caps["skills"] == []
        assert caps["mcpServers"] == []

    @pytest.mark.asyncio
    async def test_capabilities_list_enabled_tooling(self, make_router, tmp_path):
        root = tmp_path / "tooling"
        for skill_id, enabled in (("summarize", True), ("draft-email", False)):
            skill_dir = root / "skills" / skill_id
            skill_dir.mkdir(parents=True)
            (skill_dir / "manifest.json").write_text(json.dumps({"id": skill_id, "enabled": enabled}))
        (root / "mcp").mkdir()
        (root / "mcp" / "servers.json").write_text(json.dumps({"servers": [
            {"name": "filesystem", "command": "npx", "args": ["-y", "fs-server"]},
            {"name": "search", "command": "uvx", "enabled": False},
        ]}))

        caps = await make_router().capabilities(
            {"codex": {"binaryPathOverride": str(tmp_path / "missing")}}
        )
        assert caps["skills"] == ["summarize"]
        assert caps["mcpServers"] == ["filesystem"]

    @pytest.mark.asyncio
    async def test_codex_health_not_found(self, make_router, tmp_path):
        health = await make_router().codex_health(
            {"codex": {"binaryPathOverride": str(tmp_path / "missing")}}
        )
        assert health.found is False

    @pytest.mark.asyncio
    async def test_stats(self, make_router):
        router = make_router(transport=_openai_transport("ok"))
        await router.chat(_request())
        await router.chat(_request(api_key=""))
        stats = router.get_stats()
        assert stats["chats"] == 2
        assert stats["remote"] == 2
        assert stats["fallback"] == 1
        assert stats["fallback_pct"] == 50

    def test_default_provider_from_config(self, store, broadcaster, executor):
        config = WorkbenchConfig(default_provider="anthropic")
        router = AgentRouter(store, broadcaster, executor, config=config)
        assert router._config.default_provider == "anthropic"
