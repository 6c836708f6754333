"""Tests for workbench_agent.store — SQLite persistence layer."""

import sqlite3
from datetime import date

import pytest

from workbench_agent.errors import TransactionAbortError
from workbench_agent.models import AgentStreamEvent, ChatSession, ExecutionAuditRecord


class TestTransactions:
    """Explicit transaction blocks."""

    def test_commit(self, store):
        with store.transaction() as conn:
            conn.execute("INSERT INTO todos (id, title) VALUES ('t1', 'Commit me')")
        assert store.fetch_row("todos", "t1")["title"] == "Commit me"

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as conn:
                conn.execute("INSERT INTO todos (id, title) VALUES ('t1', 'Gone')")
                raise RuntimeError("boom")
        assert store.fetch_row("todos", "t1") is None

    def test_failed_rollback_aborts(self, store):
        with pytest.raises(TransactionAbortError):
            with store.transaction() as conn:
                # Ending the transaction early makes the rollback fail
                conn.execute("COMMIT")
                raise RuntimeError("boom")


class TestWorkbenchReads:

    def test_fetch_row_rejects_unknown_table(self, store):
        with pytest.raises(ValueError, match="Unknown workbench table"):
            store.fetch_row("sqlite_master", "x")

    def test_snapshot_contents(self, store):
        today = date.today().isoformat()
        with store.transaction() as conn:
            conn.execute("INSERT INTO todos (id, title) VALUES ('t1', 'Open')")
            conn.execute("INSERT INTO todos (id, title, completed) VALUES ('t2', 'Done', 1)")
            conn.execute("INSERT INTO projects (id, title, deadline) VALUES ('p1', 'Launch', '2026-12-01')")
            conn.execute(
                "INSERT INTO projects (id, title, deadline, status) "
                "VALUES ('p2', 'Old', '2020-01-01', 'archived')"
            )
            conn.execute("INSERT INTO events (id, title, date) VALUES ('e1', 'Standup', ?)", (today,))
            conn.execute("INSERT INTO events (id, title, date) VALUES ('e2', 'Later', '2099-01-01')")

        snapshot = store.build_snapshot()
        assert snapshot["today"] == today
        assert [t["id"] for t in snapshot["pendingTodos"]] == ["t1"]
        assert [p["id"] for p in snapshot["activeProjects"]] == ["p1"]
        assert [e["id"] for e in snapshot["todayEvents"]] == ["e1"]
        assert snapshot["personalTasks"] == []

    def test_dump_tables(self, store):
        with store.transaction() as conn:
            conn.execute("INSERT INTO personal_tasks (id, title, budget) VALUES ('x', 'Gym', 30)")
        dump = store.dump_tables()
        assert set(dump) == {"todos", "projects", "events", "personal_tasks"}
        assert dump["personal_tasks"][0]["budget"] == 30


class TestAgentTrail:
    """Sessions, stage events and audits."""

    def test_sessions_most_recent_first(self, store):
        store.record_session(ChatSession("r1", "openai", "first", "reply 1", created_at="2026-01-01T00:00:00+00:00"))
        store.record_session(ChatSession("r2", "anthropic", "second", "reply 2", created_at="2026-01-01T00:00:01+00:00"))
        sessions = store.get_sessions(limit=10)
        assert [s["request_id"] for s in sessions] == ["r2", "r1"]
        assert sessions[0]["provider"] == "anthropic"

    def test_events_ordered_by_seq(self, store):
        for seq, stage in ((1, "runtime_detect"), (2, "planning"), (3, "completed")):
            store.record_event(AgentStreamEvent("r1", stage, stage, seq, meta={"n": seq}))
        store.record_event(AgentStreamEvent("r2", "runtime_detect", "other", 1))

        events = store.get_events("r1")
        assert [e.seq for e in events] == [1, 2, 3]
        assert events[0].meta == {"n": 1}
        assert len(store.get_events()) == 4

    def test_audit_round_trip(self, store):
        record = ExecutionAuditRecord(
            batch_id="b1",
            action_id="a1",
            action_type="todo.update",
            payload={"id": "t1", "title": "x"},
            success=True,
            before_state={"id": "t1", "title": "old"},
            after_state={"message": "Todo updated"},
        )
        store.record_audit(record)
        store.record_audit(ExecutionAuditRecord("b2", "a2", "todo.delete", {}, False, error="nope"))

        audits = store.get_audits("b1")
        assert len(audits) == 1
        assert audits[0] == record
        assert len(store.get_audits()) == 2

    def test_schema_has_no_duplicate_audit_ids(self, store):
        record = ExecutionAuditRecord("b1", "a1", "todo.create", {}, True)
        store.record_audit(record)
        with pytest.raises(sqlite3.IntegrityError):
            store.record_audit(record)
