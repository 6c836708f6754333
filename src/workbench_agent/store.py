"""SQLite store: workbench tables plus the agent's append-only audit trail.

The store is constructed once by the composition root and passed to every
component that needs it. It keeps a single connection in autocommit mode;
``transaction()`` opens an explicit ``BEGIN IMMEDIATE`` block for batches.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator

from workbench_agent.errors import ExecutionError, TransactionAbortError
from workbench_agent.models import (
    AgentStreamEvent,
    ChatSession,
    ExecutionAuditRecord,
    new_id,
)

logger = logging.getLogger(__name__)

WORKBENCH_TABLES = ("todos", "projects", "events", "personal_tasks")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS todos (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        completed INTEGER DEFAULT 0,
        priority TEXT DEFAULT 'normal',
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        deadline TEXT,
        progress INTEGER DEFAULT 0,
        status TEXT DEFAULT 'active'
    );

    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        date TEXT NOT NULL,
        color TEXT DEFAULT 'blue',
        note TEXT
    );

    CREATE TABLE IF NOT EXISTS personal_tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        budget REAL,
        date TEXT,
        location TEXT,
        note TEXT
    );

    CREATE TABLE IF NOT EXISTS agent_sessions (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        user_message TEXT,
        reply TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS agent_events (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        stage TEXT NOT NULL,
        message TEXT NOT NULL,
        meta_json TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS agent_action_audits (
        id TEXT PRIMARY KEY,
        batch_id TEXT NOT NULL,
        action_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        before_state_json TEXT,
        after_state_json TEXT,
        success INTEGER NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_agent_events_request ON agent_events(request_id, seq);
    CREATE INDEX IF NOT EXISTS idx_agent_audits_batch ON agent_action_audits(batch_id);
    CREATE INDEX IF NOT EXISTS idx_agent_sessions_created ON agent_sessions(created_at);
"""


class WorkbenchStore:
    """SQLite-backed workbench data and agent audit trail."""

    def __init__(self, db_path: Path | str, wal: bool = True, busy_timeout_s: float = 5.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=busy_timeout_s,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @property
    def in_transaction(self) -> bool:
        return not self._closed and self._conn.in_transaction

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block. Rolls back on any exception.

        Failing to take the write lock raises ExecutionError. A failed
        rollback raises TransactionAbortError in place of the original error.
        """
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise ExecutionError(f"could not start transaction: {exc}") from exc
            try:
                yield self._conn
            except BaseException:
                self._rollback()
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise ExecutionError(f"commit failed: {exc}") from exc

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("rollback failed: %s", exc)
            raise TransactionAbortError(f"rollback failed: {exc}") from exc

    # --- Workbench reads ---

    def fetch_row(self, table: str, row_id: str) -> dict | None:
        """Read one workbench row by id (table must be a workbench table)."""
        if table not in WORKBENCH_TABLES:
            raise ValueError(f"Unknown workbench table: {table}")
        with self._lock:
            row = self._conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
        return dict(row) if row else None

    def count_rows(self, table: str) -> int:
        if table not in WORKBENCH_TABLES:
            raise ValueError(f"Unknown workbench table: {table}")
        with self._lock:
            return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def dump_tables(self) -> dict[str, list[dict]]:
        """Every workbench row, ordered by id. Used to compare store states."""
        with self._lock:
            return {
                table: [
                    dict(r)
                    for r in self._conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
                ]
                for table in WORKBENCH_TABLES
            }

    def build_snapshot(self, today: str | None = None) -> dict:
        """Compact view of pending work, fed to the model as context."""
        today = today or date.today().isoformat()
        with self._lock:
            todos = self._conn.execute(
                "SELECT id, title, priority FROM todos WHERE completed = 0 "
                "ORDER BY created_at DESC LIMIT 8"
            ).fetchall()
            projects = self._conn.execute(
                "SELECT id, title, deadline, progress FROM projects WHERE status = 'active' "
                "ORDER BY deadline LIMIT 8"
            ).fetchall()
            events = self._conn.execute(
                "SELECT id, title, date, color, note FROM events WHERE date = ? "
                "ORDER BY date LIMIT 10",
                (today,),
            ).fetchall()
            personal = self._conn.execute(
                "SELECT id, title, date, budget FROM personal_tasks ORDER BY date LIMIT 8"
            ).fetchall()
        return {
            "today": today,
            "pendingTodos": [dict(r) for r in todos],
            "activeProjects": [dict(r) for r in projects],
            "todayEvents": [dict(r) for r in events],
            "personalTasks": [dict(r) for r in personal],
        }

    # --- Agent sessions ---

    def record_session(self, session: ChatSession) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO agent_sessions "
                "(id, request_id, provider, user_message, reply, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    session.id, session.request_id, session.provider,
                    session.user_message, session.reply, session.created_at,
                ),
            )

    def get_sessions(self, limit: int = 20) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, request_id, provider, user_message, reply, created_at "
                "FROM agent_sessions ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    # --- Stage events ---

    def record_event(self, event: AgentStreamEvent) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO agent_events "
                "(id, request_id, seq, stage, message, meta_json, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    new_id(), event.request_id, event.seq, event.stage, event.message,
                    json.dumps(event.meta, default=str) if event.meta is not None else None,
                    event.created_at,
                ),
            )

    def get_events(self, request_id: str | None = None, limit: int = 200) -> list[AgentStreamEvent]:
        query = "SELECT request_id, seq, stage, message, meta_json, created_at FROM agent_events"
        params: list = []
        if request_id:
            query += " WHERE request_id = ?"
            params.append(request_id)
        query += " ORDER BY created_at, seq LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            AgentStreamEvent(
                request_id=r["request_id"],
                stage=r["stage"],
                message=r["message"],
                seq=r["seq"],
                meta=json.loads(r["meta_json"]) if r["meta_json"] else None,
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # --- Execution audits ---

    def record_audit(self, record: ExecutionAuditRecord) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO agent_action_audits "
                "(id, batch_id, action_id, action_type, payload_json, before_state_json, "
                "after_state_json, success, error_message, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id, record.batch_id, record.action_id, record.action_type,
                    json.dumps(record.payload, default=str),
                    json.dumps(record.before_state, default=str) if record.before_state is not None else None,
                    json.dumps(record.after_state, default=str) if record.after_state is not None else None,
                    1 if record.success else 0,
                    record.error,
                    record.created_at,
                ),
            )

    def get_audits(self, batch_id: str | None = None, limit: int = 100) -> list[ExecutionAuditRecord]:
        query = (
            "SELECT id, batch_id, action_id, action_type, payload_json, before_state_json, "
            "after_state_json, success, error_message, created_at FROM agent_action_audits"
        )
        params: list = []
        if batch_id:
            query += " WHERE batch_id = ?"
            params.append(batch_id)
        query += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            ExecutionAuditRecord(
                id=r["id"],
                batch_id=r["batch_id"],
                action_id=r["action_id"],
                action_type=r["action_type"],
                payload=json.loads(r["payload_json"]),
                before_state=json.loads(r["before_state_json"]) if r["before_state_json"] else None,
                after_state=json.loads(r["after_state_json"]) if r["after_state_json"] else None,
                success=bool(r["success"]),
                error=r["error_message"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
