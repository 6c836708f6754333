"""All-or-nothing execution of agent action batches.

Every action in a batch runs inside one ``BEGIN IMMEDIATE`` transaction on
the store. The first failure rolls the whole batch back and only the failing
action is audited; a clean batch commits and audits every action.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from workbench_agent import actions as act
from workbench_agent.actions import ActionProposal
from workbench_agent.audit import AuditSink
from workbench_agent.errors import ActionValidationError, ExecutionError, TransactionAbortError
from workbench_agent.events import StageBroadcaster
from workbench_agent.models import (
    STAGE_ERROR,
    STAGE_EXECUTING,
    BatchResult,
    ExecutionAuditRecord,
    new_id,
)
from workbench_agent.store import WorkbenchStore

logger = logging.getLogger(__name__)

# One fixed statement per mutation. Updates keep a column when its
# parameter is NULL.
SQL_TODO_INSERT = "INSERT INTO todos (id, title, priority) VALUES (?, ?, ?)"
SQL_TODO_UPDATE = (
    "UPDATE todos SET title = COALESCE(?, title), completed = COALESCE(?, completed), "
    "priority = COALESCE(?, priority) WHERE id = ?"
)
SQL_TODO_DELETE = "DELETE FROM todos WHERE id = ?"
SQL_PROJECT_INSERT = (
    "INSERT INTO projects (id, title, deadline, progress, status) VALUES (?, ?, ?, 0, 'active')"
)
SQL_PROJECT_PROGRESS = "UPDATE projects SET progress = ? WHERE id = ?"
SQL_PROJECT_DELETE = "DELETE FROM projects WHERE id = ?"
SQL_EVENT_INSERT = "INSERT INTO events (id, title, date, color, note) VALUES (?, ?, ?, ?, ?)"
SQL_EVENT_UPDATE = (
    "UPDATE events SET title = COALESCE(?, title), date = COALESCE(?, date), "
    "color = COALESCE(?, color), note = COALESCE(?, note) WHERE id = ?"
)
SQL_EVENT_DELETE = "DELETE FROM events WHERE id = ?"
SQL_PERSONAL_INSERT = (
    "INSERT INTO personal_tasks (id, title, budget, date, location, note) VALUES (?, ?, ?, ?, ?, ?)"
)
SQL_PERSONAL_UPDATE = (
    "UPDATE personal_tasks SET title = COALESCE(?, title), budget = COALESCE(?, budget), "
    "date = COALESCE(?, date), location = COALESCE(?, location), note = COALESCE(?, note) "
    "WHERE id = ?"
)
SQL_PERSONAL_DELETE = "DELETE FROM personal_tasks WHERE id = ?"


class BatchExecutor:
    """Applies action batches atomically and audits the outcome."""

    def __init__(
        self,
        store: WorkbenchStore,
        sink: AuditSink,
        broadcaster: StageBroadcaster,
    ):
        self._store = store
        self._sink = sink
        self._events = broadcaster
        self._handlers: dict[str, Callable] = {
            act.TODO_CREATE: self._todo_create,
            act.TODO_UPDATE: self._todo_update,
            act.TODO_DELETE: self._delete("todos", SQL_TODO_DELETE, "Todo deleted"),
            act.PROJECT_CREATE: self._project_create,
            act.PROJECT_UPDATE_PROGRESS: self._project_progress,
            act.PROJECT_DELETE: self._delete("projects", SQL_PROJECT_DELETE, "Project deleted"),
            act.EVENT_CREATE: self._event_create,
            act.EVENT_UPDATE: self._event_update,
            act.EVENT_DELETE: self._delete("events", SQL_EVENT_DELETE, "Event deleted"),
            act.PERSONAL_CREATE: self._personal_create,
            act.PERSONAL_UPDATE: self._personal_update,
            act.PERSONAL_DELETE: self._delete(
                "personal_tasks", SQL_PERSONAL_DELETE, "Personal task deleted"
            ),
            act.QUERY_SNAPSHOT: self._query_snapshot,
        }

    def execute_batch(
        self,
        actions: list[ActionProposal],
        request_id: str | None = None,
    ) -> BatchResult:
        """Run ``actions`` in order as one transaction.

        Raises:
            TransactionAbortError: the rollback itself failed.
        """
        batch_id = new_id()
        request_id = request_id or batch_id
        total = len(actions)
        applied: list[tuple[ActionProposal, dict | None, str]] = []
        failed_action: ActionProposal | None = None
        began = False

        try:
            with self._store.transaction() as conn:
                began = True
                for action in actions:
                    try:
                        before, message = self._apply(conn, action)
                    except (ActionValidationError, ExecutionError):
                        failed_action = action
                        self._progress(request_id, total, len(applied), failed=1)
                        raise
                    applied.append((action, before, message))
                    self._progress(request_id, total, len(applied), failed=0)
        except (ActionValidationError, ExecutionError) as exc:
            # A commit failure has no failing action of its own. A batch that
            # never got the write lock attempted nothing and is not audited.
            if failed_action is None and began and actions:
                failed_action = actions[-1]
            return self._fail(request_id, batch_id, failed_action, exc)

        records = [
            ExecutionAuditRecord(
                batch_id=batch_id,
                action_id=action.id,
                action_type=action.type,
                payload=action.payload,
                success=True,
                before_state=before,
                after_state={"message": message},
            )
            for action, before, message in applied
        ]
        for record in records:
            self._sink.submit(record)

        if total == 0:
            summary = "No actions to execute"
        else:
            summary = f"Executed {total} action(s): " + "; ".join(m for _, _, m in applied)
        logger.info(f"Batch {batch_id} committed ({total} actions)")
        return BatchResult(success=True, batch_id=batch_id, message=summary, records=records)

    def _progress(self, request_id: str, total: int, succeeded: int, failed: int) -> None:
        self._events.emit(
            request_id,
            STAGE_EXECUTING,
            f"Executed {succeeded + failed}/{total}",
            meta={
                "total": total,
                "completed": succeeded + failed,
                "success": succeeded,
                "failed": failed,
            },
        )

    def _fail(
        self,
        request_id: str,
        batch_id: str,
        action: ActionProposal | None,
        exc: Exception,
    ) -> BatchResult:
        label = f"{action.type} ({action.id})" if action else "batch"
        message = f"Batch rolled back: {label} failed: {exc}"
        logger.warning(message)
        self._events.emit(request_id, STAGE_ERROR, message, meta={"batchId": batch_id})

        records = []
        if action is not None:
            record = ExecutionAuditRecord(
                batch_id=batch_id,
                action_id=action.id,
                action_type=action.type,
                payload=action.payload,
                success=False,
                error=str(exc),
            )
            self._sink.submit(record)
            records.append(record)
        return BatchResult(success=False, batch_id=batch_id, message=message, records=records)

    def _apply(self, conn: sqlite3.Connection, action: ActionProposal) -> tuple[dict | None, str]:
        try:
            act.validate(action.type, action.payload)
            payload = act.parse_payload(action.type, action.payload)
            return self._handlers[action.type](conn, payload)
        except (ActionValidationError, ExecutionError, TransactionAbortError):
            raise
        except sqlite3.Error as exc:
            raise ExecutionError(f"{action.type} failed: {exc}") from exc
        except Exception as exc:
            # Model JSON can carry values sqlite cannot bind (lone surrogates, huge ints)
            raise ExecutionError(f"{action.type} failed: {type(exc).__name__}: {exc}") from exc

    def _existing(self, table: str, row_id: str) -> dict:
        row = self._store.fetch_row(table, row_id)
        if row is None:
            raise ExecutionError(f"No row in {table} with id {row_id}")
        return row

    # --- Handlers: (conn, typed payload) -> (before_state, confirmation) ---

    def _todo_create(self, conn, p: act.TodoCreate):
        conn.execute(SQL_TODO_INSERT, (new_id(), p.title, p.priority))
        return None, "Todo created"

    def _todo_update(self, conn, p: act.TodoUpdate):
        before = self._existing("todos", p.id)
        completed = None if p.completed is None else int(p.completed)
        conn.execute(SQL_TODO_UPDATE, (p.title, completed, p.priority, p.id))
        return before, "Todo updated"

    def _project_create(self, conn, p: act.ProjectCreate):
        conn.execute(SQL_PROJECT_INSERT, (new_id(), p.title, p.deadline))
        return None, "Project created"

    def _project_progress(self, conn, p: act.ProjectProgress):
        before = self._existing("projects", p.id)
        conn.execute(SQL_PROJECT_PROGRESS, (p.progress, p.id))
        return before, "Project progress updated"

    def _event_create(self, conn, p: act.EventCreate):
        conn.execute(SQL_EVENT_INSERT, (new_id(), p.title, p.date, p.color, p.note))
        return None, "Event created"

    def _event_update(self, conn, p: act.EventUpdate):
        before = self._existing("events", p.id)
        conn.execute(SQL_EVENT_UPDATE, (p.title, p.date, p.color, p.note, p.id))
        return before, "Event updated"

    def _personal_create(self, conn, p: act.PersonalCreate):
        conn.execute(
            SQL_PERSONAL_INSERT, (new_id(), p.title, p.budget, p.date, p.location, p.note)
        )
        return None, "Personal task created"

    def _personal_update(self, conn, p: act.PersonalUpdate):
        before = self._existing("personal_tasks", p.id)
        conn.execute(
            SQL_PERSONAL_UPDATE, (p.title, p.budget, p.date, p.location, p.note, p.id)
        )
        return before, "Personal task updated"

    def _delete(self, table: str, sql: str, confirmation: str) -> Callable:
        def handler(conn, p: act.EntityRef):
            before = self._existing(table, p.id)
            conn.execute(sql, (p.id,))
            return before, confirmation

        return handler

    def _query_snapshot(self, conn, p: act.SnapshotQuery):
        snapshot = self._store.build_snapshot()
        return None, (
            f"Snapshot: {len(snapshot['pendingTodos'])} pending todos, "
            f"{len(snapshot['activeProjects'])} active projects, "
            f"{len(snapshot['todayEvents'])} events today"
        )
