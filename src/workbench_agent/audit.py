"""Best-effort background writer for stage events, chat sessions and execution audits.

Writes go through a bounded queue drained by one worker task, so callers
never wait on disk and per-request write order is preserved. A failed or
dropped write is logged and never reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging

from workbench_agent.models import AgentStreamEvent, ChatSession, ExecutionAuditRecord
from workbench_agent.store import WorkbenchStore

logger = logging.getLogger(__name__)

AuditItem = AgentStreamEvent | ChatSession | ExecutionAuditRecord


class AuditSink:
    """Single-worker FIFO sink in front of the store."""

    def __init__(self, store: WorkbenchStore, maxsize: int = 1000):
        self._store = store
        self._queue: asyncio.Queue[AuditItem] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self._deferred: list[AuditItem] = []
        self.dropped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Launch the worker. Must be called from a running event loop."""
        if self.running:
            return
        self._worker = asyncio.get_running_loop().create_task(self._drain())

    def submit(self, item: AuditItem) -> None:
        """Queue a write without blocking. Writes inline when not started."""
        if not self.running:
            # Inline writes must not join an open batch transaction
            self._deferred.append(item)
            if not self._store.in_transaction:
                self._write_deferred()
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Audit queue full, dropping %s", type(item).__name__)

    async def flush(self) -> None:
        """Wait until everything submitted so far is written."""
        if self.running:
            await self._queue.join()
        if not self._store.in_transaction:
            self._write_deferred()

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                self._write(item)
            finally:
                self._queue.task_done()

    def _write_deferred(self) -> None:
        pending, self._deferred = self._deferred, []
        for item in pending:
            self._write(item)

    def _write(self, item: AuditItem) -> None:
        try:
            if isinstance(item, AgentStreamEvent):
                self._store.record_event(item)
            elif isinstance(item, ChatSession):
                self._store.record_session(item)
            else:
                self._store.record_audit(item)
        except Exception as e:
            self.failed += 1
            logger.warning(f"Audit write failed ({type(item).__name__}): {e}")
