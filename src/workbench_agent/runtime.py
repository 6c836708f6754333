"""Composition root: build the store, sink, broadcaster, executor and router once."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from workbench_agent.audit import AuditSink
from workbench_agent.codex_runtime import CodexRuntime
from workbench_agent.config import WorkbenchConfig
from workbench_agent.events import StageBroadcaster
from workbench_agent.executor import BatchExecutor
from workbench_agent.router import AgentRouter
from workbench_agent.store import WorkbenchStore

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    config: WorkbenchConfig
    store: WorkbenchStore
    sink: AuditSink
    broadcaster: StageBroadcaster
    executor: BatchExecutor
    router: AgentRouter


@asynccontextmanager
async def open_runtime(
    config: WorkbenchConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[AgentRuntime]:
    """Wire every component against one store and run the audit worker.

    Pending audit writes are flushed and the store closed on exit.
    """
    config = config or WorkbenchConfig.load()
    store = WorkbenchStore(config.db_path)
    sink = AuditSink(store, maxsize=config.agent.event_queue_size)
    broadcaster = StageBroadcaster(sink)
    executor = BatchExecutor(store, sink, broadcaster)
    router = AgentRouter(
        store,
        broadcaster,
        executor,
        codex=CodexRuntime(config.agent),
        config=config,
        transport=transport,
        sink=sink,
    )

    sink.start()
    logger.debug(f"Agent runtime opened on {config.db_path}")
    try:
        yield AgentRuntime(config, store, sink, broadcaster, executor, router)
    finally:
        await sink.close()
        store.close()
        if sink.dropped or sink.failed:
            logger.warning(
                f"Audit sink dropped {sink.dropped} and failed {sink.failed} writes"
            )
