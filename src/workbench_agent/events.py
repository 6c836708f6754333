"""Stage event bus: per-request ordered events to listeners + the audit sink."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

from workbench_agent.audit import AuditSink
from workbench_agent.models import STAGES, AgentStreamEvent

logger = logging.getLogger(__name__)


class StageBroadcaster:
    """Assigns sequence numbers, notifies listeners, persists through the sink."""

    def __init__(self, sink: AuditSink | None = None):
        self._sink = sink
        self._listeners: list[Callable] = []
        self._seq: dict[str, int] = defaultdict(int)

    def emit(
        self,
        request_id: str,
        stage: str,
        message: str,
        meta: dict | None = None,
    ) -> AgentStreamEvent:
        """Emit one stage event. Never raises on listener or sink failure."""
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")

        self._seq[request_id] += 1
        event = AgentStreamEvent(
            request_id=request_id,
            stage=stage,
            message=message,
            seq=self._seq[request_id],
            meta=meta,
        )
        logger.debug(f"[{request_id}] #{event.seq} {stage}: {message}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        if self._sink is not None:
            self._sink.submit(event)
        return event

    def finish(self, request_id: str) -> None:
        """Forget the sequence counter of a finished request."""
        self._seq.pop(request_id, None)

    def add_listener(self, callback: Callable[[AgentStreamEvent], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass
