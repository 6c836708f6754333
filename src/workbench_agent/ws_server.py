"""WebSocket bridge: localhost server for the workbench UI.

Protocol: JSON messages over ws://127.0.0.1:9848
Commands: chat, execute_action, execute_actions, get_events, get_audits,
          get_sessions, codex_health, get_capabilities, get_stats
Events: every stage event is pushed to all connected clients
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from workbench_agent.errors import MalformedActionsError
from workbench_agent.events import StageBroadcaster
from workbench_agent.models import AgentStreamEvent
from workbench_agent.router import AgentRouter
from workbench_agent.store import WorkbenchStore

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9848


class WorkbenchWSServer:
    """WebSocket server for local UI clients."""

    def __init__(
        self,
        router: AgentRouter,
        broadcaster: StageBroadcaster,
        store: WorkbenchStore,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
    ):
        self._router = router
        self._events = broadcaster
        self._store = store
        self._host = host
        self._port = port
        self._clients: set = set()
        self._server = None

        self._events.add_listener(self._broadcast_event)

    async def start(self) -> None:
        """Start WebSocket server."""
        self._server = await serve(self._handler, self._host, self._port)
        logger.info(f"WebSocket server listening on ws://{self._host}:{self._port}")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Close the server and all connections."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket server stopped")

        self._events.remove_listener(self._broadcast_event)

    async def _handler(self, websocket) -> None:
        """Handle a single client connection."""
        self._clients.add(websocket)
        remote = websocket.remote_address
        logger.info(f"Client connected: {remote}")

        try:
            async for raw in websocket:
                try:
                    cmd_data = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({
                        "type": "error",
                        "data": {"message": "Invalid JSON"},
                    }))
                    continue

                await self._handle_command(websocket, cmd_data)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info(f"Client disconnected: {remote}")

    async def _handle_command(self, ws, cmd_data: dict) -> None:
        """Dispatch a command from a client.

        Expected format: {"type": "command", "action": "...", "id": "...", "data": {...}}
        """
        action = cmd_data.get("action", "")
        data = cmd_data.get("data") or {}
        request_id = cmd_data.get("id")
        started_at = time.time()

        try:
            result = await self._dispatch(action, data)
        except MalformedActionsError as e:
            result = {"error": str(e), "error_type": type(e).__name__}
        except Exception as e:
            logger.exception("Command error (%s): %s", action, e)
            result = {"error": str(e), "error_type": type(e).__name__}

        duration_ms = int(max(0.0, (time.time() - started_at) * 1000))
        response = {
            "type": "response",
            "id": request_id,
            "action": action,
            "data": result,
            "durationMs": duration_ms,
        }
        await ws.send(json.dumps(response, default=str, ensure_ascii=False))

    async def _dispatch(self, action: str, data: dict) -> Any:
        if action == "chat":
            if not data.get("messages"):
                return {"error": "Missing 'messages'"}
            reply = await self._router.chat(data)
            return reply.to_dict()

        if action == "execute_action":
            if not isinstance(data.get("action"), dict):
                return {"error": "Missing 'action'"}
            result = await self._router.execute_action(
                data["action"], request_id=data.get("requestId")
            )
            return result.to_dict()

        if action == "execute_actions":
            if not isinstance(data.get("actions"), list):
                return {"error": "Missing 'actions'"}
            batch = await self._router.execute_actions(
                data["actions"], request_id=data.get("requestId")
            )
            return batch.to_dict()

        if action == "get_events":
            events = self._store.get_events(
                request_id=data.get("requestId"), limit=int(data.get("limit", 200))
            )
            return {"events": [e.to_dict() for e in events]}

        if action == "get_audits":
            audits = self._store.get_audits(
                batch_id=data.get("batchId"), limit=int(data.get("limit", 100))
            )
            return {"audits": [a.to_dict() for a in audits]}

        if action == "get_sessions":
            return {"sessions": self._store.get_sessions(limit=int(data.get("limit", 20)))}

        if action == "codex_health":
            health = await self._router.codex_health(data.get("settings"))
            return health.to_dict()

        if action == "get_capabilities":
            return await self._router.capabilities(data.get("settings"))

        if action == "get_stats":
            return self._router.get_stats()

        return {"error": f"Unknown action: {action}"}

    def _broadcast_event(self, event: AgentStreamEvent) -> None:
        """Broadcaster listener callback: push events to all clients."""
        if not self._clients:
            return

        message = json.dumps({"type": "event", "data": event.to_dict()}, default=str)

        stale: set = set()
        for ws in self._clients:
            try:
                asyncio.ensure_future(ws.send(message))
            except Exception:
                stale.add(ws)

        self._clients -= stale
