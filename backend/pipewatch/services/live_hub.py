"""
Live dashboard hub: WebSocket client registry, subscriptions and broadcast.

A client with no subscriptions receives every event; otherwise it receives
only the event types it subscribed to (``all`` matches everything).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from starlette.websockets import WebSocket, WebSocketDisconnect

from pipewatch.services.engine import PipelineEngine
from pipewatch.services.events import EventBus
from pipewatch.timeutil import utcnow

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Awaitable[dict[str, Any]]]


def envelope(message_type: str, data: Any = None) -> dict[str, Any]:
    return {"type": message_type, "data": data, "timestamp": utcnow().isoformat()}


class LiveHub:
    def __init__(self, engine: PipelineEngine, bus: EventBus, status_provider: StatusProvider):
        self.engine = engine
        self.bus = bus
        self.status_provider = status_provider
        self._clients: dict[WebSocket, set[str]] = {}

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach(self) -> None:
        self.bus.subscribe(self.broadcast)

    def detach(self) -> None:
        self.bus.unsubscribe(self.broadcast)

    async def connect(self, websocket: WebSocket) -> None:
        self._clients[websocket] = set()
        await websocket.send_json(envelope("connection", {
            "message": "Connected to pipeline monitor",
            "active_runs": len(self.engine.get_active_pipeline_runs()),
        }))
        logger.info("Live client connected (%d total)", len(self._clients))

    def disconnect(self, websocket: WebSocket) -> None:
        if self._clients.pop(websocket, None) is not None:
            logger.info("Live client disconnected (%d total)", len(self._clients))

    async def handle_message(self, websocket: WebSocket, message: Any) -> None:
        if not isinstance(message, dict):
            await websocket.send_json(envelope("error", {"message": "Messages must be JSON objects"}))
            return

        kind = message.get("type")
        subscriptions = self._clients.setdefault(websocket, set())
        if kind in ("subscribe", "unsubscribe"):
            requested = message.get("events")
            if requested is None:
                requested = []
            if not isinstance(requested, list):
                await websocket.send_json(envelope("error", {"message": "events must be a list"}))
                return

        if kind == "subscribe":
            subscriptions.update(str(e) for e in requested)
            await websocket.send_json(envelope("subscribed", {"events": sorted(subscriptions)}))
        elif kind == "unsubscribe":
            subscriptions.difference_update(str(e) for e in requested)
            await websocket.send_json(envelope("unsubscribed", {"events": sorted(subscriptions)}))
        elif kind == "ping":
            await websocket.send_json(envelope("pong"))
        elif kind == "get_status":
            await websocket.send_json(envelope("status", await self.status_provider()))
        elif kind == "get_recent_runs":
            limit = message.get("limit") if isinstance(message.get("limit"), int) else 10
            runs = await self.engine.get_recent_pipeline_runs(limit=max(1, min(limit, 100)))
            await websocket.send_json(envelope("recent_runs", [r.model_dump(mode="json") for r in runs]))
        else:
            await websocket.send_json(envelope("error", {"message": f"Unknown message type: {kind}"}))

    @staticmethod
    def _wants(subscriptions: set[str], event_type: str) -> bool:
        return not subscriptions or event_type in subscriptions or "all" in subscriptions

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> int:
        """Send an event to every interested client; returns the number of recipients."""
        message = envelope(event_type, data)
        targets = [ws for ws, subs in list(self._clients.items()) if self._wants(subs, event_type)]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._safe_send(ws, message) for ws in targets), return_exceptions=True
        )
        return sum(1 for r in results if r is True)

    async def _safe_send(self, websocket: WebSocket, message: dict[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Dropping live client after send failure: %s", exc)
            self.disconnect(websocket)
            return False

    async def close_all(self) -> None:
        for websocket in list(self._clients):
            try:
                await websocket.close()
            except RuntimeError as exc:
                logger.debug("Live client already closed: %s", exc)
            self.disconnect(websocket)
