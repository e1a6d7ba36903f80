"""
Live dashboard channel.

WS /ws: sends a ``connection`` message on open, then serves subscribe /
unsubscribe / ping / get_status / get_recent_runs requests and pushes
pipeline, webhook and alert events as they happen.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pipewatch.services.live_hub import envelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    system = getattr(websocket.app.state, "system", None)
    if system is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    hub = system.hub
    await hub.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json(envelope("error", {"message": "Invalid JSON"}))
                continue
            await hub.handle_message(websocket, message)
    except WebSocketDisconnect as exc:
        logger.debug("Live client closed the connection (code %s)", exc.code)
    finally:
        hub.disconnect(websocket)
