"""
In-process event bus.

Engine, WebhookPipeline and AlertManager publish lifecycle events here; the
live dashboard hub and the alert manager subscribe.
"""

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

PIPELINE_STARTED = "pipeline_started"
PIPELINE_UPDATED = "pipeline_updated"
PIPELINE_COMPLETED = "pipeline_completed"
WEBHOOK_RECEIVED = "webhook_received"
WEBHOOK_UPDATED = "webhook_updated"
ALERT = "alert"


class EventBus:
    def __init__(self):
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> EventHandler:
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Deliver an event to every handler; a failing handler is logged and skipped."""
        for handler in list(self._handlers):
            try:
                await handler(event_type, data)
            except Exception as exc:
                logger.error(
                    "Event handler %s failed on %s: %s",
                    getattr(handler, "__qualname__", handler), event_type, exc,
                    exc_info=True,
                )
