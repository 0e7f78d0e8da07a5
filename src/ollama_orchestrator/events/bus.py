"""Publish/subscribe channel carrying orchestrator change notifications.

Usage:
    bus = EventBus()

    async def on_state(event):
        render(event.data["state"])

    bus.subscribe(STATE_CHANGED, on_state)
    await bus.publish(STATE_CHANGED, {"state": snapshot}, source="orchestrator")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Deliver events to handlers in subscription order.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and does not stop delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "topic": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)
            LOGGER.debug(
                "events.unsubscribed",
                extra={"event": "events.unsubscribed", "topic": event_name},
            )

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, ()))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to every subscriber of ``event_name``."""
        event = Event(name=event_name, data=data, source=source)
        # Copy so handlers may unsubscribe while being notified.
        handlers = list(self._subscribers.get(event_name, ()))
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    result = handler(event)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as exc:  # noqa: BLE001 - one bad subscriber must not break the rest.
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "topic": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
