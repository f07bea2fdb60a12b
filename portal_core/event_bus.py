"""Lightweight in-memory event bus satisfying the IEventBus protocol.

Used to fan orchestration events out to the chat layer, the SSE endpoint
and audit sinks within one process.
"""

import inspect
import logging
import uuid
from typing import Any, Callable, Awaitable, Dict, Optional

from portal_core.interfaces.event_bus import EventType

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Simple async event bus for single-process use.

    Satisfies ``portal_core.interfaces.IEventBus`` via structural subtyping.
    Subscribing with ``event_type=None`` receives every event.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[Optional[EventType], Dict[str, Callable]] = {}

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> None:
        if source:
            data = {**data, "_source": source}
        handlers = list(self._subscribers.get(event_type, {}).values())
        handlers += list(self._subscribers.get(None, {}).values())
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception:
                # A broken observer must not stall scheduling
                logger.exception("Event handler failed for %s", event_type.value)

    async def subscribe(
        self,
        event_type: Optional[EventType],
        handler: Callable[[Dict[str, Any]], Awaitable[None]],
    ) -> str:
        if event_type not in self._subscribers:
            self._subscribers[event_type] = {}
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers[event_type][sub_id] = handler
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        for handlers in self._subscribers.values():
            handlers.pop(subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())
