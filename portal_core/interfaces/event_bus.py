"""Interface for event bus and pub/sub messaging.

The chat/collaboration layer consumes orchestration progress only through
these structured events; the core never formats human-readable text.
"""

from typing import Protocol, Callable, Dict, Any, Awaitable, Optional
from enum import Enum


class EventType(Enum):
    """Structured events emitted by orchestration sessions."""
    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_PROGRESS = "node_progress"
    NODE_AWAITING_APPROVAL = "node_awaiting_approval"
    NODE_DONE = "node_done"
    NODE_FAILED = "node_failed"
    NODE_REJECTED = "node_rejected"
    NODE_RETRIED = "node_retried"
    # Approvals
    APPROVAL_RECORDED = "approval_recorded"
    APPROVAL_CONFLICT = "approval_conflict"
    # Outputs
    ARTIFACT_CREATED = "artifact_created"
    # Aggregates
    GRAPH_COMPLETED = "graph_completed"
    SESSION_COMPLETED = "session_completed"


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None
    ) -> None:
        """Publish an event to the bus.

        Args:
            event_type: Type of event
            data: Event data/payload
            source: Optional source identifier
        """
        ...

    async def subscribe(
        self,
        event_type: Optional[EventType],
        handler: Callable[[Dict[str, Any]], Awaitable[None]]
    ) -> str:
        """Subscribe to events of a type (``None`` for every type).

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from events."""
        ...
