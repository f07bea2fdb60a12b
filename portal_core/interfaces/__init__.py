"""Portal interface contracts (Protocol-based dependency injection)."""

from portal_core.interfaces.agent_runner import IAgentRunner, RunnerUpdate, TaskDescriptor
from portal_core.interfaces.event_bus import IEventBus, EventType
from portal_core.interfaces.kv_store import IKeyValueStore

__all__ = [
    "IAgentRunner",
    "RunnerUpdate",
    "TaskDescriptor",
    "IEventBus",
    "EventType",
    "IKeyValueStore",
]
