"""Interface for the external Agent Runner capability.

The orchestration core never performs agent reasoning.  For each
dispatched node it calls ``invoke`` and consumes the returned async
iterator of ``RunnerUpdate`` values: progress deltas, then either a final
result or an error.  Cancelling the consuming task cancels the run.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Protocol


@dataclass(frozen=True)
class TaskDescriptor:
    """Everything a runner needs to execute one node."""

    session_id: str
    graph_id: str
    node_id: str
    name: str
    attempt: int = 1
    conversation_ref: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    # Results of the node's direct dependencies, keyed by node id
    upstream: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunnerUpdate:
    """One update from a running agent.

    Exactly one of: a progress ``delta`` (percent points), a ``final``
    result, or an ``error``.
    """

    delta: float = 0.0
    result: Any = None
    error: Optional[str] = None
    final: bool = False

    @classmethod
    def progress(cls, delta: float) -> "RunnerUpdate":
        return cls(delta=delta)

    @classmethod
    def finished(cls, result: Any = None) -> "RunnerUpdate":
        return cls(result=result, final=True)

    @classmethod
    def failed(cls, error: str) -> "RunnerUpdate":
        return cls(error=error)


class IAgentRunner(Protocol):
    """Opaque agent execution capability."""

    def invoke(self, node_id: str, descriptor: TaskDescriptor) -> AsyncIterator[RunnerUpdate]:
        """Start executing *node_id*.

        Args:
            node_id: Node being executed
            descriptor: Task context handed to the agent

        Returns:
            Async iterator of updates; ends after a final or error update
        """
        ...
