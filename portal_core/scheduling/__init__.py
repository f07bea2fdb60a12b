"""Task graphs, approval gating and the tick-driven scheduler.

``Scheduler`` lives in ``portal_core.scheduling.scheduler``; it is not
re-exported here because it depends on the orchestration session.
"""

from portal_core.scheduling.approval_gate import (
    ApprovalGate,
    ApprovalOutcome,
    DecisionResult,
)
from portal_core.scheduling.task_graph import (
    ApprovalKind,
    ApprovalRecord,
    ArtifactKind,
    GraphStatus,
    NodeKind,
    NodeState,
    TaskGraph,
    TaskNode,
)

__all__ = [
    # Approval gate
    "ApprovalGate",
    "ApprovalOutcome",
    "DecisionResult",
    # Task graph
    "ApprovalKind",
    "ApprovalRecord",
    "ArtifactKind",
    "GraphStatus",
    "NodeKind",
    "NodeState",
    "TaskGraph",
    "TaskNode",
]
