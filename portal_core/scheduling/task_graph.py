"""Task graph for one orchestration run.

Holds a fixed arena of ``TaskNode`` records indexed by id (insertion
ordered), the dependency edges between them, and the append-only approval
log.  Answers the two questions the scheduler asks every tick: *which
nodes are ready to run* and *what is the aggregate status*.

Provides:
- Structural validation (unknown deps, concurrent roots, Kahn's cycle check)
- Node lifecycle transitions (dispatch, progress, approval, failure, retry)
- Status derivation with outcome-node / load-bearing failure analysis
- Serialisation for persistence (to_dict / from_dict)

Mutations are guarded by a per-graph re-entrant lock so sessions can be
sharded across threads; within one event loop the lock is uncontended.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from portal_core.exceptions import (
    AlreadyDecided,
    InvalidGraph,
    InvalidTransition,
    NotAwaitingApproval,
    NotFound,
)

logger = logging.getLogger(__name__)


# ── Enums ────────────────────────────────────────────────────────────


class NodeKind(str, Enum):
    """Concurrency class of a node."""

    CONCURRENT = "concurrent"  # root node, starts immediately
    SERIAL = "serial"  # starts once its predecessors are done


class NodeState(str, Enum):
    """Lifecycle states of a node."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"  # decision true, artifact not yet persisted
    REJECTED = "rejected"
    DONE = "done"
    FAILED = "failed"


class ApprovalKind(str, Enum):
    """Which pair of buttons the approval UI renders."""

    APPROVE_REJECT = "approve_reject"
    ACCEPT_DECLINE = "accept_decline"


class ArtifactKind(str, Enum):
    """Durable outputs an approved node may produce."""

    RULE = "rule"
    FEATURE = "feature"
    CONTACT = "contact"
    VARIANT = "variant"
    OTHER = "other"


class GraphStatus(str, Enum):
    """Derived aggregate status of a graph."""

    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    BLOCKED = "blocked"  # a retryable failure holds back the outcome
    DONE = "done"
    FAILED = "failed"


TERMINAL_NODE_STATES = frozenset({NodeState.REJECTED, NodeState.DONE, NodeState.FAILED})
TERMINAL_GRAPH_STATUSES = frozenset({GraphStatus.DONE, GraphStatus.FAILED})


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class TaskNode:
    """One unit of orchestrated work."""

    id: str
    name: str
    kind: NodeKind = NodeKind.CONCURRENT
    depends_on: Tuple[str, ...] = ()
    requires_approval: bool = False
    approval_kind: Optional[ApprovalKind] = None
    artifact_kind: Optional[ArtifactKind] = None
    descriptor: Dict[str, Any] = field(default_factory=dict)

    # Mutable execution state
    progress: float = 0.0
    state: NodeState = NodeState.PENDING
    approval_decision: Optional[bool] = None
    result: Any = None
    artifact_ref: Optional[str] = None
    attempt: int = 1
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    failure_reason: Optional[str] = None

    def __post_init__(self) -> None:
        self.kind = NodeKind(self.kind)
        # Keep declaration order, drop duplicates
        self.depends_on = tuple(dict.fromkeys(self.depends_on))
        if self.approval_kind is not None:
            self.approval_kind = ApprovalKind(self.approval_kind)
        if self.artifact_kind is not None:
            self.artifact_kind = ArtifactKind(self.artifact_kind)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_NODE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "depends_on": list(self.depends_on),
            "requires_approval": self.requires_approval,
            "approval_kind": self.approval_kind.value if self.approval_kind else None,
            "artifact_kind": self.artifact_kind.value if self.artifact_kind else None,
            "descriptor": dict(self.descriptor),
            "progress": self.progress,
            "state": self.state.value,
            "approval_decision": self.approval_decision,
            "result": self.result,
            "artifact_ref": self.artifact_ref,
            "attempt": self.attempt,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskNode":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            kind=NodeKind(data.get("kind", NodeKind.CONCURRENT.value)),
            depends_on=tuple(data.get("depends_on", ())),
            requires_approval=bool(data.get("requires_approval", False)),
            approval_kind=data.get("approval_kind"),
            artifact_kind=data.get("artifact_kind"),
            descriptor=dict(data.get("descriptor") or {}),
            progress=float(data.get("progress", 0.0)),
            state=NodeState(data.get("state", NodeState.PENDING.value)),
            approval_decision=data.get("approval_decision"),
            result=data.get("result"),
            artifact_ref=data.get("artifact_ref"),
            attempt=int(data.get("attempt", 1)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            failure_reason=data.get("failure_reason"),
        )


@dataclass(frozen=True)
class ApprovalRecord:
    """Append-only audit entry for one approval decision."""

    graph_id: str
    node_id: str
    decision: bool
    actor: str
    timestamp: float
    override: bool = False
    reason: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, float]:
        return (self.graph_id, self.node_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "decision": self.decision,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "override": self.override,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRecord":
        return cls(
            graph_id=data["graph_id"],
            node_id=data["node_id"],
            decision=bool(data["decision"]),
            actor=data["actor"],
            timestamp=float(data["timestamp"]),
            override=bool(data.get("override", False)),
            reason=data.get("reason"),
        )


# Emits the artifact for an approved node and returns its id (or None).
ArtifactEmitter = Callable[[TaskNode], Optional[str]]


# ── Graph ────────────────────────────────────────────────────────────


class TaskGraph:
    """Directed graph of sub-tasks with per-node state.

    The node set is fixed at construction; only node state changes
    afterwards.
    """

    def __init__(self, graph_id: str, label: str, nodes: Iterable[TaskNode]) -> None:
        self.id = graph_id
        self.label = label
        # Arena: node_id → node, in insertion order
        self._nodes: Dict[str, TaskNode] = {}
        # Reverse edges: node_id → ids of nodes that depend on it
        self._dependents: Dict[str, List[str]] = {}
        self._approvals: List[ApprovalRecord] = []
        self._cancelled = False
        self._cancel_reason: Optional[str] = None
        self.lock = threading.RLock()

        duplicates = []
        for node in nodes:
            if node.id in self._nodes:
                duplicates.append(node.id)
                continue
            self._nodes[node.id] = node
            self._dependents.setdefault(node.id, [])
        if duplicates:
            raise InvalidGraph(
                f"Graph {graph_id!r} has duplicate node ids",
                problems=[f"duplicate node id {d!r}" for d in duplicates],
            )
        for node in self._nodes.values():
            for dep in node.depends_on:
                if dep in self._dependents:
                    self._dependents[dep].append(node.id)
        self.validate()

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def nodes(self) -> List[TaskNode]:
        return list(self._nodes.values())

    @property
    def node_ids(self) -> List[str]:
        return list(self._nodes)

    @property
    def approvals(self) -> Tuple[ApprovalRecord, ...]:
        return tuple(self._approvals)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    def node(self, node_id: str) -> TaskNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFound(f"Node {node_id!r} not found in graph {self.id!r}") from None

    def dependents(self, node_id: str) -> List[str]:
        self.node(node_id)
        return list(self._dependents[node_id])

    # ── Validation ───────────────────────────────────────────────────

    def validate(self) -> None:
        """Raise ``InvalidGraph`` listing every structural problem."""
        problems: List[str] = []
        if not self._nodes:
            problems.append("graph has no nodes")

        for node in self._nodes.values():
            if node.id in node.depends_on:
                problems.append(f"{node.id!r} depends on itself")
            for dep in node.depends_on:
                if dep not in self._nodes:
                    problems.append(f"{node.id!r} depends on unknown node {dep!r}")
            if node.kind == NodeKind.CONCURRENT and node.depends_on:
                problems.append(f"concurrent node {node.id!r} cannot have dependencies")
            if node.requires_approval and node.approval_kind is None:
                problems.append(f"{node.id!r} requires approval but has no approval_kind")
            if not node.requires_approval and node.approval_kind is not None:
                problems.append(f"{node.id!r} has approval_kind but does not require approval")
            if node.artifact_kind is not None and not node.requires_approval:
                problems.append(f"{node.id!r} produces an artifact but does not require approval")

        if not problems:
            cycle = self._find_cycle()
            if cycle:
                problems.append("dependency cycle among " + ", ".join(sorted(cycle)))

        if problems:
            raise InvalidGraph(f"Graph {self.id!r} is invalid", problems=problems)

    def _find_cycle(self) -> List[str]:
        """Kahn's algorithm; returns the nodes left with in-degree > 0."""
        in_degree = {nid: len(n.depends_on) for nid, n in self._nodes.items()}
        queue: deque[str] = deque(nid for nid, deg in in_degree.items() if deg == 0)
        visited = 0
        while queue:
            nid = queue.popleft()
            visited += 1
            for dependent in self._dependents.get(nid, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
        if visited < len(in_degree):
            return [nid for nid, deg in in_degree.items() if deg > 0]
        return []

    # ── Readiness ────────────────────────────────────────────────────

    def _dependency_satisfied(self, dep_id: str) -> bool:
        pred = self._nodes[dep_id]
        if pred.state == NodeState.DONE:
            return True
        # Approval-gated predecessors unblock on the decision itself
        return pred.requires_approval and pred.state == NodeState.APPROVED

    def _deps_satisfied(self, node: TaskNode) -> bool:
        return all(self._dependency_satisfied(dep) for dep in node.depends_on)

    def chain_of(self, node_id: str) -> str:
        """Id of the first node of the serial chain *node_id* belongs to.

        A chain continues upwards while a serial node has exactly one
        predecessor and that predecessor is also serial.
        """
        node = self.node(node_id)
        seen: Set[str] = set()
        while (
            node.kind == NodeKind.SERIAL
            and len(node.depends_on) == 1
            and node.id not in seen
        ):
            seen.add(node.id)
            pred = self._nodes[node.depends_on[0]]
            if pred.kind != NodeKind.SERIAL:
                break
            node = pred
        return node.id

    def ready_nodes(self) -> List[str]:
        """Pending nodes whose every dependency is satisfied, in insertion order.

        Serial nodes are withheld while another serial node of the same
        chain is running, so each chain executes one node at a time.
        """
        with self.lock:
            if self._cancelled:
                return []
            busy_chains = {
                self.chain_of(n.id)
                for n in self._nodes.values()
                if n.kind == NodeKind.SERIAL and n.state == NodeState.RUNNING
            }
            ready: List[str] = []
            for node in self._nodes.values():
                if node.state != NodeState.PENDING or not self._deps_satisfied(node):
                    continue
                if node.kind == NodeKind.SERIAL:
                    chain = self.chain_of(node.id)
                    if chain in busy_chains:
                        continue
                    busy_chains.add(chain)
                ready.append(node.id)
            return ready

    # ── Transitions ──────────────────────────────────────────────────

    def mark_running(self, node_id: str, now: Optional[float] = None) -> TaskNode:
        """Transition PENDING → RUNNING once dependencies hold."""
        with self.lock:
            self._ensure_open()
            node = self.node(node_id)
            if node.state != NodeState.PENDING:
                raise InvalidTransition(
                    f"Cannot start {node_id!r}: state is {node.state.value} (expected pending)"
                )
            if not self._deps_satisfied(node):
                raise InvalidTransition(f"Cannot start {node_id!r}: dependencies not satisfied")
            node.state = NodeState.RUNNING
            node.started_at = now if now is not None else time.time()
            return node

    def apply_progress(self, node_id: str, delta: float, settle: bool = True) -> NodeState:
        """Add *delta* percent to a running node; returns the resulting state.

        With ``settle=False`` a node at 100% stays RUNNING until ``complete()``
        records the result; the scheduler uses this while a runner is attached.
        """
        with self.lock:
            node = self.node(node_id)
            if node.state != NodeState.RUNNING:
                raise InvalidTransition(
                    f"Cannot apply progress to {node_id!r}: state is {node.state.value}"
                )
            if delta < 0:
                raise InvalidTransition(f"Progress for {node_id!r} cannot decrease (delta={delta})")
            node.progress = min(100.0, node.progress + delta)
            if settle and node.progress >= 100.0:
                self._reach_completion(node)
            return node.state

    def complete(self, node_id: str, result: Any = None) -> NodeState:
        """Record the runner's final result and take the node to 100%."""
        with self.lock:
            node = self.node(node_id)
            if node.state != NodeState.RUNNING:
                raise InvalidTransition(
                    f"Cannot complete {node_id!r}: state is {node.state.value}"
                )
            node.result = result
            return self.apply_progress(node_id, 100.0 - node.progress)

    def _reach_completion(self, node: TaskNode) -> None:
        node.progress = 100.0
        node.finished_at = time.time()
        if node.requires_approval:
            node.state = NodeState.AWAITING_APPROVAL
        else:
            node.state = NodeState.DONE
        logger.debug("Node %s/%s reached 100%% → %s", self.id, node.id, node.state.value)

    def mark_failed(self, node_id: str, reason: str) -> TaskNode:
        """Transition RUNNING → FAILED after a runner error."""
        with self.lock:
            node = self.node(node_id)
            if node.state != NodeState.RUNNING:
                raise InvalidTransition(
                    f"Cannot fail {node_id!r}: state is {node.state.value} (expected running)"
                )
            node.state = NodeState.FAILED
            node.failure_reason = reason
            node.finished_at = time.time()
            return node

    def record_approval(
        self,
        node_id: str,
        decision: bool,
        actor: str,
        emit: Optional[ArtifactEmitter] = None,
        *,
        override: bool = False,
        reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> ApprovalRecord:
        """Record a human decision for an AWAITING_APPROVAL node.

        ``True`` moves the node to APPROVED, runs *emit* to persist its
        artifact, then marks it DONE.  If *emit* raises, the node stays
        APPROVED and can be finalized later with ``finalize_approval``.
        ``False`` moves the node to REJECTED (terminal).
        """
        with self.lock:
            self._ensure_open()
            node = self.node(node_id)
            if node.approval_decision is True:
                raise AlreadyDecided(f"Node {node_id!r} is already approved")
            if node.state != NodeState.AWAITING_APPROVAL:
                raise NotAwaitingApproval(
                    f"Node {node_id!r} is {node.state.value}, not awaiting approval"
                )
            timestamp = now if now is not None else time.time()
            if self._approvals and timestamp <= self._approvals[-1].timestamp:
                # Keep audit keys unique and ordered
                timestamp = self._approvals[-1].timestamp + 1e-6
            record = ApprovalRecord(
                graph_id=self.id,
                node_id=node_id,
                decision=bool(decision),
                actor=actor,
                timestamp=timestamp,
                override=override,
                reason=reason,
            )
            node.approval_decision = bool(decision)
            self._approvals.append(record)

            if decision:
                node.state = NodeState.APPROVED
                self._finalize(node, emit)
            else:
                node.state = NodeState.REJECTED
                node.failure_reason = reason or f"rejected by {actor}"
            return record

    def finalize_approval(self, node_id: str, emit: Optional[ArtifactEmitter] = None) -> TaskNode:
        """Retry artifact emission for an APPROVED node and mark it DONE."""
        with self.lock:
            node = self.node(node_id)
            if node.state != NodeState.APPROVED:
                raise InvalidTransition(f"Node {node_id!r} is {node.state.value}, not approved")
            self._finalize(node, emit)
            return node

    def _finalize(self, node: TaskNode, emit: Optional[ArtifactEmitter]) -> None:
        if emit is not None and node.artifact_ref is None:
            ref = emit(node)
            if ref is not None:
                node.artifact_ref = ref
        node.state = NodeState.DONE

    def reopen(self, node_id: str) -> TaskNode:
        """REJECTED → AWAITING_APPROVAL so an override can record a new decision."""
        with self.lock:
            self._ensure_open()
            node = self.node(node_id)
            if node.state != NodeState.REJECTED or node.approval_decision is not False:
                raise InvalidTransition(f"Node {node_id!r} is {node.state.value}, not rejected")
            node.state = NodeState.AWAITING_APPROVAL
            node.approval_decision = None
            node.failure_reason = None
            return node

    def retry(self, node_id: str) -> TaskNode:
        """FAILED → PENDING with progress and decision reset."""
        with self.lock:
            self._ensure_open()
            node = self.node(node_id)
            if node.state != NodeState.FAILED:
                raise InvalidTransition(
                    f"Cannot retry {node_id!r}: state is {node.state.value} (expected failed)"
                )
            node.state = NodeState.PENDING
            node.progress = 0.0
            node.approval_decision = None
            node.result = None
            node.failure_reason = None
            node.started_at = None
            node.finished_at = None
            node.attempt += 1
            logger.info("Node %s/%s re-queued (attempt %d)", self.id, node_id, node.attempt)
            return node

    def requeue_interrupted(self) -> List[str]:
        """RUNNING → PENDING for nodes whose runner is gone (e.g. after a restart).

        The attempt counter is bumped so late updates from the old run are
        discarded.
        """
        with self.lock:
            requeued: List[str] = []
            for node in self._nodes.values():
                if node.state != NodeState.RUNNING:
                    continue
                node.state = NodeState.PENDING
                node.progress = 0.0
                node.started_at = None
                node.attempt += 1
                requeued.append(node.id)
            if requeued:
                logger.info("Graph %s re-queued interrupted nodes: %s", self.id, ", ".join(requeued))
            return requeued

    def cancel(self, reason: str = "cancelled") -> List[str]:
        """Fail every non-terminal node.  Idempotent; returns affected ids."""
        with self.lock:
            affected: List[str] = []
            if self._cancelled or self.status() in TERMINAL_GRAPH_STATUSES:
                return affected
            self._cancelled = True
            self._cancel_reason = reason
            now = time.time()
            for node in self._nodes.values():
                if node.is_terminal:
                    continue
                node.state = NodeState.FAILED
                node.failure_reason = reason
                node.finished_at = now
                affected.append(node.id)
            logger.info("Graph %s cancelled (%d nodes failed): %s", self.id, len(affected), reason)
            return affected

    def _ensure_open(self) -> None:
        if self._cancelled:
            raise InvalidTransition(f"Graph {self.id!r} was cancelled")

    # ── Status ───────────────────────────────────────────────────────

    def outcome_nodes(self) -> List[str]:
        """Sink nodes that define the graph's result.

        Serial sinks when the graph has serial nodes; otherwise every sink.
        Concurrent side-branches with no dependents do not decide the outcome.
        """
        sinks = [nid for nid, deps in self._dependents.items() if not deps]
        if any(n.kind == NodeKind.SERIAL for n in self._nodes.values()):
            return [nid for nid in sinks if self._nodes[nid].kind == NodeKind.SERIAL]
        return sinks

    def _load_bearing(self, node: TaskNode, outcome: Set[str]) -> bool:
        if node.id in outcome:
            return True
        return any(
            self._nodes[d].state == NodeState.PENDING for d in self._dependents[node.id]
        )

    def status(self) -> GraphStatus:
        """Pure derivation of the aggregate status from node states.

        A failed load-bearing node makes the graph BLOCKED rather than
        terminal, even when every node is DONE or FAILED (for example a
        failed root of an all-concurrent graph).  Resolution is left to the
        operator: ``retry()`` re-queues the node, ``cancel()`` ends the graph
        as FAILED.
        """
        with self.lock:
            if self._cancelled:
                return GraphStatus.FAILED
            nodes = self._nodes.values()
            if any(n.state == NodeState.AWAITING_APPROVAL for n in nodes):
                return GraphStatus.AWAITING_APPROVAL
            if any(n.state in (NodeState.RUNNING, NodeState.APPROVED) for n in nodes):
                return GraphStatus.RUNNING
            if any(n.state == NodeState.PENDING and self._deps_satisfied(n) for n in nodes):
                return GraphStatus.RUNNING

            outcome = set(self.outcome_nodes())
            if any(
                n.state == NodeState.FAILED and self._load_bearing(n, outcome) for n in nodes
            ):
                return GraphStatus.BLOCKED
            if all(self._nodes[nid].state == NodeState.DONE for nid in outcome):
                return GraphStatus.DONE
            return GraphStatus.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.status() in TERMINAL_GRAPH_STATUSES

    @property
    def stats(self) -> Dict[str, int]:
        """Node counts by state."""
        counts: Dict[str, int] = {s.value: 0 for s in NodeState}
        for node in self._nodes.values():
            counts[node.state.value] += 1
        return counts

    # ── Serialisation ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "id": self.id,
                "label": self.label,
                "nodes": [n.to_dict() for n in self._nodes.values()],
                "approvals": [r.to_dict() for r in self._approvals],
                "cancelled": self._cancelled,
                "cancel_reason": self._cancel_reason,
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskGraph":
        graph = cls(
            data["id"],
            data.get("label", data["id"]),
            [TaskNode.from_dict(n) for n in data.get("nodes", [])],
        )
        graph._approvals = [ApprovalRecord.from_dict(r) for r in data.get("approvals", [])]
        graph._cancelled = bool(data.get("cancelled", False))
        graph._cancel_reason = data.get("cancel_reason")
        return graph
