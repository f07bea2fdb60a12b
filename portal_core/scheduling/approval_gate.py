"""Human approval gating for task graphs.

Dependencies of an approval-requiring node don't wait for *completion*;
they wait for *sign-off*.  The gate enforces that exactly one final
decision exists per node, makes duplicate submissions harmless, and
surfaces conflicting submissions with both decisions attached so an
operator can reconcile them.

Decisions are stored on the graph's append-only approval log; the gate
exposes it keyed by ``(graph_id, node_id, timestamp)`` for audit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from portal_core.exceptions import ConflictingDecision, InvalidTransition
from portal_core.scheduling.task_graph import (
    ApprovalRecord,
    NodeState,
    TaskGraph,
    TaskNode,
)

logger = logging.getLogger(__name__)


class ApprovalOutcome(str, Enum):
    """What a call to ``decide`` / ``override`` actually did."""

    RECORDED = "recorded"  # new decision appended
    DUPLICATE = "duplicate"  # same decision already final, no-op
    FINALIZED = "finalized"  # pending artifact emission completed
    OVERRIDDEN = "overridden"  # rejection corrected to approval


@dataclass(frozen=True)
class DecisionResult:
    """Result of a gate operation."""

    outcome: ApprovalOutcome
    graph_id: str
    node_id: str
    state: NodeState
    decision: bool
    record: Optional[ApprovalRecord] = None
    artifact_ref: Optional[str] = None


# (graph, node) → artifact id, or None when the node produces nothing
GraphArtifactEmitter = Callable[[TaskGraph, TaskNode], Optional[str]]


class ApprovalGate:
    """Approval gate for one graph.

    *emit* is invoked after a positive decision is recorded and before the
    node becomes DONE, so a node is never DONE with a missing artifact.
    """

    def __init__(self, graph: TaskGraph, emit: Optional[GraphArtifactEmitter] = None) -> None:
        self._graph = graph
        self._emit = emit

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    def _emit_for(self, node: TaskNode) -> Optional[str]:
        if self._emit is None:
            return None
        return self._emit(self._graph, node)

    def _result(
        self,
        outcome: ApprovalOutcome,
        node: TaskNode,
        record: Optional[ApprovalRecord] = None,
    ) -> DecisionResult:
        return DecisionResult(
            outcome=outcome,
            graph_id=self._graph.id,
            node_id=node.id,
            state=node.state,
            decision=bool(node.approval_decision),
            record=record,
            artifact_ref=node.artifact_ref,
        )

    def _last_record(self, node_id: str) -> Optional[ApprovalRecord]:
        for record in reversed(self._graph.approvals):
            if record.node_id == node_id:
                return record
        return None

    # ── Decisions ────────────────────────────────────────────────────

    def decide(self, node_id: str, actor: str, decision: bool) -> DecisionResult:
        """Record *decision* for *node_id*.

        Raises:
            NotAwaitingApproval: node has no decision and is not awaiting one.
            ConflictingDecision: a different decision is already final.
        """
        graph = self._graph
        with graph.lock:
            node = graph.node(node_id)
            if node.approval_decision is not None:
                if node.approval_decision == bool(decision):
                    if node.state == NodeState.APPROVED:
                        # Earlier artifact emission failed; try again
                        graph.finalize_approval(node_id, self._emit_for)
                        logger.info("Approval for %s/%s finalized on resubmission", graph.id, node_id)
                        return self._result(ApprovalOutcome.FINALIZED, node)
                    logger.debug("Duplicate decision %s for %s/%s ignored", decision, graph.id, node_id)
                    return self._result(ApprovalOutcome.DUPLICATE, node)
                last = self._last_record(node_id)
                logger.warning(
                    "Conflicting decision for %s/%s: final=%s, submitted=%s by %s",
                    graph.id, node_id, node.approval_decision, decision, actor,
                )
                raise ConflictingDecision(
                    node_id,
                    original=node.approval_decision,
                    rejected=bool(decision),
                    original_actor=last.actor if last else None,
                    actor=actor,
                )

            record = graph.record_approval(node_id, bool(decision), actor, emit=self._emit_for)
            logger.info(
                "Decision %s recorded for %s/%s by %s", decision, graph.id, node_id, actor
            )
            return self._result(ApprovalOutcome.RECORDED, node, record)

    def override(self, node_id: str, actor: str, reason: str = "") -> DecisionResult:
        """Explicitly correct a rejection into an approval.

        This is the only path by which a ``False`` decision changes.
        """
        graph = self._graph
        with graph.lock:
            node = graph.node(node_id)
            if node.state != NodeState.REJECTED or node.approval_decision is not False:
                raise InvalidTransition(
                    f"Only rejected nodes can be overridden; {node_id!r} is {node.state.value}"
                )
            graph.reopen(node_id)
            record = graph.record_approval(
                node_id, True, actor, emit=self._emit_for, override=True, reason=reason or None
            )
            logger.warning("Rejection of %s/%s overridden by %s: %s", graph.id, node_id, actor, reason)
            return self._result(ApprovalOutcome.OVERRIDDEN, node, record)

    # ── Queries ──────────────────────────────────────────────────────

    def pending(self) -> List[str]:
        """Ids of nodes currently awaiting a decision, in insertion order."""
        return [n.id for n in self._graph.nodes if n.state == NodeState.AWAITING_APPROVAL]

    def history(self, node_id: Optional[str] = None) -> List[ApprovalRecord]:
        records = self._graph.approvals
        if node_id is None:
            return list(records)
        return [r for r in records if r.node_id == node_id]

    @property
    def audit_log(self) -> Dict[Tuple[str, str, float], ApprovalRecord]:
        return {record.key: record for record in self._graph.approvals}
