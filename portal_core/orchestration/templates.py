"""Declarative graph builder and the named portal workflows.

Usage::

    graph = (GraphBuilder("g1", "Fraud Pattern Analysis")
             .concurrent("fetch", "Fetch FN Events", approval="approve_reject")
             .concurrent("derive", "Derive Fraud Pattern")
             .serial("draft", "Draft Hypothesis Rules", after=["fetch", "derive"],
                     approval="accept_decline", artifact="rule")
             .serial("backtest", "Backtest Rules")
             .build())

``serial()`` without ``after`` chains onto the previously added serial
node, so a linear pipeline reads top to bottom.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from portal_core.exceptions import InvalidGraph, NotFound
from portal_core.scheduling.task_graph import (
    ApprovalKind,
    ArtifactKind,
    NodeKind,
    TaskGraph,
    TaskNode,
)

logger = logging.getLogger(__name__)


# ── Builder ──────────────────────────────────────────────────────────


class GraphBuilder:
    """Fluent API for defining task graphs."""

    def __init__(self, graph_id: Optional[str] = None, label: str = "") -> None:
        self._graph_id = graph_id or f"g_{uuid.uuid4().hex[:8]}"
        self._label = label or self._graph_id
        self._nodes: List[TaskNode] = []
        self._last_serial: Optional[str] = None

    def concurrent(
        self,
        node_id: str,
        name: str,
        approval: Optional[str] = None,
        artifact: Optional[str] = None,
        **descriptor: Any,
    ) -> "GraphBuilder":
        """Add a root node that starts as soon as the graph is scheduled."""
        self._add(node_id, name, NodeKind.CONCURRENT, (), approval, artifact, descriptor)
        return self

    def serial(
        self,
        node_id: str,
        name: str,
        after: Optional[Sequence[str]] = None,
        approval: Optional[str] = None,
        artifact: Optional[str] = None,
        **descriptor: Any,
    ) -> "GraphBuilder":
        """Add a node that waits for its predecessors.

        Args:
            node_id: Unique id within the graph.
            name: Human-readable label.
            after: Predecessor ids; defaults to the previous serial node, or
                every concurrent node when this is the first serial node.
            approval: ``approve_reject`` or ``accept_decline`` to gate the node.
            artifact: Artifact kind produced on approval.
            **descriptor: Parameters handed to the agent runner.
        """
        if after is None:
            if self._last_serial is not None:
                after = [self._last_serial]
            else:
                after = [n.id for n in self._nodes if n.kind == NodeKind.CONCURRENT]
        self._add(node_id, name, NodeKind.SERIAL, tuple(after), approval, artifact, descriptor)
        self._last_serial = node_id
        return self

    def _add(
        self,
        node_id: str,
        name: str,
        kind: NodeKind,
        depends_on: tuple,
        approval: Optional[str],
        artifact: Optional[str],
        descriptor: Dict[str, Any],
    ) -> None:
        if any(n.id == node_id for n in self._nodes):
            raise InvalidGraph(f"Duplicate node id {node_id!r}", problems=[f"duplicate node id {node_id!r}"])
        try:
            approval_kind = ApprovalKind(approval) if approval else None
            artifact_kind = ArtifactKind(artifact) if artifact else None
        except ValueError as e:
            raise InvalidGraph(f"Node {node_id!r}: {e}", problems=[str(e)]) from e
        self._nodes.append(TaskNode(
            id=node_id,
            name=name,
            kind=kind,
            depends_on=depends_on,
            requires_approval=approval_kind is not None,
            approval_kind=approval_kind,
            artifact_kind=artifact_kind,
            descriptor=descriptor,
        ))

    def build(self) -> TaskGraph:
        """Validate and return a fresh graph."""
        graph = TaskGraph(self._graph_id, self._label, self._nodes)
        logger.debug("Built graph %s (%d nodes)", graph.id, len(graph.nodes))
        return graph


# ── Named workflows ──────────────────────────────────────────────────


def fraud_pattern_analysis(graph_id: Optional[str] = None) -> TaskGraph:
    """False-negative review → pattern discovery → rule drafting and rollout."""
    return (
        GraphBuilder(graph_id, "Fraud Pattern Analysis")
        .concurrent("s1", "Fetch FN Events (last 14d)", approval="approve_reject",
                    agent="PatternDiscoveryAgent")
        .concurrent("s2", "Derive Fraud Pattern (embedding + clustering)",
                    agent="PatternDiscoveryAgent")
        .serial("s3", "Draft Hypothesis Rules", approval="accept_decline", artifact="rule",
                agent="RuleTestingAgent")
        .serial("s4", "Backtest Rules", agent="RuleTestingAgent")
        .serial("s5", "Generate Features (if threshold met)", approval="accept_decline",
                artifact="feature", agent="PatternDiscoveryAgent")
        .serial("s6", "Create Rules (if threshold met)", approval="accept_decline",
                artifact="rule", agent="RuleTestingAgent")
        .build()
    )


def elder_abuse_anomaly(graph_id: Optional[str] = None) -> TaskGraph:
    """Anomalous activity on an elder account → trusted-contact outreach."""
    return (
        GraphBuilder(graph_id, "Elder Abuse Anomaly Workflow")
        .concurrent("s1", "Retrieve Customer Data (HIPAA-safe)", approval="approve_reject",
                    agent="Unauthorized Transaction Review Decision Agent")
        .serial("s2", "Propose Contact to Trusted Person", approval="accept_decline",
                artifact="contact", agent="Unauthorized Transaction Review Decision Agent")
        .build()
    )


def velocity_tuning(graph_id: Optional[str] = None) -> TaskGraph:
    """A/B comparison of velocity rule variants."""
    return (
        GraphBuilder(graph_id, "Velocity Tuning")
        .concurrent("s1", "Assemble cohorts", agent="FeaturePlatformAgent")
        .concurrent("s2", "Compute deltas", agent="RulesEngineAgent")
        .serial("s3", "Select winning variant", approval="accept_decline", artifact="variant",
                agent="RulesEngineAgent")
        .build()
    )


TEMPLATES: Dict[str, Callable[[Optional[str]], TaskGraph]] = {
    "fraud_pattern_analysis": fraud_pattern_analysis,
    "elder_abuse_anomaly": elder_abuse_anomaly,
    "velocity_tuning": velocity_tuning,
}


def build_template(name: str, graph_id: Optional[str] = None) -> TaskGraph:
    try:
        factory = TEMPLATES[name]
    except KeyError:
        raise NotFound(f"Unknown graph template {name!r}") from None
    return factory(graph_id)


def describe_templates() -> List[Dict[str, Any]]:
    """Summaries of the named workflows for pickers and the API."""
    summaries = []
    for name, factory in TEMPLATES.items():
        graph = factory(name)
        summaries.append({
            "name": name,
            "label": graph.label,
            "nodes": [
                {
                    "id": n.id,
                    "name": n.name,
                    "kind": n.kind.value,
                    "depends_on": list(n.depends_on),
                    "approval_kind": n.approval_kind.value if n.approval_kind else None,
                    "artifact_kind": n.artifact_kind.value if n.artifact_kind else None,
                }
                for n in graph.nodes
            ],
        })
    return summaries


def graph_from_plan(plan: Dict[str, Any]) -> TaskGraph:
    """Build a graph from a dynamic plan.

    The plan is a dict with ``id`` (optional), ``label`` and ``nodes``; each
    node has ``id``, ``name``, ``kind`` (``concurrent``/``serial``) and may
    carry ``depends_on``, ``approval_kind``, ``artifact_kind`` and
    ``descriptor``.  Serial nodes without ``depends_on`` chain implicitly
    as in ``GraphBuilder.serial``.
    """
    nodes = plan.get("nodes")
    if not isinstance(nodes, list):
        raise InvalidGraph("Plan must contain a list of nodes", problems=["nodes missing"])

    builder = GraphBuilder(plan.get("id"), plan.get("label", ""))
    for i, entry in enumerate(nodes):
        if not isinstance(entry, dict) or "id" not in entry:
            raise InvalidGraph(f"Plan node #{i} has no id", problems=[f"node #{i} has no id"])
        node_id = str(entry["id"])
        kind = entry.get("kind", NodeKind.CONCURRENT.value)
        descriptor = dict(entry.get("descriptor") or {})
        common = dict(
            approval=entry.get("approval_kind"),
            artifact=entry.get("artifact_kind"),
        )
        if kind == NodeKind.SERIAL.value:
            after = entry.get("depends_on")
            builder.serial(node_id, entry.get("name", node_id), after=after, **common, **descriptor)
        elif kind == NodeKind.CONCURRENT.value:
            if entry.get("depends_on"):
                raise InvalidGraph(
                    f"Plan node {node_id!r} is concurrent but has dependencies",
                    problems=[f"concurrent node {node_id!r} cannot have dependencies"],
                )
            builder.concurrent(node_id, entry.get("name", node_id), **common, **descriptor)
        else:
            raise InvalidGraph(f"Plan node {node_id!r} has unknown kind {kind!r}",
                               problems=[f"unknown kind {kind!r}"])
    return builder.build()
