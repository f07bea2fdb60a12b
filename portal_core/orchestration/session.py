"""Orchestration session — the handle exposed to the chat layer.

A session owns one or more task graphs bound to a conversation, the
approval gate of each graph, and the ordered transcript of structured
events emitted while the graphs run.  Its status is derived from the
graphs until every graph is terminal, at which point it is latched:
``COMPLETED`` or ``COMPLETED_WITH_FAILURES``.  A latched session never
reopens; further mutations raise ``SessionTerminated``.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from portal_core.exceptions import (
    ConflictingDecision,
    InvalidGraph,
    InvalidTransition,
    NotFound,
    SessionTerminated,
)
from portal_core.interfaces.event_bus import EventType, IEventBus
from portal_core.scheduling.approval_gate import (
    ApprovalGate,
    ApprovalOutcome,
    DecisionResult,
)
from portal_core.scheduling.task_graph import (
    GraphStatus,
    NodeState,
    TaskGraph,
    TaskNode,
)
from portal_core.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"


class OrchestrationSession:
    """One or more task graphs tied to a conversation."""

    def __init__(
        self,
        graphs: Iterable[TaskGraph],
        artifact_store: ArtifactStore,
        *,
        session_id: Optional[str] = None,
        conversation_ref: Optional[str] = None,
        title: str = "",
        owner: Optional[str] = None,
        created_at: Optional[float] = None,
        event_bus: Optional[IEventBus] = None,
        transcript_limit: int = 1000,
    ) -> None:
        self.id = session_id or f"s_{uuid.uuid4().hex[:8]}"
        self.conversation_ref = conversation_ref
        self.title = title
        self.owner = owner
        self.created_at = created_at if created_at is not None else time.time()
        self.updated_at = self.created_at
        self._artifact_store = artifact_store
        self._event_bus = event_bus

        self._graphs: Dict[str, TaskGraph] = {}
        for graph in graphs:
            if graph.id in self._graphs:
                raise InvalidGraph(f"Session {self.id!r} has two graphs with id {graph.id!r}")
            self._graphs[graph.id] = graph
        if not self._graphs:
            raise InvalidGraph(f"Session {self.id!r} needs at least one graph")
        self._gates: Dict[str, ApprovalGate] = {
            gid: ApprovalGate(g, emit=self._emit_artifact) for gid, g in self._graphs.items()
        }

        self._transcript: Deque[Dict[str, Any]] = deque(maxlen=transcript_limit)
        self._seq = 0
        self._announced: Set[str] = set()
        self._final_status: Optional[SessionStatus] = None
        self.archived = False

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def graphs(self) -> List[TaskGraph]:
        return list(self._graphs.values())

    def graph(self, graph_id: str) -> TaskGraph:
        try:
            return self._graphs[graph_id]
        except KeyError:
            raise NotFound(f"Graph {graph_id!r} not found in session {self.id!r}") from None

    def gate(self, graph_id: str) -> ApprovalGate:
        self.graph(graph_id)
        return self._gates[graph_id]

    @property
    def transcript(self) -> List[Dict[str, Any]]:
        return list(self._transcript)

    def attach_event_bus(self, event_bus: Optional[IEventBus]) -> None:
        self._event_bus = event_bus

    # ── Status ───────────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        if self._final_status is not None:
            return self._final_status
        return self._derive_status()

    def _derive_status(self) -> SessionStatus:
        statuses = [g.status() for g in self._graphs.values()]
        if any(s not in (GraphStatus.DONE, GraphStatus.FAILED) for s in statuses):
            return SessionStatus.ACTIVE
        if any(s == GraphStatus.FAILED for s in statuses):
            return SessionStatus.COMPLETED_WITH_FAILURES
        return SessionStatus.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self._final_status is not None

    def _ensure_active(self) -> None:
        if self._final_status is not None:
            raise SessionTerminated(
                f"Session {self.id!r} is {self._final_status.value}; create a new session"
            )

    # ── Events ───────────────────────────────────────────────────────

    async def emit(self, event_type: EventType, **payload: Any) -> Dict[str, Any]:
        """Append a structured event to the transcript and publish it."""
        self._seq += 1
        now = time.time()
        event = {
            "seq": self._seq,
            "type": event_type.value,
            "session_id": self.id,
            "conversation_ref": self.conversation_ref,
            "timestamp": now,
            "payload": payload,
        }
        self._transcript.append(event)
        self.updated_at = now
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, event, source=self.id)
        return event

    async def refresh(self) -> List[Dict[str, Any]]:
        """Announce newly terminal graphs and latch the session once all are.

        Each graph completion and the session completion are emitted
        exactly once.
        """
        emitted: List[Dict[str, Any]] = []
        for graph in self._graphs.values():
            if graph.id in self._announced:
                continue
            status = graph.status()
            if status in (GraphStatus.DONE, GraphStatus.FAILED):
                self._announced.add(graph.id)
                emitted.append(await self.emit(
                    EventType.GRAPH_COMPLETED,
                    graph_id=graph.id,
                    label=graph.label,
                    status=status.value,
                ))
        if self._final_status is None and len(self._announced) == len(self._graphs):
            self._final_status = self._derive_status()
            logger.info("Session %s finished: %s", self.id, self._final_status.value)
            emitted.append(await self.emit(
                EventType.SESSION_COMPLETED,
                status=self._final_status.value,
                graphs={gid: g.status().value for gid, g in self._graphs.items()},
            ))
        return emitted

    # ── Approvals ────────────────────────────────────────────────────

    def _emit_artifact(self, graph: TaskGraph, node: TaskNode) -> Optional[str]:
        if node.artifact_kind is None:
            return None
        artifact = self._artifact_store.create(
            node.artifact_kind,
            node.result,
            node.id,
            graph_id=graph.id,
            session_id=self.id,
            name=node.name,
        )
        return artifact.id

    async def decide(self, graph_id: str, node_id: str, actor: str, decision: bool) -> DecisionResult:
        """Route a human decision through the graph's approval gate."""
        gate = self.gate(graph_id)
        if self._final_status is not None:
            # Resubmitting the final decision stays a harmless no-op
            node = gate.graph.node(node_id)
            if node.approval_decision is None or node.approval_decision != bool(decision):
                self._ensure_active()
            return gate.decide(node_id, actor, decision)
        try:
            result = gate.decide(node_id, actor, decision)
        except ConflictingDecision as exc:
            await self.emit(EventType.APPROVAL_CONFLICT, graph_id=graph_id, **exc.details)
            raise
        await self._announce_decision(result, actor)
        return result

    async def override(self, graph_id: str, node_id: str, actor: str, reason: str = "") -> DecisionResult:
        """Explicitly turn a rejection into an approval."""
        self._ensure_active()
        if graph_id in self._announced:
            raise InvalidTransition(f"Graph {graph_id!r} already completed")
        result = self.gate(graph_id).override(node_id, actor, reason)
        await self._announce_decision(result, actor)
        return result

    async def _announce_decision(self, result: DecisionResult, actor: str) -> None:
        if result.outcome == ApprovalOutcome.DUPLICATE:
            return
        if result.record is not None:
            await self.emit(
                EventType.APPROVAL_RECORDED,
                graph_id=result.graph_id,
                node_id=result.node_id,
                decision=result.decision,
                actor=actor,
                override=result.record.override,
                timestamp=result.record.timestamp,
            )
        if result.artifact_ref is not None:
            artifact = self._artifact_store.get(result.artifact_ref)
            await self.emit(
                EventType.ARTIFACT_CREATED,
                graph_id=result.graph_id,
                node_id=result.node_id,
                artifact=artifact.to_dict(),
            )
        if result.state == NodeState.DONE:
            await self.emit(EventType.NODE_DONE, graph_id=result.graph_id, node_id=result.node_id)
        elif result.state == NodeState.REJECTED:
            node = self.graph(result.graph_id).node(result.node_id)
            await self.emit(
                EventType.NODE_REJECTED,
                graph_id=result.graph_id,
                node_id=result.node_id,
                reason=node.failure_reason,
            )
        await self.refresh()

    # ── Operator actions ─────────────────────────────────────────────

    async def retry(self, graph_id: str, node_id: str) -> TaskNode:
        """Re-queue a failed node."""
        self._ensure_active()
        if graph_id in self._announced:
            raise InvalidTransition(f"Graph {graph_id!r} already completed")
        node = self.graph(graph_id).retry(node_id)
        await self.emit(
            EventType.NODE_RETRIED, graph_id=graph_id, node_id=node_id, attempt=node.attempt
        )
        return node

    async def cancel_graph(self, graph_id: str, reason: str = "cancelled") -> List[str]:
        """Fail every non-terminal node of one graph.  Idempotent."""
        graph = self.graph(graph_id)
        if self._final_status is not None or graph_id in self._announced:
            return []
        affected = graph.cancel(reason)
        for node_id in affected:
            await self.emit(EventType.NODE_FAILED, graph_id=graph_id, node_id=node_id, reason=reason)
        await self.refresh()
        return affected

    async def cancel(self, reason: str = "cancelled") -> List[str]:
        """Cancel every graph.  Idempotent; no-op once terminal."""
        affected: List[str] = []
        for graph_id in list(self._graphs):
            if self._final_status is not None:
                break
            affected.extend(f"{graph_id}/{nid}" for nid in await self.cancel_graph(graph_id, reason))
        return affected

    async def close(self) -> SessionStatus:
        """Cancel outstanding work and archive the session."""
        if self._final_status is None:
            await self.cancel("session closed")
        self.archived = True
        return self.status

    # ── Views ────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe view of the current state for rendering."""
        return {
            "id": self.id,
            "title": self.title,
            "owner": self.owner,
            "conversation_ref": self.conversation_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status.value,
            "archived": self.archived,
            "graphs": [
                {
                    "id": g.id,
                    "label": g.label,
                    "status": g.status().value,
                    "pending_approvals": self._gates[g.id].pending(),
                    "nodes": [n.to_dict() for n in g.nodes],
                }
                for g in self._graphs.values()
            ],
            "artifacts": [
                n.artifact_ref for g in self._graphs.values() for n in g.nodes if n.artifact_ref
            ],
        }

    # ── Serialisation ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_ref": self.conversation_ref,
            "title": self.title,
            "owner": self.owner,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "graph_ids": list(self._graphs),
            "transcript": list(self._transcript),
            "seq": self._seq,
            "announced": sorted(self._announced),
            "final_status": self._final_status.value if self._final_status else None,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        graphs: Iterable[TaskGraph],
        artifact_store: ArtifactStore,
        event_bus: Optional[IEventBus] = None,
        transcript_limit: int = 1000,
    ) -> "OrchestrationSession":
        session = cls(
            graphs,
            artifact_store,
            session_id=data["id"],
            conversation_ref=data.get("conversation_ref"),
            title=data.get("title", ""),
            owner=data.get("owner"),
            created_at=data.get("created_at"),
            event_bus=event_bus,
            transcript_limit=transcript_limit,
        )
        session.updated_at = data.get("updated_at", session.created_at)
        session._transcript.extend(data.get("transcript", []))
        session._seq = int(data.get("seq", len(session._transcript)))
        session._announced = set(data.get("announced", []))
        final = data.get("final_status")
        session._final_status = SessionStatus(final) if final else None
        session.archived = bool(data.get("archived", False))
        return session
