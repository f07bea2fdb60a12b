"""Orchestration service — the single entry point for the API and chat layer.

Owns the live sessions, the scheduler that drives them, the artifact
store, the session repository and the event bus.  Every mutating call
persists the affected session before returning; ticks persist the
sessions they touched through the scheduler's ``after_tick`` hook.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from portal_core.exceptions import NotFound, RetryConfig
from portal_core.interfaces.agent_runner import IAgentRunner
from portal_core.interfaces.event_bus import EventType, IEventBus
from portal_core.orchestration.session import OrchestrationSession
from portal_core.orchestration.templates import build_template, describe_templates, graph_from_plan
from portal_core.scheduling.approval_gate import DecisionResult
from portal_core.scheduling.scheduler import Scheduler, TickReport
from portal_core.scheduling.task_graph import ArtifactKind, TaskGraph, TaskNode
from portal_core.storage.artifact_store import Artifact, ArtifactStore
from portal_core.storage.repository import SessionRepository

logger = logging.getLogger(__name__)


class OrchestrationService:
    """Facade over sessions, scheduling, approvals and artifacts."""

    def __init__(
        self,
        runner: IAgentRunner,
        artifact_store: Optional[ArtifactStore] = None,
        repository: Optional[SessionRepository] = None,
        event_bus: Optional[IEventBus] = None,
        *,
        max_concurrent_nodes_per_graph: Optional[int] = None,
        tick_interval_seconds: float = 0.7,
        transcript_limit: int = 1000,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.artifact_store = artifact_store if artifact_store is not None else ArtifactStore()
        self.repository = repository
        self.event_bus = event_bus
        self.tick_interval_seconds = tick_interval_seconds
        self._transcript_limit = transcript_limit
        self._sessions: Dict[str, OrchestrationSession] = {}
        self.scheduler = Scheduler(
            runner,
            max_concurrent_nodes_per_graph=max_concurrent_nodes_per_graph,
            after_tick=self._after_tick,
            retry_config=retry_config,
        )

    # ── Sessions ─────────────────────────────────────────────────────

    async def create_session(
        self,
        conversation_ref: Optional[str] = None,
        graphs: Optional[Iterable[TaskGraph]] = None,
        templates: Optional[Sequence[str]] = None,
        plans: Optional[Sequence[Dict[str, Any]]] = None,
        title: str = "",
        owner: Optional[str] = None,
    ) -> OrchestrationSession:
        """Start a session from prebuilt graphs, named templates and/or plans.

        Raises:
            InvalidGraph: no graphs were given or one failed validation.
            NotFound: a template name is unknown.
        """
        all_graphs: List[TaskGraph] = list(graphs or [])
        all_graphs.extend(build_template(name) for name in templates or [])
        all_graphs.extend(graph_from_plan(plan) for plan in plans or [])

        session = OrchestrationSession(
            all_graphs,
            self.artifact_store,
            conversation_ref=conversation_ref,
            title=title or ", ".join(g.label for g in all_graphs),
            owner=owner,
            event_bus=self.event_bus,
            transcript_limit=self._transcript_limit,
        )
        self._sessions[session.id] = session
        self._persist(session)
        self.scheduler.attach(session)
        logger.info(
            "Session %s created for %s with graphs %s",
            session.id, conversation_ref, [g.id for g in session.graphs],
        )
        return session

    def get_session(self, session_id: str) -> OrchestrationSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        if self.repository is not None and self.repository.exists(session_id):
            return self.load(session_id)
        raise NotFound(f"Session {session_id!r} not found")

    def list_sessions(
        self, owner: Optional[str] = None, include_archived: bool = True
    ) -> List[OrchestrationSession]:
        if self.repository is not None:
            for session_id in self.repository.list_ids():
                if session_id not in self._sessions:
                    self.load(session_id)
        sessions = [
            s for s in self._sessions.values()
            if (owner is None or s.owner == owner) and (include_archived or not s.archived)
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    # ── Scheduling ───────────────────────────────────────────────────

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        await self.scheduler.run(self.tick_interval_seconds, stop)

    async def _after_tick(self, report: TickReport) -> None:
        for session_id in report.touched_sessions:
            session = self._sessions.get(session_id)
            if session is not None:
                self._persist(session)

    # ── Approvals ────────────────────────────────────────────────────

    async def decide(
        self, session_id: str, graph_id: str, node_id: str, actor: str, decision: bool
    ) -> DecisionResult:
        session = self.get_session(session_id)
        result = await session.decide(graph_id, node_id, actor, decision)
        self._persist(session)
        return result

    async def override(
        self, session_id: str, graph_id: str, node_id: str, actor: str, reason: str = ""
    ) -> DecisionResult:
        session = self.get_session(session_id)
        result = await session.override(graph_id, node_id, actor, reason)
        self._persist(session)
        return result

    # ── Operator actions ─────────────────────────────────────────────

    async def retry(self, session_id: str, graph_id: str, node_id: str) -> TaskNode:
        session = self.get_session(session_id)
        node = await session.retry(graph_id, node_id)
        self.scheduler.attach(session)
        self._persist(session)
        return node

    async def cancel_graph(self, session_id: str, graph_id: str, reason: str = "cancelled") -> List[str]:
        session = self.get_session(session_id)
        self.scheduler.cancel_dispatches(session.id, graph_id)
        affected = await session.cancel_graph(graph_id, reason)
        self._persist(session)
        return affected

    async def cancel_session(self, session_id: str, reason: str = "cancelled") -> List[str]:
        session = self.get_session(session_id)
        self.scheduler.cancel_dispatches(session.id)
        affected = await session.cancel(reason)
        self.scheduler.detach(session.id)
        self._persist(session)
        return affected

    async def close_session(self, session_id: str) -> OrchestrationSession:
        session = self.get_session(session_id)
        self.scheduler.cancel_dispatches(session.id)
        await session.close()
        self.scheduler.detach(session.id)
        self._persist(session)
        return session

    # ── Artifacts ────────────────────────────────────────────────────

    def list_artifacts(self, kind: Optional[Union[ArtifactKind, str]] = None) -> List[Artifact]:
        view = self.artifact_store.all() if kind is None else self.artifact_store.list_by_kind(kind)
        return list(view)

    def get_artifact(self, artifact_id: str) -> Artifact:
        return self.artifact_store.get(artifact_id)

    @staticmethod
    def templates() -> List[Dict[str, Any]]:
        return describe_templates()

    # ── Persistence ──────────────────────────────────────────────────

    def _persist(self, session: OrchestrationSession) -> None:
        if self.repository is not None:
            self.repository.save(session)

    def save(self, session_id: str) -> None:
        self._persist(self.get_session(session_id))

    def load(self, session_id: str) -> OrchestrationSession:
        """(Re)load a session from the repository and resume it.

        Nodes that were running when the session was saved are re-queued;
        their runner work is lost.
        """
        if self.repository is None:
            raise NotFound(f"Session {session_id!r} not found (no repository configured)")
        self.scheduler.detach(session_id)
        session = self.repository.load(session_id, self.artifact_store, self.event_bus)
        self._sessions[session.id] = session
        if not session.is_terminal:
            for graph in session.graphs:
                graph.requeue_interrupted()
            self.scheduler.attach(session)
        return session

    def restore(self) -> int:
        """Load persisted artifacts and every stored session; returns the session count."""
        self.artifact_store.load()
        if self.repository is None:
            return 0
        restored = 0
        for session_id in self.repository.list_ids():
            self.load(session_id)
            restored += 1
        logger.info("Restored %d sessions from storage", restored)
        return restored

    # ── Events ───────────────────────────────────────────────────────

    async def subscribe(
        self,
        handler: Callable[[Dict[str, Any]], Any],
        event_type: Optional[EventType] = None,
    ) -> str:
        if self.event_bus is None:
            raise NotFound("No event bus configured")
        return await self.event_bus.subscribe(event_type, handler)

    async def unsubscribe(self, subscription_id: str) -> None:
        if self.event_bus is not None:
            await self.event_bus.unsubscribe(subscription_id)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        for session in self._sessions.values():
            self._persist(session)
