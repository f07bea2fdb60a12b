"""Tick-driven scheduler for orchestration sessions.

The scheduler turns "time passing" and Agent Runner updates into node
progress.  It never reasons about the work itself.  Each ``tick`` is a
bounded pass over every attached session:

1. compute ready nodes for every active graph and dispatch them to the
   runner (PENDING → RUNNING), bounded by the per-graph concurrency slot;
2. yield once so runner tasks can report;
3. drain buffered runner updates into ``apply_progress`` / ``complete`` /
   ``mark_failed``;
4. surface new AWAITING_APPROVAL nodes as events;
5. refresh graph and session status, announcing completions once.

Runner invocations are plain asyncio tasks that only buffer updates; all
graph mutation happens inside the tick.  Approvals are never polled;
they arrive through ``OrchestrationSession.decide``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from portal_core.enhanced_logging import track_performance
from portal_core.exceptions import InvalidTransition, RetryConfig, RunnerError, StorageUnavailable
from portal_core.interfaces.agent_runner import IAgentRunner, RunnerUpdate, TaskDescriptor
from portal_core.interfaces.event_bus import EventType
from portal_core.orchestration.session import OrchestrationSession
from portal_core.scheduling.task_graph import NodeState, TaskGraph, TaskNode

logger = logging.getLogger(__name__)


# ── Concurrency ──────────────────────────────────────────────────────


class ConcurrencySlot:
    """Counting limiter for running nodes of one graph.

    When all slots are occupied, acquire() returns False (backpressure).
    ``max_concurrent=None`` never refuses.
    """

    def __init__(self, graph_id: str, max_concurrent: Optional[int] = None) -> None:
        self.graph_id = graph_id
        self.max_concurrent = max_concurrent
        self._active: int = 0
        self._total_acquired: int = 0
        self._total_rejected: int = 0

    def acquire(self) -> bool:
        if self.max_concurrent is None or self._active < self.max_concurrent:
            self._active += 1
            self._total_acquired += 1
            return True
        self._total_rejected += 1
        return False

    def release(self) -> None:
        self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> Optional[int]:
        if self.max_concurrent is None:
            return None
        return max(0, self.max_concurrent - self._active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "max_concurrent": self.max_concurrent,
            "active": self._active,
            "available": self.available,
            "total_acquired": self._total_acquired,
            "total_rejected": self._total_rejected,
        }


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class _Dispatch:
    """A node handed to the runner and the updates it has reported."""

    session_id: str
    graph_id: str
    node_id: str
    attempt: int
    updates: Deque[RunnerUpdate] = field(default_factory=deque)
    task: Optional[asyncio.Task] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.session_id, self.graph_id, self.node_id)


@dataclass
class TickReport:
    """What one tick changed; keys are ``session/graph/node`` paths."""

    dispatched: List[str] = field(default_factory=list)
    progressed: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    awaiting_approval: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    graphs_completed: List[str] = field(default_factory=list)
    sessions_completed: List[str] = field(default_factory=list)
    touched_sessions: List[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return not (self.dispatched or self.progressed or self.completed or self.failed)


AfterTickHook = Callable[[TickReport], Awaitable[None]]


# ── Scheduler ────────────────────────────────────────────────────────


class Scheduler:
    """Single logical drive loop over all attached sessions."""

    def __init__(
        self,
        runner: IAgentRunner,
        *,
        max_concurrent_nodes_per_graph: Optional[int] = None,
        after_tick: Optional[AfterTickHook] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._runner = runner
        self._max_per_graph = max_concurrent_nodes_per_graph
        self._after_tick = after_tick
        self._retry_config = retry_config or RetryConfig()
        self._sessions: Dict[str, OrchestrationSession] = {}
        self._dispatches: Dict[Tuple[str, str, str], _Dispatch] = {}
        self._slots: Dict[Tuple[str, str], ConcurrencySlot] = {}
        self._tick_count = 0
        self._consecutive_failures = 0

    # ── Registration ─────────────────────────────────────────────────

    def attach(self, session: OrchestrationSession) -> None:
        self._sessions[session.id] = session

    def detach(self, session_id: str) -> None:
        self.cancel_dispatches(session_id)
        self._sessions.pop(session_id, None)
        for key in [k for k in self._slots if k[0] == session_id]:
            del self._slots[key]

    @property
    def sessions(self) -> List[OrchestrationSession]:
        return list(self._sessions.values())

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def in_flight(self) -> List[str]:
        return ["/".join(key) for key in self._dispatches]

    def slot(self, session_id: str, graph_id: str) -> ConcurrencySlot:
        key = (session_id, graph_id)
        if key not in self._slots:
            self._slots[key] = ConcurrencySlot(graph_id, self._max_per_graph)
        return self._slots[key]

    # ── Cancellation ─────────────────────────────────────────────────

    def cancel_dispatches(self, session_id: str, graph_id: Optional[str] = None) -> int:
        """Cancel runner tasks for a session (or one of its graphs)."""
        cancelled = 0
        for key in list(self._dispatches):
            if key[0] != session_id or (graph_id is not None and key[1] != graph_id):
                continue
            self._drop(self._dispatches[key])
            cancelled += 1
        return cancelled

    def _drop(self, dispatch: _Dispatch) -> None:
        if dispatch.task is not None and not dispatch.task.done():
            dispatch.task.cancel()
        self._dispatches.pop(dispatch.key, None)
        self.slot(dispatch.session_id, dispatch.graph_id).release()

    # ── Tick ─────────────────────────────────────────────────────────

    @track_performance(operation="scheduler.tick")
    async def tick(self) -> TickReport:
        """Run one bounded scheduling pass."""
        self._tick_count += 1
        report = TickReport()
        active: List[OrchestrationSession] = []
        for session in list(self._sessions.values()):
            if session.is_terminal:
                # Finished through an approval or cancellation between ticks
                self.detach(session.id)
            else:
                active.append(session)

        # 1. dispatch
        for session in active:
            for graph in session.graphs:
                await self._dispatch_ready(session, graph, report)

        # 2. let runner tasks report
        await asyncio.sleep(0)

        # 3-4. apply runner updates
        for dispatch in list(self._dispatches.values()):
            session = self._sessions.get(dispatch.session_id)
            if session is None:
                self._drop(dispatch)
                continue
            await self._drain(session, dispatch, report)

        # 5. status
        for session in active:
            for event in await session.refresh():
                if event["type"] == EventType.GRAPH_COMPLETED.value:
                    report.graphs_completed.append(f"{session.id}/{event['payload']['graph_id']}")
                elif event["type"] == EventType.SESSION_COMPLETED.value:
                    report.sessions_completed.append(session.id)
            report.touched_sessions.append(session.id)

        for session_id in report.sessions_completed:
            self.detach(session_id)

        if self._after_tick is not None:
            await self._after_tick(report)
        return report

    async def _dispatch_ready(
        self, session: OrchestrationSession, graph: TaskGraph, report: TickReport
    ) -> None:
        slot = self.slot(session.id, graph.id)
        for node_id in graph.ready_nodes():
            # Emitting NODE_STARTED yields to other tasks, which may cancel the graph
            if graph.cancelled or session.is_terminal:
                break
            if (session.id, graph.id, node_id) in self._dispatches:
                continue
            if graph.node(node_id).state != NodeState.PENDING:
                continue
            if not slot.acquire():
                logger.debug("Graph %s/%s at concurrency limit", session.id, graph.id)
                break
            try:
                node = graph.mark_running(node_id)
            except InvalidTransition as exc:
                slot.release()
                logger.info("Skipping dispatch of %s/%s/%s: %s", session.id, graph.id, node_id, exc)
                continue
            dispatch = _Dispatch(session.id, graph.id, node_id, node.attempt)
            descriptor = self._descriptor(session, graph, node)
            dispatch.task = asyncio.create_task(
                self._pump(dispatch, descriptor), name=f"runner:{'/'.join(dispatch.key)}"
            )
            self._dispatches[dispatch.key] = dispatch
            report.dispatched.append("/".join(dispatch.key))
            await session.emit(
                EventType.NODE_STARTED,
                graph_id=graph.id,
                node_id=node_id,
                name=node.name,
                attempt=node.attempt,
                started_at=node.started_at,
            )

    def _descriptor(
        self, session: OrchestrationSession, graph: TaskGraph, node: TaskNode
    ) -> TaskDescriptor:
        return TaskDescriptor(
            session_id=session.id,
            graph_id=graph.id,
            node_id=node.id,
            name=node.name,
            attempt=node.attempt,
            conversation_ref=session.conversation_ref,
            params=dict(node.descriptor),
            upstream={dep: graph.node(dep).result for dep in node.depends_on},
        )

    async def _pump(self, dispatch: _Dispatch, descriptor: TaskDescriptor) -> None:
        """Buffer runner updates; never touches the graph."""
        try:
            async for update in self._runner.invoke(dispatch.node_id, descriptor):
                dispatch.updates.append(update)
                if update.final or update.error is not None:
                    return
            # Iterator ended without a result: treat as completion
            dispatch.updates.append(RunnerUpdate.finished())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Runner raised for %s: %s", "/".join(dispatch.key), exc)
            dispatch.updates.append(RunnerUpdate.failed(f"{type(exc).__name__}: {exc}"))

    async def _drain(
        self, session: OrchestrationSession, dispatch: _Dispatch, report: TickReport
    ) -> None:
        graph = session.graph(dispatch.graph_id)
        node = graph.node(dispatch.node_id)
        path = "/".join(dispatch.key)

        if node.state != NodeState.RUNNING or node.attempt != dispatch.attempt:
            # Cancelled or superseded while the runner was working
            self._drop(dispatch)
            return

        progressed = False
        while dispatch.updates:
            update = dispatch.updates.popleft()
            if update.error is not None:
                error = RunnerError(node.id, update.error)
                graph.mark_failed(node.id, update.error)
                self._drop(dispatch)
                report.failed.append(path)
                logger.warning("Node %s failed: %s", path, update.error)
                await session.emit(
                    EventType.NODE_FAILED,
                    graph_id=graph.id,
                    node_id=node.id,
                    reason=update.error,
                    error=error.to_dict(),
                )
                return
            if update.final:
                state = graph.complete(node.id, update.result)
            elif update.delta > 0:
                # Only the final update finishes the node
                state = graph.apply_progress(node.id, update.delta, settle=False)
                progressed = True
            else:
                continue

            if state != NodeState.RUNNING:
                self._drop(dispatch)
                await self._announce_finish(session, graph, node, report, path)
                return

        if progressed:
            report.progressed.append(path)
            await session.emit(
                EventType.NODE_PROGRESS,
                graph_id=graph.id,
                node_id=node.id,
                progress=node.progress,
            )

    async def _announce_finish(
        self,
        session: OrchestrationSession,
        graph: TaskGraph,
        node: TaskNode,
        report: TickReport,
        path: str,
    ) -> None:
        if node.state == NodeState.AWAITING_APPROVAL:
            report.awaiting_approval.append(path)
            await session.emit(
                EventType.NODE_AWAITING_APPROVAL,
                graph_id=graph.id,
                node_id=node.id,
                name=node.name,
                approval_kind=node.approval_kind.value if node.approval_kind else None,
                artifact_kind=node.artifact_kind.value if node.artifact_kind else None,
                result=node.result,
            )
        else:
            report.completed.append(path)
            await session.emit(
                EventType.NODE_DONE,
                graph_id=graph.id,
                node_id=node.id,
                result=node.result,
            )

    # ── Drive loop ───────────────────────────────────────────────────

    async def run(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        """Tick every *interval* seconds until *stop* is set.

        ``StorageUnavailable`` aborts the current tick; the loop backs off
        exponentially before trying again.  Any other error from a tick is
        logged and the loop carries on at the normal interval.
        """
        stop = stop or asyncio.Event()
        logger.info("Scheduler loop started (interval %.2fs)", interval)
        while not stop.is_set():
            delay = interval
            try:
                await self.tick()
                self._consecutive_failures = 0
            except StorageUnavailable as exc:
                delay = self._retry_config.get_delay(self._consecutive_failures)
                self._consecutive_failures += 1
                logger.error(
                    "Tick %d aborted, storage unavailable (failure %d); retrying in %.2fs: %s",
                    self._tick_count, self._consecutive_failures, delay, exc,
                )
            except Exception:
                # The next tick retries
                logger.exception("Tick %d failed", self._tick_count)
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler loop stopped after %d ticks", self._tick_count)

    async def shutdown(self) -> None:
        """Cancel every in-flight runner task."""
        tasks = [d.task for d in self._dispatches.values() if d.task is not None]
        for dispatch in list(self._dispatches.values()):
            self._drop(dispatch)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
