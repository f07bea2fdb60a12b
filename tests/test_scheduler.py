"""Tests for the tick-driven scheduler (portal_core/scheduling/scheduler.py)."""

import asyncio

import pytest

from portal_core.exceptions import InvalidTransition, RetryConfig, StorageUnavailable
from portal_core.event_bus import InMemoryEventBus
from portal_core.interfaces.agent_runner import RunnerUpdate
from portal_core.interfaces.event_bus import EventType
from portal_core.orchestration.session import OrchestrationSession, SessionStatus
from portal_core.orchestration.templates import GraphBuilder
from portal_core.scheduling.scheduler import ConcurrencySlot, Scheduler
from portal_core.scheduling.task_graph import GraphStatus, NodeState
from portal_core.storage.artifact_store import ArtifactStore


def abcd_graph():
    return (
        GraphBuilder("g1", "ABCD")
        .concurrent("A", "Fetch")
        .concurrent("B", "Derive")
        .serial("C", "Draft", after=["A", "B"])
        .serial("D", "Publish", approval="accept_decline", artifact="rule")
        .build()
    )


@pytest.fixture
def store():
    return ArtifactStore()


@pytest.fixture
def session(store):
    return OrchestrationSession([abcd_graph()], store, conversation_ref="conv-1")


@pytest.fixture
async def scheduler(runner, session):
    s = Scheduler(runner)
    s.attach(session)
    yield s
    await s.shutdown()


def state(session, node_id):
    return session.graph("g1").node(node_id).state


def event_types(session):
    return [e["type"] for e in session.transcript]


# --- ConcurrencySlot ---

def test_slot_backpressure():
    slot = ConcurrencySlot("g1", max_concurrent=1)
    assert slot.acquire()
    assert not slot.acquire()
    slot.release()
    assert slot.acquire()
    assert slot.to_dict()["total_rejected"] == 1


def test_unbounded_slot():
    slot = ConcurrencySlot("g1")
    assert all(slot.acquire() for _ in range(10))
    assert slot.available is None


# --- Scenarios ---

class TestApprovalScenarios:

    async def test_serial_node_waits_for_both_roots(self, runner, scheduler, session, drive_ticks):
        runner.hold("B", "C")
        await scheduler.tick()
        assert state(session, "A") == NodeState.DONE
        assert state(session, "B") == NodeState.RUNNING
        assert state(session, "C") == NodeState.PENDING

        await drive_ticks(scheduler.tick, max_ticks=3)
        assert state(session, "C") == NodeState.PENDING
        assert runner.called("C") == []

        runner.release("B")
        await drive_ticks(scheduler.tick, until=lambda: state(session, "C") == NodeState.RUNNING)
        assert state(session, "A") == NodeState.DONE
        assert state(session, "B") == NodeState.DONE
        [descriptor] = runner.called("C")
        assert descriptor.upstream == {"A": {"node": "A"}, "B": {"node": "B"}}
        assert descriptor.conversation_ref == "conv-1"

    async def test_approve_creates_artifact_and_completes(self, scheduler, session, store, drive_ticks):
        graph = session.graph("g1")
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        assert graph.status() == GraphStatus.AWAITING_APPROVAL
        assert len(store) == 0

        result = await session.decide("g1", "D", "analyst1", True)
        assert result.state == NodeState.DONE
        [artifact] = list(store.all())
        assert artifact.source_node_id == "D"
        assert artifact.payload == {"node": "D"}
        assert graph.node("D").artifact_ref == artifact.id
        assert graph.status() == GraphStatus.DONE
        assert session.status == SessionStatus.COMPLETED

    async def test_reject_fails_graph_without_artifact(self, scheduler, session, store, drive_ticks):
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)

        await session.decide("g1", "D", "analyst1", False)
        assert state(session, "D") == NodeState.REJECTED
        assert len(store) == 0
        assert session.graph("g1").status() == GraphStatus.FAILED
        assert session.status == SessionStatus.COMPLETED_WITH_FAILURES
        assert EventType.NODE_REJECTED.value in event_types(session)

    async def test_completion_announced_once(self, scheduler, session, drive_ticks):
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        await session.decide("g1", "D", "analyst1", True)
        await session.decide("g1", "D", "analyst1", True)
        await drive_ticks(scheduler.tick, max_ticks=3)

        types = event_types(session)
        assert types.count(EventType.GRAPH_COMPLETED.value) == 1
        assert types.count(EventType.SESSION_COMPLETED.value) == 1
        assert scheduler.sessions == []

    async def test_result_kept_when_progress_reaches_full_first(self, store, drive_ticks):
        result_ready = asyncio.Event()

        class SlowFinishRunner:
            async def invoke(self, node_id, descriptor):
                if node_id == "D":
                    yield RunnerUpdate.progress(100)
                    await result_ready.wait()
                yield RunnerUpdate.finished({"rule": f"{node_id} rule"})

        session = OrchestrationSession([abcd_graph()], store)
        scheduler = Scheduler(SlowFinishRunner())
        scheduler.attach(session)
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.RUNNING)
        await drive_ticks(scheduler.tick, max_ticks=2)
        node = session.graph("g1").node("D")
        assert node.state == NodeState.RUNNING
        assert node.progress == 100.0

        result_ready.set()
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        assert node.result == {"rule": "D rule"}

        await session.decide("g1", "D", "analyst1", True)
        [artifact] = list(store.all())
        assert artifact.payload == {"rule": "D rule"}
        await scheduler.shutdown()

    async def test_full_progress_and_result_in_one_tick(self, runner, scheduler, session, drive_ticks):
        runner.scripts["D"] = [RunnerUpdate.progress(100), RunnerUpdate.finished({"rule": "x"})]
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        assert session.graph("g1").node("D").result == {"rule": "x"}

    async def test_event_sequence(self, scheduler, session, drive_ticks):
        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        types = event_types(session)
        assert types.count(EventType.NODE_STARTED.value) == 4
        assert types.count(EventType.NODE_DONE.value) == 3
        assert types[-1] == EventType.NODE_AWAITING_APPROVAL.value
        seqs = [e["seq"] for e in session.transcript]
        assert seqs == sorted(seqs)


class TestFailures:

    async def test_runner_error_is_localized(self, runner, scheduler, session, drive_ticks):
        runner.fail("B", "model timeout")
        await drive_ticks(scheduler.tick, until=lambda: state(session, "B") == NodeState.FAILED)

        node = session.graph("g1").node("B")
        assert node.failure_reason == "model timeout"
        assert state(session, "A") == NodeState.DONE
        assert session.graph("g1").status() == GraphStatus.BLOCKED
        assert not session.is_terminal

        [failed] = [e for e in session.transcript if e["type"] == EventType.NODE_FAILED.value]
        assert failed["payload"]["reason"] == "model timeout"
        assert failed["payload"]["error"]["error"] == "RunnerError"

    async def test_retry_reruns_failed_node(self, runner, scheduler, session, drive_ticks):
        runner.fail("B")
        await drive_ticks(scheduler.tick, until=lambda: state(session, "B") == NodeState.FAILED)

        del runner.scripts["B"]
        node = await session.retry("g1", "B")
        assert node.state == NodeState.PENDING
        assert node.progress == 0.0
        assert node.approval_decision is None
        assert "B" in session.graph("g1").ready_nodes()

        await drive_ticks(scheduler.tick, until=lambda: state(session, "D") == NodeState.AWAITING_APPROVAL)
        assert [d.attempt for d in runner.called("B")] == [1, 2]
        assert EventType.NODE_RETRIED.value in event_types(session)

    async def test_runner_exception_becomes_node_failure(self, store, drive_ticks):
        class ExplodingRunner:
            async def invoke(self, node_id, descriptor):
                if node_id == "A":
                    raise RuntimeError("connection reset")
                yield RunnerUpdate.finished("ok")

        session = OrchestrationSession([abcd_graph()], store)
        scheduler = Scheduler(ExplodingRunner())
        scheduler.attach(session)
        await drive_ticks(scheduler.tick, until=lambda: state(session, "A") == NodeState.FAILED)
        assert session.graph("g1").node("A").failure_reason == "RuntimeError: connection reset"
        assert state(session, "B") == NodeState.DONE

    async def test_iterator_without_result_completes(self, runner, scheduler, session, drive_ticks):
        runner.scripts["A"] = [RunnerUpdate.progress(10)]
        await drive_ticks(scheduler.tick, until=lambda: state(session, "A") == NodeState.DONE)
        assert session.graph("g1").node("A").result is None


class TestConcurrency:

    async def test_per_graph_cap(self, runner, session, drive_ticks):
        scheduler = Scheduler(runner, max_concurrent_nodes_per_graph=1)
        scheduler.attach(session)
        runner.hold("A", "B")

        await scheduler.tick()
        assert state(session, "A") == NodeState.RUNNING
        assert state(session, "B") == NodeState.PENDING
        assert scheduler.slot(session.id, "g1").active == 1

        runner.release("A")
        await drive_ticks(scheduler.tick, until=lambda: state(session, "B") == NodeState.RUNNING)
        assert state(session, "A") == NodeState.DONE

    async def test_cancel_dispatches_stops_runner(self, runner, scheduler, session):
        runner.hold("A")
        await scheduler.tick()
        assert scheduler.in_flight() == [f"{session.id}/g1/A"]

        assert scheduler.cancel_dispatches(session.id) == 1
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert "A" in runner.cancelled
        assert scheduler.in_flight() == []

    async def test_cancelled_graph_ignores_late_updates(self, runner, scheduler, session):
        runner.hold("A")
        await scheduler.tick()
        await session.cancel_graph("g1", "operator stop")
        runner.release("A")
        await scheduler.tick()
        node = session.graph("g1").node("A")
        assert node.state == NodeState.FAILED
        assert node.failure_reason == "operator stop"
        assert session.status == SessionStatus.COMPLETED_WITH_FAILURES

    async def test_graph_cancelled_while_tick_dispatches(self, runner, store):
        bus = InMemoryEventBus()
        session = OrchestrationSession([abcd_graph()], store, event_bus=bus)
        scheduler = Scheduler(runner)
        scheduler.attach(session)
        runner.hold("A", "B")

        async def stop_graph_on_first_start(event):
            if event["payload"]["node_id"] == "A":
                scheduler.cancel_dispatches(session.id, "g1")
                await session.cancel_graph("g1", "operator stop")

        await bus.subscribe(EventType.NODE_STARTED, stop_graph_on_first_start)
        report = await scheduler.tick()

        assert report.dispatched == [f"{session.id}/g1/A"]
        assert runner.called("B") == []
        assert state(session, "B") == NodeState.FAILED
        assert session.status == SessionStatus.COMPLETED_WITH_FAILURES
        assert scheduler.in_flight() == []
        await scheduler.shutdown()

    async def test_sessions_are_independent(self, runner, store, drive_ticks):
        first = OrchestrationSession([abcd_graph()], store)
        second = OrchestrationSession([abcd_graph()], store)
        scheduler = Scheduler(runner)
        scheduler.attach(first)
        scheduler.attach(second)
        runner.fail("B")

        await drive_ticks(scheduler.tick, until=lambda: first.graph("g1").status() == GraphStatus.BLOCKED)
        assert first.graph("g1").node("A").state == NodeState.DONE
        assert second.graph("g1").node("A").state == NodeState.DONE
        await first.cancel()
        await scheduler.tick()
        assert not second.is_terminal
        assert [s.id for s in scheduler.sessions] == [second.id]


# --- Drive loop ---

async def test_run_backs_off_on_storage_failure(runner, session):
    calls = []
    stop = asyncio.Event()

    async def after_tick(report):
        calls.append(report)
        if len(calls) == 1:
            raise StorageUnavailable("disk gone")
        stop.set()

    scheduler = Scheduler(
        runner,
        after_tick=after_tick,
        retry_config=RetryConfig(initial_delay_ms=1, max_delay_ms=5, jitter=False),
    )
    scheduler.attach(session)
    await asyncio.wait_for(scheduler.run(interval=0.01, stop=stop), timeout=2.0)
    assert len(calls) == 2
    assert scheduler.tick_count == 2


async def test_run_survives_unexpected_tick_error(runner, session):
    calls = []
    stop = asyncio.Event()

    async def after_tick(report):
        calls.append(report)
        if len(calls) == 1:
            raise InvalidTransition("graph changed during the tick")
        stop.set()

    scheduler = Scheduler(runner, after_tick=after_tick)
    scheduler.attach(session)
    await asyncio.wait_for(scheduler.run(interval=0.01, stop=stop), timeout=2.0)
    assert scheduler.tick_count == 2
    await scheduler.shutdown()
