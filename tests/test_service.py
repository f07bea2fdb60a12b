"""Tests for the orchestration service facade (portal_core/orchestration/service.py)."""

import pytest

from portal_core.event_bus import InMemoryEventBus
from portal_core.exceptions import InvalidGraph, NotFound
from portal_core.interfaces.event_bus import EventType
from portal_core.orchestration.service import OrchestrationService
from portal_core.orchestration.session import SessionStatus
from portal_core.scheduling.task_graph import NodeState
from portal_core.storage.artifact_store import ArtifactStore
from portal_core.storage.kv_store import InMemoryKVStore
from portal_core.storage.repository import SessionRepository


@pytest.fixture
def kv():
    return InMemoryKVStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


def make_service(runner, kv, bus=None):
    return OrchestrationService(
        runner,
        artifact_store=ArtifactStore(kv),
        repository=SessionRepository(kv),
        event_bus=bus,
    )


@pytest.fixture
async def service(runner, kv, bus):
    svc = make_service(runner, kv, bus)
    yield svc
    await svc.shutdown()


def node_state(session, graph_id, node_id):
    return session.graph(graph_id).node(node_id).state


# --- Creation ---

async def test_create_from_templates_and_plans(service, kv):
    session = await service.create_session(
        "conv-7",
        templates=["velocity_tuning"],
        plans=[{"id": "adhoc", "label": "Ad hoc", "nodes": [{"id": "a", "kind": "concurrent"}]}],
        owner="ana",
    )
    assert [g.label for g in session.graphs] == ["Velocity Tuning", "Ad hoc"]
    assert session.title == "Velocity Tuning, Ad hoc"
    assert kv.get(f"session/{session.id}")["conversation_ref"] == "conv-7"
    assert kv.get(f"graph/{session.id}/adhoc") is not None
    assert service.scheduler.sessions == [session]


async def test_create_requires_a_graph(service):
    with pytest.raises(InvalidGraph):
        await service.create_session("conv-1")


async def test_unknown_template(service):
    with pytest.raises(NotFound):
        await service.create_session("conv-1", templates=["nope"])


def test_get_unknown_session(runner, kv):
    with pytest.raises(NotFound):
        make_service(runner, kv).get_session("s_missing")


# --- Approvals and artifacts ---

async def test_decision_creates_artifact_and_persists(service, kv, drive_ticks):
    session = await service.create_session("conv-1", templates=["velocity_tuning"])
    graph_id = session.graphs[0].id
    await drive_ticks(
        service.tick,
        until=lambda: node_state(session, graph_id, "s3") == NodeState.AWAITING_APPROVAL,
    )
    stored = kv.get(f"graph/{session.id}/{graph_id}")
    assert [n["state"] for n in stored["nodes"]][-1] == "awaiting_approval"

    await service.decide(session.id, graph_id, "s3", "analyst1", True)
    [variant] = service.list_artifacts("variant")
    assert variant.source_node_id == "s3"
    assert service.list_artifacts("rule") == []
    assert service.get_artifact(variant.id) is variant
    assert kv.get(f"artifact/{variant.id}")["kind"] == "variant"
    assert kv.get(f"session/{session.id}")["final_status"] == SessionStatus.COMPLETED.value


async def test_retry_reattaches_session(service, runner, drive_ticks):
    session = await service.create_session("conv-1", templates=["elder_abuse_anomaly"])
    graph_id = session.graphs[0].id
    runner.fail("s1")
    await drive_ticks(
        service.tick, until=lambda: node_state(session, graph_id, "s1") == NodeState.FAILED
    )

    del runner.scripts["s1"]
    await service.retry(session.id, graph_id, "s1")
    await drive_ticks(
        service.tick,
        until=lambda: node_state(session, graph_id, "s1") == NodeState.AWAITING_APPROVAL,
    )
    assert len(runner.called("s1")) == 2


# --- Operator actions ---

async def test_cancel_session_stops_runners(service, runner):
    runner.hold("s1", "s2")
    session = await service.create_session("conv-1", templates=["velocity_tuning"])
    await service.tick()

    affected = await service.cancel_session(session.id, "user left")
    graph_id = session.graphs[0].id
    assert sorted(affected) == [f"{graph_id}/s1", f"{graph_id}/s2", f"{graph_id}/s3"]
    assert session.status == SessionStatus.COMPLETED_WITH_FAILURES
    assert service.scheduler.sessions == []
    assert service.scheduler.in_flight() == []


async def test_cancel_graph_leaves_other_graphs(service, runner):
    session = await service.create_session(
        "conv-1", templates=["velocity_tuning", "elder_abuse_anomaly"]
    )
    velocity, elder = session.graphs
    await service.cancel_graph(session.id, velocity.id, "not needed")
    assert node_state(session, velocity.id, "s1") == NodeState.FAILED
    assert node_state(session, elder.id, "s1") == NodeState.PENDING
    assert not session.is_terminal


async def test_close_and_list_sessions(service):
    mine = await service.create_session("conv-1", templates=["velocity_tuning"], owner="ana")
    await service.create_session("conv-2", templates=["velocity_tuning"], owner="raj")
    assert [s.id for s in service.list_sessions(owner="ana")] == [mine.id]

    await service.close_session(mine.id)
    assert mine.archived
    assert service.list_sessions(owner="ana", include_archived=False) == []
    assert len(service.list_sessions()) == 2


# --- Persistence ---

async def test_restore_requeues_interrupted_nodes(kv, runner_factory, drive_ticks):
    first_runner = runner_factory()
    first_runner.hold("s1")
    first = make_service(first_runner, kv)
    session = await first.create_session("conv-1", templates=["velocity_tuning"])
    graph_id = session.graphs[0].id
    await first.tick()
    assert node_state(session, graph_id, "s1") == NodeState.RUNNING
    await first.shutdown()

    second = make_service(runner_factory(), kv)
    assert second.restore() == 1
    restored = second.get_session(session.id)
    node = restored.graph(graph_id).node("s1")
    assert node.state == NodeState.PENDING
    assert node.attempt == 2
    assert node_state(restored, graph_id, "s2") == NodeState.DONE

    await drive_ticks(
        second.tick,
        until=lambda: node_state(restored, graph_id, "s3") == NodeState.AWAITING_APPROVAL,
    )
    await second.shutdown()


async def test_restore_keeps_terminal_sessions_detached(kv, runner_factory):
    first = make_service(runner_factory(), kv)
    session = await first.create_session("conv-1", templates=["velocity_tuning"])
    await first.cancel_session(session.id)

    second = make_service(runner_factory(), kv)
    second.restore()
    assert second.get_session(session.id).is_terminal
    assert second.scheduler.sessions == []


async def test_restore_loads_artifacts(kv, runner_factory, drive_ticks):
    first = make_service(runner_factory(), kv)
    session = await first.create_session("conv-1", templates=["velocity_tuning"])
    graph_id = session.graphs[0].id
    await drive_ticks(
        first.tick,
        until=lambda: node_state(session, graph_id, "s3") == NodeState.AWAITING_APPROVAL,
    )
    await first.decide(session.id, graph_id, "s3", "analyst1", True)

    second = make_service(runner_factory(), kv)
    second.restore()
    [artifact] = second.list_artifacts()
    assert artifact.session_id == session.id


# --- Events ---

async def test_subscribe_receives_session_events(service, drive_ticks):
    received = []
    await service.subscribe(received.append, EventType.NODE_STARTED)
    session = await service.create_session("conv-1", templates=["velocity_tuning"])
    await service.tick()
    assert {e["payload"]["node_id"] for e in received} == {"s1", "s2"}
    assert all(e["session_id"] == session.id for e in received)


async def test_subscribe_without_bus(runner, kv):
    service = make_service(runner, kv)
    with pytest.raises(NotFound):
        await service.subscribe(lambda event: None)
