"""Tests for the portal FastAPI application (portal_core/api/app.py).

Uses httpx AsyncClient over ASGITransport.  The lifespan (and with it the
background scheduler loop) is not started, so tests drive the scheduler
through ``POST /api/scheduler/tick``.
"""

import json

import pytest
from httpx import ASGITransport, AsyncClient


@pytest.fixture(autouse=True)
def _reset_container():
    """Reset DI container between tests."""
    from portal_core import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def app(runner):
    from portal_core.api.app import app as real_app
    from portal_core.config.settings import Settings
    from portal_core.di_container import init_container
    container = init_container(Settings())
    container.runner = runner
    return real_app


@pytest.fixture
async def client(app):
    from portal_core.di_container import get_container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await get_container().service.shutdown()


async def create_velocity(client, **extra):
    resp = await client.post(
        "/api/sessions",
        json={"conversation_ref": "conv-1", "templates": ["velocity_tuning"], **extra},
    )
    assert resp.status_code == 201
    return resp.json()


async def tick_until_awaiting(client, session_id, node_id="s3", max_ticks=10):
    for _ in range(max_ticks):
        resp = await client.post("/api/scheduler/tick")
        assert resp.status_code == 200
        snap = (await client.get(f"/api/sessions/{session_id}")).json()
        if node_id in snap["graphs"][0]["pending_approvals"]:
            return snap
    raise AssertionError(f"{node_id} never reached awaiting_approval")


# --- Health and templates ---

async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["services"]["runner"] is True
    assert "x-request-id" in resp.headers


async def test_templates(client):
    resp = await client.get("/api/templates")
    names = [t["name"] for t in resp.json()["templates"]]
    assert names == ["fraud_pattern_analysis", "elder_abuse_anomaly", "velocity_tuning"]


# --- Sessions ---

async def test_create_session(client):
    snap = await create_velocity(client, owner="ana")
    assert snap["status"] == "active"
    assert snap["owner"] == "ana"
    assert [n["id"] for n in snap["graphs"][0]["nodes"]] == ["s1", "s2", "s3"]


async def test_create_session_unknown_template(client):
    resp = await client.post("/api/sessions", json={"templates": ["nope"]})
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFound"


async def test_create_session_without_graphs(client):
    resp = await client.post("/api/sessions", json={"conversation_ref": "conv-1"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "InvalidGraph"


async def test_list_sessions_by_owner(client):
    mine = await create_velocity(client, owner="ana")
    await create_velocity(client, owner="raj")
    resp = await client.get("/api/sessions", params={"owner": "ana"})
    assert [s["id"] for s in resp.json()["sessions"]] == [mine["id"]]


async def test_unknown_session(client):
    resp = await client.get("/api/sessions/s_missing")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == "NotFound"
    assert body["category"] == "not_found"
    assert body["request_id"] == resp.headers["x-request-id"]


# --- Approvals ---

async def test_approve_creates_artifact(client):
    snap = await create_velocity(client)
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    await tick_until_awaiting(client, sid)

    resp = await client.post(
        f"/api/sessions/{sid}/graphs/{gid}/nodes/s3/decision",
        json={"actor": "analyst1", "decision": True},
    )
    assert resp.status_code == 200
    result = resp.json()
    assert result["outcome"] == "recorded"
    assert result["state"] == "done"
    assert result["artifact_ref"].startswith("variant-")

    artifacts = (await client.get("/api/artifacts", params={"kind": "variant"})).json()["artifacts"]
    assert [a["id"] for a in artifacts] == [result["artifact_ref"]]
    assert artifacts[0]["url"] == f"#/variant/{result['artifact_ref']}"

    artifact = (await client.get(f"/api/artifacts/{result['artifact_ref']}")).json()
    assert artifact["source_node_id"] == "s3"
    assert (await client.get(f"/api/sessions/{sid}")).json()["status"] == "completed"


async def test_duplicate_and_conflicting_decisions(client):
    # A second graph keeps the session open after the rejection
    snap = await create_velocity(client, templates=["velocity_tuning", "elder_abuse_anomaly"])
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    await tick_until_awaiting(client, sid)
    url = f"/api/sessions/{sid}/graphs/{gid}/nodes/s3/decision"

    await client.post(url, json={"actor": "analyst1", "decision": False})
    dup = await client.post(url, json={"actor": "analyst1", "decision": False})
    assert dup.json()["outcome"] == "duplicate"

    conflict = await client.post(url, json={"actor": "analyst2", "decision": True})
    assert conflict.status_code == 409
    body = conflict.json()
    assert body["error"] == "ConflictingDecision"
    assert body["details"]["original_decision"] is False


async def test_decision_on_pending_node(client):
    snap = await create_velocity(client)
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    resp = await client.post(
        f"/api/sessions/{sid}/graphs/{gid}/nodes/s3/decision",
        json={"actor": "analyst1", "decision": True},
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "NotAwaitingApproval"


async def test_decision_requires_actor(client):
    snap = await create_velocity(client)
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    resp = await client.post(
        f"/api/sessions/{sid}/graphs/{gid}/nodes/s3/decision",
        json={"actor": "", "decision": True},
    )
    assert resp.status_code == 422


# --- Operator actions ---

async def test_retry_failed_node(client, runner):
    runner.fail("s1", "cohort query timed out")
    snap = await create_velocity(client)
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    await client.post("/api/scheduler/tick")
    graph = (await client.get(f"/api/sessions/{sid}")).json()["graphs"][0]
    assert graph["status"] == "blocked"
    assert graph["nodes"][0]["failure_reason"] == "cohort query timed out"

    resp = await client.post(f"/api/sessions/{sid}/graphs/{gid}/nodes/s1/retry")
    assert resp.status_code == 200
    assert resp.json()["state"] == "pending"
    assert resp.json()["attempt"] == 2


async def test_cancel_session(client):
    snap = await create_velocity(client)
    sid = snap["id"]
    resp = await client.post(f"/api/sessions/{sid}/cancel", json={"reason": "user left"})
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["cancelled"]) == 3
    assert body["session"]["status"] == "completed_with_failures"

    again = await client.post(f"/api/sessions/{sid}/cancel")
    assert again.json()["cancelled"] == []


async def test_close_session(client):
    snap = await create_velocity(client)
    resp = await client.post(f"/api/sessions/{snap['id']}/close")
    assert resp.json()["archived"] is True


async def test_transcript_after(client):
    snap = await create_velocity(client)
    sid = snap["id"]
    await client.post("/api/scheduler/tick")
    events = (await client.get(f"/api/sessions/{sid}/transcript")).json()["events"]
    assert events[0]["type"] == "node_started"
    later = (await client.get(f"/api/sessions/{sid}/transcript", params={"after": 2})).json()["events"]
    assert [e["seq"] for e in later] == [e["seq"] for e in events if e["seq"] > 2]


# --- Artifacts ---

async def test_artifacts_reject_unknown_kind(client):
    resp = await client.get("/api/artifacts", params={"kind": "poem"})
    assert resp.status_code == 422


async def test_unknown_artifact(client):
    resp = await client.get("/api/artifacts/rule-00000000")
    assert resp.status_code == 404


# --- Event stream ---

async def test_event_stream_replays_completed_session(client):
    from portal_core.api.app import session_event_stream
    from portal_core.di_container import get_container

    snap = await create_velocity(client)
    await client.post(f"/api/sessions/{snap['id']}/cancel")
    service = get_container().service
    session = service.get_session(snap["id"])

    frames = [f async for f in session_event_stream(service, session)]
    assert [f["event"] for f in frames] == [e["type"] for e in session.transcript]
    assert frames[-1]["event"] == "session_completed"
    assert json.loads(frames[0]["data"])["session_id"] == session.id
    assert service.event_bus.subscriber_count == 0


async def test_event_stream_follows_live_events(client):
    from portal_core.api.app import session_event_stream
    from portal_core.di_container import get_container

    snap = await create_velocity(client)
    sid, gid = snap["id"], snap["graphs"][0]["id"]
    await tick_until_awaiting(client, sid)
    service = get_container().service
    session = service.get_session(sid)

    stream = session_event_stream(service, session)
    replayed = [await stream.__anext__() for _ in session.transcript]
    assert replayed[-1]["event"] == "node_awaiting_approval"

    await service.decide(sid, gid, "s3", "analyst1", True)
    live = [f async for f in stream]
    events = [f["event"] for f in live]
    assert events[0] == "approval_recorded"
    assert events[-1] == "session_completed"
    assert "artifact_created" in events
    assert "_source" not in json.loads(live[0]["data"])
    assert service.event_bus.subscriber_count == 0
