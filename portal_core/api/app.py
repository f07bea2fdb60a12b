"""
Agent Portal orchestration — FastAPI application entry point.

Provides the REST API used by the portal UI and the chat layer:
- /health — service health status
- /api/sessions — create, list, inspect, cancel and close sessions
- /api/sessions/{id}/graphs/{gid}/nodes/{nid}/... — approvals, overrides, retries
- /api/sessions/{id}/events — structured event stream (SSE)
- /api/artifacts — approved rules, features, contacts and variants
- /api/templates — named workflows
- /api/scheduler/tick — drive one scheduler pass manually
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from portal_core.api.middleware import RequestIDMiddleware, get_request_id
from portal_core.config import get_settings
from portal_core.di_container import get_container, shutdown_container
from portal_core.enhanced_logging import configure_logging
from portal_core.exceptions import OrchestrationError
from portal_core.interfaces import EventType
from portal_core.orchestration.session import OrchestrationSession
from portal_core.orchestration.service import OrchestrationService
from portal_core.scheduling.approval_gate import DecisionResult
from portal_core.scheduling.task_graph import ArtifactKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    conversation_ref: Optional[str] = None
    templates: List[str] = Field(default_factory=list)
    plans: List[Dict[str, Any]] = Field(default_factory=list)
    title: str = ""
    owner: Optional[str] = None


class DecisionRequest(BaseModel):
    actor: str = Field(min_length=1)
    decision: bool


class OverrideRequest(BaseModel):
    actor: str = Field(min_length=1)
    reason: str = ""


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"
    graph_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("%s %s starting up", settings.app_name, settings.app_version)

    service = get_container().service
    service.restore()
    stop = asyncio.Event()
    loop_task = asyncio.create_task(service.run(stop), name="scheduler-loop")
    try:
        yield
    finally:
        stop.set()
        await loop_task
        await service.shutdown()
        shutdown_container()
        logger.info("%s shutting down", settings.app_name)


app = FastAPI(
    title="Agent Portal Orchestrator",
    version="0.1.0",
    description="Multi-agent task orchestration with human approval gates",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError):
    content = exc.to_dict()
    content["request_id"] = get_request_id()
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc,
                     extra={"request_id": content["request_id"]})
    return JSONResponse(status_code=exc.http_status, content=content)


def _service() -> OrchestrationService:
    return get_container().service


def _decision_dict(result: DecisionResult) -> Dict[str, Any]:
    return {
        "outcome": result.outcome.value,
        "graph_id": result.graph_id,
        "node_id": result.node_id,
        "state": result.state.value,
        "decision": result.decision,
        "record": result.record.to_dict() if result.record else None,
        "artifact_ref": result.artifact_ref,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Service health and component initialization status."""
    container = get_container()
    return {
        "status": "healthy",
        "services": container.status(),
    }


@app.get("/api/templates")
async def list_templates():
    return {"templates": _service().templates()}


@app.post("/api/sessions", status_code=201)
async def create_session(req: CreateSessionRequest):
    session = await _service().create_session(
        conversation_ref=req.conversation_ref,
        templates=req.templates,
        plans=req.plans,
        title=req.title,
        owner=req.owner,
    )
    return session.snapshot()


@app.get("/api/sessions")
async def list_sessions(owner: Optional[str] = None, include_archived: bool = True):
    sessions = _service().list_sessions(owner=owner, include_archived=include_archived)
    return {"sessions": [s.snapshot() for s in sessions]}


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    return _service().get_session(session_id).snapshot()


@app.get("/api/sessions/{session_id}/transcript")
async def get_transcript(session_id: str, after: int = 0):
    session = _service().get_session(session_id)
    return {"events": [e for e in session.transcript if e["seq"] > after]}


@app.post("/api/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, req: Optional[CancelRequest] = None):
    req = req or CancelRequest()
    service = _service()
    if req.graph_id is not None:
        affected = await service.cancel_graph(session_id, req.graph_id, req.reason)
    else:
        affected = await service.cancel_session(session_id, req.reason)
    return {"cancelled": affected, "session": service.get_session(session_id).snapshot()}


@app.post("/api/sessions/{session_id}/close")
async def close_session(session_id: str):
    session = await _service().close_session(session_id)
    return session.snapshot()


@app.post("/api/sessions/{session_id}/graphs/{graph_id}/nodes/{node_id}/decision")
async def decide(session_id: str, graph_id: str, node_id: str, req: DecisionRequest):
    result = await _service().decide(session_id, graph_id, node_id, req.actor, req.decision)
    return _decision_dict(result)


@app.post("/api/sessions/{session_id}/graphs/{graph_id}/nodes/{node_id}/override")
async def override(session_id: str, graph_id: str, node_id: str, req: OverrideRequest):
    result = await _service().override(session_id, graph_id, node_id, req.actor, req.reason)
    return _decision_dict(result)


@app.post("/api/sessions/{session_id}/graphs/{graph_id}/nodes/{node_id}/retry")
async def retry(session_id: str, graph_id: str, node_id: str):
    node = await _service().retry(session_id, graph_id, node_id)
    return node.to_dict()


@app.get("/api/artifacts")
async def list_artifacts(kind: Optional[ArtifactKind] = None):
    return {"artifacts": [a.to_dict() for a in _service().list_artifacts(kind)]}


@app.get("/api/artifacts/{artifact_id}")
async def get_artifact(artifact_id: str):
    return _service().get_artifact(artifact_id).to_dict()


@app.post("/api/scheduler/tick")
async def tick():
    """Run one scheduler pass immediately."""
    report = await _service().tick()
    return {
        "dispatched": report.dispatched,
        "progressed": report.progressed,
        "completed": report.completed,
        "awaiting_approval": report.awaiting_approval,
        "failed": report.failed,
        "graphs_completed": report.graphs_completed,
        "sessions_completed": report.sessions_completed,
    }


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------


async def session_event_stream(
    service: OrchestrationService,
    session: OrchestrationSession,
    after: int = 0,
    ping_seconds: float = 30.0,
) -> AsyncIterator[Dict[str, str]]:
    """Replay the transcript after *after*, then follow live events.

    Ends once the session has completed.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def on_event(data: Dict[str, Any]) -> None:
        if data.get("session_id") == session.id:
            await queue.put(data)

    sub_id = await service.subscribe(on_event)
    try:
        last_seq = after
        for event in session.transcript:
            if event["seq"] > last_seq:
                last_seq = event["seq"]
                yield {"event": event["type"], "id": str(event["seq"]), "data": json.dumps(event, default=str)}
        if session.is_terminal:
            return
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=ping_seconds)
            except asyncio.TimeoutError:
                yield {"event": "ping", "data": ""}
                continue
            if event["seq"] <= last_seq:
                continue
            last_seq = event["seq"]
            payload = {k: v for k, v in event.items() if not k.startswith("_")}
            yield {"event": event["type"], "id": str(event["seq"]), "data": json.dumps(payload, default=str)}
            if event["type"] == EventType.SESSION_COMPLETED.value:
                break
    finally:
        await service.unsubscribe(sub_id)


@app.get("/api/sessions/{session_id}/events")
async def stream_events(session_id: str, after: int = 0):
    """Stream session events as Server-Sent Events."""
    service = _service()
    session = service.get_session(session_id)
    return EventSourceResponse(session_event_stream(service, session, after))
