"""Session persistence over the key-value boundary.

Layout::

    session/<session_id>              session header + transcript
    graph/<session_id>/<graph_id>     one task graph with its approval log
    artifact/<artifact_id>            written by ArtifactStore

Graphs are written before their session header so a header never points
at a graph that was not stored.
"""

import logging
from typing import List, Optional

from portal_core.exceptions import NotFound
from portal_core.interfaces.event_bus import IEventBus
from portal_core.interfaces.kv_store import IKeyValueStore
from portal_core.orchestration.session import OrchestrationSession
from portal_core.scheduling.task_graph import TaskGraph
from portal_core.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session/"
GRAPH_PREFIX = "graph/"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def graph_key(session_id: str, graph_id: str) -> str:
    return f"{GRAPH_PREFIX}{session_id}/{graph_id}"


class SessionRepository:
    """Saves and restores orchestration sessions."""

    def __init__(self, kv: IKeyValueStore, transcript_limit: int = 1000) -> None:
        self._kv = kv
        self._transcript_limit = transcript_limit

    def save(self, session: OrchestrationSession) -> None:
        """Persist every graph, then the session header.

        Raises:
            StorageUnavailable: the backend rejected a write.
        """
        for graph in session.graphs:
            self._kv.put(graph_key(session.id, graph.id), graph.to_dict())
        self._kv.put(session_key(session.id), session.to_dict())
        logger.debug("Saved session %s (%d graphs)", session.id, len(session.graphs))

    def load(
        self,
        session_id: str,
        artifact_store: ArtifactStore,
        event_bus: Optional[IEventBus] = None,
    ) -> OrchestrationSession:
        data = self._kv.get(session_key(session_id))
        if data is None:
            raise NotFound(f"Session {session_id!r} not found in storage")
        graphs = []
        for graph_id in data.get("graph_ids", []):
            graph_data = self._kv.get(graph_key(session_id, graph_id))
            if graph_data is None:
                raise NotFound(f"Graph {graph_id!r} of session {session_id!r} not found in storage")
            graphs.append(TaskGraph.from_dict(graph_data))
        session = OrchestrationSession.from_dict(
            data,
            graphs,
            artifact_store,
            event_bus=event_bus,
            transcript_limit=self._transcript_limit,
        )
        logger.debug("Loaded session %s (%s)", session.id, session.status.value)
        return session

    def exists(self, session_id: str) -> bool:
        return self._kv.get(session_key(session_id)) is not None

    def list_ids(self) -> List[str]:
        return [key[len(SESSION_PREFIX):] for key in self._kv.list(SESSION_PREFIX)]

    def delete(self, session_id: str) -> None:
        for key in self._kv.list(f"{GRAPH_PREFIX}{session_id}/"):
            self._kv.delete(key)
        self._kv.delete(session_key(session_id))
