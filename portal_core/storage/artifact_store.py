"""Append-only store of approved outputs (rules, features, contacts).

Artifacts are immutable and keyed by id; each source node produces at most
one.  Creation is a test-and-set on the source key under a lock, which is
enough to keep that invariant when graphs from different sessions emit
concurrently.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from portal_core.exceptions import DuplicateArtifact, NotFound
from portal_core.interfaces.kv_store import IKeyValueStore
from portal_core.scheduling.task_graph import ArtifactKind

logger = logging.getLogger(__name__)

KEY_PREFIX = "artifact/"


def source_key(
    source_node_id: str, graph_id: Optional[str] = None, session_id: Optional[str] = None
) -> str:
    """Key identifying a producing node across sessions and graphs."""
    return "/".join(part for part in (session_id, graph_id, source_node_id) if part)


@dataclass(frozen=True)
class Artifact:
    """A durable output produced by an approved node."""

    id: str
    kind: ArtifactKind
    payload: Any
    source_node_id: str
    created_at: float
    graph_id: Optional[str] = None
    session_id: Optional[str] = None
    name: str = ""

    @property
    def url(self) -> str:
        """Deep link the portal uses to open the artifact."""
        return f"#/{self.kind.value}/{self.id}"

    @property
    def source_key(self) -> str:
        return source_key(self.source_node_id, self.graph_id, self.session_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "source_node_id": self.source_node_id,
            "created_at": self.created_at,
            "graph_id": self.graph_id,
            "session_id": self.session_id,
            "name": self.name,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            id=data["id"],
            kind=ArtifactKind(data["kind"]),
            payload=data.get("payload"),
            source_node_id=data["source_node_id"],
            created_at=float(data["created_at"]),
            graph_id=data.get("graph_id"),
            session_id=data.get("session_id"),
            name=data.get("name", ""),
        )


class ArtifactView:
    """Lazy, finite, restartable sequence of artifacts of one kind.

    Each iteration takes a fresh snapshot ordered by ``created_at``
    (insertion order breaks ties).
    """

    def __init__(self, store: "ArtifactStore", kind: Optional[ArtifactKind]) -> None:
        self._store = store
        self._kind = kind

    def __iter__(self) -> Iterator[Artifact]:
        for artifact_id in self._store._ordered_ids(self._kind):
            yield self._store._artifacts[artifact_id]

    def __len__(self) -> int:
        return len(self._store._ordered_ids(self._kind))


class ArtifactStore:
    """Keyed, append-only artifact store with optional write-through."""

    def __init__(self, kv: Optional[IKeyValueStore] = None) -> None:
        self._kv = kv
        self._lock = threading.Lock()
        self._artifacts: Dict[str, Artifact] = {}
        # source_key → artifact id
        self._by_source: Dict[str, str] = {}
        # Insertion order, used to break created_at ties
        self._order: List[str] = []

    def create(
        self,
        kind: Union[ArtifactKind, str],
        payload: Any,
        source_node_id: str,
        *,
        graph_id: Optional[str] = None,
        session_id: Optional[str] = None,
        name: str = "",
    ) -> Artifact:
        """Create the artifact for *source_node_id*.

        Raises:
            DuplicateArtifact: the source node already has one.
            StorageUnavailable: write-through to the KV store failed.
        """
        kind = ArtifactKind(kind)
        key = source_key(source_node_id, graph_id, session_id)
        with self._lock:
            existing = self._by_source.get(key)
            if existing is not None:
                raise DuplicateArtifact(source_node_id, existing)
            artifact = Artifact(
                id=f"{kind.value}-{uuid.uuid4().hex[:8]}",
                kind=kind,
                payload=payload,
                source_node_id=source_node_id,
                created_at=time.time(),
                graph_id=graph_id,
                session_id=session_id,
                name=name or kind.value.upper(),
            )
            if self._kv is not None:
                # Persist first so a failed write leaves no trace
                self._kv.put(KEY_PREFIX + artifact.id, artifact.to_dict())
            self._index(artifact)
        logger.info("Artifact %s created from %s", artifact.id, key)
        return artifact

    def _index(self, artifact: Artifact) -> None:
        self._artifacts[artifact.id] = artifact
        self._by_source[artifact.source_key] = artifact.id
        self._order.append(artifact.id)

    def get(self, artifact_id: str) -> Artifact:
        try:
            return self._artifacts[artifact_id]
        except KeyError:
            raise NotFound(f"Artifact {artifact_id!r} not found") from None

    def get_by_source(
        self,
        source_node_id: str,
        graph_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Artifact]:
        artifact_id = self._by_source.get(source_key(source_node_id, graph_id, session_id))
        return self._artifacts.get(artifact_id) if artifact_id else None

    def list_by_kind(self, kind: Union[ArtifactKind, str]) -> ArtifactView:
        return ArtifactView(self, ArtifactKind(kind))

    def all(self) -> ArtifactView:
        return ArtifactView(self, None)

    def _ordered_ids(self, kind: Optional[ArtifactKind]) -> List[str]:
        with self._lock:
            indexed = [
                (self._artifacts[aid].created_at, pos, aid)
                for pos, aid in enumerate(self._order)
                if kind is None or self._artifacts[aid].kind == kind
            ]
        return [aid for _, _, aid in sorted(indexed)]

    def __len__(self) -> int:
        return len(self._artifacts)

    def load(self) -> int:
        """Rebuild the in-memory index from the KV store; returns the count loaded."""
        if self._kv is None:
            return 0
        loaded = 0
        with self._lock:
            for key in self._kv.list(KEY_PREFIX):
                data = self._kv.get(key)
                if data is None:
                    continue
                artifact = Artifact.from_dict(data)
                if artifact.id in self._artifacts:
                    continue
                self._index(artifact)
                loaded += 1
            # Stored keys are id-sorted; restore creation order
            self._order.sort(key=lambda aid: self._artifacts[aid].created_at)
        logger.info("Loaded %d artifacts from storage", loaded)
        return loaded
