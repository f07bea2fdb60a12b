"""Persistence: artifact store, key-value backends, session repository."""

from portal_core.storage.artifact_store import Artifact, ArtifactStore, ArtifactView
from portal_core.storage.kv_store import InMemoryKVStore, JsonFileKVStore

__all__ = [
    "Artifact",
    "ArtifactStore",
    "ArtifactView",
    "InMemoryKVStore",
    "JsonFileKVStore",
]
