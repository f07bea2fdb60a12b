"""Key-value backends for the persistence boundary."""

import copy
import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from portal_core.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


class InMemoryKVStore:
    """Process-local store; values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileKVStore:
    """Single JSON document on disk, rewritten atomically on every write.

    Writes are retried with exponential backoff on ``OSError``; once the
    attempts are exhausted the write is rolled back in memory and
    ``StorageUnavailable`` is raised.
    """

    def __init__(self, storage_path: str = "~/.portal/state.json", write_attempts: int = 3):
        self.storage_path = os.path.expanduser(storage_path)
        self._write_attempts = write_attempts
        self._lock = threading.Lock()
        self._ensure_directory()
        self._data: Dict[str, Any] = self._load()

    def _ensure_directory(self) -> None:
        directory = os.path.dirname(self.storage_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.storage_path):
            return {}
        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"Cannot read {self.storage_path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageUnavailable(f"{self.storage_path} does not contain a JSON object")
        return data

    def _flush(self) -> None:
        @retry(
            stop=stop_after_attempt(self._write_attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        )
        def _write() -> None:
            directory = os.path.dirname(self.storage_path) or "."
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(self._data, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.storage_path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

        _write()

    def _write_through(self, key: str, mutate) -> None:
        with self._lock:
            had_key = key in self._data
            previous = self._data.get(key)
            mutate()
            try:
                self._flush()
            except OSError as e:
                if had_key:
                    self._data[key] = previous
                else:
                    self._data.pop(key, None)
                logger.error("Failed to persist %s to %s: %s", key, self.storage_path, e)
                raise StorageUnavailable(f"Cannot write {self.storage_path}: {e}") from e

    def put(self, key: str, value: Any) -> None:
        # Round-trip now so unserializable values fail before touching disk
        encoded = json.loads(json.dumps(value))
        self._write_through(key, lambda: self._data.__setitem__(key, encoded))

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def delete(self, key: str) -> None:
        if key not in self._data:
            return
        self._write_through(key, lambda: self._data.pop(key, None))
