"""Interface for the persistence boundary.

Sessions, graphs and artifacts are persisted through a plain key-value
contract so any backend (memory, file, database) can satisfy it.
Values must be JSON-serializable.
"""

from typing import Any, List, Optional, Protocol


class IKeyValueStore(Protocol):
    """Storage-agnostic key-value persistence."""

    def put(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value.

        Raises:
            StorageUnavailable: backend cannot be written
        """
        ...

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value or ``None``."""
        ...

    def list(self, prefix: str = "") -> List[str]:
        """Sorted keys starting with *prefix*."""
        ...

    def delete(self, key: str) -> None:
        """Remove *key* if present."""
        ...
