"""
Storage Backend: abstract record store.

A backend persists plain ``dict`` records in a fixed set of named
collections. Each ``put``/``delete`` is atomic for a single record; there
is no multi-record transaction. Higher layers (memory store, knowledge
graph, session ledger) build their semantics on these five calls.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from marathon_memory.errors import InvalidArgument


# Collection name -> field holding the record id.
COLLECTIONS: Dict[str, str] = {
    "memories": "key",
    "entities": "id",
    "relations": "id",
    "observations": "id",
    "sessions": "id",
    "checkpoints": "id",
    "events": "id",
}


def check_collection(collection: str) -> str:
    """Return *collection* unchanged, or raise InvalidArgument."""
    if collection not in COLLECTIONS:
        raise InvalidArgument(f"Unknown collection: {collection!r}")
    return collection


def matches(record: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """Equality filter shared by backends that scan in Python."""
    if not where:
        return True
    return all(record.get(k) == v for k, v in where.items())


class StorageBackend(ABC):
    """Abstract record store over named collections."""

    name: str = "abstract"

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Return the record, or None when absent."""

    @abstractmethod
    def put(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        """Insert or fully replace one record."""

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> bool:
        """Remove one record. True if something was removed."""

    @abstractmethod
    def scan(
        self, collection: str, where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """All records of *collection* whose fields equal *where*.

        Order is backend-defined.
        """

    def count(self, collection: str, where: Optional[Dict[str, Any]] = None) -> int:
        return len(self.scan(collection, where))

    @abstractmethod
    def close(self) -> None:
        """Release resources. Further calls fail with StorageFailure."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
