"""
Memory Store: flat key/value records with tags, category and TTL.

Expiry is lazy: ``load`` and ``list`` delete an expired record when they
meet it, ``search`` and ``stats`` merely skip it, and ``cleanup`` purges
every expired record at once. Every call is one read-modify-write against
the backend; nothing is cached between calls.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from marathon_memory.backends.base import StorageBackend
from marathon_memory.errors import InvalidArgument
from marathon_memory.types import (
    UNCATEGORIZED,
    ListResult,
    MemoryRecord,
    MemoryStats,
    _iso,
    _utcnow,
)

logger = logging.getLogger(__name__)

_COLLECTION = "memories"

VALID_SORT_FIELDS = ("created_at", "updated_at", "accessed_at", "access_count", "key")
VALID_SORT_ORDERS = ("asc", "desc")

TOP_ACCESSED = 10


def _require_key(key) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidArgument("key must be a non-empty string")
    return key


class MemoryStore:
    """Key/value memory over a StorageBackend."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        list_limit: int = 50,
        search_limit: int = 20,
    ):
        self._backend = backend
        self._clock = clock or _utcnow
        self._list_limit = list_limit
        self._search_limit = search_limit

    # -- Single-record operations -----------------------------------------

    def save(
        self,
        key: str,
        value: str,
        tags: Optional[List[str]] = None,
        category: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> MemoryRecord:
        """Create or fully replace the record under *key*.

        Access statistics restart from zero and ``created_at`` is fresh,
        even when the key already existed.
        """
        _require_key(key)
        if not isinstance(value, str):
            raise InvalidArgument("value must be a string")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
        ):
            raise InvalidArgument("tags must be a list of strings")
        if category is not None and not isinstance(category, str):
            raise InvalidArgument("category must be a string")
        expires_at = None
        now = self._clock()
        if ttl_seconds is not None:
            if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, (int, float)) \
                    or ttl_seconds <= 0:
                raise InvalidArgument(f"ttl_seconds must be positive, got {ttl_seconds!r}")
            expires_at = _iso(now + timedelta(seconds=ttl_seconds))
        stamp = _iso(now)
        record = MemoryRecord(
            key=key,
            value=value,
            tags=list(tags or []),
            category=category,
            created_at=stamp,
            updated_at=stamp,
            accessed_at=stamp,
            access_count=0,
            ttl_expires_at=expires_at,
        )
        self._backend.put(_COLLECTION, key, record.to_dict())
        logger.debug(f"memory save: {key!r} (ttl={ttl_seconds})")
        return record

    def load(self, key: str) -> Optional[MemoryRecord]:
        """Fetch *key* and count the access. Expired records are deleted.

        The returned record is the state read before this access was
        counted: the first load after a save reports ``access_count == 0``
        and leaves 1 in the store.
        """
        _require_key(key)
        data = self._backend.get(_COLLECTION, key)
        if data is None:
            return None
        record = MemoryRecord.from_dict(data)
        now = self._clock()
        if record.is_expired(now):
            self._backend.delete(_COLLECTION, key)
            logger.debug(f"memory load: {key!r} expired, deleted")
            return None
        touched = dict(data, access_count=record.access_count + 1, accessed_at=_iso(now))
        self._backend.put(_COLLECTION, key, touched)
        return record

    def peek(self, key: str) -> Optional[MemoryRecord]:
        """Fetch *key* without access accounting or expiry side effects."""
        _require_key(key)
        data = self._backend.get(_COLLECTION, key)
        if data is None:
            return None
        record = MemoryRecord.from_dict(data)
        return None if record.is_expired(self._clock()) else record

    def restore(self, record: MemoryRecord) -> None:
        """Write *record* verbatim (timestamps and counters included)."""
        _require_key(record.key)
        self._backend.put(_COLLECTION, record.key, record.to_dict())

    def records(self) -> List[MemoryRecord]:
        """Every live record, oldest first, without access accounting."""
        now = self._clock()
        live = [r for r in (MemoryRecord.from_dict(d) for d in self._backend.scan(_COLLECTION))
                if not r.is_expired(now)]
        live.sort(key=lambda r: (r.created_at, r.key))
        return live

    def delete(self, key: str) -> bool:
        """Remove *key*. Idempotent: always True."""
        _require_key(key)
        self._backend.delete(_COLLECTION, key)
        return True

    # -- Queries -----------------------------------------------------------

    def list(
        self,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> ListResult:
        """Filtered, sorted page of live records.

        ``tags`` matches a record carrying ANY of them. ``total`` is the
        number of matches before pagination.
        """
        limit = self._list_limit if limit is None else limit
        if sort_by not in VALID_SORT_FIELDS:
            raise InvalidArgument(f"sort_by must be one of {VALID_SORT_FIELDS}")
        if sort_order not in VALID_SORT_ORDERS:
            raise InvalidArgument(f"sort_order must be one of {VALID_SORT_ORDERS}")
        if limit < 0 or offset < 0:
            raise InvalidArgument("limit and offset must be >= 0")

        where = {"category": category} if category is not None else None
        now = self._clock()
        matched: List[MemoryRecord] = []
        for data in self._backend.scan(_COLLECTION, where):
            record = MemoryRecord.from_dict(data)
            if record.is_expired(now):
                self._backend.delete(_COLLECTION, record.key)
                logger.debug(f"memory list: {record.key!r} expired, deleted")
                continue
            if tags and not record.has_any_tag(tags):
                continue
            matched.append(record)

        matched.sort(key=lambda r: r.key)
        matched.sort(key=lambda r: getattr(r, sort_by), reverse=(sort_order == "desc"))
        return ListResult(items=matched[offset:offset + limit], total=len(matched))

    def search(
        self,
        query: str,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryRecord]:
        """Case-insensitive substring search over key and value.

        Most-accessed first, then most recently updated. Expired records
        are skipped but left in place.
        """
        if not isinstance(query, str):
            raise InvalidArgument("query must be a string")
        limit = self._search_limit if limit is None else limit
        if limit < 0:
            raise InvalidArgument("limit must be >= 0")
        needle = query.lower()
        where = {"category": category} if category is not None else None
        now = self._clock()
        hits = []
        for data in self._backend.scan(_COLLECTION, where):
            record = MemoryRecord.from_dict(data)
            if record.is_expired(now):
                continue
            if needle in record.key.lower() or needle in record.value.lower():
                hits.append(record)
        hits.sort(key=lambda r: (r.access_count, r.updated_at), reverse=True)
        return hits[:limit]

    def stats(self) -> MemoryStats:
        """Totals over live records."""
        now = self._clock()
        live = [
            r for r in (MemoryRecord.from_dict(d) for d in self._backend.scan(_COLLECTION))
            if not r.is_expired(now)
        ]
        per_category = Counter(r.category or UNCATEGORIZED for r in live)
        top = sorted(live, key=lambda r: (-r.access_count, r.key))[:TOP_ACCESSED]
        return MemoryStats(
            total=len(live),
            per_category=dict(per_category),
            top_accessed=[{"key": r.key, "access_count": r.access_count} for r in top],
        )

    def cleanup(self) -> int:
        """Delete every expired record. Returns the number removed."""
        now = self._clock()
        removed = 0
        for data in self._backend.scan(_COLLECTION):
            record = MemoryRecord.from_dict(data)
            if record.is_expired(now) and self._backend.delete(_COLLECTION, record.key):
                removed += 1
        if removed:
            logger.info(f"memory cleanup: {removed} expired record(s) removed")
        return removed
