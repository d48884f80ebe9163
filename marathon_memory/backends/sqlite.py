"""
SQLite backend: one embedded database, one table per collection.

Tables:
    memories      - Key/value memory records (key is the primary key)
    entities      - Knowledge-graph nodes
    relations     - Directed edges, endpoints stored as entity names
    observations  - Append-only notes owned by an entity id
    sessions      - Ledger sessions
    checkpoints   - Append-only session save points
    events        - Tracked counter events
    schema_meta   - Schema version and creator

Every record field is a real column; lists and dicts are JSON text.
Thread safety: one connection opened with check_same_thread=False,
serialized by a lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from marathon_memory.backends.base import COLLECTIONS, StorageBackend, check_collection
from marathon_memory.errors import InvalidArgument, StorageFailure

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    key             TEXT PRIMARY KEY,
    value           TEXT NOT NULL DEFAULT '',
    tags            TEXT NOT NULL DEFAULT '[]',       -- JSON array
    category        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    accessed_at     TEXT NOT NULL,
    access_count    INTEGER NOT NULL DEFAULT 0,
    ttl_expires_at  TEXT
);

CREATE TABLE IF NOT EXISTS entities (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    entity_type TEXT NOT NULL DEFAULT 'general',
    description TEXT,
    properties  TEXT NOT NULL DEFAULT '{}',           -- JSON object
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS relations (
    id            TEXT PRIMARY KEY,
    from_entity   TEXT NOT NULL,
    to_entity     TEXT NOT NULL,
    relation_type TEXT NOT NULL,
    properties    TEXT NOT NULL DEFAULT '{}',         -- JSON object
    bidirectional INTEGER NOT NULL DEFAULT 0,
    weight        REAL NOT NULL DEFAULT 1.0,
    confidence    REAL NOT NULL DEFAULT 1.0,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS observations (
    id               TEXT PRIMARY KEY,
    entity_id        TEXT NOT NULL,
    text             TEXT NOT NULL,
    observation_type TEXT NOT NULL DEFAULT 'general',
    confidence       REAL NOT NULL DEFAULT 1.0,
    source           TEXT,
    context          TEXT,
    position         INTEGER NOT NULL DEFAULT 0,
    timestamp        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    mode        TEXT NOT NULL DEFAULT 'normal',
    context     TEXT,
    created_at  TEXT NOT NULL,
    ended_at    TEXT,
    end_reason  TEXT
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id              TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL,
    context         TEXT NOT NULL DEFAULT '',
    checkpoint_type TEXT NOT NULL DEFAULT 'manual'
                    CHECK(checkpoint_type IN ('manual','auto','emergency')),
    timestamp       TEXT NOT NULL,
    payload         TEXT NOT NULL DEFAULT '{}'        -- JSON object
);

CREATE TABLE IF NOT EXISTS events (
    id          TEXT PRIMARY KEY,
    event_name  TEXT NOT NULL,
    session_id  TEXT,
    properties  TEXT NOT NULL DEFAULT '{}',           -- JSON object
    timestamp   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type);
CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_entity);
CREATE INDEX IF NOT EXISTS idx_relations_to ON relations(to_entity);
CREATE INDEX IF NOT EXISTS idx_observations_entity ON observations(entity_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON checkpoints(session_id);
CREATE INDEX IF NOT EXISTS idx_events_name ON events(event_name);
"""

_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "memories": ("key", "value", "tags", "category", "created_at", "updated_at",
                 "accessed_at", "access_count", "ttl_expires_at"),
    "entities": ("id", "name", "entity_type", "description", "properties",
                 "created_at", "updated_at"),
    "relations": ("id", "from_entity", "to_entity", "relation_type", "properties",
                  "bidirectional", "weight", "confidence", "created_at"),
    "observations": ("id", "entity_id", "text", "observation_type", "confidence",
                     "source", "context", "position", "timestamp"),
    "sessions": ("id", "mode", "context", "created_at", "ended_at", "end_reason"),
    "checkpoints": ("id", "session_id", "context", "checkpoint_type", "timestamp",
                    "payload"),
    "events": ("id", "event_name", "session_id", "properties", "timestamp"),
}

_JSON_COLUMNS = {"tags", "properties", "payload"}
_BOOL_COLUMNS = {"bidirectional"}

_JSON_DEFAULTS: Dict[str, Any] = {"tags": [], "properties": {}, "payload": {}}


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        if value is None:
            value = _JSON_DEFAULTS[column]
        return json.dumps(value, ensure_ascii=False)
    if column in _BOOL_COLUMNS:
        return int(bool(value))
    return value


def _decode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.loads(value) if value else _JSON_DEFAULTS[column]
    if column in _BOOL_COLUMNS:
        return bool(value)
    return value


class SQLiteBackend(StorageBackend):
    """Record store in a single SQLite database."""

    name = "sqlite"

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        busy_timeout_ms: int = 30000,
    ):
        """Open (and create if needed) the database.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            busy_timeout_ms: How long a statement waits on a locked database.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                db_path, check_same_thread=False,
                timeout=busy_timeout_ms / 1000.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            if wal_mode and db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) "
                "VALUES ('created_by', 'marathon-memory')",
            )
            self._conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StorageFailure(f"Cannot open database {db_path}: {exc}") from exc
        logger.info(f"SQLiteBackend opened: {db_path} (wal={wal_mode})")

    @property
    def db_path(self) -> str:
        return self._db_path

    # -- Helpers -----------------------------------------------------------

    @staticmethod
    def _where_sql(
        collection: str, where: Optional[Dict[str, Any]],
    ) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        columns = _COLUMNS[collection]
        clauses, params = [], []
        for col, val in where.items():
            if col not in columns:
                raise InvalidArgument(f"Unknown field {col!r} for {collection}")
            clauses.append(f"{col} IS ?")
            params.append(_encode(col, val))
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _row_to_record(collection: str, row: sqlite3.Row) -> Dict[str, Any]:
        return {col: _decode(col, row[col]) for col in _COLUMNS[collection]}

    # -- Record access -----------------------------------------------------

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        check_collection(collection)
        pk = COLLECTIONS[collection]
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT * FROM {collection} WHERE {pk}=?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(f"get {collection}/{record_id}: {exc}") from exc
        if row is None:
            return None
        try:
            return self._row_to_record(collection, row)
        except json.JSONDecodeError as exc:
            raise StorageFailure(f"Corrupt record {collection}/{record_id}: {exc}") from exc

    def put(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        check_collection(collection)
        pk = COLLECTIONS[collection]
        columns = _COLUMNS[collection]
        row = dict(record)
        row[pk] = record_id
        placeholders = ",".join("?" for _ in columns)
        try:
            values = tuple(_encode(col, row.get(col)) for col in columns)
            with self._lock:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {collection} ({','.join(columns)}) "
                    f"VALUES ({placeholders})",
                    values,
                )
                self._conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise StorageFailure(f"put {collection}/{record_id}: {exc}") from exc

    def delete(self, collection: str, record_id: str) -> bool:
        check_collection(collection)
        pk = COLLECTIONS[collection]
        try:
            with self._lock:
                cur = self._conn.execute(
                    f"DELETE FROM {collection} WHERE {pk}=?", (record_id,)
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageFailure(f"delete {collection}/{record_id}: {exc}") from exc
        return cur.rowcount > 0

    def scan(
        self, collection: str, where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        check_collection(collection)
        clause, params = self._where_sql(collection, where)
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT * FROM {collection}{clause} ORDER BY rowid", params
                ).fetchall()
            return [self._row_to_record(collection, r) for r in rows]
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            raise StorageFailure(f"scan {collection}: {exc}") from exc

    def count(self, collection: str, where: Optional[Dict[str, Any]] = None) -> int:
        check_collection(collection)
        clause, params = self._where_sql(collection, where)
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT COUNT(*) AS n FROM {collection}{clause}", params
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(f"count {collection}: {exc}") from exc
        return row["n"]

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()
