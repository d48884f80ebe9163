"""
Tests for marathon_memory.backends: record CRUD, scans, layouts, failures.
"""

import json
import os
import sqlite3

import pytest

from marathon_memory.backends import FileTreeBackend, SQLiteBackend, open_backend
from marathon_memory.backends.sqlite import SCHEMA_VERSION
from marathon_memory.config import StoreConfig
from marathon_memory.errors import InvalidArgument, StorageFailure


def _relation(rid, src, dst, typ="near", **extra):
    d = {
        "id": rid, "from_entity": src, "to_entity": dst, "relation_type": typ,
        "properties": {}, "bidirectional": False, "weight": 1.0,
        "confidence": 1.0, "created_at": "2026-01-01T00:00:00.000000+00:00",
    }
    d.update(extra)
    return d


# ---------------------------------------------------------------------------
# Contract shared by both backends
# ---------------------------------------------------------------------------


class TestRecordAccess:
    def test_get_missing(self, backend):
        assert backend.get("entities", "ENT-nope") is None

    def test_put_then_get(self, backend):
        rec = _relation("REL-1", "A", "B", properties={"km": 3})
        backend.put("relations", "REL-1", rec)
        assert backend.get("relations", "REL-1") == rec

    def test_put_replaces(self, backend):
        backend.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        backend.put("relations", "REL-1", _relation("REL-1", "A", "C"))
        assert backend.get("relations", "REL-1")["to_entity"] == "C"
        assert backend.count("relations") == 1

    def test_delete(self, backend):
        backend.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        assert backend.delete("relations", "REL-1") is True
        assert backend.delete("relations", "REL-1") is False
        assert backend.get("relations", "REL-1") is None

    def test_unknown_collection(self, backend):
        with pytest.raises(InvalidArgument):
            backend.get("widgets", "x")

    def test_memory_key_with_slashes(self, backend):
        rec = {"key": "notes/2026/trip", "value": "v", "tags": ["a"], "category": None,
               "created_at": "t", "updated_at": "t", "accessed_at": "t",
               "access_count": 0, "ttl_expires_at": None}
        backend.put("memories", rec["key"], rec)
        assert backend.get("memories", "notes/2026/trip")["value"] == "v"
        assert backend.get("memories", "notes") is None

    def test_long_non_ascii_key(self, backend):
        key = "ბათუმის_მოგზაურობის_შენიშვნები_2026" * 3
        rec = {"key": key, "value": "v", "tags": [], "category": None,
               "created_at": "t", "updated_at": "t", "accessed_at": "t",
               "access_count": 0, "ttl_expires_at": None}
        backend.put("memories", key, rec)
        assert backend.get("memories", key)["value"] == "v"
        assert [r["key"] for r in backend.scan("memories")] == [key]
        assert backend.delete("memories", key) is True
        assert backend.get("memories", key) is None


class TestScan:
    def test_scan_all(self, backend):
        for i in range(3):
            backend.put("relations", f"REL-{i}", _relation(f"REL-{i}", "A", f"B{i}"))
        assert len(backend.scan("relations")) == 3

    def test_scan_where(self, backend):
        backend.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        backend.put("relations", "REL-2", _relation("REL-2", "B", "A"))
        backend.put("relations", "REL-3", _relation("REL-3", "A", "C", typ="far"))
        rows = backend.scan("relations", {"from_entity": "A"})
        assert {r["id"] for r in rows} == {"REL-1", "REL-3"}
        rows = backend.scan("relations", {"from_entity": "A", "relation_type": "near"})
        assert [r["id"] for r in rows] == ["REL-1"]

    def test_scan_where_none_value(self, backend):
        backend.put("events", "EVT-1", {"id": "EVT-1", "event_name": "x",
                                        "session_id": None, "properties": {},
                                        "timestamp": "t"})
        backend.put("events", "EVT-2", {"id": "EVT-2", "event_name": "x",
                                        "session_id": "s1", "properties": {},
                                        "timestamp": "t"})
        assert [r["id"] for r in backend.scan("events", {"session_id": None})] == ["EVT-1"]

    def test_count_where(self, backend):
        backend.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        backend.put("relations", "REL-2", _relation("REL-2", "A", "C"))
        assert backend.count("relations", {"from_entity": "A"}) == 2
        assert backend.count("relations", {"from_entity": "Z"}) == 0

    def test_bool_roundtrip(self, backend):
        backend.put("relations", "REL-1", _relation("REL-1", "A", "B", bidirectional=True))
        assert backend.get("relations", "REL-1")["bidirectional"] is True
        assert len(backend.scan("relations", {"bidirectional": True})) == 1

    def test_context_manager_closes(self, tmp_path):
        with SQLiteBackend(str(tmp_path / "m.db")) as b:
            b.put("sessions", "s", {"id": "s", "mode": "normal", "context": None,
                                    "created_at": "t", "ended_at": None,
                                    "end_reason": None})
        with pytest.raises(StorageFailure):
            b.get("sessions", "s")


# ---------------------------------------------------------------------------
# File tree specifics
# ---------------------------------------------------------------------------


class TestFileTree:
    def test_layout(self, tmp_path):
        root = tmp_path / "tree"
        FileTreeBackend(str(root))
        for rel in ("memory", "knowledge/entities", "knowledge/relations",
                    "knowledge/observations", "ledger/sessions",
                    "ledger/checkpoints", "ledger/events"):
            assert (root / rel).is_dir(), rel

    def test_one_file_per_record(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        b.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        path = tmp_path / "knowledge" / "relations" / "REL-1.json"
        assert json.loads(path.read_text(encoding="utf-8"))["from_entity"] == "A"

    def test_key_is_percent_encoded(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        b.put("memories", "a/b c", {"key": "a/b c", "value": "v"})
        assert os.listdir(tmp_path / "memory") == ["a%2Fb%20c.json"]

    def test_long_key_uses_digest_name(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        key = "მოგზაურობა" * 20
        b.put("memories", key, {"key": key, "value": "v"})
        names = os.listdir(tmp_path / "memory")
        assert len(names) == 1
        assert names[0].startswith("sha256-")
        assert len(names[0].encode("utf-8")) < 100
        assert b.get("memories", key)["key"] == key

    def test_no_temp_files_left(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        for i in range(5):
            b.put("relations", "REL-1", _relation("REL-1", "A", f"B{i}"))
        assert os.listdir(tmp_path / "knowledge" / "relations") == ["REL-1.json"]

    def test_scan_ignores_stray_files(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        b.put("relations", "REL-1", _relation("REL-1", "A", "B"))
        (tmp_path / "knowledge" / "relations" / "REL-1.json.tmp.abc").write_text("{")
        assert len(b.scan("relations")) == 1

    def test_corrupt_file_is_storage_failure(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        (tmp_path / "knowledge" / "entities" / "ENT-x.json").write_text("{not json")
        with pytest.raises(StorageFailure):
            b.get("entities", "ENT-x")
        with pytest.raises(StorageFailure):
            b.scan("entities")

    def test_closed_backend_fails(self, tmp_path):
        b = FileTreeBackend(str(tmp_path))
        b.close()
        with pytest.raises(StorageFailure):
            b.scan("entities")


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


class TestSQLite:
    def test_schema_meta(self, tmp_path):
        b = SQLiteBackend(str(tmp_path / "m.db"))
        b.close()
        conn = sqlite3.connect(str(tmp_path / "m.db"))
        rows = dict(conn.execute("SELECT key, value FROM schema_meta").fetchall())
        conn.close()
        assert rows["schema_version"] == str(SCHEMA_VERSION)
        assert rows["created_by"] == "marathon-memory"

    def test_tables_exist(self, tmp_path):
        b = SQLiteBackend(str(tmp_path / "m.db"))
        b.close()
        conn = sqlite3.connect(str(tmp_path / "m.db"))
        tables = {r[0] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
        conn.close()
        assert {"memories", "entities", "relations", "observations", "sessions",
                "checkpoints", "events", "schema_meta"} <= tables

    def test_json_columns_are_text(self, tmp_path):
        b = SQLiteBackend(str(tmp_path / "m.db"))
        b.put("relations", "REL-1", _relation("REL-1", "A", "B", properties={"k": [1, 2]}))
        b.close()
        conn = sqlite3.connect(str(tmp_path / "m.db"))
        raw = conn.execute("SELECT properties FROM relations").fetchone()[0]
        conn.close()
        assert json.loads(raw) == {"k": [1, 2]}

    def test_unknown_where_field(self, tmp_path):
        b = SQLiteBackend(str(tmp_path / "m.db"))
        with pytest.raises(InvalidArgument):
            b.scan("relations", {"colour": "red"})
        b.close()

    def test_in_memory(self):
        b = SQLiteBackend(":memory:")
        b.put("sessions", "s", {"id": "s", "mode": "normal", "context": None,
                                "created_at": "t", "ended_at": None, "end_reason": None})
        assert b.get("sessions", "s")["mode"] == "normal"
        b.close()

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(StorageFailure):
            SQLiteBackend(str(blocker / "sub" / "m.db"))


class TestOpenBackend:
    def test_sqlite(self, tmp_path):
        b = open_backend(StoreConfig(backend="sqlite", root=str(tmp_path)))
        assert isinstance(b, SQLiteBackend)
        assert b.db_path == os.path.join(str(tmp_path), "memory.db")
        b.close()

    def test_filetree(self, tmp_path):
        b = open_backend(StoreConfig(backend="filetree", root=str(tmp_path)))
        assert isinstance(b, FileTreeBackend)
        b.close()

    def test_unknown(self, tmp_path):
        with pytest.raises(InvalidArgument):
            open_backend(StoreConfig(backend="redis", root=str(tmp_path)))
