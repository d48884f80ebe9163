"""
Tests for the marathon-memory CLI via subprocess.

Every test runs the real entry point (`python -m marathon_memory.cli`)
against a temporary store so there are no side effects on the developer
machine.
"""

import json
import os
import subprocess
import sys

import pytest

from marathon_memory.config import MarathonConfig, StoreConfig
from marathon_memory.core import MarathonMemory

PYTHON = sys.executable
CLI = [PYTHON, "-m", "marathon_memory.cli"]


def run(args, *, env=None):
    """Run a marathon-memory command and return CompletedProcess."""
    base = {k: v for k, v in os.environ.items() if not k.startswith("MARATHON_MEMORY_")}
    merged_env = {**base, **(env or {})}
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        timeout=30,
    )


@pytest.fixture(params=["sqlite", "filetree"])
def root(request, tmp_path):
    """A populated store; yields (root, backend name)."""
    path = str(tmp_path / "store")
    cfg = MarathonConfig(store=StoreConfig(backend=request.param, root=path))
    with MarathonMemory(cfg) as mm:
        mm.memory.save("trip", "Batumi notes", tags=["georgia", "coast"], category="travel")
        mm.memory.save("todo", "buy tickets")
        mm.graph.create_entities([
            {"name": "Batumi", "type": "city", "observations": ["sunset over the sea"]},
            {"name": "Tbilisi", "type": "city"},
        ])
        mm.graph.create_relations([{"from": "Batumi", "to": "Tbilisi", "type": "near"}])
        mm.ledger.track_event("tool_call")
        mm.ledger.track_event("tool_call")
    return path, request.param


def _flags(root):
    path, backend = root
    return ["--root", path, "--backend", backend]


class TestCommands:
    def test_no_command(self):
        r = run([])
        assert r.returncode == 1

    def test_stats_json(self, root):
        r = run(["stats", "--json"] + _flags(root))
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["memory"]["total"] == 2
        assert data["memory"]["per_category"] == {"travel": 1, "uncategorized": 1}
        assert data["graph"]["total_entities"] == 2

    def test_stats_human(self, root):
        r = run(["stats"] + _flags(root))
        assert r.returncode == 0
        assert "Entities:     2" in r.stdout

    def test_show(self, root):
        r = run(["show", "trip", "--json"] + _flags(root))
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["value"] == "Batumi notes"
        assert data["access_count"] == 0

    def test_show_missing(self, root):
        r = run(["show", "nope"] + _flags(root))
        assert r.returncode == 1
        assert "Key not found" in r.stderr

    def test_search(self, root):
        r = run(["search", "batumi", "--json"] + _flags(root))
        assert r.returncode == 0
        assert [d["key"] for d in json.loads(r.stdout)] == ["trip"]

    def test_search_no_results(self, root):
        r = run(["search", "zzz"] + _flags(root))
        assert r.returncode == 0
        assert r.stdout == ""

    def test_nodes(self, root):
        r = run(["nodes", "sunset", "--json"] + _flags(root))
        assert r.returncode == 0
        [match] = json.loads(r.stdout)
        assert match["name"] == "Batumi"
        assert match["match_reason"] == "observation"

    def test_graph(self, root):
        r = run(["graph", "--json"] + _flags(root))
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["entity_count"] == 2
        assert data["relation_count"] == 1

    def test_events(self, root):
        r = run(["events", "--json"] + _flags(root))
        assert json.loads(r.stdout) == [{"event": "tool_call", "count": 2}]

    def test_cleanup(self, root):
        r = run(["cleanup", "--json"] + _flags(root))
        assert r.returncode == 0
        assert json.loads(r.stdout) == {"status": "ok", "removed": 0}


class TestExportImport:
    def test_memory_roundtrip(self, root, tmp_path):
        dump = tmp_path / "dump.jsonl"
        r = run(["export", "-o", str(dump), "-q"] + _flags(root))
        assert r.returncode == 0, r.stderr
        assert len(dump.read_text(encoding="utf-8").splitlines()) == 2

        fresh = str(tmp_path / "fresh")
        r = run(["import", str(dump), "--json", "--root", fresh])
        assert r.returncode == 0, r.stderr
        assert json.loads(r.stdout)["imported"] == 2

        r = run(["import", str(dump), "--json", "--root", fresh])
        assert json.loads(r.stdout)["skipped_existing"] == 2

    def test_export_stdout_is_pure(self, root):
        r = run(["export"] + _flags(root))
        assert r.returncode == 0
        for line in r.stdout.splitlines():
            json.loads(line)
        assert "[export]" in r.stderr

    def test_graph_roundtrip(self, root, tmp_path):
        doc = tmp_path / "graph.json"
        r = run(["export", "--graph", "-o", str(doc), "-q"] + _flags(root))
        assert r.returncode == 0, r.stderr
        fresh = str(tmp_path / "fresh")
        r = run(["import", str(doc), "--graph", "--json", "--root", fresh])
        assert r.returncode == 0, r.stderr
        summary = json.loads(r.stdout)
        assert summary["entities_created"] == 2
        assert summary["relations_created"] == 1

    def test_import_missing_file(self, tmp_path):
        r = run(["import", str(tmp_path / "nope.jsonl"), "--root", str(tmp_path)])
        assert r.returncode == 1


class TestPrecedence:
    def test_env_root(self, root):
        path, backend = root
        r = run(["stats", "--json"], env={"MARATHON_MEMORY_ROOT": path,
                                          "MARATHON_MEMORY_BACKEND": backend})
        assert json.loads(r.stdout)["memory"]["total"] == 2

    def test_flag_beats_env(self, root, tmp_path):
        path, backend = root
        r = run(["stats", "--json", "--root", path, "--backend", backend],
                env={"MARATHON_MEMORY_ROOT": str(tmp_path / "elsewhere")})
        assert json.loads(r.stdout)["memory"]["total"] == 2

    def test_config_file(self, root, tmp_path):
        path, backend = root
        cfg = tmp_path / "config.json"
        cfg.write_text(json.dumps({"store": {"backend": backend, "root": path}}))
        r = run(["stats", "--json", "--config", str(cfg)])
        assert json.loads(r.stdout)["memory"]["total"] == 2
