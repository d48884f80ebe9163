"""
Export/Import: JSONL memory backups and graph snapshots.

Memory export writes one JSON record per line (expired records are left
out); import restores records verbatim and skips existing keys unless
asked to overwrite. Graph export is a single JSON document; graph import
replays it through create_entities / add_observations / create_relations,
so the usual per-item batch semantics apply. Observation and relation
items tied to an entity the import could not create are skipped.

stdout purity: export writes only data to its output stream. Progress
goes to the ``log`` callable (stderr by default).
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import IO, Any, Callable, Dict, List, Set, Tuple

from marathon_memory.graph import KnowledgeGraph
from marathon_memory.memory import MemoryStore
from marathon_memory.types import MemoryRecord

GRAPH_FORMAT = "marathon-graph/1"


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from a memory import."""

    total_lines: int = 0
    imported: int = 0
    skipped_existing: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_lines": self.total_lines,
            "imported": self.imported,
            "skipped_existing": self.skipped_existing,
            "errors": self.errors,
        }


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Memory records
# ---------------------------------------------------------------------------


def export_memories(
    store: MemoryStore,
    output: IO[str] = sys.stdout,
    *,
    log: Callable[[str], None] = _default_log,
) -> int:
    """Write live memory records as JSONL. Returns the number written."""
    count = 0
    for record in store.records():
        output.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        count += 1
    log(f"[export] {count} record(s) exported")
    return count


def import_memories(
    store: MemoryStore,
    source: IO[str] | str,
    overwrite: bool = False,
    *,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Restore memory records from JSONL (file path or readable stream).

    Malformed lines are counted as errors and skipped.
    """
    result = ImportResult()
    if isinstance(source, str):
        fh = open(source, "r", encoding="utf-8")
        should_close_fh = True
    else:
        fh = source
        should_close_fh = False

    try:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            result.total_lines += 1
            try:
                record = MemoryRecord.from_dict(json.loads(line))
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                log(f"[import] Invalid record on line {result.total_lines}: {e}")
                result.errors += 1
                continue
            if not record.key:
                log(f"[import] Empty key on line {result.total_lines}")
                result.errors += 1
                continue
            if not overwrite and store.peek(record.key) is not None:
                result.skipped_existing += 1
                continue
            store.restore(record)
            result.imported += 1
    finally:
        if should_close_fh:
            fh.close()

    log(
        f"[import] {result.imported} imported, "
        f"{result.skipped_existing} skipped (existing), {result.errors} error(s)"
    )
    return result


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------


def export_graph(graph: KnowledgeGraph) -> Dict[str, Any]:
    """Whole graph as a JSON-able document.

    A bidirectional pair is exported once; import recreates the mirror.
    """
    snapshot = graph.read_graph(limit=sys.maxsize)
    names = {e.id: e.name for e in snapshot.entities}
    entities = [
        {
            "name": e.name,
            "entity_type": e.entity_type,
            "description": e.description,
            "properties": e.properties,
        }
        for e in snapshot.entities
    ]
    observations = [
        {
            "entity": names[o.entity_id],
            "contents": [o.text],
            "observation_type": o.observation_type,
            "source": o.source,
            "context": o.context,
            "confidence": o.confidence,
        }
        for o in snapshot.observations
    ]
    relations: List[Dict[str, Any]] = []
    paired: Set[Tuple[str, str, str]] = set()
    for r in snapshot.relations or []:
        if r.bidirectional:
            if (r.to_entity, r.from_entity, r.relation_type) in paired:
                continue
            paired.add((r.from_entity, r.to_entity, r.relation_type))
        relations.append({
            "from": r.from_entity,
            "to": r.to_entity,
            "relation_type": r.relation_type,
            "properties": r.properties,
            "bidirectional": r.bidirectional,
            "weight": r.weight,
            "confidence": r.confidence,
        })
    return {
        "format": GRAPH_FORMAT,
        "entities": entities,
        "observations": observations,
        "relations": relations,
    }


# Accepted spellings of entity references in imported items.
_OBS_ENTITY_KEYS = ("entity", "entityName", "entity_name", "entity_id")
_FROM_KEYS = ("from", "from_entity")
_TO_KEYS = ("to", "to_entity")


def _refs(item: Any, *key_sets: Tuple[str, ...]) -> Set[str]:
    if not isinstance(item, dict):
        return set()
    return {item[k] for keys in key_sets for k in keys if isinstance(item.get(k), str)}


def _split(items: Any, blocked: Set[str], *key_sets: Tuple[str, ...]):
    """(kept items, their original indices, number dropped)."""
    if not isinstance(items, list):
        return items, [], 0
    kept: List[Any] = []
    origin: List[int] = []
    for i, item in enumerate(items):
        if _refs(item, *key_sets) & blocked:
            continue
        kept.append(item)
        origin.append(i)
    return kept, origin, len(items) - len(kept)


def _section_errors(errors, origin: List[int], section: str) -> List[Dict[str, Any]]:
    out = []
    for e in errors:
        d = e.to_dict()
        if origin:
            d["index"] = origin[e.index]
        d["section"] = section
        out.append(d)
    return out


def import_graph(
    graph: KnowledgeGraph,
    data: Dict[str, Any],
    *,
    log: Callable[[str], None] = _default_log,
) -> Dict[str, Any]:
    """Replay an exported graph. Existing entities fail with AlreadyExists.

    Observations and relations that reference an entity which was not
    created by this import are skipped, so importing an overlapping
    document never appends duplicate observations to an existing entity.
    """
    entities = graph.create_entities(data.get("entities", []))
    blocked = {e.ref for e in entities.errors if e.ref and not e.partial}
    blocked -= {e.name for e in entities.created}

    obs_items, obs_origin, obs_skipped = _split(
        data.get("observations", []), blocked, _OBS_ENTITY_KEYS)
    observations = graph.add_observations(obs_items)
    rel_items, rel_origin, rel_skipped = _split(
        data.get("relations", []), blocked, _FROM_KEYS, _TO_KEYS)
    relations = graph.create_relations(rel_items)

    errors = (
        _section_errors(entities.errors, [], "entities")
        + _section_errors(observations.errors, obs_origin, "observations")
        + _section_errors(relations.errors, rel_origin, "relations")
    )
    summary = {
        "entities_created": len(entities.created),
        "observations_added": sum(len(r.added) for r in observations.results),
        "relations_created": len(relations.created),
        "observations_skipped": obs_skipped,
        "relations_skipped": rel_skipped,
        "errors": errors,
    }
    if obs_skipped or rel_skipped:
        log(
            f"[import] {obs_skipped} observation item(s) and {rel_skipped} "
            f"relation item(s) skipped (entity not imported)"
        )
    return summary
