"""
marathon-memory CLI — maintenance commands over a memory store

Commands:
    marathon-memory stats                          — memory + graph metrics
    marathon-memory cleanup                        — purge expired records
    marathon-memory show   KEY                     — display one memory record
    marathon-memory search "query" [-k N]          — memory substring search
    marathon-memory nodes  "query" [--type T]      — knowledge-graph node search
    marathon-memory graph  [--type T] [--limit N]  — dump (part of) the graph
    marathon-memory export [--graph] [-o FILE]     — JSONL memories / JSON graph
    marathon-memory import FILE [--overwrite] [--graph]
    marathon-memory events                         — tracked event counts

Environment variables:
    MARATHON_MEMORY_ROOT     Store directory (default: .marathon)
    MARATHON_MEMORY_BACKEND  sqlite | filetree (default: sqlite)
    MARATHON_MEMORY_CONFIG   Path to a JSON config file

Precedence (invariant):
    CLI --flag  >  MARATHON_MEMORY_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, missing key, invalid input)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional

from marathon_memory.config import MarathonConfig, load_config
from marathon_memory.core import MarathonMemory
from marathon_memory.errors import MarathonMemoryError, StorageFailure

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing (never crash on bad export)
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: argparse.Namespace) -> MarathonConfig:
    """Config file, then env vars, then --flags on top."""
    path = getattr(args, "config", None) or _env_str("MARATHON_MEMORY_CONFIG", None)
    cfg = load_config(path)
    cfg.store.root = (
        getattr(args, "root", None)
        or _env_str("MARATHON_MEMORY_ROOT", cfg.store.root)
    )
    cfg.store.backend = (
        getattr(args, "backend", None)
        or _env_str("MARATHON_MEMORY_BACKEND", cfg.store.backend)
    )
    return cfg


def _open(args: argparse.Namespace) -> MarathonMemory:
    return MarathonMemory(_resolve_config(args))


def _as_json(args: argparse.Namespace) -> bool:
    return getattr(args, "json", False)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ===========================================================================
# Commands
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory and knowledge-graph statistics."""
    with _open(args) as mm:
        mem = mm.memory.stats()
        graph = mm.graph.get_stats()

    if _as_json(args):
        _print_json({"status": "ok", "memory": mem.to_dict(), "graph": graph.to_dict()})
        return
    print("Memory")
    print("=" * 40)
    print(f"  Records (live): {mem.total}")
    for cat, count in sorted(mem.per_category.items()):
        print(f"    {cat:20s}: {count}")
    if mem.top_accessed:
        print("  Most accessed:")
        for row in mem.top_accessed:
            print(f"    {row['key']} ({row['access_count']})")
    print("\nKnowledge graph")
    print("=" * 40)
    print(f"  Entities:     {graph.total_entities}")
    print(f"  Relations:    {graph.total_relations}")
    print(f"  Observations: {graph.total_observations}")
    for typ, count in sorted(graph.entity_type_counts.items()):
        print(f"    {typ:20s}: {count}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    """Purge expired memory records."""
    cfg = _resolve_config(args)
    cfg.memory.cleanup_on_open = False
    with MarathonMemory(cfg) as mm:
        removed = mm.memory.cleanup()
    if _as_json(args):
        _print_json({"status": "ok", "removed": removed})
    else:
        _info(f"[cleanup] {removed} expired record(s) removed")


def cmd_show(args: argparse.Namespace) -> None:
    """Show one memory record (does not count as an access)."""
    with _open(args) as mm:
        record = mm.memory.peek(args.key)
    if record is None:
        _warn(f"Key not found: {args.key}")
        sys.exit(1)

    if _as_json(args):
        _print_json(record.to_dict())
        return
    print(f"Key:      {record.key}")
    print(f"Category: {record.category or '(none)'}")
    print(f"Tags:     {', '.join(record.tags) if record.tags else '(none)'}")
    print(f"Created:  {record.created_at}")
    print(f"Updated:  {record.updated_at}")
    print(f"Accessed: {record.accessed_at} ({record.access_count}x)")
    if record.ttl_expires_at:
        print(f"Expires:  {record.ttl_expires_at}")
    print(f"\n--- Value ---\n{record.value}")


def cmd_search(args: argparse.Namespace) -> None:
    """Substring search over memory keys and values."""
    with _open(args) as mm:
        records = mm.memory.search(args.query, category=args.category, limit=args.k)
    if not records:
        _info("No results found.")
        return
    if _as_json(args):
        _print_json([r.to_dict() for r in records])
        return
    print(f"Found {len(records)} record(s):\n")
    for r in records:
        print(f"  {r.key}  [{r.category or '-'}]  ({r.access_count}x)")
        print(f"    {r.value[:200]}")
        if r.tags:
            print(f"    tags: {', '.join(r.tags)}")
        print()


def cmd_nodes(args: argparse.Namespace) -> None:
    """Search knowledge-graph entities."""
    with _open(args) as mm:
        matches = mm.graph.search_nodes(args.query, entity_type=args.type, limit=args.k)
    if not matches:
        _info("No entities found.")
        return
    if _as_json(args):
        _print_json([m.to_dict() for m in matches])
        return
    for m in matches:
        print(f"  {m.entity.name}  ({m.entity.entity_type})  matched on {m.match_reason}")
        for text in m.entity.observations:
            print(f"    - {text}")


def cmd_graph(args: argparse.Namespace) -> None:
    """Dump entities and relations."""
    with _open(args) as mm:
        snapshot = mm.graph.read_graph(
            include_relations=not args.no_relations,
            entity_type=args.type,
            limit=args.limit,
        )
    if _as_json(args):
        _print_json(snapshot.to_dict())
        return
    print(f"{snapshot.entity_count} entities, {snapshot.relation_count} relations")
    for e in snapshot.entities:
        print(f"  {e.name} ({e.entity_type})")
    for r in snapshot.relations or []:
        print(f"  {r.label}")


def cmd_export(args: argparse.Namespace) -> None:
    """Export memories (JSONL) or the graph (JSON) to stdout or a file."""
    from marathon_memory.export_import import export_graph, export_memories

    out = open(args.output, "w", encoding="utf-8") if args.output else sys.stdout
    try:
        with _open(args) as mm:
            if args.graph:
                data = export_graph(mm.graph)
                out.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
                _info(f"[export] {len(data['entities'])} entities, "
                      f"{len(data['relations'])} relations exported")
            else:
                export_memories(mm.memory, out, log=_info)
    finally:
        if out is not sys.stdout:
            out.close()


def cmd_import(args: argparse.Namespace) -> None:
    """Import memories (JSONL) or a graph document (JSON)."""
    from marathon_memory.export_import import import_graph, import_memories

    if not os.path.isfile(args.file):
        _warn(f"File not found: {args.file}")
        sys.exit(1)

    with _open(args) as mm:
        if args.graph:
            try:
                with open(args.file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                _warn(f"Invalid graph document: {e}")
                sys.exit(1)
            summary = import_graph(mm.graph, data, log=_info)
            for err in summary["errors"]:
                _warn(f"[import] {err['section']}[{err['index']}] {err['kind']}: {err['message']}")
        else:
            summary = import_memories(mm.memory, args.file, overwrite=args.overwrite,
                                      log=_info).to_dict()
    if _as_json(args):
        _print_json(summary)


def cmd_events(args: argparse.Namespace) -> None:
    """Tracked event counts, most frequent first."""
    with _open(args) as mm:
        counts = mm.ledger.get_event_stats()
    if _as_json(args):
        _print_json([c.to_dict() for c in counts])
        return
    if not counts:
        _info("No events tracked.")
    for c in counts:
        print(f"  {c.event:30s} {c.count}")


# ===========================================================================
# Entry point
# ===========================================================================


def main() -> None:
    """CLI entry point: marathon-memory <command> [args]."""
    global _quiet

    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--root", default=argparse.SUPPRESS,
        help="Store directory (default: MARATHON_MEMORY_ROOT or .marathon)",
    )
    _common.add_argument(
        "--backend", choices=["sqlite", "filetree"], default=argparse.SUPPRESS,
        help="Storage backend (default: MARATHON_MEMORY_BACKEND or sqlite)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: MARATHON_MEMORY_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="marathon-memory",
        description="marathon-memory — persistent memory and knowledge graph",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    p_clean = sub.add_parser("cleanup", parents=[_common], help="Purge expired records")
    p_clean.set_defaults(func=cmd_cleanup)

    p_show = sub.add_parser("show", parents=[_common], help="Show one memory record")
    p_show.add_argument("key", help="Memory key")
    p_show.set_defaults(func=cmd_show)

    p_search = sub.add_parser("search", parents=[_common], help="Search memory records")
    p_search.add_argument("query", help="Substring to look for")
    p_search.add_argument("--category", default=None, help="Restrict to a category")
    p_search.add_argument("-k", type=int, default=20, help="Max results (default: 20)")
    p_search.set_defaults(func=cmd_search)

    p_nodes = sub.add_parser("nodes", parents=[_common], help="Search graph entities")
    p_nodes.add_argument("query", help="Substring to look for")
    p_nodes.add_argument("--type", default=None, help="Exact entity type filter")
    p_nodes.add_argument("-k", type=int, default=20, help="Max results (default: 20)")
    p_nodes.set_defaults(func=cmd_nodes)

    p_graph = sub.add_parser("graph", parents=[_common], help="Dump the knowledge graph")
    p_graph.add_argument("--type", default=None, help="Exact entity type filter")
    p_graph.add_argument("--limit", type=int, default=None, help="Max entities")
    p_graph.add_argument("--no-relations", action="store_true", help="Omit relations")
    p_graph.set_defaults(func=cmd_graph)

    p_export = sub.add_parser("export", parents=[_common], help="Export memories or graph")
    p_export.add_argument("--graph", action="store_true", help="Export the graph (JSON)")
    p_export.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    p_export.set_defaults(func=cmd_export)

    p_import = sub.add_parser("import", parents=[_common], help="Import memories or graph")
    p_import.add_argument("file", help="JSONL memories or JSON graph document")
    p_import.add_argument("--overwrite", action="store_true", help="Replace existing keys")
    p_import.add_argument("--graph", action="store_true", help="FILE is a graph document")
    p_import.set_defaults(func=cmd_import)

    p_events = sub.add_parser("events", parents=[_common], help="Tracked event counts")
    p_events.set_defaults(func=cmd_events)

    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except StorageFailure as e:
        logger.debug("Storage failure in %s: %r", args.command, e)
        _warn(f"Storage failure: {e}")
        sys.exit(2)
    except MarathonMemoryError as e:
        _warn(f"{e.kind}: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
