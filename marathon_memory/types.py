"""
Data Model: Records and Batch Results

Memory records, knowledge-graph entities/relations/observations, ledger
sessions/checkpoints/events, and the structured results returned by the
core services. Records are transient views: they are built from backend
dicts per call and discarded once the result is produced.

All timestamps are UTC ISO-8601 strings with microsecond precision, so
lexical order equals chronological order.
"""

from __future__ import annotations

import itertools
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from marathon_memory.errors import ErrorKind

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

CheckpointType = Literal["manual", "auto", "emergency"]
MatchReason = Literal["name", "type", "observation"]

VALID_CHECKPOINT_TYPES: set = {"manual", "auto", "emergency"}
VALID_MATCH_REASONS: set = {"name", "type", "observation"}

DEFAULT_ENTITY_TYPE = "general"
DEFAULT_OBSERVATION_TYPE = "general"
UNCATEGORIZED = "uncategorized"


def _utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO-8601 string."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return _iso(_utcnow())


def _parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _generate_id(prefix: str) -> str:
    """Generate a unique record ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


_checkpoint_seq = itertools.count()


def _checkpoint_id() -> str:
    """Checkpoint ID: epoch milliseconds + process counter + random suffix.

    Fresh even when called many times within the same millisecond.
    """
    millis = int(time.time() * 1000)
    return f"CKP-{millis:013d}-{next(_checkpoint_seq):06d}-{uuid.uuid4().hex[:6]}"


def _known_fields(cls, d: Dict[str, Any]) -> Dict[str, Any]:
    known = set(cls.__dataclass_fields__.keys())
    return {k: v for k, v in d.items() if k in known}


def _unique(values) -> List[str]:
    """Distinct strings in first-seen order."""
    seen = set()
    out = []
    for v in values or []:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Memory record
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """
    Flat key/value memory record.

    Rules:
    - key is globally unique; saving an existing key replaces everything,
      access statistics included.
    - tags behave as a set (duplicates dropped, order kept for display).
    - a record whose ttl_expires_at has passed is treated as absent.
    """

    key: str
    value: str = ""
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    accessed_at: str = field(default_factory=_now_iso)
    access_count: int = 0
    ttl_expires_at: Optional[str] = None

    def __post_init__(self):
        self.tags = _unique(self.tags)
        if self.access_count < 0:
            raise ValueError(f"Invalid access_count: {self.access_count!r}")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once the TTL deadline has been reached."""
        if not self.ttl_expires_at:
            return False
        return _parse_iso(self.ttl_expires_at) <= (now or _utcnow())

    def has_any_tag(self, tags: List[str]) -> bool:
        """OR-match against *tags* (case-insensitive, exact)."""
        wanted = {t.lower() for t in tags}
        return any(t.lower() in wanted for t in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        return cls(**_known_fields(cls, d))


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------

@dataclass
class Entity:
    """Named, typed node. ``observations`` is a view over Observation records."""

    name: str
    entity_type: str = DEFAULT_ENTITY_TYPE
    id: str = field(default_factory=lambda: _generate_id("ENT"))
    description: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    observations: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_record(self) -> Dict[str, Any]:
        """Persisted form: observations live in their own collection."""
        d = asdict(self)
        d.pop("observations")
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Entity:
        return cls(**_known_fields(cls, d))


@dataclass
class Relation:
    """Directed, typed edge between two entities addressed by name."""

    from_entity: str
    to_entity: str
    relation_type: str
    id: str = field(default_factory=lambda: _generate_id("REL"))
    properties: Dict[str, Any] = field(default_factory=dict)
    bidirectional: bool = False
    weight: float = 1.0
    confidence: float = 1.0
    created_at: str = field(default_factory=_now_iso)

    @property
    def label(self) -> str:
        """Display form used in deletion reports."""
        return f"{self.from_entity} -> {self.to_entity} ({self.relation_type})"

    def mirrored(self) -> Relation:
        """The to→from twin of a bidirectional relation (new id)."""
        return Relation(
            from_entity=self.to_entity,
            to_entity=self.from_entity,
            relation_type=self.relation_type,
            properties=dict(self.properties),
            bidirectional=True,
            weight=self.weight,
            confidence=self.confidence,
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Relation:
        data = _known_fields(cls, d)
        data["bidirectional"] = bool(data.get("bidirectional", False))
        return cls(**data)


@dataclass
class Observation:
    """Append-only free-text note owned by one entity."""

    entity_id: str
    text: str
    id: str = field(default_factory=lambda: _generate_id("OBS"))
    observation_type: str = DEFAULT_OBSERVATION_TYPE
    confidence: float = 1.0
    source: Optional[str] = None
    context: Optional[str] = None
    position: int = 0
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Observation:
        return cls(**_known_fields(cls, d))


# ---------------------------------------------------------------------------
# Session ledger
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """Logical work session. ``ended_at`` is written at most once."""

    id: str
    mode: str = "normal"
    context: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    end_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Session:
        return cls(**_known_fields(cls, d))


@dataclass
class Checkpoint:
    """Timestamped, typed save point of a session. Append-only."""

    session_id: str
    context: str = ""
    checkpoint_type: CheckpointType = "manual"
    id: str = field(default_factory=_checkpoint_id)
    timestamp: str = field(default_factory=_now_iso)
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.checkpoint_type not in VALID_CHECKPOINT_TYPES:
            raise ValueError(f"Invalid checkpoint type: {self.checkpoint_type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Checkpoint:
        return cls(**_known_fields(cls, d))


@dataclass
class TrackedEvent:
    """Named counter event, optionally tied to a session."""

    event_name: str
    session_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _generate_id("EVT"))
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TrackedEvent:
        return cls(**_known_fields(cls, d))


@dataclass
class EventCount:
    event: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def _dump(value: Any) -> Any:
    return value.to_dict() if hasattr(value, "to_dict") else value


@dataclass
class ListResult:
    """One page of memory records plus the pre-pagination match count."""

    items: List[MemoryRecord] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [i.to_dict() for i in self.items], "total": self.total}


@dataclass
class MemoryStats:
    total: int = 0
    per_category: Dict[str, int] = field(default_factory=dict)
    top_accessed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemError:
    """
    Failure of one batch item.

    ``mirror`` marks a failed bidirectional twin; ``observations`` marks
    initial observations that failed to persist for an entity that was
    created. In both cases the item's primary record exists.
    """

    index: int
    kind: ErrorKind
    message: str
    ref: str = ""
    mirror: bool = False
    observations: bool = False

    @property
    def partial(self) -> bool:
        return self.mirror or self.observations

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    """
    Outcome of a non-atomic batch create.

    ``created`` holds every persisted record (a bidirectional item
    contributes two); ``created_from`` holds, in parallel, the input index
    each record came from. ``outcomes()`` regroups both lists into one
    tagged variant per input item.
    """

    size: int = 0
    created: List[Any] = field(default_factory=list)
    created_from: List[int] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    def add(self, index: int, record: Any) -> None:
        self.created.append(record)
        self.created_from.append(index)

    def fail(self, index: int, kind: ErrorKind, message: str,
             ref: str = "", mirror: bool = False,
             observations: bool = False) -> ItemError:
        err = ItemError(index=index, kind=kind, message=message, ref=ref,
                        mirror=mirror, observations=observations)
        self.errors.append(err)
        return err

    def outcomes(self) -> List[Dict[str, Any]]:
        """Per-input ``{"ok": [...]}`` or ``{"err": kind, ...}`` in input order.

        A bidirectional item whose mirror failed is ``ok`` (the primary
        exists) and additionally carries ``mirror_err``; an entity whose
        initial observations failed likewise carries ``observations_err``.
        """
        out: List[Dict[str, Any]] = []
        for i in range(self.size):
            made = [r for r, src in zip(self.created, self.created_from) if src == i]
            errs = [e for e in self.errors if e.index == i]
            primary_err = next((e for e in errs if not e.partial), None)
            if primary_err is not None:
                out.append({"err": primary_err.kind, "message": primary_err.message})
                continue
            entry: Dict[str, Any] = {"ok": made}
            mirror_err = next((e for e in errs if e.mirror), None)
            if mirror_err is not None:
                entry["mirror_err"] = mirror_err.kind
            obs_err = next((e for e in errs if e.observations), None)
            if obs_err is not None:
                entry["observations_err"] = obs_err.kind
            out.append(entry)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": [_dump(r) for r in self.created],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ObservationResult:
    entity: str
    added: List[str] = field(default_factory=list)
    total_observations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ObservationBatchResult:
    results: List[ObservationResult] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class DeleteEntitiesResult:
    deleted_entities: List[str] = field(default_factory=list)
    deleted_relations: Optional[List[str]] = None
    errors: List[ItemError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "deleted_entities": list(self.deleted_entities),
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.deleted_relations is not None:
            d["deleted_relations"] = list(self.deleted_relations)
        return d


@dataclass
class DeleteRelationsResult:
    deleted: List[str] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"deleted": list(self.deleted), "errors": [e.to_dict() for e in self.errors]}


@dataclass
class NodeMatch:
    entity: Entity
    match_reason: MatchReason

    def to_dict(self) -> Dict[str, Any]:
        d = self.entity.to_dict()
        d["match_reason"] = self.match_reason
        return d


@dataclass
class GraphSnapshot:
    """Point-in-time read of (part of) the graph. No pagination cursor."""

    entities: List[Entity] = field(default_factory=list)
    relations: Optional[List[Relation]] = None
    observations: List[Observation] = field(default_factory=list)

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def relation_count(self) -> int:
        return len(self.relations or [])

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "entities": [e.to_dict() for e in self.entities],
            "observations": [o.to_dict() for o in self.observations],
            "entity_count": self.entity_count,
            "relation_count": self.relation_count,
        }
        if self.relations is not None:
            d["relations"] = [r.to_dict() for r in self.relations]
        return d


@dataclass
class GraphStats:
    total_entities: int = 0
    total_relations: int = 0
    total_observations: int = 0
    entity_type_counts: Dict[str, int] = field(default_factory=dict)
    relation_type_counts: Dict[str, int] = field(default_factory=dict)
    top_entities: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
