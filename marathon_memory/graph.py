"""
Knowledge Graph Engine

Entities (named, typed nodes), relations (directed, typed edges addressed
by entity name) and observations (append-only notes owned by an entity
id), all persisted through a StorageBackend.

Batch operations attempt every item and report per item: a failed item
becomes an ``ItemError`` and never aborts the rest of the batch. Nothing
here is transactional across records. A cascade delete interrupted by a
storage failure leaves whatever it had not yet removed, and a relation
whose mirror failed to persist stays one-directional. An entity whose
initial observations failed to persist still exists.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from marathon_memory.backends.base import StorageBackend
from marathon_memory.errors import (
    AlreadyExists,
    InvalidArgument,
    MarathonMemoryError,
    NotFound,
)
from marathon_memory.types import (
    DEFAULT_ENTITY_TYPE,
    DEFAULT_OBSERVATION_TYPE,
    BatchResult,
    DeleteEntitiesResult,
    DeleteRelationsResult,
    Entity,
    GraphSnapshot,
    GraphStats,
    ItemError,
    NodeMatch,
    Observation,
    ObservationBatchResult,
    ObservationResult,
    Relation,
    _iso,
    _utcnow,
)

logger = logging.getLogger(__name__)

TOP_ENTITIES = 10

# Accepted spellings for request fields.
_TYPE_KEYS = ("entity_type", "entityType", "type")
_RELATION_TYPE_KEYS = ("relation_type", "relationType", "type")
_FROM_KEYS = ("from", "from_entity")
_TO_KEYS = ("to", "to_entity")
_ENTITY_REF_KEYS = ("entity", "entityName", "entity_name", "entity_id")


def _pick(item: Dict[str, Any], keys: Sequence[str], default=None):
    for k in keys:
        if item.get(k) is not None:
            return item[k]
    return default


def _require_str(value, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{what} must be a non-empty string")
    return value


def _optional_str(value, what: str) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise InvalidArgument(f"{what} must be a string")
    return value


def _require_dict(value, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidArgument(f"{what} must be an object")
    return dict(value)


def _require_number(value, what: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(f"{what} must be a number")
    return float(value)


def _require_bool(value, what: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidArgument(f"{what} must be a boolean")
    return value


def _require_texts(value, what: str, allow_empty: bool) -> List[str]:
    if value is None and allow_empty:
        return []
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        raise InvalidArgument(f"{what} must be a list of strings")
    if not value and not allow_empty:
        raise InvalidArgument(f"{what} must not be empty")
    return list(value)


def _require_batch(batch, what: str) -> List[Any]:
    if not isinstance(batch, (list, tuple)):
        raise InvalidArgument(f"{what} must be a list")
    return list(batch)


class KnowledgeGraph:
    """Entity/relation/observation graph over a StorageBackend."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        search_limit: int = 20,
        read_limit: int = 100,
        path_max_depth: int = 5,
    ):
        self._backend = backend
        self._clock = clock or _utcnow
        self._search_limit = search_limit
        self._read_limit = read_limit
        self._path_max_depth = path_max_depth

    def _now(self) -> str:
        return _iso(self._clock())

    # -- Lookups -----------------------------------------------------------

    def _entity_record(self, name: str) -> Optional[Dict[str, Any]]:
        rows = self._backend.scan("entities", {"name": name})
        return rows[0] if rows else None

    def _resolve_entity(self, ref: str) -> Optional[Dict[str, Any]]:
        """Entity by name, then by id."""
        data = self._entity_record(ref)
        if data is None:
            data = self._backend.get("entities", ref)
        return data

    def _observations(self, entity_id: str) -> List[Observation]:
        obs = [Observation.from_dict(d)
               for d in self._backend.scan("observations", {"entity_id": entity_id})]
        obs.sort(key=lambda o: (o.position, o.timestamp))
        return obs

    def _hydrate(self, data: Dict[str, Any],
                 observations: Optional[List[Observation]] = None) -> Entity:
        entity = Entity.from_dict(data)
        if observations is None:
            observations = self._observations(entity.id)
        entity.observations = [o.text for o in observations]
        return entity

    def get_entity(self, name: str) -> Optional[Entity]:
        """Entity (with its observation texts) by name, or None."""
        data = self._entity_record(name)
        return self._hydrate(data) if data is not None else None

    # -- Create ------------------------------------------------------------

    def create_entities(self, batch: Iterable[Dict[str, Any]]) -> BatchResult:
        """Create entities; an existing name fails that item with AlreadyExists.

        Item keys: ``name``, ``entity_type`` (or ``entityType``/``type``),
        ``description``, ``properties``, ``observations`` (initial texts).
        Once the entity record is written the item counts as created. If
        one of its initial observations then fails to persist, the item
        also gets an ``observations=True`` error and the returned entity
        lists only the observations that were stored.
        """
        items = _require_batch(batch, "entities")
        result = BatchResult(size=len(items))
        for i, item in enumerate(items):
            ref = ""
            try:
                if not isinstance(item, dict):
                    raise InvalidArgument("entity item must be an object")
                ref = item.get("name") if isinstance(item.get("name"), str) else ""
                name = _require_str(item.get("name"), "name")
                entity_type = _require_str(
                    _pick(item, _TYPE_KEYS, DEFAULT_ENTITY_TYPE), "entity_type")
                description = _optional_str(item.get("description"), "description")
                properties = _require_dict(item.get("properties"), "properties")
                texts = _require_texts(item.get("observations"), "observations",
                                       allow_empty=True)
                if self._entity_record(name) is not None:
                    raise AlreadyExists(f"Entity already exists: {name}")
                now = self._now()
                entity = Entity(
                    name=name,
                    entity_type=entity_type,
                    description=description,
                    properties=properties,
                    created_at=now,
                    updated_at=now,
                )
                self._backend.put("entities", entity.id, entity.to_record())
                result.add(i, entity)
                logger.debug(f"entity created: {name} ({entity.id})")
            except MarathonMemoryError as exc:
                result.fail(i, exc.kind, str(exc), ref=ref)
                logger.warning(f"create_entities item {i} ({ref!r}): {exc.kind}: {exc}")
                continue

            try:
                for obs in self._write_observations(entity.id, texts, now, start=0):
                    entity.observations.append(obs.text)
            except MarathonMemoryError as exc:
                stored = len(entity.observations)
                result.fail(i, exc.kind,
                            f"{stored} of {len(texts)} observations stored: {exc}",
                            ref=name, observations=True)
                logger.warning(f"create_entities item {i}: observations for {name!r} failed: {exc}")
        return result

    def create_relations(self, batch: Iterable[Dict[str, Any]]) -> BatchResult:
        """Create relations between existing entities.

        Item keys: ``from``, ``to``, ``relation_type`` (or
        ``relationType``/``type``), ``properties``, ``bidirectional``,
        ``weight``, ``confidence``. A bidirectional item stores a second,
        independent to→from record; when only that mirror fails, the item
        gets a ``mirror=True`` error and its primary record stays.
        """
        items = _require_batch(batch, "relations")
        result = BatchResult(size=len(items))
        for i, item in enumerate(items):
            ref = ""
            try:
                if not isinstance(item, dict):
                    raise InvalidArgument("relation item must be an object")
                src = _require_str(_pick(item, _FROM_KEYS), "from")
                dst = _require_str(_pick(item, _TO_KEYS), "to")
                rel_type = _require_str(_pick(item, _RELATION_TYPE_KEYS), "relation_type")
                ref = f"{src} -> {dst} ({rel_type})"
                relation = Relation(
                    from_entity=src,
                    to_entity=dst,
                    relation_type=rel_type,
                    properties=_require_dict(item.get("properties"), "properties"),
                    bidirectional=_require_bool(item.get("bidirectional"), "bidirectional"),
                    weight=_require_number(item.get("weight"), "weight", 1.0),
                    confidence=_require_number(item.get("confidence"), "confidence", 1.0),
                    created_at=self._now(),
                )
                missing = [n for n in dict.fromkeys((src, dst))
                           if self._entity_record(n) is None]
                if missing:
                    raise NotFound(f"Entity not found: {', '.join(missing)}")
                self._backend.put("relations", relation.id, relation.to_dict())
                result.add(i, relation)
            except MarathonMemoryError as exc:
                result.fail(i, exc.kind, str(exc), ref=ref)
                logger.warning(f"create_relations item {i} ({ref!r}): {exc.kind}: {exc}")
                continue

            if relation.bidirectional and src != dst:
                mirror = relation.mirrored()
                try:
                    self._backend.put("relations", mirror.id, mirror.to_dict())
                    result.add(i, mirror)
                except MarathonMemoryError as exc:
                    result.fail(i, exc.kind, f"mirror not created: {exc}",
                                ref=mirror.label, mirror=True)
                    logger.warning(f"create_relations item {i}: mirror {mirror.label} failed: {exc}")
        return result

    def _write_observations(
        self, entity_id: str, texts: List[str], timestamp: str, start: int,
        observation_type: str = DEFAULT_OBSERVATION_TYPE,
        source: Optional[str] = None,
        context: Optional[str] = None,
        confidence: float = 1.0,
    ) -> Iterator[Observation]:
        """Persist *texts* in order, yielding each observation once stored."""
        for offset, text in enumerate(texts):
            obs = Observation(
                entity_id=entity_id,
                text=text,
                observation_type=observation_type,
                confidence=confidence,
                source=source,
                context=context,
                position=start + offset,
                timestamp=timestamp,
            )
            self._backend.put("observations", obs.id, obs.to_dict())
            yield obs

    def add_observations(self, batch: Iterable[Dict[str, Any]]) -> ObservationBatchResult:
        """Append observation texts to existing entities.

        Item keys: ``entity`` (or ``entityName``/``entity_name``/
        ``entity_id``), ``contents`` (non-empty list of strings), and
        optionally ``observation_type``, ``source``, ``context``,
        ``confidence``. The entity is looked up by name first, then by id.
        """
        items = _require_batch(batch, "observations")
        result = ObservationBatchResult()
        for i, item in enumerate(items):
            ref = ""
            try:
                if not isinstance(item, dict):
                    raise InvalidArgument("observation item must be an object")
                ref = _require_str(_pick(item, _ENTITY_REF_KEYS), "entity")
                texts = _require_texts(item.get("contents"), "contents", allow_empty=False)
                obs_type = _require_str(
                    item.get("observation_type") or DEFAULT_OBSERVATION_TYPE,
                    "observation_type")
                source = _optional_str(item.get("source"), "source")
                context = _optional_str(item.get("context"), "context")
                confidence = _require_number(item.get("confidence"), "confidence", 1.0)
                data = self._resolve_entity(ref)
                if data is None:
                    raise NotFound(f"Entity not found: {ref}")
                entity = Entity.from_dict(data)
                start = self._backend.count("observations", {"entity_id": entity.id})
                now = self._now()
                list(self._write_observations(
                    entity.id, texts, now, start,
                    observation_type=obs_type, source=source,
                    context=context, confidence=confidence,
                ))
                entity.updated_at = now
                self._backend.put("entities", entity.id, entity.to_record())
                result.results.append(ObservationResult(
                    entity=entity.name,
                    added=texts,
                    total_observations=start + len(texts),
                ))
            except MarathonMemoryError as exc:
                result.errors.append(ItemError(index=i, kind=exc.kind,
                                               message=str(exc), ref=ref))
                logger.warning(f"add_observations item {i} ({ref!r}): {exc.kind}: {exc}")
        return result

    # -- Read --------------------------------------------------------------

    def search_nodes(
        self,
        query: str,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[NodeMatch]:
        """Case-insensitive substring match on name, type, then observations.

        ``match_reason`` names the first field that matched. Results come
        in the backend's scan order.
        """
        if not isinstance(query, str):
            raise InvalidArgument("query must be a string")
        limit = self._search_limit if limit is None else limit
        if limit < 0:
            raise InvalidArgument("limit must be >= 0")
        needle = query.lower()
        where = {"entity_type": entity_type} if entity_type is not None else None
        matches: List[NodeMatch] = []
        for data in self._backend.scan("entities", where):
            if len(matches) >= limit:
                break
            observations = self._observations(data["id"])
            entity = self._hydrate(data, observations)
            if needle in entity.name.lower():
                reason = "name"
            elif needle in entity.entity_type.lower():
                reason = "type"
            elif any(needle in text.lower() for text in entity.observations):
                reason = "observation"
            else:
                continue
            matches.append(NodeMatch(entity=entity, match_reason=reason))
        return matches

    def read_graph(
        self,
        include_relations: bool = True,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        include_observations: bool = True,
    ) -> GraphSnapshot:
        """Oldest entities first, with the relations touching them.

        Counts describe what is returned, not the whole graph.
        """
        limit = self._read_limit if limit is None else limit
        if limit < 0:
            raise InvalidArgument("limit must be >= 0")
        where = {"entity_type": entity_type} if entity_type is not None else None
        rows = sorted(self._backend.scan("entities", where),
                      key=lambda d: (d.get("created_at", ""), d.get("id", "")))[:limit]

        ids = {d["id"] for d in rows}
        by_entity: Dict[str, List[Observation]] = {eid: [] for eid in ids}
        for d in self._backend.scan("observations"):
            if d.get("entity_id") in ids:
                by_entity[d["entity_id"]].append(Observation.from_dict(d))
        for obs in by_entity.values():
            obs.sort(key=lambda o: (o.position, o.timestamp))

        entities = [self._hydrate(d, by_entity[d["id"]]) for d in rows]
        snapshot = GraphSnapshot(entities=entities)
        if include_observations:
            snapshot.observations = [o for e in entities for o in by_entity[e.id]]
        if include_relations:
            names = {e.name for e in entities}
            snapshot.relations = [
                Relation.from_dict(d) for d in self._backend.scan("relations")
                if d.get("from_entity") in names or d.get("to_entity") in names
            ]
        return snapshot

    def get_entity_relations(
        self,
        name: str,
        relation_types: Optional[List[str]] = None,
        limit: int = 50,
    ) -> Optional[Dict[str, Any]]:
        """Incoming and outgoing relations of one entity, or None if absent."""
        _require_str(name, "name")
        if self._entity_record(name) is None:
            return None
        wanted = set(relation_types) if relation_types else None

        def _select(where: Dict[str, Any]) -> List[Relation]:
            rels = [Relation.from_dict(d) for d in self._backend.scan("relations", where)]
            if wanted is not None:
                rels = [r for r in rels if r.relation_type in wanted]
            return rels[:limit]

        return {
            "entity": name,
            "outgoing": _select({"from_entity": name}),
            "incoming": _select({"to_entity": name}),
        }

    def find_path(
        self,
        source: str,
        target: str,
        max_depth: Optional[int] = None,
        relation_types: Optional[List[str]] = None,
    ) -> Optional[List[str]]:
        """Shortest directed path of entity names, following relations.

        Breadth-first, at most ``max_depth`` edges. Returns None when
        either endpoint is unknown or no path exists within the depth.
        """
        _require_str(source, "source")
        _require_str(target, "target")
        max_depth = self._path_max_depth if max_depth is None else max_depth
        if max_depth < 0:
            raise InvalidArgument("max_depth must be >= 0")
        live = {d["name"] for d in self._backend.scan("entities")}
        if source not in live or target not in live:
            return None
        if source == target:
            return [source]
        wanted = set(relation_types) if relation_types else None

        parents: Dict[str, Optional[str]] = {source: None}
        frontier = deque([(source, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for d in self._backend.scan("relations", {"from_entity": current}):
                nxt = d["to_entity"]
                if nxt in parents or nxt not in live:
                    continue
                if wanted is not None and d["relation_type"] not in wanted:
                    continue
                parents[nxt] = current
                if nxt == target:
                    path = [nxt]
                    while parents[path[-1]] is not None:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                frontier.append((nxt, depth + 1))
        return None

    # -- Delete ------------------------------------------------------------

    def delete_entities(self, names: List[str], cascade: bool = False) -> DeleteEntitiesResult:
        """Delete entities by name, with their observations.

        With ``cascade`` every relation naming the entity at either end is
        removed too and reported as ``"from -> to (type)"``. Without it,
        such relations are left dangling.
        """
        names = _require_batch(names, "names")
        result = DeleteEntitiesResult(deleted_relations=[] if cascade else None)
        for i, name in enumerate(names):
            try:
                _require_str(name, "name")
                data = self._entity_record(name)
                if data is None:
                    raise NotFound(f"Entity not found: {name}")
                entity_id = data["id"]
                self._backend.delete("entities", entity_id)
                for obs in self._backend.scan("observations", {"entity_id": entity_id}):
                    self._backend.delete("observations", obs["id"])
                result.deleted_entities.append(name)
                if cascade:
                    touching = {
                        d["id"]: d
                        for where in ({"from_entity": name}, {"to_entity": name})
                        for d in self._backend.scan("relations", where)
                    }
                    for rel_id, d in touching.items():
                        if self._backend.delete("relations", rel_id):
                            result.deleted_relations.append(Relation.from_dict(d).label)
                logger.debug(f"entity deleted: {name} (cascade={cascade})")
            except MarathonMemoryError as exc:
                result.errors.append(ItemError(index=i, kind=exc.kind, message=str(exc),
                                               ref=name if isinstance(name, str) else ""))
                logger.warning(f"delete_entities item {i} ({name!r}): {exc.kind}: {exc}")
        return result

    def delete_relations(self, triples: List[Any]) -> DeleteRelationsResult:
        """Delete every relation exactly matching each (from, to, type).

        Items are dicts with ``from``/``to``/``relation_type`` keys (same
        aliases as create) or 3-tuples.
        """
        items = _require_batch(triples, "relations")
        result = DeleteRelationsResult()
        for i, item in enumerate(items):
            ref = ""
            try:
                if isinstance(item, dict):
                    src = _pick(item, _FROM_KEYS)
                    dst = _pick(item, _TO_KEYS)
                    rel_type = _pick(item, _RELATION_TYPE_KEYS)
                elif isinstance(item, (list, tuple)) and len(item) == 3:
                    src, dst, rel_type = item
                else:
                    raise InvalidArgument("relation must be an object or (from, to, type)")
                _require_str(src, "from")
                _require_str(dst, "to")
                _require_str(rel_type, "relation_type")
                ref = f"{src} -> {dst} ({rel_type})"
                found = self._backend.scan("relations", {
                    "from_entity": src, "to_entity": dst, "relation_type": rel_type,
                })
                if not found:
                    raise NotFound(f"Relation not found: {ref}")
                for d in found:
                    if self._backend.delete("relations", d["id"]):
                        result.deleted.append(ref)
            except MarathonMemoryError as exc:
                result.errors.append(ItemError(index=i, kind=exc.kind,
                                               message=str(exc), ref=ref))
                logger.warning(f"delete_relations item {i} ({ref!r}): {exc.kind}: {exc}")
        return result

    # -- Stats -------------------------------------------------------------

    def get_stats(self) -> GraphStats:
        """Totals, per-type counts and the most connected entities."""
        entities = self._backend.scan("entities")
        relations = self._backend.scan("relations")
        connections: Counter = Counter()
        for d in relations:
            connections[d["from_entity"]] += 1
            if d["to_entity"] != d["from_entity"]:
                connections[d["to_entity"]] += 1
        live = [d["name"] for d in entities]
        ranked = sorted(live, key=lambda n: (-connections[n], n))[:TOP_ENTITIES]
        return GraphStats(
            total_entities=len(entities),
            total_relations=len(relations),
            total_observations=self._backend.count("observations"),
            entity_type_counts=dict(Counter(d["entity_type"] for d in entities)),
            relation_type_counts=dict(Counter(d["relation_type"] for d in relations)),
            top_entities=[{"name": n, "connection_count": connections[n]} for n in ranked],
        )
