"""
In-memory knowledge graph derived from chunk extraction results.

Entities live in an arena keyed by canonical id; mentions, relationships and
clusters refer to entities by id. The index is only mutated by the ingestion
path (`replace_chunk`, `remove_chunks`); readers get snapshot copies.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, replace
from typing import Any, Iterable, MutableMapping

from .disambiguate import Disambiguator
from .extract import ExtractionResult, norm_entity
from .models import (
    Entity,
    Evidence,
    KnowledgeCluster,
    Mention,
    Relationship,
    relationship_id,
)


logger = logging.getLogger(__name__)

ROOT_CLUSTER_ID = "cluster:root"

_MISSING = object()


@dataclass(frozen=True)
class ChunkGraphUpdate:
    chunk_id: str
    entity_ids: tuple[str, ...]
    relationship_ids: tuple[str, ...]


class _Journal:
    """Prior value of every table slot one update touched, for rollback."""

    def __init__(self) -> None:
        self._saved: dict[tuple[int, str], tuple[MutableMapping[str, Any], str, Any]] = {}

    def save(self, table: MutableMapping[str, Any], key: str) -> None:
        token = (id(table), key)
        if token in self._saved:
            return
        old = table.get(key, _MISSING)
        self._saved[token] = (table, key, old if old is _MISSING else _copy(old))

    def rollback(self) -> None:
        for table, key, old in reversed(list(self._saved.values())):
            if old is _MISSING:
                table.pop(key, None)
            else:
                table[key] = old


class _NoJournal(_Journal):
    def save(self, table: MutableMapping[str, Any], key: str) -> None:
        pass


class KnowledgeGraphIndex:
    def __init__(self, disambiguator: Disambiguator | None = None):
        self.disambiguator = disambiguator or Disambiguator()

        self._entities: dict[str, Entity] = {}
        # norm -> entity ids, and the reverse.
        self._by_norm: dict[str, set[str]] = {}
        self._entity_norms: dict[str, set[str]] = {}
        self._chunk_entities: dict[str, set[str]] = {}

        self._relationships: dict[str, Relationship] = {}
        self._out: dict[str, set[str]] = {}
        self._in: dict[str, set[str]] = {}
        self._chunk_relationships: dict[str, set[str]] = {}

        # Rebuilt on the first read after a change.
        self._clusters: dict[str, KnowledgeCluster] = {}
        self._entity_cluster: dict[str, str] = {}
        self._clusters_dirty = True

        self._lock = threading.RLock()
        self._chunk_locks: dict[str, threading.RLock] = {}
        self._chunk_locks_guard = threading.Lock()

    # -- ingestion path -------------------------------------------------

    def chunk_lock(self, chunk_id: str) -> threading.RLock:
        """Lock serialising updates of one chunk id."""
        with self._chunk_locks_guard:
            lock = self._chunk_locks.get(chunk_id)
            if lock is None:
                lock = self._chunk_locks[chunk_id] = threading.RLock()
            return lock

    def replace_chunk(self, result: ExtractionResult) -> ChunkGraphUpdate:
        """Swap a chunk's old contribution for *result*.

        All or nothing: if entity linking raises part way through, every
        change made so far is undone before the error propagates.
        """
        with self.chunk_lock(result.chunk_id), self._lock:
            journal = _Journal()
            try:
                self._remove_chunk_unlocked(result.chunk_id, journal)
                update = self._insert_unlocked(result, journal)
            except BaseException:
                journal.rollback()
                raise
            self._clusters_dirty = True
        return update

    def remove_chunks(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        for cid in chunk_ids:
            with self.chunk_lock(cid), self._lock:
                if self._remove_chunk_unlocked(cid, _NoJournal()):
                    removed += 1
                    self._clusters_dirty = True
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entities.clear()
            self._by_norm.clear()
            self._entity_norms.clear()
            self._chunk_entities.clear()
            self._relationships.clear()
            self._out.clear()
            self._in.clear()
            self._chunk_relationships.clear()
            self._clusters_dirty = True

    # -- reads ----------------------------------------------------------

    def get_entity(self, entity_id: str) -> Entity | None:
        with self._lock:
            ent = self._entities.get(entity_id)
            return _snapshot(ent) if ent is not None else None

    def entities(self) -> list[Entity]:
        with self._lock:
            return [_snapshot(e) for e in sorted(self._entities.values(), key=lambda e: e.id)]

    def entities_in_chunk(self, chunk_id: str) -> list[Entity]:
        with self._lock:
            ents = [self._entities[eid] for eid in self._chunk_entities.get(chunk_id, ()) if eid in self._entities]
            return [_snapshot(e) for e in sorted(ents, key=lambda e: (-e.confidence, e.name.lower(), e.id))]

    def relationships_in_chunk(self, chunk_id: str) -> list[Relationship]:
        with self._lock:
            rels = [self._relationships[r] for r in self._chunk_relationships.get(chunk_id, ()) if r in self._relationships]
            return [_rel_snapshot(r) for r in sorted(rels, key=lambda r: r.id)]

    def relationships_of(self, entity_id: str, relationship_types: Iterable[str] | None = None) -> list[Relationship]:
        wanted = set(relationship_types) if relationship_types is not None else None
        with self._lock:
            rids = self._out.get(entity_id, set()) | self._in.get(entity_id, set())
            rels = [self._relationships[r] for r in rids if r in self._relationships]
            if wanted is not None:
                rels = [r for r in rels if r.type in wanted]
            return [_rel_snapshot(r) for r in sorted(rels, key=lambda r: (-r.confidence, r.id))]

    def neighbors(self, entity_id: str, relationship_types: Iterable[str] | None = None) -> list[Entity]:
        """Entities related to *entity_id* in either direction, strongest first."""
        strength: dict[str, float] = {}
        for rel in self.relationships_of(entity_id, relationship_types):
            other = rel.target_id if rel.source_id == entity_id else rel.source_id
            if other == entity_id:
                continue
            strength[other] = max(strength.get(other, 0.0), rel.confidence)

        with self._lock:
            ents = [self._entities[eid] for eid in strength if eid in self._entities]
            ents.sort(key=lambda e: (-strength[e.id], -e.mention_count, e.id))
            return [_snapshot(e) for e in ents]

    def chunks_mentioning(self, entity_ids: Iterable[str]) -> dict[str, set[str]]:
        """Return {chunk_id: entity ids mentioned there} for *entity_ids*."""
        out: dict[str, set[str]] = defaultdict(set)
        with self._lock:
            for eid in entity_ids:
                ent = self._entities.get(eid)
                if ent is None:
                    continue
                for m in ent.mentions:
                    out[m.chunk_id].add(eid)
        return dict(out)

    def resolve(self, name: str, entity_type: str | None = None) -> Entity | None:
        """Resolve free text to a canonical entity using the linking policy."""
        norm = norm_entity(name)
        if not norm:
            return None
        with self._lock:
            res = self.disambiguator.resolve(
                norm,
                entity_type,
                entities=self._entities,
                by_norm=self._by_norm,
            )
            if res.entity_id is None:
                return None
            return _snapshot(self._entities[res.entity_id])

    def cluster_of(self, entity_id: str) -> tuple[KnowledgeCluster, list[KnowledgeCluster]] | None:
        """Narrowest cluster containing *entity_id* and its ancestors, nearest first."""
        with self._lock:
            self._ensure_clusters_unlocked()
            cid = self._entity_cluster.get(entity_id)
            if cid is None:
                return None
            cluster = self._clusters[cid]
            return cluster, self._ancestors_unlocked(cluster)

    def get_cluster(self, cluster_id: str) -> KnowledgeCluster | None:
        with self._lock:
            self._ensure_clusters_unlocked()
            return self._clusters.get(cluster_id)

    def clusters(self) -> list[KnowledgeCluster]:
        with self._lock:
            self._ensure_clusters_unlocked()
            return sorted(self._clusters.values(), key=lambda c: (c.level, c.id))

    def indexed_chunk_ids(self) -> set[str]:
        with self._lock:
            return set(self._chunk_entities) | set(self._chunk_relationships)

    def stats(self) -> dict[str, int]:
        with self._lock:
            self._ensure_clusters_unlocked()
            return {
                "entities": len(self._entities),
                "relationships": len(self._relationships),
                "clusters": len(self._clusters),
                "chunks": len(self._chunk_entities),
                "lowConfidenceEntities": sum(1 for e in self._entities.values() if e.low_confidence),
            }

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entities": [e.to_dict() for e in sorted(self._entities.values(), key=lambda e: e.id)],
                "relationships": [r.to_dict() for r in sorted(self._relationships.values(), key=lambda r: r.id)],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any], disambiguator: Disambiguator | None = None) -> "KnowledgeGraphIndex":
        idx = cls(disambiguator)
        j = _NoJournal()
        with idx._lock:
            for d in data.get("entities", []):
                ent = Entity.from_dict(d)
                idx._entities[ent.id] = ent
                idx._set_norms_unlocked(j, ent.id, _norms_of(ent))
                for cid in ent.chunk_ids():
                    idx._set_add(j, idx._chunk_entities, cid, ent.id)
            for d in data.get("relationships", []):
                rel = Relationship.from_dict(d)
                if rel.source_id not in idx._entities or rel.target_id not in idx._entities:
                    continue
                idx._add_relationship_unlocked(j, rel)
        return idx

    # -- internals ------------------------------------------------------
    #
    # Every mutation below records the slot it is about to change in the
    # journal first, so `_Journal.rollback` can restore it.

    def _insert_unlocked(self, result: ExtractionResult, j: _Journal) -> ChunkGraphUpdate:
        chunk_id = result.chunk_id
        mention_ids: list[str] = []

        for m in result.mentions:
            res = self.disambiguator.resolve(
                m.norm,
                m.type,
                entities=self._entities,
                by_norm=self._by_norm,
                detection_confidence=m.confidence,
            )
            if res.entity_id is not None:
                ent = self._touch_entity(j, res.entity_id)
            else:
                eid = self._new_entity_id(m.type, m.norm)
                j.save(self._entities, eid)
                ent = self._entities[eid] = Entity(id=eid, name=" ".join(m.surface.split()), type=m.type)
                if res.low_confidence:
                    logger.debug("Low-confidence entity %s (best similarity %.2f)", ent.id, res.similarity)

            ent.mentions = ent.mentions + [
                Mention(
                    surface=m.surface,
                    chunk_id=chunk_id,
                    start=m.start,
                    end=m.end,
                    confidence=m.confidence,
                    low_confidence=res.low_confidence,
                    type=m.type,
                )
            ]
            ent.recompute_confidence()
            norms = {n for n in (m.norm, norm_entity(ent.name)) if n}
            self._set_norms_unlocked(j, ent.id, self._entity_norms.get(ent.id, set()) | norms)
            self._set_add(j, self._chunk_entities, chunk_id, ent.id)
            mention_ids.append(ent.id)

        renamed: dict[str, str] = {}
        for eid in dict.fromkeys(mention_ids):
            new_id = self._settle_type_unlocked(j, eid)
            if new_id != eid:
                renamed[eid] = new_id
        mention_ids = [renamed.get(eid, eid) for eid in mention_ids]

        rel_ids: set[str] = set()
        for cr in result.relationships:
            src, dst = mention_ids[cr.source], mention_ids[cr.target]
            if src == dst:
                continue
            rid = relationship_id(src, cr.type, dst)
            rel = self._touch_rel(j, rid)
            if rel is None:
                rel = Relationship(id=rid, source_id=src, target_id=dst, type=cr.type)
                self._add_relationship_unlocked(j, rel)
            kept = [e for e in rel.evidence if e.chunk_id != chunk_id]
            prev = max((e.confidence for e in rel.evidence if e.chunk_id == chunk_id), default=0.0)
            rel.evidence = kept + [Evidence(chunk_id=chunk_id, confidence=max(prev, cr.confidence))]
            self._set_add(j, self._chunk_relationships, chunk_id, rid)
            rel_ids.add(rid)

        return ChunkGraphUpdate(
            chunk_id=chunk_id,
            entity_ids=tuple(sorted(set(mention_ids))),
            relationship_ids=tuple(sorted(rel_ids)),
        )

    def _remove_chunk_unlocked(self, chunk_id: str, j: _Journal) -> bool:
        j.save(self._chunk_relationships, chunk_id)
        j.save(self._chunk_entities, chunk_id)
        rids = self._chunk_relationships.pop(chunk_id, set())
        eids = self._chunk_entities.pop(chunk_id, set())

        for rid in sorted(rids):
            rel = self._touch_rel(j, rid)
            if rel is None:
                continue
            rel.evidence = [e for e in rel.evidence if e.chunk_id != chunk_id]
            if not rel.evidence:
                self._drop_relationship_unlocked(j, rid)

        for eid in sorted(eids):
            ent = self._touch_entity(j, eid)
            if ent is None:
                continue
            ent.mentions = [m for m in ent.mentions if m.chunk_id != chunk_id]
            if not ent.mentions:
                # Reference count hit zero.
                self._drop_entity_unlocked(j, eid)
                continue
            ent.recompute_confidence()
            self._set_norms_unlocked(j, eid, _norms_of(ent))
            self._settle_type_unlocked(j, eid)

        return bool(rids or eids)

    def _settle_type_unlocked(self, j: _Journal, eid: str) -> str:
        """Derive the entity's type from its mentions; returns its (possibly new) id.

        Untyped mentions never decide; the current type wins while some
        mention still carries it.
        """
        ent = self._touch_entity(j, eid)
        typed = Counter(m.type for m in ent.mentions if m.type != "other")
        if not typed:
            wanted = "other"
        elif ent.type in typed:
            wanted = ent.type
        else:
            wanted = min(typed, key=lambda t: (-typed[t], t))
        if wanted == ent.type:
            return eid

        ent.type = wanted
        new_id = self._new_entity_id(wanted, norm_entity(ent.name))
        logger.debug("Entity %s retyped as %s", eid, new_id)
        self._rekey_entity_unlocked(j, ent, new_id)
        return new_id

    def _rekey_entity_unlocked(self, j: _Journal, ent: Entity, new_id: str) -> None:
        old_id = ent.id
        norms = set(self._entity_norms.get(old_id, set()))
        self._set_norms_unlocked(j, old_id, set())

        j.save(self._entities, old_id)
        j.save(self._entities, new_id)
        del self._entities[old_id]
        ent.id = new_id
        self._entities[new_id] = ent
        self._set_norms_unlocked(j, new_id, norms)

        for cid in ent.chunk_ids():
            self._set_discard(j, self._chunk_entities, cid, old_id)
            self._set_add(j, self._chunk_entities, cid, new_id)

        for rid in sorted(self._out.get(old_id, set()) | self._in.get(old_id, set())):
            rel = self._relationships[rid]
            self._drop_relationship_unlocked(j, rid)
            src = new_id if rel.source_id == old_id else rel.source_id
            dst = new_id if rel.target_id == old_id else rel.target_id
            self._add_relationship_unlocked(
                j,
                Relationship(
                    id=relationship_id(src, rel.type, dst),
                    source_id=src,
                    target_id=dst,
                    type=rel.type,
                    evidence=list(rel.evidence),
                ),
            )

    def _drop_entity_unlocked(self, j: _Journal, eid: str) -> None:
        j.save(self._entities, eid)
        self._entities.pop(eid, None)
        self._set_norms_unlocked(j, eid, set())
        for rid in sorted(self._out.get(eid, set()) | self._in.get(eid, set())):
            self._drop_relationship_unlocked(j, rid)

    def _add_relationship_unlocked(self, j: _Journal, rel: Relationship) -> None:
        existing = self._touch_rel(j, rel.id)
        if existing is not None:
            merged = {e.chunk_id: e for e in existing.evidence}
            for ev in rel.evidence:
                cur = merged.get(ev.chunk_id)
                if cur is None or ev.confidence > cur.confidence:
                    merged[ev.chunk_id] = ev
            existing.evidence = list(merged.values())
            rel = existing
        else:
            self._relationships[rel.id] = rel
            self._set_add(j, self._out, rel.source_id, rel.id)
            self._set_add(j, self._in, rel.target_id, rel.id)
        for ev in rel.evidence:
            self._set_add(j, self._chunk_relationships, ev.chunk_id, rel.id)

    def _drop_relationship_unlocked(self, j: _Journal, rid: str) -> None:
        j.save(self._relationships, rid)
        rel = self._relationships.pop(rid, None)
        if rel is None:
            return
        self._set_discard(j, self._out, rel.source_id, rid)
        self._set_discard(j, self._in, rel.target_id, rid)
        for ev in rel.evidence:
            self._set_discard(j, self._chunk_relationships, ev.chunk_id, rid)

    def _touch_entity(self, j: _Journal, eid: str) -> Entity | None:
        j.save(self._entities, eid)
        return self._entities.get(eid)

    def _touch_rel(self, j: _Journal, rid: str) -> Relationship | None:
        j.save(self._relationships, rid)
        return self._relationships.get(rid)

    def _set_norms_unlocked(self, j: _Journal, eid: str, norms: set[str]) -> None:
        old = self._entity_norms.get(eid, set())
        if norms == old:
            return
        j.save(self._entity_norms, eid)
        for norm in old - norms:
            self._set_discard(j, self._by_norm, norm, eid)
        for norm in norms - old:
            self._set_add(j, self._by_norm, norm, eid)
        if norms:
            self._entity_norms[eid] = set(norms)
        else:
            self._entity_norms.pop(eid, None)

    @staticmethod
    def _set_add(j: _Journal, table: dict[str, set[str]], key: str, item: str) -> None:
        s = table.get(key)
        if s is not None and item in s:
            return
        j.save(table, key)
        table.setdefault(key, set()).add(item)

    @staticmethod
    def _set_discard(j: _Journal, table: dict[str, set[str]], key: str, item: str) -> None:
        s = table.get(key)
        if s is None or item not in s:
            return
        j.save(table, key)
        s.discard(item)
        if not s:
            del table[key]

    def _new_entity_id(self, entity_type: str, norm: str) -> str:
        slug = re.sub(r"[^a-z0-9]+", "-", norm).strip("-") or "entity"
        base = f"{entity_type}:{slug}"
        eid, n = base, 1
        while eid in self._entities:
            n += 1
            eid = f"{base}:{n}"
        return eid

    def _ensure_clusters_unlocked(self) -> None:
        if self._clusters_dirty:
            self._rebuild_clusters()
            self._clusters_dirty = False

    def _rebuild_clusters(self) -> None:
        clusters: dict[str, KnowledgeCluster] = {}
        entity_cluster: dict[str, str] = {}

        clusters[ROOT_CLUSTER_ID] = KnowledgeCluster(
            id=ROOT_CLUSTER_ID,
            name="Knowledge",
            parent_id=None,
            level=0,
            entity_ids=frozenset(self._entities),
        )

        adj: dict[str, set[str]] = defaultdict(set)
        for rel in self._relationships.values():
            if rel.source_id != rel.target_id:
                adj[rel.source_id].add(rel.target_id)
                adj[rel.target_id].add(rel.source_id)

        seen: set[str] = set()
        loners: dict[str, set[str]] = defaultdict(set)
        for start in sorted(self._entities):
            if start in seen:
                continue
            component = _component(start, adj)
            seen |= component
            if len(component) < 2:
                loners[self._entities[start].type].add(start)
                continue

            central = min(
                component,
                key=lambda e: (-len(adj[e]), -self._entities[e].mention_count, e),
            )
            cid = f"cluster:{central}"
            clusters[cid] = KnowledgeCluster(
                id=cid,
                name=self._entities[central].name,
                parent_id=ROOT_CLUSTER_ID,
                level=1,
                entity_ids=frozenset(component),
                central_entity_id=central,
            )

            by_type: dict[str, set[str]] = defaultdict(set)
            for eid in component:
                by_type[self._entities[eid].type].add(eid)
            for etype, members in sorted(by_type.items()):
                sub_id = f"{cid}/{etype}"
                clusters[sub_id] = KnowledgeCluster(
                    id=sub_id,
                    name=f"{self._entities[central].name} / {etype}",
                    parent_id=cid,
                    level=2,
                    entity_ids=frozenset(members),
                    central_entity_id=central if central in members else None,
                )
                for eid in members:
                    entity_cluster[eid] = sub_id

        for etype, members in sorted(loners.items()):
            tid = f"cluster:type:{etype}"
            clusters[tid] = KnowledgeCluster(
                id=tid,
                name=etype.title(),
                parent_id=ROOT_CLUSTER_ID,
                level=1,
                entity_ids=frozenset(members),
            )
            for eid in members:
                entity_cluster[eid] = tid

        self._clusters = clusters
        self._entity_cluster = entity_cluster

    def _ancestors_unlocked(self, cluster: KnowledgeCluster) -> list[KnowledgeCluster]:
        chain: list[KnowledgeCluster] = []
        visited = {cluster.id}
        parent = cluster.parent_id
        while parent is not None:
            if parent in visited:
                raise RuntimeError(f"cluster hierarchy cycle at {parent}")
            visited.add(parent)
            node = self._clusters[parent]
            chain.append(node)
            parent = node.parent_id
        return chain


def _component(start: str, adj: dict[str, set[str]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        cur = queue.popleft()
        for nxt in adj.get(cur, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def _norms_of(ent: Entity) -> set[str]:
    names = [ent.name, *(m.surface for m in ent.mentions)]
    return {n for n in (norm_entity(x) for x in names) if n}


def _copy(value: Any) -> Any:
    if isinstance(value, Entity):
        return _snapshot(value)
    if isinstance(value, Relationship):
        return _rel_snapshot(value)
    if isinstance(value, set):
        return set(value)
    return value


def _snapshot(ent: Entity) -> Entity:
    return replace(ent, mentions=list(ent.mentions))


def _rel_snapshot(rel: Relationship) -> Relationship:
    return replace(rel, evidence=list(rel.evidence))
