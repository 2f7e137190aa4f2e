"""Per-hit and per-response enrichment.

Everything here is read-only against the store snapshot it is handed and the
knowledge graph index. The orchestrator decides what runs concurrently.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Iterable, Mapping, Sequence

from ..graph.extract import extract_entities, extract_query_terms
from ..graph.knowledge_graph import KnowledgeGraphIndex
from ..graph.models import Entity
from ..index.chunk_store import ChunkStats, DocumentChunk
from .models import Concept, EntityRef, GraphContext, Highlight, SearchResult


HIGHLIGHT_CONTEXT = 50
HIGHLIGHTS_PER_TERM = 2
MAX_HIGHLIGHTS = 5
FACET_TOP_TAGS = 3
CONCEPT_MIN_CONFIDENCE = 0.6


def query_terms(query: str | None, *, max_terms: int = 12) -> list[str]:
    if not query:
        return []
    return extract_query_terms(query, max_terms=max_terms)


def highlights(text: str, terms: Sequence[str]) -> list[Highlight]:
    """Spans of *text* around query-term occurrences, first occurrences first."""
    out: list[Highlight] = []
    seen: set[tuple[int, int]] = set()
    for term in terms:
        per_term = 0
        for m in re.finditer(re.escape(term), text, flags=re.IGNORECASE):
            start = max(0, m.start() - HIGHLIGHT_CONTEXT)
            end = min(len(text), m.end() + HIGHLIGHT_CONTEXT)
            if (start, end) in seen:
                continue
            seen.add((start, end))
            out.append(Highlight(start=start, end=end, text=text[start:end].strip()))
            per_term += 1
            if per_term >= HIGHLIGHTS_PER_TERM:
                break
        if len(out) >= MAX_HIGHLIGHTS:
            break
    return out[:MAX_HIGHLIGHTS]


def top_folder(folder: str | None) -> str:
    return folder.split("/", 1)[0] if folder else "Root"


def chunk_facets(chunk: DocumentChunk, tag_distribution: Mapping[str, int]) -> dict[str, Any]:
    # Globally frequent tags are the useful filter hints.
    tags = sorted(chunk.tags, key=lambda t: (-tag_distribution.get(t, 0), t))
    return {
        "contentType": chunk.content_type,
        "folder": top_folder(chunk.folder),
        "tags": tags[:FACET_TOP_TAGS],
    }


def response_facets(results: Sequence[SearchResult], stats: ChunkStats | None) -> dict[str, Any]:
    content_types: Counter[str] = Counter()
    folders: Counter[str] = Counter()
    tags: Counter[str] = Counter()
    for r in results:
        content_types[r.chunk.content_type] += 1
        folders[top_folder(r.chunk.folder)] += 1
        tags.update(set(r.chunk.tags))

    out: dict[str, Any] = {
        "contentTypes": dict(content_types.most_common()),
        "folders": dict(folders.most_common()),
        "tags": dict(tags.most_common(10)),
    }
    if stats is not None:
        out["vault"] = {
            "totalChunks": stats.total_chunks,
            "byContentType": dict(stats.by_content_type),
            "byFolder": dict(stats.by_folder),
        }
    return out


def entity_ref(ent: Entity) -> EntityRef:
    return EntityRef(
        id=ent.id,
        name=ent.name,
        type=ent.type,
        confidence=ent.confidence,
        low_confidence=ent.low_confidence,
    )


def graph_context(index: KnowledgeGraphIndex, chunk_id: str, *, neighbor_limit: int = 5) -> GraphContext:
    ents = index.entities_in_chunk(chunk_id)
    own = {e.id for e in ents}

    neighbors: dict[str, Entity] = {}
    for ent in ents:
        for n in index.neighbors(ent.id):
            if n.id not in own and n.id not in neighbors:
                neighbors[n.id] = n
                break  # nearest one per entity

    ranked = sorted(neighbors.values(), key=lambda e: (-e.confidence, e.id))[:neighbor_limit]
    return GraphContext(
        entities=tuple(entity_ref(e) for e in ents),
        neighbors=tuple(entity_ref(e) for e in ranked),
    )


def query_entities(index: KnowledgeGraphIndex, query: str | None) -> list[Entity]:
    if not query:
        return []
    names = [display for display, _ in extract_entities(query).values()]
    if not names:
        names = extract_query_terms(query)
    found: dict[str, Entity] = {}
    for name in names:
        ent = index.resolve(name)
        if ent is not None:
            found.setdefault(ent.id, ent)
    return list(found.values())


def graph_insights(
    index: KnowledgeGraphIndex,
    results: Sequence[SearchResult],
    *,
    query_ents: Iterable[Entity] = (),
    max_shared: int = 10,
) -> dict[str, Any]:
    hit_count: Counter[str] = Counter()
    names: dict[str, Entity] = {}
    for r in results:
        for ent in index.entities_in_chunk(r.chunk.id):
            hit_count[ent.id] += 1
            names[ent.id] = ent

    shared = [
        {"entity": entity_ref(names[eid]).to_dict(), "hitCount": n}
        for eid, n in sorted(hit_count.items(), key=lambda x: (-x[1], x[0]))
        if n >= 2
    ][:max_shared]

    cluster_hits: Counter[str] = Counter()
    cluster_info: dict[str, dict[str, Any]] = {}
    for eid in hit_count:
        found = index.cluster_of(eid)
        if found is None:
            continue
        cluster, ancestors = found
        # Summarise at the top level below the root.
        top = next((c for c in [cluster, *ancestors] if c.level == 1), cluster)
        cluster_hits[top.id] += hit_count[eid]
        cluster_info[top.id] = {"id": top.id, "name": top.name, "level": top.level, "size": len(top.entity_ids)}

    clusters = [
        dict(cluster_info[cid], mentions=n)
        for cid, n in sorted(cluster_hits.items(), key=lambda x: (-x[1], x[0]))
    ]
    return {
        "queryEntities": [entity_ref(e).to_dict() for e in query_ents],
        "sharedEntities": shared,
        "clusters": clusters,
    }


def concepts(
    index: KnowledgeGraphIndex,
    results: Sequence[SearchResult],
    *,
    limit: int = 10,
    min_confidence: float = CONCEPT_MIN_CONFIDENCE,
) -> list[Concept]:
    hit_ids = {r.chunk.id for r in results}
    ents: dict[str, Entity] = {}
    for cid in hit_ids:
        for ent in index.entities_in_chunk(cid):
            if ent.confidence >= min_confidence and not ent.low_confidence:
                ents[ent.id] = ent

    scored = [
        Concept(
            entity_id=e.id,
            name=e.name,
            type=e.type,
            confidence=e.confidence,
            frequency=sum(1 for m in e.mentions if m.chunk_id in hit_ids),
        )
        for e in ents.values()
    ]
    scored.sort(key=lambda c: (-c.frequency, -c.confidence, c.name.lower(), c.entity_id))
    return scored[: max(0, int(limit))]
