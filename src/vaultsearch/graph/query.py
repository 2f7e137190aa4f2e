from __future__ import annotations

from typing import Any

from ..index.chunk_store import ChunkStore
from .extract import extract_entities, extract_query_terms
from .knowledge_graph import KnowledgeGraphIndex


def query_graph(
    *,
    index: KnowledgeGraphIndex,
    store: ChunkStore,
    query: str,
    entity_limit: int = 5,
    neighbor_limit: int = 8,
    chunk_limit: int = 5,
) -> dict[str, Any]:
    """Entities matching *query*, each with its neighbours and top chunks."""
    ents = extract_entities(query, max_per_chunk=entity_limit)
    terms = [display for display, _ in ents.values()]
    if not terms:
        terms = extract_query_terms(query, max_terms=entity_limit)

    by_id = {}
    for t in terms:
        ent = index.resolve(t)
        if ent is not None:
            by_id.setdefault(ent.id, ent)

    top = sorted(by_id.values(), key=lambda e: (-len(e.chunk_ids()), e.id))[:entity_limit]
    out_entities = []

    for ent in top:
        neighbors = []
        for rel in index.relationships_of(ent.id)[:neighbor_limit]:
            other_id = rel.target_id if rel.source_id == ent.id else rel.source_id
            other = index.get_entity(other_id)
            if other is None:
                continue
            neighbors.append(
                {
                    "entity": {"id": other.id, "name": other.name, "type": other.type},
                    "relationship": rel.type,
                    "direction": "out" if rel.source_id == ent.id else "in",
                    "confidence": rel.confidence,
                }
            )

        # Chunks with the most mentions first.
        per_chunk: dict[str, int] = {}
        for m in ent.mentions:
            per_chunk[m.chunk_id] = per_chunk.get(m.chunk_id, 0) + 1
        top_chunks = sorted(per_chunk.items(), key=lambda x: (-x[1], x[0]))[:chunk_limit]

        chunks = []
        for c in store.get_many([cid for cid, _ in top_chunks]):
            chunks.append(
                {
                    "chunk_id": c.id,
                    "file_name": c.file_name,
                    "preview": " ".join(c.text.split())[:220],
                }
            )

        out_entities.append(
            {
                "entity": {
                    "id": ent.id,
                    "name": ent.name,
                    "type": ent.type,
                    "confidence": ent.confidence,
                    "low_confidence": ent.low_confidence,
                    "mention_count": ent.mention_count,
                },
                "neighbors": neighbors,
                "chunks": chunks,
            }
        )

    return {"terms": terms, "entities": out_entities}
