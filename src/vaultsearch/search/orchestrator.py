from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, TypeVar

import numpy as np

from ..errors import InvalidInput, UpstreamUnavailable, VaultSearchError
from ..graph.knowledge_graph import KnowledgeGraphIndex
from ..index.chunk_store import ChunkStats, ChunkStore, DocumentChunk, ScoredChunk, SearchFilters, link_key
from ..index.embedder import Embedder
from ..index.vector_store import mean_vector
from . import enrich
from .models import RelatedChunk, SearchOptions, SearchResponse, SearchResult


logger = logging.getLogger(__name__)

T = TypeVar("T")

TAG_ORDERS = ("recency", "relevance")
RELATED_STRATEGIES = ("average", "best")

# MOCs are few; ranking them by prominence needs the whole set.
_MOC_SCAN_LIMIT = 5000

_SEED_WEIGHT = 1.0
_NEIGHBOR_WEIGHT = 0.6
_CLUSTER_WEIGHT = 0.3


class SearchOrchestrator:
    """Turns queries into ranked, enriched results.

    Blocking store and embedding calls run in worker threads; enrichment of
    each hit is its own task. Searches never write to the store or the graph.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: Embedder | None,
        index: KnowledgeGraphIndex | None = None,
        *,
        max_related: int = 5,
        neighbor_limit: int = 5,
        related_min_similarity: float = 0.5,
    ):
        self.store = store
        self.embedder = embedder
        self.index = index
        self.max_related = int(max_related)
        self.neighbor_limit = int(neighbor_limit)
        self.related_min_similarity = float(related_min_similarity)

    # -- modes ----------------------------------------------------------

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        options = options or SearchOptions()
        _require_text(query, "query")
        options.validate()

        start = time.perf_counter()
        qvec = await self._embed(query)
        hits = await self._store_call(self.store.search, qvec, options.limit, options.filters())
        return await self._respond("search", query, hits, options, start)

    async def search_by_tag(
        self, tag: str, options: SearchOptions | None = None, *, order: str = "recency"
    ) -> SearchResponse:
        options = options or SearchOptions()
        _require_text(tag, "tag")
        if order not in TAG_ORDERS:
            raise InvalidInput(f"order must be one of {TAG_ORDERS}, got {order!r}")
        options = dataclasses.replace(options, tags=(tag,), tag_mode="any")
        options.validate()

        start = time.perf_counter()
        chunks = await self._store_call(
            self.store.list_chunks,
            options.filters(),
            order="recency" if order == "recency" else "weight",
            limit=options.limit,
        )
        if order == "recency":
            hits = [ScoredChunk(chunk=c, score=1.0) for c in chunks]
        else:
            top = max((_weight(c) for c in chunks), default=0.0)
            hits = [ScoredChunk(chunk=c, score=_weight(c) / top if top > 0 else 0.0) for c in chunks]
        return await self._respond("tag", tag, hits, options, start)

    async def search_mocs(self, query: str | None = None, options: SearchOptions | None = None) -> SearchResponse:
        options = options or SearchOptions()
        if query is not None:
            _require_text(query, "query")
        options = dataclasses.replace(options, content_types=("moc",))
        options.validate()

        start = time.perf_counter()
        if query is not None:
            qvec = await self._embed(query)
            hits = await self._store_call(self.store.search, qvec, options.limit, options.filters())
            return await self._respond("mocs", query, hits, options, start)

        chunks = await self._store_call(self.store.list_chunks, options.filters(), order="file", limit=_MOC_SCAN_LIMIT)
        inbound = await self._store_call(self.store.inbound_link_counts)
        counts = {c.id: inbound.get(link_key(c.file_name), 0) for c in chunks}
        top = max(counts.values(), default=0)
        ranked = sorted(chunks, key=lambda c: (-counts[c.id], c.file_name, c.chunk_index))[: options.limit]
        hits = [ScoredChunk(chunk=c, score=counts[c.id] / top if top > 0 else 0.0) for c in ranked]
        return await self._respond("mocs", None, hits, options, start)

    async def search_conversations(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        options = options or SearchOptions()
        _require_text(query, "query")
        options = dataclasses.replace(options, content_types=("conversation",))
        options.validate()

        start = time.perf_counter()
        qvec = await self._embed(query)
        hits = await self._store_call(self.store.search, qvec, options.limit, options.filters())
        return await self._respond("conversations", query, hits, options, start)

    async def find_related_notes(
        self, file_name: str, options: SearchOptions | None = None, *, strategy: str = "average"
    ) -> SearchResponse:
        options = options or SearchOptions()
        _require_text(file_name, "file_name")
        if strategy not in RELATED_STRATEGIES:
            raise InvalidInput(f"strategy must be one of {RELATED_STRATEGIES}, got {strategy!r}")
        options.validate()

        start = time.perf_counter()
        seeds = await self._store_call(self.store.get_chunks_by_file, file_name)
        if not seeds:
            return self._empty("related", file_name, start)

        filters = options.filters(exclude_files=(file_name,))
        if strategy == "average":
            qvec = mean_vector([c.embedding for c in seeds])
            hits = await self._store_call(self.store.search, qvec, options.limit, filters)
        else:
            best: dict[str, ScoredChunk] = {}
            for seed in seeds:
                await asyncio.sleep(0)
                for h in await self._store_call(self.store.search, seed.embedding, options.limit, filters):
                    prev = best.get(h.chunk.id)
                    if prev is None or h.score > prev.score:
                        best[h.chunk.id] = h
            hits = sorted(best.values(), key=lambda h: (-h.score, h.chunk.id))[: options.limit]

        return await self._respond("related", file_name, hits, options, start, terms=enrich.query_terms(link_key(file_name)))

    async def explore_knowledge_cluster(self, concept: str, options: SearchOptions | None = None) -> SearchResponse:
        """Graph-first retrieval around the entity *concept* resolves to."""
        options = options or SearchOptions()
        _require_text(concept, "concept")
        options.validate()

        start = time.perf_counter()
        if self.index is None:
            return self._empty("cluster", concept, start)

        seed = self.index.resolve(concept)
        if seed is None:
            resp = self._empty("cluster", concept, start)
            resp.graph_insights = {"queryEntities": [], "sharedEntities": [], "clusters": []}
            return resp

        found = self.index.cluster_of(seed.id)
        neighbors = self.index.neighbors(seed.id)

        weights: dict[str, float] = {}
        if found is not None:
            for eid in found[0].entity_ids:
                weights[eid] = _CLUSTER_WEIGHT
        for n in neighbors:
            weights[n.id] = max(weights.get(n.id, 0.0), _NEIGHBOR_WEIGHT)
        weights[seed.id] = _SEED_WEIGHT

        per_chunk = self.index.chunks_mentioning(weights)
        raw = {cid: sum(weights[e] for e in eids) for cid, eids in per_chunk.items()}
        top = max(raw.values(), default=0.0)
        ranked = sorted(raw.items(), key=lambda x: (-x[1], x[0]))[: options.limit]

        chunks = await self._store_call(self.store.get_many, [cid for cid, _ in ranked])
        by_id = {c.id: c for c in chunks}
        hits = [ScoredChunk(chunk=by_id[cid], score=sc / top) for cid, sc in ranked if cid in by_id]

        resp = await self._respond("cluster", concept, hits, options, start, terms=enrich.query_terms(seed.name))
        resp.graph_insights["seedEntity"] = enrich.entity_ref(seed).to_dict()
        resp.graph_insights["neighbors"] = [enrich.entity_ref(n).to_dict() for n in neighbors]
        if found is not None:
            cluster, ancestors = found
            resp.graph_insights["cluster"] = cluster.to_dict()
            resp.graph_insights["ancestors"] = [a.to_dict() for a in ancestors]
        return resp

    async def get_file_chunks(self, file_name: str) -> SearchResponse:
        _require_text(file_name, "file_name")
        start = time.perf_counter()
        chunks = await self._store_call(self.store.get_chunks_by_file, file_name)
        resp = SearchResponse(
            query=file_name,
            mode="file",
            results=[SearchResult(chunk=c, score=1.0) for c in chunks],
            total_found=len(chunks),
        )
        resp.latency_ms = _elapsed_ms(start)
        return resp

    async def get_stats(self) -> ChunkStats:
        return await self._store_call(self.store.get_stats)

    async def performance_metrics(self) -> dict[str, Any]:
        out = dict(await asyncio.to_thread(self.store.performance_metrics))
        if self.index is not None:
            out["graph"] = self.index.stats()
        return out

    # -- pipeline -------------------------------------------------------

    async def _respond(
        self,
        mode: str,
        query: str | None,
        hits: list[ScoredChunk],
        options: SearchOptions,
        start: float,
        *,
        terms: list[str] | None = None,
    ) -> SearchResponse:
        stats = await self._optional("stats", None, self.store.get_stats)
        tag_freq = stats.tag_distribution if stats is not None else {}
        if terms is None:
            terms = enrich.query_terms(query)

        # gather keeps hit order; cancelling the request cancels every task.
        results = list(
            await asyncio.gather(*(self._enrich_hit(h, terms, options, tag_freq) for h in hits))
        )

        resp = SearchResponse(
            query=query,
            mode=mode,
            results=results,
            total_found=len(results),
            facets=enrich.response_facets(results, stats),
        )
        if self.index is not None and options.include_graph:
            resp.graph_insights = self._guard(
                "graph insights",
                {},
                lambda: enrich.graph_insights(self.index, results, query_ents=enrich.query_entities(self.index, query)),
            )
            resp.concepts = self._guard(
                "concepts", [], lambda: enrich.concepts(self.index, results, limit=options.max_concepts)
            )

        resp.latency_ms = _elapsed_ms(start)
        logger.info("%s %r: %d result(s) in %.1fms", mode, query, len(results), resp.latency_ms)
        return resp

    async def _enrich_hit(
        self,
        hit: ScoredChunk,
        terms: list[str],
        options: SearchOptions,
        tag_freq: dict[str, int],
    ) -> SearchResult:
        chunk = hit.chunk
        result = SearchResult(chunk=chunk, score=hit.score)

        await asyncio.sleep(0)
        result.highlights = self._guard("highlights", [], enrich.highlights, chunk.text, terms)

        await asyncio.sleep(0)
        limit = self.max_related if options.max_related is None else options.max_related
        if options.include_related and limit > 0:
            result.related_chunks = await self._optional("related chunks", [], self._related_chunks, chunk, limit)

        await asyncio.sleep(0)
        if options.include_graph and self.index is not None:
            result.graph_context = self._guard(
                "graph context",
                result.graph_context,
                enrich.graph_context,
                self.index,
                chunk.id,
                neighbor_limit=self.neighbor_limit,
            )

        await asyncio.sleep(0)
        result.facets = self._guard("facets", {}, enrich.chunk_facets, chunk, tag_freq)
        return result

    def _related_chunks(self, chunk: DocumentChunk, limit: int) -> list[RelatedChunk]:
        out: list[RelatedChunk] = []
        seen = {chunk.id}
        for sc in self.store.chunks_sharing_wikilinks(chunk, limit=limit):
            seen.add(sc.chunk.id)
            out.append(RelatedChunk(sc.chunk.id, sc.chunk.file_name, sc.score, "wikilink"))

        if len(out) < limit:
            for sc in self.store.search(
                chunk.embedding,
                limit + len(seen),
                SearchFilters(min_similarity=self.related_min_similarity),
            ):
                if sc.chunk.id in seen:
                    continue
                seen.add(sc.chunk.id)
                out.append(RelatedChunk(sc.chunk.id, sc.chunk.file_name, sc.score, "similarity"))
                if len(out) >= limit:
                    break
        return out[:limit]

    # -- helpers --------------------------------------------------------

    async def _embed(self, text: str) -> np.ndarray:
        if self.embedder is None:
            raise UpstreamUnavailable("No embedding backend configured")
        try:
            return await asyncio.to_thread(self.embedder.embed_query, text)
        except VaultSearchError:
            raise
        except Exception as e:
            raise UpstreamUnavailable(f"Query embedding failed: {e}") from e

    async def _store_call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _optional(self, what: str, default: T, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception:
            logger.warning("Enrichment step %s failed", what, exc_info=True)
            return default

    def _guard(self, what: str, default: T, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.warning("Enrichment step %s failed", what, exc_info=True)
            return default

    def _empty(self, mode: str, query: str | None, start: float) -> SearchResponse:
        resp = SearchResponse(query=query, mode=mode)
        resp.latency_ms = _elapsed_ms(start)
        return resp


def _require_text(value: Any, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{name} must be a non-empty string")


def _weight(c: DocumentChunk) -> float:
    try:
        return max(0.0, float(c.extra.get("weight", 1.0)))
    except (TypeError, ValueError):
        return 0.0


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
