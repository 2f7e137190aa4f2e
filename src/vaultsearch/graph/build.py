from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Any, Iterable

from ..errors import ExtractionDegraded
from ..index.chunk_store import ChangeEvent, ChunkStore, DocumentChunk
from .extract import EntityExtractor
from .knowledge_graph import KnowledgeGraphIndex


logger = logging.getLogger(__name__)


class GraphBuilder:
    """Keeps a KnowledgeGraphIndex in step with a ChunkStore.

    Upserts are queued and extracted in the background, so ingestion never
    waits on the extractor; `drain()` waits for the queue to empty. Deletes
    are applied right away. Extraction runs in a worker pool with a per-chunk
    timeout. A chunk whose extraction or linking fails stays searchable; it
    is recorded in `pending` and keeps no graph contribution until
    `reprocess_pending()` succeeds.
    """

    def __init__(
        self,
        index: KnowledgeGraphIndex,
        extractor: EntityExtractor | None = None,
        *,
        timeout_s: float = 5.0,
        max_workers: int = 4,
    ):
        self.index = index
        self.extractor = extractor or EntityExtractor()
        self.timeout_s = float(timeout_s)
        self.store: ChunkStore | None = None

        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="vaultsearch-extract"
        )
        # One worker: change events are applied in commit order.
        self._queue = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="vaultsearch-graph")
        self._inflight: set[concurrent.futures.Future] = set()
        self._inflight_lock = threading.Lock()

        self._pending: set[str] = set()
        self._pending_lock = threading.Lock()

    def attach(self, store: ChunkStore) -> "GraphBuilder":
        """Follow *store*: upserts are re-extracted, deletes evicted."""
        self.store = store
        store.subscribe(self.on_change)
        return self

    def close(self) -> None:
        # A running update finishes (bounded by timeout_s per chunk); queued ones are dropped.
        self._queue.shutdown(wait=True, cancel_futures=True)
        self._pool.shutdown(wait=False, cancel_futures=True)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued upserts to reach the index. False on timeout."""
        with self._inflight_lock:
            futures = list(self._inflight)
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    @property
    def pending(self) -> set[str]:
        with self._pending_lock:
            return set(self._pending)

    def mark_pending(self, chunk_ids: Iterable[str]) -> None:
        with self._pending_lock:
            self._pending.update(chunk_ids)

    def on_change(self, event: ChangeEvent) -> None:
        if event.kind == "delete":
            self.index.remove_chunks(event.chunk_ids)
            with self._pending_lock:
                self._pending.difference_update(event.chunk_ids)
            return

        if self.store is None:
            self.mark_pending(event.chunk_ids)
            return
        fut = self._queue.submit(self._refresh, tuple(event.chunk_ids))
        with self._inflight_lock:
            self._inflight.add(fut)
        fut.add_done_callback(self._settled)

    def process_chunk(self, chunk: DocumentChunk) -> bool:
        """Extract *chunk* and merge it into the index. Never raises on extraction failure."""
        # Serialise extract + replace for one chunk id.
        with self.index.chunk_lock(chunk.id):
            fut = self._pool.submit(
                self.extractor.extract,
                chunk.id,
                chunk.text,
                tags=chunk.tags,
                wikilinks=chunk.wikilinks,
            )
            try:
                result = fut.result(timeout=self.timeout_s)
            except concurrent.futures.TimeoutError:
                fut.cancel()
                self._degraded(ExtractionDegraded(chunk.id, f"timed out after {self.timeout_s:.1f}s"))
                return False
            except Exception as e:
                self._degraded(ExtractionDegraded(chunk.id, f"{type(e).__name__}: {e}"))
                return False

            # Linking calls the name embedder; replace_chunk undoes itself on error.
            try:
                self.index.replace_chunk(result)
            except Exception as e:
                self._degraded(ExtractionDegraded(chunk.id, f"linking failed: {type(e).__name__}: {e}"))
                return False

        with self._pending_lock:
            self._pending.discard(chunk.id)
        return True

    def process_chunks(self, chunks: Iterable[DocumentChunk]) -> dict[str, int]:
        seen = ok = 0
        for chunk in chunks:
            seen += 1
            if self.process_chunk(chunk):
                ok += 1
        return {"chunks_seen": seen, "chunks_indexed": ok, "chunks_failed": seen - ok}

    def rebuild(self, store: ChunkStore | None = None, *, clear: bool = True, batch_size: int = 500) -> dict[str, Any]:
        """Build the index from every chunk currently in the store."""
        store = store or self.store
        if store is None:
            raise ValueError("rebuild() needs a store")
        self.drain()
        if clear:
            self.index.clear()
            with self._pending_lock:
                self._pending.clear()

        ids = store.all_chunk_ids()
        totals = {"chunks_seen": 0, "chunks_indexed": 0, "chunks_failed": 0}
        for i in range(0, len(ids), batch_size):
            part = self.process_chunks(store.get_many(ids[i : i + batch_size]))
            for k, v in part.items():
                totals[k] += v
            logger.debug("Graph rebuild: %d/%d chunks", min(i + batch_size, len(ids)), len(ids))

        out: dict[str, Any] = dict(totals)
        out.update(self.index.stats())
        out["pending"] = len(self.pending)
        logger.info(
            "Graph built: %d chunks, %d entities, %d relationships",
            out["chunks_seen"],
            out["entities"],
            out["relationships"],
        )
        return out

    def reprocess_pending(self) -> dict[str, int]:
        if self.store is None:
            raise ValueError("reprocess_pending() needs an attached store")
        self.drain()
        ids = sorted(self.pending)
        chunks = self.store.get_many(ids)
        found = {c.id for c in chunks}
        # Chunks deleted since they failed.
        with self._pending_lock:
            self._pending.difference_update(set(ids) - found)
        stats = self.process_chunks(chunks)
        stats["still_pending"] = len(self.pending)
        return stats

    def _refresh(self, chunk_ids: tuple[str, ...]) -> None:
        for cid in chunk_ids:
            # Read under the chunk lock: a delete that commits meanwhile
            # either sees our update or makes this read come back empty.
            with self.index.chunk_lock(cid):
                try:
                    chunk = self.store.get_by_id(cid) if self.store is not None else None
                except Exception as e:
                    self._degraded(ExtractionDegraded(cid, f"chunk read failed: {type(e).__name__}: {e}"))
                    continue
                if chunk is not None:
                    self.process_chunk(chunk)

    def _settled(self, fut: concurrent.futures.Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            logger.error("Graph update failed", exc_info=fut.exception())

    def _degraded(self, err: ExtractionDegraded) -> None:
        logger.warning("%s", err)
        self.index.remove_chunks([err.chunk_id])
        with self._pending_lock:
            self._pending.add(err.chunk_id)
