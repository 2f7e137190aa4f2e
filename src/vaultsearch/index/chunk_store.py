"""Chunk Store: persisted vault chunks with embeddings and similarity search.

The store is the single source of truth for chunk text, metadata and
embeddings. Similarity is brute-force cosine over the filtered candidate set
(numpy), which is plenty for a personal vault and keeps the ranking contract
independent of any index algorithm.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Callable, Iterable, Sequence

import numpy as np

from ..errors import InvalidDimension, InvalidInput, UpstreamUnavailable
from . import sqlite_store
from .vector_store import as_vector, cosine_scores, from_blob, to_blob, topk


logger = logging.getLogger(__name__)

TAG_MODES = ("any", "all")
LIST_ORDERS = ("recency", "weight", "file")


@dataclass(frozen=True, eq=False)
class DocumentChunk:
    id: str
    file_name: str
    text: str
    embedding: np.ndarray = field(repr=False)
    chunk_index: int = 0
    folder: str | None = None
    content_type: str = "note"
    tags: tuple[str, ...] = ()
    wikilinks: tuple[str, ...] = ()
    created_at: datetime | None = None
    modified_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "embedding", as_vector(self.embedding))
        object.__setattr__(self, "tags", tuple(normalize_tag(t) for t in self.tags if normalize_tag(t)))
        object.__setattr__(self, "wikilinks", tuple(str(w) for w in self.wikilinks))
        if self.folder is None:
            object.__setattr__(self, "folder", folder_of(self.file_name))

    @property
    def date(self) -> datetime | None:
        return self.modified_at or self.created_at

    def to_dict(self, *, include_embedding: bool = False) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "fileName": self.file_name,
            "folder": self.folder,
            "chunkIndex": self.chunk_index,
            "text": self.text,
            "contentType": self.content_type,
            "tags": list(self.tags),
            "wikilinks": list(self.wikilinks),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "modifiedAt": self.modified_at.isoformat() if self.modified_at else None,
            "extra": dict(self.extra),
        }
        if include_embedding:
            d["embedding"] = [float(x) for x in self.embedding]
        return d


@dataclass(frozen=True)
class ScoredChunk:
    chunk: DocumentChunk
    score: float


@dataclass(frozen=True)
class SearchFilters:
    content_types: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    tag_mode: str = "any"
    folders: tuple[str, ...] = ()
    has_wikilinks: bool | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    exclude_files: tuple[str, ...] = ()
    min_similarity: float | None = None

    def validate(self) -> None:
        if self.tag_mode not in TAG_MODES:
            raise InvalidInput(f"tag_mode must be one of {TAG_MODES}, got {self.tag_mode!r}")
        if self.min_similarity is not None:
            ms = float(self.min_similarity)
            if ms != ms or ms < -1.0 or ms > 1.0:
                raise InvalidInput(f"min_similarity must be within [-1, 1], got {self.min_similarity!r}")
        if self.date_from is not None and self.date_to is not None and _ts(self.date_from) > _ts(self.date_to):
            raise InvalidInput("date_from is after date_to")
        for name in ("content_types", "tags", "folders", "exclude_files"):
            values = getattr(self, name)
            if isinstance(values, str) or any(not isinstance(v, str) for v in values):
                raise InvalidInput(f"{name} must be a sequence of strings")

    def where(self) -> tuple[str, list[Any]]:
        return sqlite_store.build_where(
            content_types=list(self.content_types),
            tags=[normalize_tag(t) for t in self.tags if normalize_tag(t)],
            tag_mode=self.tag_mode,
            folders=[f.strip("/") for f in self.folders],
            has_wikilinks=self.has_wikilinks,
            date_from=_ts(self.date_from),
            date_to=_ts(self.date_to),
            exclude_files=list(self.exclude_files),
        )


@dataclass(frozen=True)
class ChunkStats:
    total_chunks: int
    by_content_type: dict[str, int]
    by_folder: dict[str, int]
    tag_distribution: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalChunks": self.total_chunks,
            "byContentType": dict(self.by_content_type),
            "byFolder": dict(self.by_folder),
            "tagDistribution": dict(self.tag_distribution),
        }


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # "upsert" | "delete"
    chunk_ids: tuple[str, ...]


ChangeListener = Callable[[ChangeEvent], None]


class ChunkStore:
    def __init__(self, conn: sqlite3.Connection, *, dimension: int, slow_query_ms: float = 500.0):
        if int(dimension) <= 0:
            raise InvalidInput(f"dimension must be positive, got {dimension}")
        self.conn = conn
        self.dimension = int(dimension)
        self.slow_query_ms = float(slow_query_ms)

        self._lock = threading.RLock()
        self._listeners: list[ChangeListener] = []

        # Derived aggregates; dropped on every write.
        self._stats_cache: ChunkStats | None = None
        self._inbound_cache: dict[str, int] | None = None

        self._latencies_ms: deque[float] = deque(maxlen=1000)
        self._total_queries = 0
        self._slow_queries = 0

        with self._lock:
            sqlite_store.init_db(conn)
            stored = sqlite_store.get_meta(conn, "embedding_dim")
            if stored is None:
                sqlite_store.set_meta(conn, "embedding_dim", str(self.dimension))
                conn.commit()
            elif int(stored) != self.dimension:
                raise InvalidDimension(int(stored), self.dimension)

    @classmethod
    def open(cls, db_path: str | os.PathLike[str], *, dimension: int, slow_query_ms: float = 500.0) -> "ChunkStore":
        try:
            conn = sqlite_store.connect(db_path)
        except sqlite3.Error as e:
            raise UpstreamUnavailable(f"Failed to open chunk store at {db_path}: {e}") from e
        return cls(conn, dimension=dimension, slow_query_ms=slow_query_ms)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "ChunkStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    # -- writes ---------------------------------------------------------

    def upsert(self, chunk: DocumentChunk) -> bool:
        """Insert or replace *chunk*. Returns False when nothing changed."""
        return self.batch_upsert([chunk]) == 1

    def batch_upsert(self, chunks: Iterable[DocumentChunk]) -> int:
        chunks = list(chunks)
        for c in chunks:
            self._check_chunk(c)

        changed: list[str] = []
        with self._lock:
            try:
                for c in chunks:
                    digest = chunk_digest(c)
                    if sqlite_store.get_chunk_hash(self.conn, c.id) == digest:
                        continue
                    sqlite_store.upsert_chunk_row(
                        self.conn,
                        _to_row(c, digest),
                        tags=c.tags,
                        link_keys=sorted({link_key(w) for w in c.wikilinks if link_key(w)}),
                    )
                    changed.append(c.id)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise UpstreamUnavailable(f"Chunk upsert failed: {e}") from e
            if changed:
                self._invalidate()

        if changed:
            logger.debug("Upserted %d chunk(s), %d unchanged", len(changed), len(chunks) - len(changed))
            self._notify(ChangeEvent(kind="upsert", chunk_ids=tuple(changed)))
        return len(changed)

    def delete_chunks_by_file(self, file_name: str) -> int:
        with self._lock:
            try:
                ids = sqlite_store.chunk_ids_for_file(self.conn, file_name)
                n = sqlite_store.delete_chunks(self.conn, ids)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise UpstreamUnavailable(f"Delete failed for {file_name}: {e}") from e
            self._invalidate()

        logger.info("Deleted %d chunk(s) for file %s", n, file_name)
        if ids:
            self._notify(ChangeEvent(kind="delete", chunk_ids=tuple(ids)))
        return n

    def clear_all(self) -> int:
        with self._lock:
            try:
                ids = sqlite_store.all_chunk_ids(self.conn)
                sqlite_store.clear_chunks(self.conn)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise UpstreamUnavailable(f"Clear failed: {e}") from e
            self._invalidate()

        logger.info("Cleared %d chunk(s)", len(ids))
        if ids:
            self._notify(ChangeEvent(kind="delete", chunk_ids=tuple(ids)))
        return len(ids)

    # -- reads ----------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float] | np.ndarray,
        limit: int = 20,
        filters: SearchFilters | None = None,
    ) -> list[ScoredChunk]:
        """Top *limit* chunks by descending cosine similarity."""
        qvec = as_vector(query_vector)
        if qvec.shape[0] != self.dimension:
            raise InvalidDimension(self.dimension, int(qvec.shape[0]))
        if int(limit) < 1:
            raise InvalidInput(f"limit must be >= 1, got {limit}")
        filters = filters or SearchFilters()
        filters.validate()

        start = time.perf_counter()
        where, params = filters.where()
        with self._lock:
            try:
                ids: list[str] = []
                vecs: list[np.ndarray] = []
                for row in sqlite_store.iter_embeddings(self.conn, where, params):
                    ids.append(str(row["chunk_id"]))
                    vecs.append(from_blob(row["embedding"]))

                matrix = np.vstack(vecs) if vecs else np.zeros((0, self.dimension), dtype=np.float32)
                ranked = topk(ids, cosine_scores(matrix, qvec), int(limit), filters.min_similarity)
                rows = sqlite_store.get_chunks_by_ids(self.conn, [cid for cid, _ in ranked])
            except sqlite3.Error as e:
                raise UpstreamUnavailable(f"Chunk search failed: {e}") from e

        by_id = {str(r["chunk_id"]): _from_row(r) for r in rows}
        out = [ScoredChunk(chunk=by_id[cid], score=sc) for cid, sc in ranked if cid in by_id]
        self._record_latency((time.perf_counter() - start) * 1000.0)
        return out

    def get_by_id(self, chunk_id: str) -> DocumentChunk | None:
        found = self.get_many([chunk_id])
        return found[0] if found else None

    def get_many(self, chunk_ids: Sequence[str]) -> list[DocumentChunk]:
        with self._lock:
            try:
                rows = sqlite_store.get_chunks_by_ids(self.conn, list(chunk_ids))
            except sqlite3.Error as e:
                raise UpstreamUnavailable(f"Chunk lookup failed: {e}") from e
        return [_from_row(r) for r in rows]

    def get_chunks_by_file(self, file_name: str) -> list[DocumentChunk]:
        with self._lock:
            try:
                rows = sqlite_store.get_chunks_by_file(self.conn, file_name)
            except sqlite3.Error as e:
                raise UpstreamUnavailable(f"Chunk lookup failed: {e}") from e
        return [_from_row(r) for r in rows]

    def list_chunks(
        self,
        filters: SearchFilters | None = None,
        *,
        order: str = "recency",
        limit: int = 50,
    ) -> list[DocumentChunk]:
        """Filtered listing without a query vector."""
        if order not in LIST_ORDERS:
            raise InvalidInput(f"order must be one of {LIST_ORDERS}, got {order!r}")
        if int(limit) < 1:
            raise InvalidInput(f"limit must be >= 1, got {limit}")
        filters = filters or SearchFilters()
        filters.validate()

        order_by = {
            "recency": "c.date_ts IS NULL, c.date_ts DESC, c.chunk_id",
            "weight": "c.weight DESC, c.date_ts IS NULL, c.date_ts DESC, c.chunk_id",
            "file": "c.file_name, c.chunk_index, c.chunk_id",
        }[order]
        where, params = filters.where()
        with self._lock:
            try:
                rows = sqlite_store.list_chunk_rows(self.conn, where, params, order_by=order_by, limit=int(limit))
            except sqlite3.Error as e:
                raise UpstreamUnavailable(f"Chunk listing failed: {e}") from e
        return [_from_row(r) for r in rows]

    def chunks_sharing_wikilinks(self, chunk: DocumentChunk, limit: int = 5) -> list[ScoredChunk]:
        """Chunks connected to *chunk* through wikilinks, best-first.

        Chunks of notes that *chunk* links to score 1.0, chunks that link back
        to its note 0.8, and chunks sharing link targets by overlap ratio.
        """
        own = sorted({link_key(w) for w in chunk.wikilinks if link_key(w)})
        fkey = link_key(chunk.file_name)

        scores: dict[str, float] = {}
        with self._lock:
            try:
                for cid in sqlite_store.chunks_in_files(self.conn, own, exclude_file=chunk.file_name):
                    scores[cid] = max(scores.get(cid, 0.0), 1.0)
                for cid, _ in sqlite_store.chunks_linking_to(self.conn, [fkey], exclude_file=chunk.file_name):
                    scores[cid] = max(scores.get(cid, 0.0), 0.8)
                for cid, n in sqlite_store.chunks_linking_to(self.conn, own, exclude_file=chunk.file_name):
                    scores[cid] = max(scores.get(cid, 0.0), 0.6 * n / max(1, len(own)))
            except sqlite3.Error as e:
                raise UpstreamUnavailable(f"Wikilink lookup failed: {e}") from e

        scores.pop(chunk.id, None)
        ranked = sorted(scores.items(), key=lambda x: (-x[1], x[0]))[: int(limit)]
        by_id = {c.id: c for c in self.get_many([cid for cid, _ in ranked])}
        return [ScoredChunk(chunk=by_id[cid], score=sc) for cid, sc in ranked if cid in by_id]

    def inbound_link_counts(self) -> dict[str, int]:
        with self._lock:
            if self._inbound_cache is None:
                try:
                    self._inbound_cache = sqlite_store.inbound_link_counts(self.conn)
                except sqlite3.Error as e:
                    raise UpstreamUnavailable(f"Link statistics failed: {e}") from e
            return dict(self._inbound_cache)

    def get_stats(self) -> ChunkStats:
        with self._lock:
            if self._stats_cache is None:
                try:
                    by_folder: dict[str, int] = {}
                    for folder, n in sqlite_store.count_by(self.conn, "folder").items():
                        top = folder.split("/", 1)[0] if folder else "Root"
                        by_folder[top] = by_folder.get(top, 0) + n
                    self._stats_cache = ChunkStats(
                        total_chunks=sqlite_store.count_chunks(self.conn),
                        by_content_type=sqlite_store.count_by(self.conn, "content_type"),
                        by_folder=by_folder,
                        tag_distribution=sqlite_store.tag_counts(self.conn),
                    )
                except sqlite3.Error as e:
                    raise UpstreamUnavailable(f"Stats query failed: {e}") from e
            return self._stats_cache

    def all_chunk_ids(self) -> list[str]:
        with self._lock:
            return sqlite_store.all_chunk_ids(self.conn)

    def performance_metrics(self) -> dict[str, Any]:
        with self._lock:
            lat = sorted(self._latencies_ms)
        avg = sum(lat) / len(lat) if lat else 0.0
        p95 = lat[min(len(lat) - 1, int(round(0.95 * (len(lat) - 1))))] if lat else 0.0
        return {
            "totalQueries": self._total_queries,
            "averageLatencyMs": avg,
            "p95LatencyMs": p95,
            "slowQueries": self._slow_queries,
        }

    # -- internals ------------------------------------------------------

    def _check_chunk(self, c: DocumentChunk) -> None:
        if not c.id:
            raise InvalidInput("chunk id must be non-empty")
        if c.embedding.shape[0] != self.dimension:
            raise InvalidDimension(self.dimension, int(c.embedding.shape[0]))

    def _invalidate(self) -> None:
        self._stats_cache = None
        self._inbound_cache = None

    def _notify(self, event: ChangeEvent) -> None:
        # The write is already committed; a listener cannot undo it.
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener failed for %s of %d chunk(s)", event.kind, len(event.chunk_ids))

    def _record_latency(self, ms: float) -> None:
        with self._lock:
            self._total_queries += 1
            self._latencies_ms.append(ms)
            if ms > self.slow_query_ms:
                self._slow_queries += 1
                logger.warning("Slow search query: %.1fms (threshold %.0fms)", ms, self.slow_query_ms)


_WIKILINK_EXT_RE = re.compile(r"\.(md|markdown|txt)$", re.IGNORECASE)


def link_key(target: str) -> str:
    """Normalise a wikilink target or file name to a comparable note key.

    `[[Projects/Acme Corp#History|Acme]]`, `Acme Corp` and `notes/acme corp.md`
    all map to `acme corp`.
    """
    t = str(target).strip().strip("[]")
    t = t.split("|", 1)[0].split("#", 1)[0].strip()
    t = PurePosixPath(t.replace("\\", "/")).name if t else ""
    t = _WIKILINK_EXT_RE.sub("", t)
    return re.sub(r"\s+", " ", t).strip().lower()


def normalize_tag(tag: str) -> str:
    return str(tag).strip().lstrip("#").strip()


def folder_of(file_name: str) -> str:
    parent = PurePosixPath(str(file_name).replace("\\", "/")).parent
    return "" if str(parent) == "." else str(parent)


def chunk_digest(c: DocumentChunk) -> str:
    h = hashlib.sha256()
    payload = c.to_dict()
    h.update(json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str).encode("utf-8"))
    h.update(to_blob(c.embedding))
    return h.hexdigest()


def _ts(dt: datetime | None) -> float | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _to_row(c: DocumentChunk, digest: str) -> dict[str, Any]:
    return {
        "chunk_id": c.id,
        "file_name": c.file_name,
        "file_key": link_key(c.file_name),
        "folder": c.folder or "",
        "chunk_index": int(c.chunk_index),
        "text": c.text,
        "content_type": c.content_type,
        "tags_json": json.dumps(list(c.tags), ensure_ascii=True),
        "wikilinks_json": json.dumps(list(c.wikilinks), ensure_ascii=True),
        "wikilink_count": len(c.wikilinks),
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "modified_at": c.modified_at.isoformat() if c.modified_at else None,
        "date_ts": _ts(c.date),
        "weight": float(c.extra.get("weight", 1.0)),
        "extra_json": json.dumps(c.extra, ensure_ascii=True, default=str),
        "embedding": to_blob(c.embedding),
        "sha256": digest,
    }


def _from_row(r: sqlite3.Row) -> DocumentChunk:
    return DocumentChunk(
        id=str(r["chunk_id"]),
        file_name=str(r["file_name"]),
        folder=str(r["folder"]),
        chunk_index=int(r["chunk_index"]),
        text=str(r["text"]),
        embedding=from_blob(r["embedding"]),
        content_type=str(r["content_type"]),
        tags=tuple(json.loads(r["tags_json"])),
        wikilinks=tuple(json.loads(r["wikilinks_json"])),
        created_at=datetime.fromisoformat(r["created_at"]) if r["created_at"] else None,
        modified_at=datetime.fromisoformat(r["modified_at"]) if r["modified_at"] else None,
        extra=json.loads(r["extra_json"]),
    )
