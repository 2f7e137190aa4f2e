import re
import zlib
from datetime import datetime, timezone

import numpy as np

from vaultsearch.index import sqlite_store
from vaultsearch.index.chunk_store import ChunkStore, DocumentChunk


DIM = 64


class HashingEmbedder:
    """Deterministic bag-of-words embedder for tests."""

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.calls = 0

    def embed_texts(self, texts):
        return np.vstack([self._one(t) for t in texts]) if texts else np.zeros((0, self.dimension), dtype=np.float32)

    def embed_query(self, text):
        self.calls += 1
        return self._one(text)

    def _one(self, text):
        vec = np.zeros((self.dimension,), dtype=np.float32)
        for tok in re.findall(r"[a-z0-9]+", text.lower()):
            vec[zlib.crc32(tok.encode("utf-8")) % self.dimension] += 1.0
        n = float(np.linalg.norm(vec))
        return vec / n if n > 0 else vec


class FailingEmbedder(HashingEmbedder):
    def embed_query(self, text):
        raise ConnectionError("embedding backend down")


def memory_store(dimension: int = DIM) -> ChunkStore:
    return ChunkStore(sqlite_store.connect(":memory:"), dimension=dimension)


def make_chunk(chunk_id, file_name, text, *, embedder=None, **kw) -> DocumentChunk:
    embedder = embedder or HashingEmbedder()
    return DocumentChunk(id=chunk_id, file_name=file_name, text=text, embedding=embedder.embed_query(text), **kw)


def ts(day: int) -> datetime:
    return datetime(2024, 1, day, tzinfo=timezone.utc)
