from __future__ import annotations

from typing import Sequence

import numpy as np


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    if vec.ndim != 1:
        vec = vec.reshape(-1)
    return vec


def to_blob(vec: np.ndarray) -> bytes:
    return as_vector(vec).tobytes()


def from_blob(buf: bytes) -> np.ndarray:
    # frombuffer returns a read-only view; copy so callers may mutate.
    return np.frombuffer(buf, dtype=np.float32).copy()


def l2_normalize(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    if x.ndim == 1:
        return x / max(float(np.linalg.norm(x)), eps)
    norm = np.linalg.norm(x, axis=1, keepdims=True)
    return x / np.maximum(norm, eps)


def cosine_scores(matrix: np.ndarray, query_vec: np.ndarray) -> np.ndarray:
    """Cosine similarity of *query_vec* against each row of *matrix*."""
    if matrix.size == 0:
        return np.zeros((0,), dtype=np.float32)
    q = l2_normalize(as_vector(query_vec))
    sims = l2_normalize(matrix.astype(np.float32)) @ q  # [n]
    return np.clip(sims, -1.0, 1.0)


def topk(ids: Sequence[str], sims: np.ndarray, k: int, min_similarity: float | None = None) -> list[tuple[str, float]]:
    """Return [(id, sim)] sorted best-first, ties broken by id."""
    if sims.size == 0 or k <= 0:
        return []

    mask = np.ones(sims.shape[0], dtype=bool)
    if min_similarity is not None:
        mask &= sims >= float(min_similarity)
    idx = np.nonzero(mask)[0]
    if idx.size == 0:
        return []

    k = int(min(k, idx.size))
    if k < idx.size:
        # argpartition is O(n); widen to include ties at the boundary.
        part = idx[np.argpartition(-sims[idx], k - 1)[:k]]
        cutoff = sims[part].min()
        idx = idx[sims[idx] >= cutoff]

    ranked = sorted(((str(ids[i]), float(sims[i])) for i in idx), key=lambda x: (-x[1], x[0]))
    return ranked[:k]


def mean_vector(vectors: Sequence[np.ndarray]) -> np.ndarray:
    stacked = np.vstack([as_vector(v) for v in vectors]).astype(np.float32)
    return l2_normalize(stacked.mean(axis=0))
