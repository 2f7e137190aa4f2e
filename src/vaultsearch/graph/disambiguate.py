from __future__ import annotations

import threading
import zlib
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

import numpy as np

from .models import Entity


NameEmbedder = Callable[[str], np.ndarray]

_TRIGRAM_DIM = 512


def trigram_vector(name: str, dim: int = _TRIGRAM_DIM) -> np.ndarray:
    """Character-trigram hashing vector, L2-normalized.

    crc32 rather than hash() so vectors are stable across processes.
    """
    s = f"  {name.lower()} "
    vec = np.zeros((dim,), dtype=np.float32)
    for i in range(len(s) - 2):
        vec[zlib.crc32(s[i : i + 3].encode("utf-8")) % dim] += 1.0
    n = float(np.linalg.norm(vec))
    return vec / n if n > 0 else vec


@dataclass(frozen=True)
class Resolution:
    entity_id: str | None
    similarity: float
    low_confidence: bool = False


class Disambiguator:
    """Decides which canonical entity a mention refers to.

    Policy: normalized-name equality with type agreement, then name-vector
    similarity above `threshold`. Ties prefer the entity with most mentions,
    then the smallest id. A weak detection with no match, or a near miss just
    under the threshold, yields a new entity flagged low-confidence.
    """

    def __init__(
        self,
        *,
        threshold: float = 0.85,
        low_confidence_threshold: float = 0.5,
        near_miss_margin: float = 0.15,
        embed_name: NameEmbedder | None = None,
    ):
        self.threshold = float(threshold)
        self.low_confidence_threshold = float(low_confidence_threshold)
        self.near_miss_margin = float(near_miss_margin)
        self.embed_name: NameEmbedder = embed_name or trigram_vector

        self._vec_cache: dict[str, np.ndarray] = {}
        self._vec_lock = threading.Lock()

    def vector(self, name_norm: str) -> np.ndarray:
        with self._vec_lock:
            v = self._vec_cache.get(name_norm)
        if v is None:
            v = np.asarray(self.embed_name(name_norm), dtype=np.float32)
            n = float(np.linalg.norm(v))
            if n > 0:
                v = v / n
            with self._vec_lock:
                self._vec_cache[name_norm] = v
        return v

    def resolve(
        self,
        name_norm: str,
        entity_type: str | None,
        *,
        entities: Mapping[str, Entity],
        by_norm: Mapping[str, Iterable[str]],
        detection_confidence: float = 1.0,
    ) -> Resolution:
        """Pick the canonical entity for a mention. Never mutates its inputs."""
        exact = [
            entities[eid]
            for eid in by_norm.get(name_norm, ())
            if eid in entities and _type_agrees(entity_type, entities[eid].type)
        ]
        if exact:
            return Resolution(entity_id=_prefer(exact).id, similarity=1.0)

        qvec = self.vector(name_norm)
        best_sim = -1.0
        best: list[Entity] = []
        for ent in entities.values():
            if not _type_agrees(entity_type, ent.type):
                continue
            sim = float(qvec @ self.vector(_norm(ent.name)))
            if sim > best_sim + 1e-9:
                best_sim, best = sim, [ent]
            elif abs(sim - best_sim) <= 1e-9:
                best.append(ent)

        if best and best_sim >= self.threshold:
            return Resolution(entity_id=_prefer(best).id, similarity=best_sim)

        near_miss = bool(best) and best_sim >= self.threshold - self.near_miss_margin
        weak = detection_confidence < self.low_confidence_threshold
        return Resolution(entity_id=None, similarity=max(best_sim, 0.0), low_confidence=near_miss or weak)


def _prefer(candidates: list[Entity]) -> Entity:
    # Frequency prior, then id for determinism.
    return min(candidates, key=lambda e: (-e.mention_count, e.id))


def _type_agrees(wanted: str | None, actual: str) -> bool:
    # "other" means untyped and agrees with anything.
    return wanted is None or wanted == actual or "other" in (wanted, actual)


def _norm(name: str) -> str:
    return " ".join(name.split()).lower()
