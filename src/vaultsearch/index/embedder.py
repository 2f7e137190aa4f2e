from __future__ import annotations

from typing import Any, Protocol

import httpx
import numpy as np

from ..config import Settings
from ..errors import InvalidDimension, UpstreamUnavailable
from .vector_store import l2_normalize


class Embedder(Protocol):
    dimension: int

    def embed_query(self, text: str) -> np.ndarray: ...

    def embed_texts(self, texts: list[str]) -> np.ndarray: ...


class FastEmbedEmbedder:
    def __init__(self, model_name: str, *, dimension: int):
        # Import here so the store and graph can run without embedding deps.
        try:
            from fastembed import TextEmbedding  # type: ignore

            self._model = TextEmbedding(model_name=model_name)
        except Exception as e:
            raise UpstreamUnavailable(f"Failed to load embedding model {model_name}: {e}") from e

        self.model_name = model_name
        self.dimension = int(dimension)

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        try:
            vectors = np.array(list(self._model.embed(texts)), dtype=np.float32)
        except Exception as e:
            raise UpstreamUnavailable(f"Embedding failed ({self.model_name}): {e}") from e
        return _checked(l2_normalize(vectors), self.dimension)

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


class OllamaEmbedder:
    def __init__(self, *, base_url: str, model: str, dimension: int, timeout_s: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = int(dimension)
        self.timeout_s = float(timeout_s)

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)

        url = f"{self.base_url}/api/embed"
        payload: dict[str, Any] = {"model": self.model, "input": list(texts)}
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                r = client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(
                f"Failed to connect to Ollama at {self.base_url}. Is it running? ({e})"
            ) from e

        if r.status_code != 200:
            raise UpstreamUnavailable(f"Ollama error {r.status_code}: {r.text}")

        data = r.json()
        embs = data.get("embeddings")
        if not isinstance(embs, list) or len(embs) != len(texts):
            raise UpstreamUnavailable(f"Unexpected Ollama response: {str(data)[:200]}")
        return _checked(l2_normalize(np.array(embs, dtype=np.float32)), self.dimension)

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_texts([text])[0]


def embedder_from_settings(settings: Settings) -> Embedder:
    if settings.embed_backend == "ollama":
        return OllamaEmbedder(
            base_url=settings.ollama_base_url,
            model=settings.ollama_embed_model,
            dimension=settings.embed_dim,
        )
    return FastEmbedEmbedder(settings.embed_model, dimension=settings.embed_dim)


def _checked(vectors: np.ndarray, dimension: int) -> np.ndarray:
    if vectors.ndim != 2 or vectors.shape[1] != dimension:
        got = int(vectors.shape[-1]) if vectors.ndim else 0
        raise InvalidDimension(dimension, got)
    return vectors
