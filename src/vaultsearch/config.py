from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the CLI.
    db_path: str = os.getenv("VAULTSEARCH_DB_PATH", "./data/vault.db")

    # Embeddings: "fastembed" (local) or "ollama" (HTTP).
    embed_backend: str = os.getenv("VAULTSEARCH_EMBED_BACKEND", "fastembed")
    embed_model: str = os.getenv("VAULTSEARCH_EMBED_MODEL", "BAAI/bge-small-en-v1.5")
    embed_dim: int = int(os.getenv("VAULTSEARCH_EMBED_DIM", "384"))

    # Ollama
    ollama_base_url: str = os.getenv("VAULTSEARCH_OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_embed_model: str = os.getenv("VAULTSEARCH_OLLAMA_EMBED_MODEL", "nomic-embed-text")

    # Entity linking
    disambiguation_threshold: float = float(os.getenv("VAULTSEARCH_DISAMBIGUATION_THRESHOLD", "0.85"))
    low_confidence_threshold: float = float(os.getenv("VAULTSEARCH_LOW_CONFIDENCE_THRESHOLD", "0.5"))
    relationship_window: int = int(os.getenv("VAULTSEARCH_RELATIONSHIP_WINDOW", "120"))
    extraction_timeout_s: float = float(os.getenv("VAULTSEARCH_EXTRACTION_TIMEOUT_S", "5.0"))

    # Search
    max_related: int = int(os.getenv("VAULTSEARCH_MAX_RELATED", "5"))
    # Similarity-filled related chunks must score at least this.
    related_min_similarity: float = float(os.getenv("VAULTSEARCH_RELATED_MIN_SIMILARITY", "0.5"))
    slow_query_ms: float = float(os.getenv("VAULTSEARCH_SLOW_QUERY_MS", "500"))

    log_level: str = os.getenv("VAULTSEARCH_LOG_LEVEL", "INFO")
