"""Centralised configuration for the memory pipeline.

All values are read from environment variables with sensible defaults.
A blank URL or API key disables the corresponding collaborator, so the
pipeline and search engines run with whatever subset of stores is reachable.
"""

from __future__ import annotations

import os


def _bool_env(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


def _int_env(name: str, default: int = 0) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _float_env(name: str, default: float = 0.0) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# ── Relational store / connection pool ──────────────────────────────
DATABASE_URL: str = os.getenv("MEMPIPE_DATABASE_URL", "sqlite+aiosqlite:///./mempipe.db")
DB_POOL_SIZE: int = _int_env("DB_POOL_SIZE", 10)
DB_MAX_OVERFLOW: int = _int_env("DB_MAX_OVERFLOW", 5)
DB_POOL_TIMEOUT: int = _int_env("DB_POOL_TIMEOUT", 30)
DB_ECHO: bool = _bool_env("DB_ECHO", False)

# ── Vector concept store (Qdrant) ────────────────────────────────────
QDRANT_URL: str = os.getenv("QDRANT_URL", "")
QDRANT_API_KEY: str = os.getenv("QDRANT_API_KEY", "")
QDRANT_COLLECTION: str = os.getenv("QDRANT_COLLECTION", "memory_concepts")
VECTOR_DIM: int = _int_env("VECTOR_DIM", 1536)

# ── Graph store (Gremlin) ────────────────────────────────────────────
GREMLIN_URL: str = os.getenv("GREMLIN_URL", "")
GREMLIN_TRAVERSAL_SOURCE: str = os.getenv("GREMLIN_TRAVERSAL_SOURCE", "g")

# ── LLM / embeddings (OpenAI-compatible endpoint) ───────────────────
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "")
LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE: float = _float_env("LLM_TEMPERATURE", 0.1)
EMBED_MODEL: str = os.getenv("EMBED_MODEL", "text-embedding-3-small")

# ── Pipeline ─────────────────────────────────────────────────────────
SHORT_TERM_CAPACITY: int = _int_env("SHORT_TERM_CAPACITY", 10)
HIGH_SIMILARITY_THRESHOLD: float = _float_env("HIGH_SIMILARITY_THRESHOLD", 0.8)
RELATED_SEARCH_LIMIT: int = _int_env("RELATED_SEARCH_LIMIT", 5)
TEMPORAL_WINDOW_DAYS: int = _int_env("TEMPORAL_WINDOW_DAYS", 1)

# ── Search / rerank ──────────────────────────────────────────────────
SEARCH_VECTOR_LIMIT: int = _int_env("SEARCH_VECTOR_LIMIT", 20)
FALLBACK_VECTOR_LIMIT: int = _int_env("FALLBACK_VECTOR_LIMIT", 30)
GRAPH_SEARCH_LIMIT: int = _int_env("GRAPH_SEARCH_LIMIT", 10)
GRAPH_ENRICH_TOP_K: int = _int_env("GRAPH_ENRICH_TOP_K", 5)
SEARCH_RESULT_LIMIT: int = _int_env("SEARCH_RESULT_LIMIT", 50)
LLM_RERANK_THRESHOLD: float = _float_env("LLM_RERANK_THRESHOLD", 0.7)
TEXT_RERANK_THRESHOLD: float = _float_env("TEXT_RERANK_THRESHOLD", 0.5)
CONCEPT_SEARCH_LIMIT: int = _int_env("CONCEPT_SEARCH_LIMIT", 20)
RELATED_MEMORY_LIMIT: int = _int_env("RELATED_MEMORY_LIMIT", 10)

# ── Record access ────────────────────────────────────────────────────
RECALL_LIMIT: int = _int_env("RECALL_LIMIT", 50)
RECENT_LIMIT: int = _int_env("RECENT_LIMIT", 10)

# ── Observability ────────────────────────────────────────────────────
OTEL_EXPORTER_OTLP_ENDPOINT: str = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")
