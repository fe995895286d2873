"""Embedding generator for the vector concept store.

Uses OpenAI (or any OpenAI-compatible endpoint, e.g. a local Ollama) to
generate vector embeddings.  Supports batching by count and retry with
exponential backoff.  Caches identical content hashes to avoid redundant
API calls.

Unlike a best-effort ingestion path, a failed embedding is never replaced
by a zero vector: a zero vector would be stored and later match nothing,
silently breaking the no-data-loss accounting of the save pipeline.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, List, Optional

from mempipe import config as cfg
from mempipe.errors import EmbeddingError

logger = logging.getLogger(__name__)

# ── In-memory embedding cache (model:content_hash → vector) ──────────
_cache: Dict[str, List[float]] = {}
_MAX_CACHE = 10_000

DEFAULT_BATCH_SIZE = 64


def _cache_key(model: str, text: str) -> str:
    return f"{model}:{hashlib.sha256(text.encode()).hexdigest()}"


class OpenAIEmbedder:
    """Batched, cached embedding client.

    Parameters
    ----------
    client:
        An ``openai.AsyncOpenAI``-shaped client.  Built lazily from
        ``OPENAI_API_KEY`` / ``OPENAI_BASE_URL`` when omitted.
    model:
        Embedding model name.
    dim:
        Expected vector dimension; responses of another size are rejected.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        model: str = cfg.EMBED_MODEL,
        dim: int = cfg.VECTOR_DIM,
        max_retries: int = 3,
        batch_size: int = DEFAULT_BATCH_SIZE,
        backoff_base: float = 1.0,
    ) -> None:
        self._client = client
        self.model = model
        self.dim = dim
        self.max_retries = max(1, max_retries)
        self.batch_size = max(1, batch_size)
        self.backoff_base = backoff_base

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=cfg.OPENAI_API_KEY or "not-needed",
                base_url=cfg.OPENAI_BASE_URL or None,
            )
        return self._client

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one embedding per text, in order.

        Raises
        ------
        EmbeddingError
            When the provider still fails after the last retry.
        """
        results: List[Optional[List[float]]] = []
        to_embed: List[tuple[int, str]] = []  # (index, text)

        for i, text in enumerate(texts):
            cached = _cache.get(_cache_key(self.model, text))
            results.append(cached)
            if cached is None:
                to_embed.append((i, text))

        for start in range(0, len(to_embed), self.batch_size):
            chunk = to_embed[start : start + self.batch_size]
            vectors = await self._embed_with_retry([t for _, t in chunk])
            if len(vectors) != len(chunk):
                raise EmbeddingError(
                    f"Provider returned {len(vectors)} embeddings for {len(chunk)} inputs"
                )
            for (orig_i, text), vec in zip(chunk, vectors):
                if self.dim and len(vec) != self.dim:
                    raise EmbeddingError(
                        f"Embedding dimension {len(vec)} does not match configured {self.dim}"
                    )
                results[orig_i] = vec
                if len(_cache) < _MAX_CACHE:
                    _cache[_cache_key(self.model, text)] = vec

        return [vec for vec in results if vec is not None]

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed([text]))[0]

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """Call the embedding API with exponential backoff."""
        client = self._get_client()
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = await client.embeddings.create(input=texts, model=self.model)
                return [item.embedding for item in response.data]
            except Exception as exc:
                last_error = exc
                if attempt + 1 >= self.max_retries:
                    break
                wait = self.backoff_base * 2**attempt
                logger.warning("Embedding attempt %d failed; retrying in %.1fs", attempt + 1, wait)
                await asyncio.sleep(wait)

        logger.error("Embedding generation failed after %d retries", self.max_retries)
        raise EmbeddingError(f"Embedding generation failed: {last_error}") from last_error


def clear_cache() -> None:
    """Clear the embedding cache (testing helper)."""
    _cache.clear()
