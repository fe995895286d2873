"""Qdrant-backed vector concept store.

Each extracted concept becomes one point.  The payload carries the
concept text plus the denormalized source-memory metadata, which is what
lets search reconstruct a memory whose relational row has been removed.

Point ids are UUIDv5 of the concept entry id, so re-storing the same
concept overwrites instead of duplicating.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from mempipe import config as cfg
from mempipe.errors import StoreError
from mempipe.ingestion.embedder import OpenAIEmbedder
from mempipe.models import ConceptEntry, ConceptStoreResult, Memory, VectorHit

logger = logging.getLogger(__name__)

_POINT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "mempipe/concepts")


def point_id(entry_id: str) -> str:
    """Deterministic Qdrant point id for a concept entry id."""
    return str(uuid.uuid5(_POINT_NAMESPACE, entry_id))


def entry_text(entry: ConceptEntry) -> str:
    """Text that gets embedded and returned as the hit content."""
    if entry.description and entry.title:
        return f"{entry.title}: {entry.description}"
    return entry.description or entry.title


def build_payload(entry: ConceptEntry) -> Dict[str, Any]:
    payload = dict(entry.metadata)
    payload["concept_id"] = entry.id
    payload["content"] = entry_text(entry)
    return payload


class QdrantConceptStore:
    """``VectorConceptStore`` over ``qdrant_client.AsyncQdrantClient``.

    Parameters
    ----------
    client:
        An ``AsyncQdrantClient``.
    embedder:
        Produces query and concept vectors; defaults to :class:`OpenAIEmbedder`.
    collection:
        Collection name (``QDRANT_COLLECTION``).
    """

    def __init__(
        self,
        client: Any,
        embedder: Optional[OpenAIEmbedder] = None,
        *,
        collection: str = cfg.QDRANT_COLLECTION,
        dim: int = cfg.VECTOR_DIM,
    ) -> None:
        self._client = client
        self._embedder = embedder or OpenAIEmbedder(dim=dim)
        self.collection = collection
        self.dim = dim

    @classmethod
    def from_config(cls, embedder: Optional[OpenAIEmbedder] = None) -> "QdrantConceptStore":
        from qdrant_client import AsyncQdrantClient

        client = AsyncQdrantClient(url=cfg.QDRANT_URL, api_key=cfg.QDRANT_API_KEY or None)
        return cls(client, embedder)

    async def ensure_collection(self) -> None:
        """Create the collection and its category index if missing."""
        from qdrant_client.models import Distance, PayloadSchemaType, VectorParams

        if await self._client.collection_exists(self.collection):
            logger.info("Qdrant collection '%s' already exists", self.collection)
            return

        logger.info("Creating Qdrant collection '%s' with %dd vectors", self.collection, self.dim)
        await self._client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.dim, distance=Distance.COSINE),
        )
        await self._client.create_payload_index(
            collection_name=self.collection,
            field_name="source_category",
            field_schema=PayloadSchemaType.KEYWORD,
        )

    async def close(self) -> None:
        await self._client.close()

    async def store_concepts(
        self, memory: Memory, entries: Sequence[ConceptEntry]
    ) -> ConceptStoreResult:
        """Embed and upsert *entries*; raises on embedding or store failure."""
        from qdrant_client.models import PointStruct

        if not entries:
            return ConceptStoreResult()

        vectors = await self._embedder.embed([entry_text(e) for e in entries])
        points = [
            PointStruct(id=point_id(entry.id), vector=vector, payload=build_payload(entry))
            for entry, vector in zip(entries, vectors)
        ]
        try:
            await self._client.upsert(collection_name=self.collection, points=points, wait=True)
        except Exception as exc:
            raise StoreError(f"Qdrant upsert failed for memory {memory.id}: {exc}") from exc

        logger.debug("Stored %d concept point(s) for memory %s", len(points), memory.id)
        return ConceptStoreResult(stored_count=len(points))

    async def search_similar(
        self, query: str, limit: int = 20, categories: Optional[Sequence[str]] = None
    ) -> List[VectorHit]:
        from qdrant_client.models import FieldCondition, Filter, MatchAny

        vector = await self._embedder.embed_one(query)
        query_filter = None
        if categories:
            query_filter = Filter(
                must=[FieldCondition(key="source_category", match=MatchAny(any=list(categories)))]
            )

        try:
            response = await self._client.query_points(
                collection_name=self.collection,
                query=vector,
                limit=limit,
                query_filter=query_filter,
                with_payload=True,
            )
        except Exception as exc:
            raise StoreError(f"Qdrant query failed: {exc}") from exc

        hits: List[VectorHit] = []
        for point in response.points:
            payload = point.payload or {}
            hits.append(
                VectorHit.from_payload(
                    concept_id=str(payload.get("concept_id") or point.id),
                    content=str(payload.get("content") or ""),
                    similarity=point.score,
                    payload=payload,
                )
            )
        return hits
