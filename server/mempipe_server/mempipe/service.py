"""Composition root: wires stores, pipeline and search into one service.

``MemoryService`` is the produced interface consumed by whatever protocol
adapter exposes memory operations to a host process.  It owns one
reference on the shared relational pool between :meth:`open` and
:meth:`close`.

Usage::

    async with MemoryService.from_env() as memory:
        result = await memory.save_memory("erlebnisse", "Pairing", "...")
        hits = await memory.search_intelligent("pairing session")
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence

from mempipe import config as cfg
from mempipe.adapter.relational_store import SqlMemoryStore
from mempipe.errors import CollaboratorUnavailable, InvariantViolation, MemoryNotFound, ValidationError
from mempipe.ingestion.job_processor import JobProcessor
from mempipe.ingestion.pipeline import MemoryPipeline
from mempipe.ingestion.short_term import ShortTermBuffer
from mempipe.models import (
    KNOWN_CATEGORIES,
    SHORT_TERM_CATEGORY,
    AnalysisJob,
    AnalysisResult,
    Capabilities,
    Memory,
    MemoryDetails,
    MemoryStatus,
    PipelineResult,
    SearchHit,
    SearchResponse,
)
from mempipe.observability.health import check_backends
from mempipe.pool import PoolConfig, PoolManager
from mempipe.retrieval.search import SearchEngine

logger = logging.getLogger(__name__)


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValidationError("limit must be >= 1")


def _check_category(category: str) -> None:
    if category not in KNOWN_CATEGORIES:
        raise ValidationError(f"unknown category {category!r}")


class MemoryService:
    """Memory pipeline, search engine and short-term buffer behind one facade.

    Parameters
    ----------
    pool_manager:
        Shared pool owner; several services may share one manager.
    pool_config:
        Relational connection parameters.
    analyzer, vector, graph:
        Optional collaborators.
    """

    def __init__(
        self,
        pool_manager: Optional[PoolManager] = None,
        pool_config: Optional[PoolConfig] = None,
        *,
        analyzer: Any = None,
        vector: Any = None,
        graph: Any = None,
        short_term_capacity: int = cfg.SHORT_TERM_CAPACITY,
    ) -> None:
        self.pool_manager = pool_manager or PoolManager()
        self.pool_config = pool_config or PoolConfig()
        self.analyzer = analyzer
        self.vector = vector
        self.graph = graph
        self.capabilities = Capabilities.from_collaborators(analyzer, vector, graph)
        self.short_term_capacity = short_term_capacity

        self.relational: Optional[SqlMemoryStore] = None
        self._pipeline: Optional[MemoryPipeline] = None
        self._search: Optional[SearchEngine] = None
        self._short_term: Optional[ShortTermBuffer] = None
        self._jobs: Optional[JobProcessor] = None
        self._open_lock = asyncio.Lock()

    @classmethod
    def from_env(cls, pool_manager: Optional[PoolManager] = None) -> "MemoryService":
        """Build a service from environment variables (and ``.env``)."""
        from dotenv import load_dotenv

        load_dotenv()

        from mempipe.llm.analyzer import build_analyzer
        from mempipe.observability.tracing import init_otel

        init_otel()

        vector = None
        if cfg.QDRANT_URL:
            from mempipe.adapter.vector_store import QdrantConceptStore

            vector = QdrantConceptStore.from_config()
        else:
            logger.info("QDRANT_URL not set; vector concept store disabled.")

        graph = None
        if cfg.GREMLIN_URL:
            from mempipe.adapter.graph_store import GremlinGraphStore

            graph = GremlinGraphStore()
        else:
            logger.info("GREMLIN_URL not set; graph store disabled.")

        return cls(pool_manager, analyzer=build_analyzer(), vector=vector, graph=graph)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def open(self) -> "MemoryService":
        async with self._open_lock:
            if self.relational is None:
                await self._open_stores()
        return self

    async def _open_stores(self) -> None:
        engine = self.pool_manager.acquire(self.pool_config)
        store = SqlMemoryStore(engine)
        try:
            await store.create_schema()
        except Exception:
            await self.pool_manager.release()
            raise
        self.relational = store
        self._short_term = ShortTermBuffer(store, self.short_term_capacity)
        self._pipeline = MemoryPipeline(
            store, self.analyzer, self.vector, self.graph, short_term=self._short_term
        )
        self._search = SearchEngine(store, self.vector, self.graph, self.analyzer)
        if self.analyzer is not None:
            self._jobs = JobProcessor(store, store, self.analyzer)
        logger.info("MemoryService opened (%s)", self.capabilities)

    async def close(self) -> None:
        if self.relational is None:
            return
        self.relational = None
        self._pipeline = self._search = self._short_term = self._jobs = None
        await self.pool_manager.release()
        if self.vector is not None and hasattr(self.vector, "close"):
            await self.vector.close()
        if self.graph is not None and hasattr(self.graph, "close"):
            await asyncio.to_thread(self.graph.close)
        logger.info("MemoryService closed")

    async def __aenter__(self) -> "MemoryService":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require_open(self) -> None:
        if self.relational is None:
            raise InvariantViolation("MemoryService is not open")

    # ── Save path ─────────────────────────────────────────────────────

    async def save_memory(
        self,
        category: str,
        topic: str,
        content: str,
        *,
        date: Optional[dt.date] = None,
        relationships: Optional[Sequence[Any]] = None,
    ) -> PipelineResult:
        self._require_open()
        return await self._pipeline.save(
            category, topic, content, date=date, relationships=relationships
        )

    # ── Read path ─────────────────────────────────────────────────────

    async def search(self, query: str, categories: Optional[Sequence[str]] = None, **kwargs: Any) -> SearchResponse:
        self._require_open()
        return await self._search.search(query, categories, **kwargs)

    async def search_intelligent(self, query: str, categories: Optional[Sequence[str]] = None) -> SearchResponse:
        self._require_open()
        return await self._search.search_intelligent(query, categories)

    async def search_with_graph(
        self, query: str, categories: Optional[Sequence[str]] = None, **kwargs: Any
    ) -> SearchResponse:
        self._require_open()
        return await self._search.search_with_graph(query, categories, **kwargs)

    async def list_categories(self) -> Dict[str, int]:
        self._require_open()
        return await self.relational.list_categories()

    async def search_concepts_only(
        self,
        query: str,
        categories: Optional[Sequence[str]] = None,
        limit: int = cfg.CONCEPT_SEARCH_LIMIT,
    ) -> List[SearchHit]:
        self._require_open()
        return await self._search.search_concepts(query, categories, limit)

    async def retrieve_memory_advanced(self, memory_id: int) -> MemoryDetails:
        self._require_open()
        return await self._search.retrieve_memory(memory_id)

    async def recall_category(self, category: str, limit: int = cfg.RECALL_LIMIT) -> List[Memory]:
        """Newest-first records of one category."""
        self._require_open()
        if not category or not category.strip():
            raise ValidationError("category must not be empty")
        _check_limit(limit)
        return await self.relational.list_by_category(category.strip(), limit)

    async def get_recent_memories(self, limit: int = cfg.RECENT_LIMIT) -> List[Memory]:
        self._require_open()
        _check_limit(limit)
        return await self.relational.list_recent(limit)

    @property
    def short_term(self) -> ShortTermBuffer:
        self._require_open()
        return self._short_term

    # ── Record maintenance ────────────────────────────────────────────

    async def update_memory(
        self,
        memory_id: int,
        *,
        topic: Optional[str] = None,
        content: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Memory:
        """Edit a record in place and return it.

        Only the relational record changes; concepts and graph nodes keep
        the text they were created from.
        """
        self._require_open()
        if topic is None and content is None and category is None:
            raise ValidationError("no updates specified")
        for name, value in (("topic", topic), ("content", content)):
            if value is not None and not value.strip():
                raise ValidationError(f"{name} must not be empty")
        if category is not None:
            _check_category(category)
        if not await self.relational.update(memory_id, topic, content, category):
            raise MemoryNotFound(memory_id)
        logger.info("Memory %s updated", memory_id)
        return await self._reload(memory_id)

    async def move_memory(self, memory_id: int, new_category: str) -> Memory:
        self._require_open()
        _check_category(new_category)
        if not await self.relational.move(memory_id, new_category):
            raise MemoryNotFound(memory_id)
        logger.info("Memory %s moved to %s", memory_id, new_category)
        return await self._reload(memory_id)

    async def _reload(self, memory_id: int) -> Memory:
        memory = await self.relational.get_by_id(memory_id)
        if memory is None:
            raise MemoryNotFound(memory_id)
        return memory

    async def memory_status(self) -> MemoryStatus:
        self._require_open()
        categories = await self.relational.list_categories()
        return MemoryStatus(
            categories=categories,
            short_term_count=categories.get(SHORT_TERM_CATEGORY, 0),
            short_term_capacity=self._short_term.capacity,
            capabilities=self.capabilities,
            pool=self.pool_manager.status(),
        )

    # ── Batch analysis ────────────────────────────────────────────────

    def _job_processor(self) -> JobProcessor:
        self._require_open()
        if self._jobs is None:
            raise CollaboratorUnavailable("semantic analyzer")
        return self._jobs

    async def create_analysis_job(self, memory_ids: Sequence[int]) -> AnalysisJob:
        return await self._job_processor().create_job(memory_ids)

    async def process_analysis_job(self, job_id: str) -> AnalysisJob:
        return await self._job_processor().process(job_id)

    async def analysis_results(self, job_id: str) -> List[AnalysisResult]:
        self._require_open()
        return await self.relational.list_analysis_results(job_id)

    async def health(self) -> Dict[str, Dict[str, Any]]:
        return await check_backends(self.relational, self.graph)
