"""Collaborator interfaces consumed by the pipeline and search engines.

Structural typing only: the default SQLAlchemy / Qdrant / Gremlin / OpenAI
implementations live next to this module, and tests plug in in-memory
fakes with the same method shapes.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

from mempipe.models import (
    AnalysisJob,
    AnalysisResult,
    Concept,
    ConceptEntry,
    ConceptStoreResult,
    GraphNeighborhood,
    GraphNode,
    JobStatus,
    Memory,
    SearchHit,
    SignificanceVerdict,
    VectorHit,
)


class RelationalStore(Protocol):
    """Durable record storage with exact/keyword search."""

    async def save(
        self, category: str, topic: str, content: str, date: Optional[date] = None
    ) -> int: ...

    async def get_by_id(self, memory_id: int) -> Optional[Memory]: ...

    async def delete(self, memory_id: int) -> bool: ...

    async def move(self, memory_id: int, new_category: str) -> bool: ...

    async def update(
        self,
        memory_id: int,
        topic: Optional[str] = None,
        content: Optional[str] = None,
        category: Optional[str] = None,
    ) -> bool: ...

    async def list_recent(self, limit: int) -> List[Memory]: ...

    async def search_text(
        self, query: str, categories: Optional[Sequence[str]] = None
    ) -> List[Memory]: ...

    async def list_categories(self) -> Dict[str, int]: ...

    async def list_by_category(
        self, category: str, limit: Optional[int] = None, newest_first: bool = True
    ) -> List[Memory]: ...

    async def count_in_category(self, category: str) -> int: ...

    async def delete_category(self, category: str) -> int: ...


class JobStore(Protocol):
    """Persistence for batch analysis jobs."""

    async def create_job(self, memory_ids: Sequence[int]) -> AnalysisJob: ...

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]: ...

    async def update_job_status(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> None: ...

    async def update_job_progress(self, job_id: str, current: int) -> None: ...

    async def save_analysis_result(self, result: AnalysisResult) -> None: ...

    async def list_analysis_results(self, job_id: str) -> List[AnalysisResult]: ...


class VectorConceptStore(Protocol):
    """Concepts with embeddings plus denormalized source metadata."""

    async def store_concepts(
        self, memory: Memory, entries: Sequence[ConceptEntry]
    ) -> ConceptStoreResult: ...

    async def search_similar(
        self, query: str, limit: int = 20, categories: Optional[Sequence[str]] = None
    ) -> List[VectorHit]: ...


class GraphStore(Protocol):
    """Memory nodes and typed, directed relationships."""

    async def create_node(
        self, memory: Memory, concepts: Optional[Sequence[Concept]] = None
    ) -> bool: ...

    async def create_relationship(
        self, from_id: int, to_id: int, rel_type: str, properties: Dict[str, Any]
    ) -> bool: ...

    async def search_by_concepts(self, terms: Sequence[str], limit: int = 10) -> List[GraphNode]: ...

    async def search_related(
        self,
        memory_id: int,
        types: Optional[Sequence[str]] = None,
        max_depth: int = 2,
    ) -> GraphNeighborhood: ...


class SemanticAnalyzer(Protocol):
    """LLM-backed classification and significance evaluation."""

    async def extract_concepts(self, memory: Memory) -> List[Concept]: ...

    async def evaluate_significance(
        self, memory: Memory, memory_type: str
    ) -> SignificanceVerdict: ...

    async def score_relevance(self, query: str, hits: Sequence[SearchHit]) -> List[float]: ...
