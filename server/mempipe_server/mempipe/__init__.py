"""Multi-store memory pipeline.

SAVE path: every memory is written to the relational store first, then
    analyzed into concepts (vector store), judged for significance, either
    retained or demoted to the short-term ring buffer, and linked into the
    relationship graph.  Any collaborator failure falls back to keeping the
    relational row.
READ path: relational, vector and graph search fan out concurrently,
    merge by memory id and rerank (text / hybrid / llm).  Records can also
    be recalled by category or recency, edited, moved, and retrieved with
    their related concepts and graph neighbours.
"""

from mempipe.models import Memory, MemoryDetails, MemoryStatus, PipelineResult, SearchHit, SearchResponse
from mempipe.pool import PoolConfig, PoolManager
from mempipe.service import MemoryService

__all__ = [
    "Memory",
    "MemoryDetails",
    "MemoryStatus",
    "PipelineResult",
    "SearchHit",
    "SearchResponse",
    "PoolConfig",
    "PoolManager",
    "MemoryService",
]
