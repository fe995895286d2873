"""Multi-source search over the relational, vector and graph stores.

Entry points
------------
``search``             relational + vector, caller-chosen rerank strategy
``search_intelligent`` adaptive strategy, vector-only fallback on an empty
                       relational result
``search_with_graph``  adds graph concept search and related-memory
                       enrichment, reranked with the traversed edges
``search_concepts``    vector store only, one reconstructed hit per concept
``retrieve_memory``    one record with its related concepts and memories

Sources are queried concurrently with settle-all semantics; a failing
source contributes no hits and is counted in ``search_source_failures``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from mempipe import config as cfg
from mempipe.adapter.protocols import GraphStore, RelationalStore, SemanticAnalyzer, VectorConceptStore
from mempipe.errors import CollaboratorUnavailable, MemoryNotFound, ValidationError
from mempipe.models import (
    Capabilities,
    GraphEdge,
    GraphNeighborhood,
    Memory,
    MemoryDetails,
    Provenance,
    RelationshipType,
    SearchHit,
    SearchResponse,
    VectorHit,
)
from mempipe.observability.tracing import record_metric
from mempipe.retrieval import merge as mg
from mempipe.retrieval import rerank as rr
from mempipe.settle import gather_settled

logger = logging.getLogger(__name__)

# Relationship types the save pipeline creates; used for enrichment by default.
DEFAULT_RELATED_TYPES = tuple(t.value for t in RelationshipType)


def _validate_query(query: Any) -> str:
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("search query must be a non-empty string")
    return query.strip()


class SearchEngine:
    """Read path across every configured store.

    Parameters
    ----------
    relational:
        Required relational store.
    vector, graph, analyzer:
        Optional collaborators; their sources / strategies are skipped when
        absent.
    """

    def __init__(
        self,
        relational: RelationalStore,
        vector: Optional[VectorConceptStore] = None,
        graph: Optional[GraphStore] = None,
        analyzer: Optional[SemanticAnalyzer] = None,
        *,
        vector_limit: int = cfg.SEARCH_VECTOR_LIMIT,
        fallback_limit: int = cfg.FALLBACK_VECTOR_LIMIT,
        graph_limit: int = cfg.GRAPH_SEARCH_LIMIT,
        enrich_top_k: int = cfg.GRAPH_ENRICH_TOP_K,
        result_limit: int = cfg.SEARCH_RESULT_LIMIT,
    ) -> None:
        self.relational = relational
        self.vector = vector
        self.graph = graph
        self.analyzer = analyzer
        self.capabilities = Capabilities.from_collaborators(analyzer, vector, graph)
        self.vector_limit = vector_limit
        self.fallback_limit = fallback_limit
        self.graph_limit = graph_limit
        self.enrich_top_k = enrich_top_k
        self.result_limit = result_limit

    # ── Entry points ──────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        categories: Optional[Sequence[str]] = None,
        *,
        strategy: str = rr.HYBRID,
        rerank: bool = True,
    ) -> SearchResponse:
        """Relational + vector search with a caller-chosen rerank strategy."""
        query = _validate_query(query)
        if strategy not in rr.STRATEGIES:
            raise ValidationError(f"unknown rerank strategy {strategy!r}")
        started = time.perf_counter()

        memories, vector_hits, _ = await self._query_sources(query, categories)
        hits = self._combine(query, memories, vector_hits)
        response = SearchResponse(query=query, counts=self._counts(memories, vector_hits))
        return await self._finish(response, hits, strategy if rerank else None, started)

    async def search_intelligent(
        self,
        query: str,
        categories: Optional[Sequence[str]] = None,
    ) -> SearchResponse:
        """Adaptive search; broadens to a vector-only pass when relational is empty."""
        query = _validate_query(query)
        started = time.perf_counter()

        memories, vector_hits, _ = await self._query_sources(query, categories)
        response = SearchResponse(query=query, counts=self._counts(memories, vector_hits))

        if not memories and self.capabilities.vector:
            logger.info("No relational hits for %r; broadening to vector-only reconstruction", query)
            record_metric("search_vector_only_fallback_count")
            broadened = await self._vector_only(query, categories)
            if broadened is not None:
                vector_hits = broadened
                response.counts["vector"] = len(broadened)
            response.search_strategy = "vector_only"

        hits = self._combine(query, memories, vector_hits)
        strategy = rr.select_strategy(hits, self.capabilities.analyzer)
        return await self._finish(response, hits, strategy, started)

    async def search_with_graph(
        self,
        query: str,
        categories: Optional[Sequence[str]] = None,
        *,
        include_related: bool = True,
        max_depth: int = 2,
        relationship_types: Optional[Sequence[str]] = DEFAULT_RELATED_TYPES,
        strategy: str = rr.HYBRID,
    ) -> SearchResponse:
        """Relational + vector + graph search with related-memory enrichment."""
        query = _validate_query(query)
        if max_depth < 0:
            raise ValidationError("max_depth must be >= 0")
        if strategy not in rr.STRATEGIES:
            raise ValidationError(f"unknown rerank strategy {strategy!r}")
        started = time.perf_counter()

        memories, vector_hits, graph_nodes = await self._query_sources(query, categories, with_graph=True)
        hits = mg.merge(
            self._combine(query, memories, vector_hits),
            [mg.from_graph(node) for node in graph_nodes],
        )
        counts = self._counts(memories, vector_hits)
        counts["graph"] = len(graph_nodes)
        response = SearchResponse(query=query, counts=counts)

        edges: List[GraphEdge] = []
        related = 0
        if include_related and max_depth > 0 and self.capabilities.graph and hits:
            hits, edges, related = await self._enrich(hits, relationship_types, max_depth)
        response.relationships = edges
        response.graph_context = {
            "related_memories": related,
            "relationship_depth": max_depth,
            "relationship_types": sorted({e.type for e in edges}),
            "edges_traversed": len(edges),
        }
        return await self._finish(response, hits, strategy, started, edges=edges)

    async def search_concepts(
        self,
        query: str,
        categories: Optional[Sequence[str]] = None,
        limit: int = cfg.CONCEPT_SEARCH_LIMIT,
    ) -> List[SearchHit]:
        """Vector-only search; hits are not merged, so one memory may appear per concept."""
        query = _validate_query(query)
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        if not self.capabilities.vector:
            raise CollaboratorUnavailable("vector concept store")

        try:
            vector_hits = await self.vector.search_similar(query, limit, categories)
        except Exception:
            record_metric("search_source_failures")
            logger.exception("Concept search failed for %r", query)
            return []
        record_metric("search_concepts_count")
        hits = [mg.from_vector(h) for h in vector_hits]
        return sorted(hits, key=lambda h: (-h.similarity, h.concept_id or ""))[:limit]

    async def retrieve_memory(
        self,
        memory_id: int,
        *,
        related_limit: int = cfg.RELATED_MEMORY_LIMIT,
        max_depth: int = 1,
    ) -> MemoryDetails:
        """Load one record and collect what the vector and graph stores relate to it.

        Raises
        ------
        MemoryNotFound
            When *memory_id* has no relational record.
        """
        memory = await self.relational.get_by_id(memory_id)
        if memory is None:
            raise MemoryNotFound(memory_id)
        details = MemoryDetails(memory=memory)

        sources: List[Tuple[str, Awaitable[Any]]] = []
        if self.capabilities.vector:
            sources.append(("vector", self.vector.search_similar(f"{memory.topic} {memory.content}", self.vector_limit)))
        if self.capabilities.graph and max_depth > 0:
            sources.append(("graph", self.graph.search_related(memory_id, None, max_depth)))
        outcomes = await gather_settled(*(aw for _, aw in sources))

        for (name, _), outcome in zip(sources, outcomes):
            if not outcome.ok:
                record_metric("search_source_failures")
                logger.warning("%s lookup for memory %s failed: %s", name.capitalize(), memory_id, outcome.error)
            elif name == "vector":
                details.related_concepts = list(outcome.value or [])
            else:
                details.graph = outcome.value or GraphNeighborhood()

        related = await self._related_from_concepts(memory_id, details.related_concepts, related_limit)
        neighbours = [mg.from_graph(n, enhanced=True) for n in details.graph.nodes if n.memory_id != memory_id]
        details.related_memories = mg.merge(related, neighbours)
        return details

    async def _related_from_concepts(
        self, memory_id: int, concepts: Sequence[VectorHit], limit: int
    ) -> List[SearchHit]:
        best: Dict[int, VectorHit] = {}
        for hit in concepts:
            source_id = hit.source_memory_id
            if source_id is None or source_id == memory_id:
                continue
            if source_id not in best or hit.similarity > best[source_id].similarity:
                best[source_id] = hit
        ranked = sorted(best.values(), key=lambda h: (-h.similarity, h.source_memory_id))[:limit]

        records = await gather_settled(*(self.relational.get_by_id(h.source_memory_id) for h in ranked))
        related = []
        for hit, outcome in zip(ranked, records):
            search_hit = mg.from_vector(hit)
            # Concept-only memories have no record left; keep the reconstruction.
            if outcome.ok and outcome.value is not None:
                search_hit.memory = outcome.value
                search_hit.provenance |= Provenance.RELATIONAL
                search_hit.reconstructed = False
            related.append(search_hit)
        return related

    # ── Source fan-out ────────────────────────────────────────────────

    async def _query_sources(
        self,
        query: str,
        categories: Optional[Sequence[str]],
        *,
        with_graph: bool = False,
    ) -> Tuple[List[Memory], List[VectorHit], list]:
        sources: List[Tuple[str, Awaitable[Any]]] = [
            ("relational", self.relational.search_text(query, categories)),
        ]
        if self.capabilities.vector:
            sources.append(("vector", self.vector.search_similar(query, self.vector_limit, categories)))
        if with_graph and self.capabilities.graph:
            sources.append(("graph", self.graph.search_by_concepts(mg.query_terms(query), self.graph_limit)))

        outcomes = await gather_settled(*(aw for _, aw in sources))
        results: Dict[str, list] = {"relational": [], "vector": [], "graph": []}
        for (name, _), outcome in zip(sources, outcomes):
            if outcome.ok:
                results[name] = list(outcome.value or [])
            else:
                record_metric("search_source_failures")
                logger.warning("%s search failed: %s", name.capitalize(), outcome.error)
        return results["relational"], results["vector"], results["graph"]

    async def _vector_only(self, query: str, categories: Optional[Sequence[str]]) -> Optional[List[VectorHit]]:
        try:
            return await self.vector.search_similar(query, self.fallback_limit, categories)
        except Exception:
            record_metric("search_source_failures")
            logger.exception("Broadened vector search failed")
            return None

    def _combine(self, query: str, memories: Sequence[Memory], vector_hits: Sequence[VectorHit]) -> List[SearchHit]:
        terms = mg.query_terms(query)
        return mg.merge(
            [mg.from_relational(m, terms) for m in memories],
            [mg.from_vector(h) for h in vector_hits],
        )

    @staticmethod
    def _counts(memories: Sequence[Memory], vector_hits: Sequence[VectorHit]) -> Dict[str, int]:
        return {"relational": len(memories), "vector": len(vector_hits)}

    # ── Graph enrichment ──────────────────────────────────────────────

    async def _enrich(
        self,
        hits: List[SearchHit],
        relationship_types: Optional[Sequence[str]],
        max_depth: int,
    ) -> Tuple[List[SearchHit], List[GraphEdge], int]:
        seeds = mg.memory_ids(rr.order_by_score(hits))[: self.enrich_top_k]
        types = list(relationship_types) if relationship_types else None
        outcomes = await gather_settled(
            *(self.graph.search_related(seed, types, max_depth) for seed in seeds)
        )

        related_hits: List[SearchHit] = []
        edges: List[GraphEdge] = []
        seen_edges = set()
        for seed, outcome in zip(seeds, outcomes):
            if not outcome.ok:
                record_metric("search_source_failures")
                logger.warning("Related-memory lookup for %s failed: %s", seed, outcome.error)
                continue
            neighborhood = outcome.value
            related_hits.extend(mg.from_graph(node, enhanced=True) for node in neighborhood.nodes)
            for edge in neighborhood.edges:
                key = (edge.from_id, edge.to_id, edge.type)
                if key not in seen_edges:
                    seen_edges.add(key)
                    edges.append(edge)

        base_keys = {h.key for h in hits}
        related = len({h.key for h in related_hits} - base_keys)
        return mg.merge(hits, related_hits), edges, related

    # ── Rerank & response ─────────────────────────────────────────────

    async def _finish(
        self,
        response: SearchResponse,
        hits: List[SearchHit],
        strategy: Optional[str],
        started: float,
        *,
        edges: Sequence[GraphEdge] = (),
    ) -> SearchResponse:
        if strategy is not None and hits:
            hits, applied = await rr.rerank(
                response.query, hits, strategy, analyzer=self.analyzer, edges=edges
            )
            response.reranked = True
            response.rerank_strategy = applied
        else:
            hits = rr.order_by_score(hits)

        response.results = hits[: self.result_limit]
        response.elapsed_ms = (time.perf_counter() - started) * 1000
        record_metric("search_count")
        record_metric("search_latency_ms_total", response.elapsed_ms)
        logger.info(
            "Search %r: %d result(s) (%s) strategy=%s rerank=%s in %.1fms",
            response.query,
            response.total_found,
            response.counts,
            response.search_strategy,
            response.rerank_strategy,
            response.elapsed_ms,
        )
        return response
