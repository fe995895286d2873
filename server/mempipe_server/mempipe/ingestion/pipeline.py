"""Memory save pipeline.

One call to :meth:`MemoryPipeline.save` runs these phases strictly in order:

0. normalize the category (unknown -> pending sentinel)
1. provisional relational write, to obtain the memory id
2. concept extraction by the semantic analyzer
3. concurrent per-concept writes to the vector concept store (settle-all)
4. type resolution from the first concept, then 4.1 category backfill
5. retention decision (concept-only types are never retained)
6. relational disposition: delete only when not retained AND the concepts
   are durably stored in the vector store
7. short-term admission for non-retained, non-concept-only memories
8. graph node + relationships

Collaborator failures never escape a phase: they end the call with a
fallback result that keeps the relational record, or they are noted in
``PipelineResult.reason`` and the pipeline moves on.  Only
``ValidationError`` (before phase 1) and ``InvariantViolation`` (phase 2)
reach the caller.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator

from mempipe import config as cfg
from mempipe.adapter.protocols import GraphStore, RelationalStore, SemanticAnalyzer, VectorConceptStore
from mempipe.errors import InvariantViolation, ValidationError
from mempipe.ingestion import relationships as rel
from mempipe.ingestion.short_term import ShortTermBuffer
from mempipe.models import (
    ANALYSIS_TYPES,
    CONCEPT_ONLY_TYPES,
    PENDING_CATEGORY,
    Capabilities,
    Concept,
    ConceptEntry,
    Memory,
    PipelineResult,
    Relationship,
    normalize_category,
)
from mempipe.observability.tracing import log_with_context, record_metric
from mempipe.settle import gather_settled

logger = logging.getLogger(__name__)


class SaveRequest(BaseModel):
    category: str
    topic: str
    content: str
    day: Optional[dt.date] = None

    @field_validator("category", "topic", "content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("category")
    @classmethod
    def _strip_category(cls, value: str) -> str:
        return value.strip()


def validate_request(category: Any, topic: Any, content: Any, day: Any = None) -> SaveRequest:
    try:
        return SaveRequest(category=category, topic=topic, content=content, day=day)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid save request: {exc}") from exc


class MemoryPipeline:
    """Routes a new memory across the relational, vector and graph stores.

    Parameters
    ----------
    relational:
        Required relational store.
    analyzer, vector, graph:
        Optional collaborators; the phases that need them are skipped when
        absent.
    short_term:
        Ring buffer for non-retained memories; built on *relational* when
        omitted.
    """

    def __init__(
        self,
        relational: RelationalStore,
        analyzer: Optional[SemanticAnalyzer] = None,
        vector: Optional[VectorConceptStore] = None,
        graph: Optional[GraphStore] = None,
        short_term: Optional[ShortTermBuffer] = None,
        *,
        high_similarity: float = cfg.HIGH_SIMILARITY_THRESHOLD,
        related_limit: int = cfg.RELATED_SEARCH_LIMIT,
        window_days: int = cfg.TEMPORAL_WINDOW_DAYS,
    ) -> None:
        self.relational = relational
        self.analyzer = analyzer
        self.vector = vector
        self.graph = graph
        self.short_term = short_term or ShortTermBuffer(relational)
        self.capabilities = Capabilities.from_collaborators(analyzer, vector, graph)
        self.high_similarity = high_similarity
        self.related_limit = related_limit
        self.window_days = window_days

    async def save(
        self,
        category: str,
        topic: str,
        content: str,
        *,
        date: Optional[dt.date] = None,
        relationships: Optional[Sequence[Any]] = None,
    ) -> PipelineResult:
        """Run phases 0-8 for one memory and return the composite outcome."""
        request = validate_request(category, topic, content, date)
        specs = rel.coerce_specs(relationships)
        started = time.perf_counter()
        record_metric("pipeline_save_count")
        try:
            return await self._run(request, specs)
        finally:
            record_metric("pipeline_latency_ms_total", (time.perf_counter() - started) * 1000)

    async def _run(self, request: SaveRequest, specs: List[rel.RelationshipSpec]) -> PipelineResult:
        # ── Phase 0: category normalization ──
        category = normalize_category(request.category)
        pending = category == PENDING_CATEGORY
        if pending:
            logger.warning("Unknown category %r; deferring to semantic analysis", request.category)
        result = PipelineResult(category=category)
        notes: List[str] = []

        # ── Phase 1: provisional persistence ──
        try:
            memory_id = await self.relational.save(category, request.topic, request.content, request.day)
        except Exception as exc:
            logger.exception("Provisional relational save failed")
            result.error = f"relational save failed: {exc}"
            result.reason = "memory not stored"
            return result
        result.memory_id = memory_id
        result.stored_in_relational = True
        log_with_context(logging.INFO, "Provisional record saved", memory_id=memory_id, phase="1", category=category)

        # ── Phase 2: concept extraction ──
        try:
            memory = await self.relational.get_by_id(memory_id)
        except Exception as exc:
            logger.exception("Re-reading memory %s failed", memory_id)
            return self._fallback(result, f"could not re-read record: {exc}")
        if memory is None:
            raise InvariantViolation(f"memory {memory_id} vanished right after it was saved")

        if not self.capabilities.analyzer:
            return self._fallback(result, "semantic analyzer not configured")
        try:
            concepts = await self.analyzer.extract_concepts(memory)
        except Exception as exc:
            logger.exception("Concept extraction failed for memory %s", memory_id)
            return self._fallback(result, f"concept extraction failed: {exc}")
        log_with_context(logging.INFO, "Concepts extracted", memory_id=memory_id, phase="2", count=len(concepts))

        # ── Phase 3: concept fan-out ──
        memory_type = concepts[0].memory_type if concepts else None
        if self.capabilities.vector and concepts:
            await self._store_concepts(memory, concepts, memory_type, result, notes)
        elif not self.capabilities.vector:
            notes.append("vector store not configured")

        # ── Phase 4: type resolution ──
        if memory_type not in ANALYSIS_TYPES:
            return self._fallback(
                result,
                f"could not determine memory type (got {memory_type!r})",
                notes,
            )

        # ── Phase 4.1: category backfill ──
        if pending:
            await self._backfill_category(memory, memory_type, notes)
        result.category = memory.category if not memory.is_pending else memory_type

        # ── Phase 5: retention decision ──
        retained, reason = await self._decide_retention(memory, memory_type)
        notes.insert(0, reason)

        # ── Phase 6: relational disposition ──
        if not retained:
            if result.stored_in_vector:
                await self._delete_provisional(memory_id, result, notes)
            else:
                record_metric("pipeline_fallback_keep_count")
                notes.append("kept in relational store as fallback because concept storage failed")
                logger.warning("Memory %s kept in relational store: no concept was stored", memory_id)

        # ── Phase 7: short-term admission ──
        if not retained and memory_type not in CONCEPT_ONLY_TYPES:
            await self._admit_short_term(memory, result, notes)

        # ── Phase 8: graph integration ──
        if self.capabilities.graph:
            await self._integrate_graph(memory, concepts, specs, result, notes)

        result.reason = "; ".join(n for n in notes if n)
        log_with_context(
            logging.INFO,
            "Pipeline completed",
            memory_id=memory_id,
            phase="8",
            memory_type=memory_type,
            retained=retained,
            relational=result.stored_in_relational,
            vector=result.stored_in_vector,
            graph=result.stored_in_graph,
            short_term=result.stored_in_short_term,
        )
        return result

    # ── Phase helpers ─────────────────────────────────────────────────

    def _fallback(self, result: PipelineResult, reason: str, notes: Sequence[str] = ()) -> PipelineResult:
        """Terminate early; the provisional record stays where it is."""
        record_metric("pipeline_fallback_keep_count")
        result.reason = "; ".join([f"kept in relational store as fallback: {reason}", *notes])
        log_with_context(logging.WARNING, "Pipeline fallback", memory_id=result.memory_id, phase="fallback", reason=reason)
        return result

    async def _store_concepts(
        self,
        memory: Memory,
        concepts: Sequence[Concept],
        memory_type: Optional[str],
        result: PipelineResult,
        notes: List[str],
    ) -> None:
        source = memory
        if memory.is_pending and memory_type in ANALYSIS_TYPES:
            # Concept metadata carries the category the record is about to get.
            source = Memory(
                id=memory.id,
                category=memory_type,
                topic=memory.topic,
                content=memory.content,
                date=memory.date,
                created_at=memory.created_at,
                updated_at=memory.updated_at,
            )
        entries = [ConceptEntry.from_concept(source, c, i) for i, c in enumerate(concepts, start=1)]
        outcomes = await gather_settled(*(self.vector.store_concepts(source, [e]) for e in entries))

        stored = 0
        errors: List[str] = []
        for index, outcome in enumerate(outcomes, start=1):
            if outcome.ok and outcome.value.stored_count > 0:
                stored += outcome.value.stored_count
                continue
            detail = str(outcome.error) if not outcome.ok else ", ".join(outcome.value.errors) or "nothing stored"
            errors.append(f"concept {index}: {detail}")
            logger.warning("Concept %d of memory %s not stored: %s", index, memory.id, detail)

        result.concepts_stored = stored
        result.stored_in_vector = stored > 0
        record_metric("pipeline_concepts_stored", stored)
        if errors:
            record_metric("pipeline_concept_failures", len(errors))
            notes.append("concept storage errors: " + "; ".join(errors))
        log_with_context(logging.INFO, "Concepts stored", memory_id=memory.id, phase="3", stored=stored, failed=len(errors))

    async def _backfill_category(self, memory: Memory, memory_type: str, notes: List[str]) -> None:
        try:
            moved = await self.relational.move(memory.id, memory_type)
        except Exception as exc:
            logger.exception("Category backfill failed for memory %s", memory.id)
            notes.append(f"category backfill failed: {exc}")
            return
        if not moved:
            logger.warning("Category backfill had no effect for memory %s", memory.id)
            notes.append("category backfill had no effect")
            return
        memory.category = memory_type
        logger.info("Memory %s category resolved to %s", memory.id, memory_type)

    async def _decide_retention(self, memory: Memory, memory_type: str) -> tuple[bool, str]:
        if memory_type in CONCEPT_ONLY_TYPES:
            return False, f"{memory_type} lives in the vector concept store only"
        try:
            verdict = await self.analyzer.evaluate_significance(memory, memory_type)
        except Exception as exc:
            logger.exception("Significance evaluation failed for memory %s", memory.id)
            return True, f"retained: significance evaluation failed ({exc})"
        label = "significant" if verdict.significant else "not significant"
        return verdict.significant, f"{label}: {verdict.reason}"

    async def _delete_provisional(self, memory_id: int, result: PipelineResult, notes: List[str]) -> None:
        try:
            deleted = await self.relational.delete(memory_id)
        except Exception as exc:
            logger.exception("Deleting provisional record %s failed", memory_id)
            notes.append(f"provisional record kept, delete failed: {exc}")
            return
        if deleted:
            result.stored_in_relational = False
            record_metric("pipeline_relational_delete_count")
        else:
            notes.append("provisional record was already gone")
            result.stored_in_relational = False

    async def _admit_short_term(self, memory: Memory, result: PipelineResult, notes: List[str]) -> None:
        try:
            await self.short_term.admit(memory.topic, memory.content, memory.date)
        except Exception as exc:
            logger.exception("Short-term admission failed for memory %s", memory.id)
            notes.append(f"short-term admission failed: {exc}")
            return
        result.stored_in_short_term = True
        record_metric("pipeline_short_term_admissions")

    async def _integrate_graph(
        self,
        memory: Memory,
        concepts: Sequence[Concept],
        specs: Sequence[rel.RelationshipSpec],
        result: PipelineResult,
        notes: List[str],
    ) -> None:
        try:
            result.stored_in_graph = bool(await self.graph.create_node(memory, concepts))
        except Exception as exc:
            logger.exception("Graph node creation failed for memory %s", memory.id)
            notes.append(f"graph node not created: {exc}")
            return
        if not result.stored_in_graph:
            notes.append("graph node not created")
            return

        if specs:
            candidates = rel.from_specs(memory.id, specs)
        else:
            candidates = await self._detect_relationships(memory, len(concepts))

        created = 0
        for relationship in candidates:
            try:
                if await self.graph.create_relationship(
                    relationship.from_id, relationship.to_id, relationship.type, relationship.properties
                ):
                    created += 1
            except Exception:
                logger.exception(
                    "Relationship %s -> %s (%s) failed", relationship.from_id, relationship.to_id, relationship.type
                )
        result.relationships_created = created
        record_metric("pipeline_graph_relationships", created)
        log_with_context(logging.INFO, "Graph integrated", memory_id=memory.id, phase="8", relationships=created)

    async def _detect_relationships(self, memory: Memory, own_concepts: int) -> List[Relationship]:
        if not self.capabilities.vector or memory.is_pending:
            return []
        try:
            hits = await self.vector.search_similar(
                f"{memory.topic} {memory.content}",
                limit=self.related_limit + own_concepts,
                categories=[memory.category],
            )
        except Exception:
            logger.exception("Related-memory search failed for memory %s", memory.id)
            return []
        found = rel.detect(memory, hits, high_similarity=self.high_similarity, window_days=self.window_days)
        return found[: self.related_limit]
