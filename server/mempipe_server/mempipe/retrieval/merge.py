"""Convert per-store results into ``SearchHit``s and merge them.

Every store DTO is turned into the one tagged ``SearchHit`` shape here, at
the boundary, so rerankers never look at store-specific payloads.  Merging
is keyed by memory id: a memory found by several sources appears once,
with the union of their provenance and the maximum of their scores.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

from mempipe.models import (
    GraphNode,
    Memory,
    Provenance,
    SearchHit,
    VectorHit,
    parse_date,
    parse_datetime,
)

MIN_TERM_LENGTH = 3
TOPIC_WEIGHT = 3
CONTENT_WEIGHT = 1


def query_terms(query: str) -> List[str]:
    """Lower-cased terms longer than two characters.

    A query made only of short words falls back to the whole query, so
    it still matches something lexically.
    """
    terms = [t for t in query.lower().split() if len(t) >= MIN_TERM_LENGTH]
    if not terms and query.strip():
        terms = [query.strip().lower()]
    return terms


def lexical_raw(memory: Memory, terms: Sequence[str]) -> float:
    topic = (memory.topic or "").lower()
    content = (memory.content or "").lower()
    score = 0
    for term in terms:
        if term in topic:
            score += TOPIC_WEIGHT
        if term in content:
            score += CONTENT_WEIGHT
    return float(score)


def lexical_score(memory: Memory, terms: Sequence[str]) -> float:
    """Term-overlap relevance normalized to 0..1."""
    if not terms:
        return 0.0
    return lexical_raw(memory, terms) / ((TOPIC_WEIGHT + CONTENT_WEIGHT) * len(terms))


# ── Boundary converters ──────────────────────────────────────────────

def from_relational(memory: Memory, terms: Sequence[str]) -> SearchHit:
    return SearchHit(
        memory=memory,
        provenance=Provenance.RELATIONAL,
        score=lexical_score(memory, terms),
    )


def from_vector(hit: VectorHit) -> SearchHit:
    """Rebuild a memory-shaped hit from the concept's source metadata."""
    memory = Memory(
        id=hit.source_memory_id,
        category=hit.source_category,
        topic=hit.source_topic,
        content=hit.content,
        date=parse_date(hit.source_date),
        created_at=parse_datetime(hit.source_created_at),
    )
    return SearchHit(
        memory=memory,
        provenance=Provenance.VECTOR,
        score=hit.similarity,
        similarity=hit.similarity,
        reconstructed=True,
        concept_id=hit.concept_id,
        concept_titles=[hit.concept_title] if hit.concept_title else [],
    )


def from_graph(node: GraphNode, *, enhanced: bool = False) -> SearchHit:
    memory = Memory(
        id=node.memory_id,
        category=node.category,
        topic=node.topic,
        content=node.content,
        date=parse_date(node.date),
        created_at=parse_datetime(node.created_at),
    )
    return SearchHit(
        memory=memory,
        provenance=Provenance.GRAPH,
        score=node.score,
        graph_enhanced=enhanced,
    )


# ── Merge ────────────────────────────────────────────────────────────

def _absorb(target: SearchHit, other: SearchHit) -> None:
    # A relational row is the authoritative record; reconstructions and
    # graph copies only fill in when nothing better has been seen.
    if Provenance.RELATIONAL in other.provenance and Provenance.RELATIONAL not in target.provenance:
        target.memory = other.memory
    target.provenance |= other.provenance
    target.score = max(target.score, other.score)
    target.similarity = max(target.similarity, other.similarity)
    target.reconstructed = Provenance.RELATIONAL not in target.provenance and (
        target.reconstructed or other.reconstructed
    )
    target.graph_enhanced = target.graph_enhanced or other.graph_enhanced
    if target.concept_id is None:
        target.concept_id = other.concept_id
    for title in other.concept_titles:
        if title not in target.concept_titles:
            target.concept_titles.append(title)


def _copy(hit: SearchHit) -> SearchHit:
    return SearchHit(
        memory=hit.memory,
        provenance=hit.provenance,
        score=hit.score,
        similarity=hit.similarity,
        reconstructed=hit.reconstructed,
        graph_enhanced=hit.graph_enhanced,
        concept_id=hit.concept_id,
        concept_titles=list(hit.concept_titles),
        rerank_score=hit.rerank_score,
        rerank_details=dict(hit.rerank_details),
    )


def merge(*groups: Iterable[SearchHit]) -> List[SearchHit]:
    """Union hits keyed by memory id, keeping first-seen order.

    Inputs are not mutated.  Merging a result set with itself is a no-op.
    """
    merged: Dict[str, SearchHit] = {}
    for group in groups:
        for hit in group:
            existing = merged.get(hit.key)
            if existing is None:
                merged[hit.key] = _copy(hit)
            else:
                _absorb(existing, hit)
    return list(merged.values())


def memory_ids(hits: Sequence[SearchHit]) -> List[int]:
    return [h.memory.id for h in hits if h.memory.id is not None]
