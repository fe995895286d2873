"""Reranking strategies for merged search results.

``text``
    Term overlap on topic (weight 3) and content (weight 1), plus twice the
    vector similarity and a point for hits found by both relational and
    vector search.
``hybrid``
    Weighted sum of vector similarity, normalized lexical relevance, a
    small metadata-quality bonus, an exponential recency decay and, when
    graph edges are supplied, a connectivity bonus.
``llm``
    Relevance scores from the semantic analyzer; falls back to ``hybrid``
    when no analyzer is configured or the call fails.

All strategies are deterministic for a fixed input: the recency reference
time is taken once per call and ties are broken by memory id.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mempipe import config as cfg
from mempipe.errors import ValidationError
from mempipe.models import GraphEdge, Provenance, SearchHit, utc_now
from mempipe.observability.tracing import record_metric
from mempipe.retrieval.merge import lexical_raw, lexical_score, query_terms

logger = logging.getLogger(__name__)

TEXT, HYBRID, LLM = "text", "hybrid", "llm"
STRATEGIES = (TEXT, HYBRID, LLM)

# ── Hybrid weights ───────────────────────────────────────────────────
SIMILARITY_WEIGHT = 0.5
LEXICAL_WEIGHT = 0.3
ORIGINAL_RECORD_BONUS = 0.05
KNOWN_CATEGORY_BONUS = 0.05
RECENCY_WEIGHT = 0.1
RECENCY_HALF_LIFE_DAYS = 30.0
EDGE_BONUS = 0.05
STRONG_EDGE_BONUS = 0.1
STRONG_EDGE_SIMILARITY = 0.8


def ordering_key(hit: SearchHit, score: float) -> Tuple[Any, ...]:
    """Descending score, then ascending memory id, then key."""
    mid = hit.memory.id
    return (-score, mid is None, mid if mid is not None else 0, hit.key)


def order_by_score(hits: Sequence[SearchHit]) -> List[SearchHit]:
    return sorted(hits, key=lambda h: ordering_key(h, h.score))


def _apply(hits: Sequence[SearchHit], scored: List[Tuple[float, Dict[str, float]]]) -> List[SearchHit]:
    for hit, (score, details) in zip(hits, scored):
        hit.rerank_score = round(score, 6)
        hit.rerank_details = details
    return sorted(hits, key=lambda h: ordering_key(h, h.rerank_score or 0.0))


# ── Strategies ───────────────────────────────────────────────────────

def rerank_text(query: str, hits: Sequence[SearchHit]) -> List[SearchHit]:
    terms = query_terms(query)
    scored = []
    for hit in hits:
        lexical = lexical_raw(hit.memory, terms)
        similarity = hit.similarity * 2
        both = 1.0 if Provenance.RELATIONAL in hit.provenance and Provenance.VECTOR in hit.provenance else 0.0
        scored.append((lexical + similarity + both, {"lexical": lexical, "similarity": similarity, "both": both}))
    return _apply(hits, scored)


def recency(created_at: Optional[datetime], now: datetime) -> float:
    if created_at is None:
        return 0.0
    days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return math.exp(-days / RECENCY_HALF_LIFE_DAYS)


def graph_bonus(hit: SearchHit, edges: Sequence[GraphEdge]) -> float:
    if hit.memory.id is None:
        return 0.0
    bonus = 0.0
    for edge in edges:
        if edge.touches(hit.memory.id):
            bonus += EDGE_BONUS
            if edge.similarity > STRONG_EDGE_SIMILARITY:
                bonus += STRONG_EDGE_BONUS
    return bonus


def rerank_hybrid(
    query: str,
    hits: Sequence[SearchHit],
    *,
    edges: Sequence[GraphEdge] = (),
    now: Optional[datetime] = None,
) -> List[SearchHit]:
    terms = query_terms(query)
    now = now or utc_now()
    scored = []
    for hit in hits:
        details = {
            "similarity": SIMILARITY_WEIGHT * hit.similarity,
            "lexical": LEXICAL_WEIGHT * lexical_score(hit.memory, terms),
            "metadata": (
                (ORIGINAL_RECORD_BONUS if Provenance.RELATIONAL in hit.provenance and not hit.reconstructed else 0.0)
                + (KNOWN_CATEGORY_BONUS if hit.memory.category_known else 0.0)
            ),
            "recency": RECENCY_WEIGHT * recency(hit.memory.created_at, now),
        }
        if edges:
            details["graph"] = graph_bonus(hit, edges)
        scored.append((sum(details.values()), details))
    return _apply(hits, scored)


async def rerank_llm(query: str, hits: Sequence[SearchHit], analyzer: Any) -> List[SearchHit]:
    scores = await analyzer.score_relevance(query, list(hits))
    if len(scores) != len(hits):
        raise ValueError(f"analyzer returned {len(scores)} scores for {len(hits)} hits")
    return _apply(hits, [(float(s), {"llm": float(s)}) for s in scores])


async def rerank(
    query: str,
    hits: Sequence[SearchHit],
    strategy: str = HYBRID,
    *,
    analyzer: Any = None,
    edges: Sequence[GraphEdge] = (),
    now: Optional[datetime] = None,
) -> Tuple[List[SearchHit], str]:
    """Reorder *hits* and return them with the strategy actually applied."""
    if strategy not in STRATEGIES:
        raise ValidationError(f"unknown rerank strategy {strategy!r}; expected one of {STRATEGIES}")
    if not hits:
        return [], strategy

    if strategy == TEXT:
        return rerank_text(query, hits), TEXT
    if strategy == LLM:
        if analyzer is None:
            logger.warning("LLM rerank requested without an analyzer; using hybrid")
        else:
            try:
                return await rerank_llm(query, hits, analyzer), LLM
            except Exception:
                logger.exception("LLM rerank failed; using hybrid")
        record_metric("search_llm_rerank_fallback_count")
    return rerank_hybrid(query, hits, edges=edges, now=now), HYBRID


def select_strategy(
    hits: Sequence[SearchHit],
    analyzer_available: bool,
    *,
    llm_threshold: float = cfg.LLM_RERANK_THRESHOLD,
    text_threshold: float = cfg.TEXT_RERANK_THRESHOLD,
) -> str:
    """Pick a strategy from the share of vector-sourced hits."""
    if not hits:
        return HYBRID
    vector_share = sum(1 for h in hits if Provenance.VECTOR in h.provenance) / len(hits)
    if vector_share > llm_threshold and analyzer_available:
        return LLM
    if vector_share > text_threshold:
        return TEXT
    return HYBRID
