"""Unit tests for result merging and rerank strategies."""

import asyncio
import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from fakes import FakeAnalyzer
from mempipe.errors import ValidationError
from mempipe.models import GraphEdge, Memory, Provenance, SearchHit
from mempipe.retrieval import merge as mg
from mempipe.retrieval import rerank as rr

NOW = datetime(2026, 6, 1, 12, 0, 0)


def _memory(memory_id, topic="topic", content="content", category="erlebnisse", age_days=0):
    return Memory(
        id=memory_id,
        category=category,
        topic=topic,
        content=content,
        created_at=NOW - timedelta(days=age_days),
    )


def _hit(memory_id, provenance=Provenance.RELATIONAL, score=0.0, similarity=0.0, **memory_kwargs):
    return SearchHit(
        memory=_memory(memory_id, **memory_kwargs),
        provenance=provenance,
        score=score,
        similarity=similarity,
        reconstructed=provenance == Provenance.VECTOR,
    )


# ── Merge ────────────────────────────────────────────────────────────

def test_query_terms_drop_short_words():
    assert mg.query_terms("a trip to the Alps") == ["trip", "the", "alps"]


def test_query_terms_fall_back_to_whole_query():
    assert mg.query_terms("to be") == ["to be"]


def test_lexical_score_weights_topic_over_content():
    terms = ["hiking"]
    topic_only = _memory(1, topic="Hiking", content="nothing")
    content_only = _memory(2, topic="Notes", content="hiking")
    assert mg.lexical_score(topic_only, terms) > mg.lexical_score(content_only, terms)
    assert mg.lexical_score(_memory(3, topic="hiking", content="hiking"), terms) == 1.0


def test_merge_unions_provenance_and_prefers_relational_record():
    relational = _hit(1, Provenance.RELATIONAL, score=0.4, content="original")
    vector = _hit(1, Provenance.VECTOR, score=0.9, similarity=0.9, content="concept text")

    merged = mg.merge([vector], [relational])

    assert len(merged) == 1
    hit = merged[0]
    assert hit.provenance == Provenance.RELATIONAL | Provenance.VECTOR
    assert hit.memory.content == "original"
    assert hit.score == 0.9
    assert hit.similarity == 0.9
    assert hit.reconstructed is False


def test_merge_does_not_mutate_inputs():
    relational = _hit(1, Provenance.RELATIONAL)
    vector = _hit(1, Provenance.VECTOR, similarity=0.7)

    mg.merge([relational], [vector])

    assert relational.provenance == Provenance.RELATIONAL
    assert relational.similarity == 0.0


def test_merge_with_itself_is_idempotent():
    hits = [_hit(1, score=0.5), _hit(2, score=0.3)]
    merged = mg.merge(hits, hits)
    assert [(h.key, h.score, h.provenance) for h in merged] == [(h.key, h.score, h.provenance) for h in hits]


def test_hits_without_memory_id_keyed_by_concept():
    hit = SearchHit(memory=Memory(None, "", "", "text"), provenance=Provenance.VECTOR, concept_id="c-1")
    assert hit.key == "concept:c-1"
    assert mg.memory_ids([hit]) == []


# ── Strategies ───────────────────────────────────────────────────────

def test_text_rerank_rewards_dual_provenance():
    both = _hit(1, Provenance.RELATIONAL | Provenance.VECTOR, similarity=0.5, topic="hiking")
    single = _hit(2, Provenance.RELATIONAL, topic="hiking")

    ranked = rr.rerank_text("hiking", [single, both])

    assert [h.memory.id for h in ranked] == [1, 2]
    assert ranked[0].rerank_details["both"] == 1.0
    assert ranked[0].rerank_score == pytest.approx(3 + 1.0 + 1.0)


def test_hybrid_rerank_prefers_recent_memories():
    old = _hit(1, age_days=120)
    new = _hit(2, age_days=0)

    ranked = rr.rerank_hybrid("unrelated", [old, new], now=NOW)

    assert [h.memory.id for h in ranked] == [2, 1]


def test_hybrid_rerank_is_deterministic():
    hits = [_hit(i, similarity=0.5, age_days=i) for i in range(1, 6)]
    first = [(h.memory.id, h.rerank_score) for h in rr.rerank_hybrid("topic", [_copy(h) for h in hits], now=NOW)]
    second = [(h.memory.id, h.rerank_score) for h in rr.rerank_hybrid("topic", [_copy(h) for h in hits], now=NOW)]
    assert first == second


def _copy(hit):
    return mg.merge([hit])[0]


def _mixed_hits():
    return [
        _hit(4, Provenance.RELATIONAL | Provenance.VECTOR, similarity=0.5, topic="topic"),
        _hit(2, Provenance.VECTOR, similarity=0.5, topic="topic"),
        _hit(3, topic="content"),
        _hit(1, topic="topic"),
    ]


def test_text_rerank_is_deterministic():
    first = [(h.memory.id, h.rerank_score) for h in rr.rerank_text("topic", _mixed_hits())]
    second = [(h.memory.id, h.rerank_score) for h in rr.rerank_text("topic", list(reversed(_mixed_hits())))]
    assert first == second
    assert [memory_id for memory_id, _ in first] == [4, 2, 1, 3]


def test_llm_rerank_is_deterministic():
    analyzer = FakeAnalyzer(relevance=lambda h: 0.9 if h.memory.topic == "topic" else 0.1)

    def ranked(hits):
        reranked, applied = asyncio.run(rr.rerank("topic", hits, rr.LLM, analyzer=analyzer, now=NOW))
        assert applied == "llm"
        return [(h.memory.id, h.rerank_score) for h in reranked]

    first = ranked(_mixed_hits())
    assert first == ranked(list(reversed(_mixed_hits())))
    assert [memory_id for memory_id, _ in first] == [1, 2, 4, 3]


def test_ties_broken_by_memory_id():
    hits = [_hit(3), _hit(1), _hit(2)]
    ranked = rr.rerank_hybrid("unrelated", hits, now=NOW)
    assert [h.memory.id for h in ranked] == [1, 2, 3]


def test_graph_bonus_counts_touching_edges():
    hit = _hit(1)
    edges = [
        GraphEdge(1, 2, "SAME_CATEGORY", {"similarity": 0.95}),
        GraphEdge(3, 1, "RELATED_TO", {"similarity": 0.2}),
        GraphEdge(2, 3, "RELATED_TO", {}),
    ]
    assert rr.graph_bonus(hit, edges) == pytest.approx(0.05 + 0.1 + 0.05)


def test_reconstructed_hits_lose_original_record_bonus():
    original = _hit(1, Provenance.RELATIONAL)
    rebuilt = _hit(2, Provenance.VECTOR)

    ranked = rr.rerank_hybrid("unrelated", [rebuilt, original], now=NOW)

    assert ranked[0].memory.id == 1
    assert ranked[1].rerank_details["metadata"] == pytest.approx(rr.KNOWN_CATEGORY_BONUS)


def test_rerank_dispatch_and_fallback():
    hits = [_hit(1), _hit(2)]

    _, applied = asyncio.run(rr.rerank("q", hits, rr.TEXT))
    assert applied == "text"

    _, applied = asyncio.run(rr.rerank("q", hits, rr.LLM, analyzer=None, now=NOW))
    assert applied == "hybrid"


def test_rerank_unknown_strategy():
    with pytest.raises(ValidationError):
        asyncio.run(rr.rerank("q", [_hit(1)], "bm25"))


def test_rerank_empty_hits():
    assert asyncio.run(rr.rerank("q", [], rr.HYBRID)) == ([], "hybrid")


# ── Strategy selection ───────────────────────────────────────────────

def test_select_strategy_thresholds():
    vector_heavy = [_hit(1, Provenance.VECTOR), _hit(2, Provenance.VECTOR), _hit(3, Provenance.VECTOR)]
    mixed = [_hit(1, Provenance.VECTOR), _hit(2, Provenance.VECTOR), _hit(3, Provenance.RELATIONAL)]
    relational = [_hit(1), _hit(2, Provenance.VECTOR)]

    assert rr.select_strategy(vector_heavy, True) == "llm"
    assert rr.select_strategy(vector_heavy, False) == "text"
    assert rr.select_strategy(mixed, True) == "text"
    assert rr.select_strategy(relational, True) == "hybrid"
    assert rr.select_strategy([], True) == "hybrid"
