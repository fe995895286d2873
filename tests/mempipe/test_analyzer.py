"""Unit tests for LLM reply parsing and the OpenAI-compatible analyzer."""

import asyncio
import os
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from mempipe import config as cfg
from mempipe.errors import AnalyzerError
from mempipe.llm import analyzer as an
from mempipe.models import Memory, Provenance, SearchHit

MEMORY = Memory(1, "erlebnisse", "Pairing", "We paired on the parser and laughed a lot")


class ScriptedClient:
    """Mimics ``AsyncOpenAI.chat.completions.create`` with canned replies."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.prompts.append(kwargs["messages"][0]["content"])
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


CLASSIFY_HUMOR = '{"memory_type": "humor", "confidence": 0.9, "mood": "positive", "keywords": ["laugh"]}'
CLASSIFY_WORK = '{"memory_type": "zusammenarbeit", "confidence": 0.7, "keywords": ["pairing", "laugh"]}'


# ── Parsing ──────────────────────────────────────────────────────────

def test_extract_json_ignores_surrounding_prose():
    assert an.extract_json('Sure! {"a": 1} hope that helps') == {"a": 1}
    assert an.extract_json("```json\n[1, 2]\n```", array=True) == [1, 2]


def test_extract_json_without_json():
    with pytest.raises(AnalyzerError):
        an.extract_json("no json here")


def test_parse_extraction_requires_concepts():
    with pytest.raises(AnalyzerError):
        an.parse_extraction("[]")
    with pytest.raises(AnalyzerError):
        an.parse_extraction('[{"title": "x"}]')


def test_parse_classification_bounds_confidence():
    assert an.parse_classification(CLASSIFY_HUMOR).memory_type == "humor"
    with pytest.raises(AnalyzerError):
        an.parse_classification('{"memory_type": "humor", "confidence": 1.5}')


def test_parse_significance_requires_real_boolean():
    verdict = an.parse_significance('{"significant": false, "reason": "routine"}')
    assert verdict.significant is False
    assert verdict.reason == "routine"
    with pytest.raises(AnalyzerError):
        an.parse_significance('{"significant": "yes", "reason": "x"}')


def test_parse_relevance_scales_and_clamps():
    assert an.parse_relevance("[10, 5, 0, 12]", 4) == [1.0, 0.5, 0.0, 1.0]
    with pytest.raises(AnalyzerError):
        an.parse_relevance("[1, 2]", 3)


# ── Analyzer ─────────────────────────────────────────────────────────

def test_extract_concepts_classifies_each_concept():
    client = ScriptedClient(
        [
            '[{"title": "Pairing", "description": "We paired"}, {"title": "Laughs", "description": "We laughed"}]',
            CLASSIFY_WORK,
            CLASSIFY_HUMOR,
        ]
    )
    concepts = asyncio.run(an.OpenAISemanticAnalyzer(client).extract_concepts(MEMORY))

    assert [(c.title, c.memory_type) for c in concepts] == [("Pairing", "zusammenarbeit"), ("Laughs", "humor")]
    assert concepts[0].mood == "neutral"
    assert "Topic: Pairing" in client.prompts[0]
    assert "Title: Laughs" in client.prompts[2]


def test_failed_classification_drops_only_that_concept():
    client = ScriptedClient(
        [
            '[{"title": "A", "description": "a"}, {"title": "B", "description": "b"}]',
            "I cannot classify this",
            CLASSIFY_HUMOR,
        ]
    )
    concepts = asyncio.run(an.OpenAISemanticAnalyzer(client).extract_concepts(MEMORY))
    assert [c.title for c in concepts] == ["B"]


def test_transport_errors_become_analyzer_errors():
    client = ScriptedClient([ConnectionError("refused")])
    with pytest.raises(AnalyzerError):
        asyncio.run(an.OpenAISemanticAnalyzer(client).extract_concepts(MEMORY))


def test_empty_reply_is_an_error():
    client = ScriptedClient([""])
    with pytest.raises(AnalyzerError):
        asyncio.run(an.OpenAISemanticAnalyzer(client).evaluate_significance(MEMORY, "humor"))


def test_evaluate_significance():
    client = ScriptedClient(['{"significant": true, "reason": "first joint release"}'])
    verdict = asyncio.run(an.OpenAISemanticAnalyzer(client).evaluate_significance(MEMORY, "erlebnisse"))

    assert verdict.significant is True
    assert "MEMORY TYPE: erlebnisse" in client.prompts[0]


def test_score_relevance():
    hits = [SearchHit(Memory(i, "humor", f"t{i}", "c"), Provenance.VECTOR) for i in (1, 2)]
    client = ScriptedClient(["[8, 3]"])
    scores = asyncio.run(an.OpenAISemanticAnalyzer(client).score_relevance("query", hits))

    assert scores == [0.8, 0.3]
    assert asyncio.run(an.OpenAISemanticAnalyzer(ScriptedClient([])).score_relevance("q", [])) == []


def test_build_analyzer_needs_endpoint(monkeypatch):
    monkeypatch.setattr(cfg, "OPENAI_API_KEY", "")
    monkeypatch.setattr(cfg, "OPENAI_BASE_URL", "")
    assert an.build_analyzer() is None

    monkeypatch.setattr(cfg, "OPENAI_BASE_URL", "http://localhost:11434/v1")
    assert isinstance(an.build_analyzer(), an.OpenAISemanticAnalyzer)
