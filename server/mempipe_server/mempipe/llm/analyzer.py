"""OpenAI-compatible semantic analyzer.

Two-step concept extraction (split the memory into concepts, then classify
each concept), significance evaluation and optional relevance scoring for
the ``llm`` rerank strategy.  Talks to any OpenAI-compatible chat endpoint
through ``openai.AsyncOpenAI``; point ``OPENAI_BASE_URL`` at a local
Ollama to run without a hosted model.

Replies are expected to be bare JSON but models wrap it in prose often
enough that the first JSON object/array is extracted by regex before being
validated with pydantic.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field, StrictBool, ValidationError as PydanticValidationError

from mempipe import config as cfg
from mempipe.errors import AnalyzerError
from mempipe.llm import prompts
from mempipe.models import Concept, Memory, SearchHit, SignificanceVerdict

logger = logging.getLogger(__name__)

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

RELEVANCE_SNIPPET_CHARS = 300


# ── Reply schemas ────────────────────────────────────────────────────

class ExtractedConcept(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)


class Classification(BaseModel):
    memory_type: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    mood: str = "neutral"
    keywords: List[str] = Field(default_factory=list)
    extracted_concepts: List[str] = Field(default_factory=list)


class SignificanceReply(BaseModel):
    significant: StrictBool
    reason: str = Field(min_length=1)


# ── Parsing helpers ──────────────────────────────────────────────────

def extract_json(text: str, *, array: bool = False) -> Any:
    """Return the first JSON object (or array) embedded in *text*."""
    match = (_ARRAY_RE if array else _OBJECT_RE).search(text or "")
    if not match:
        kind = "array" if array else "object"
        raise AnalyzerError(f"No JSON {kind} found in model reply")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise AnalyzerError(f"Malformed JSON in model reply: {exc}") from exc


def parse_extraction(text: str) -> List[ExtractedConcept]:
    data = extract_json(text, array=True)
    if not isinstance(data, list) or not data:
        raise AnalyzerError("Expected a non-empty array of concepts")
    try:
        return [ExtractedConcept.model_validate(item) for item in data]
    except PydanticValidationError as exc:
        raise AnalyzerError(f"Invalid concept in extraction reply: {exc}") from exc


def parse_classification(text: str) -> Classification:
    try:
        return Classification.model_validate(extract_json(text))
    except PydanticValidationError as exc:
        raise AnalyzerError(f"Invalid classification reply: {exc}") from exc


def parse_significance(text: str) -> SignificanceVerdict:
    try:
        reply = SignificanceReply.model_validate(extract_json(text))
    except PydanticValidationError as exc:
        raise AnalyzerError(f"Invalid significance reply: {exc}") from exc
    return SignificanceVerdict(significant=reply.significant, reason=reply.reason)


def parse_relevance(text: str, expected: int) -> List[float]:
    """Parse 0-10 ratings into 0-1 scores, one per hit."""
    data = extract_json(text, array=True)
    if not isinstance(data, list) or len(data) != expected:
        raise AnalyzerError(f"Expected {expected} relevance ratings")
    try:
        return [min(max(float(x), 0.0), 10.0) / 10.0 for x in data]
    except (TypeError, ValueError) as exc:
        raise AnalyzerError(f"Non-numeric relevance rating: {exc}") from exc


# ── Analyzer ─────────────────────────────────────────────────────────

class OpenAISemanticAnalyzer:
    """``SemanticAnalyzer`` backed by chat completions.

    Parameters
    ----------
    client:
        An ``openai.AsyncOpenAI``-shaped client; built from configuration
        when omitted.
    model:
        Chat model name (``LLM_MODEL``).
    temperature:
        Sampling temperature (``LLM_TEMPERATURE``).
    """

    def __init__(
        self,
        client: Any = None,
        *,
        model: str = cfg.LLM_MODEL,
        temperature: float = cfg.LLM_TEMPERATURE,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=cfg.OPENAI_API_KEY or "not-needed",
                base_url=cfg.OPENAI_BASE_URL or None,
            )
        return self._client

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise AnalyzerError(f"LLM request failed: {exc}") from exc
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalyzerError("LLM returned an empty reply")
        return content

    async def extract_concepts(self, memory: Memory) -> List[Concept]:
        """Split *memory* into concepts and classify each one.

        A concept whose classification fails is dropped; the extraction
        step itself failing raises ``AnalyzerError``.
        """
        reply = await self._complete(
            prompts.EXTRACTION_PROMPT.format(
                category=memory.category, topic=memory.topic, content=memory.content
            )
        )
        extracted = parse_extraction(reply)

        concepts: List[Concept] = []
        for index, item in enumerate(extracted, start=1):
            try:
                classification = parse_classification(
                    await self._complete(
                        prompts.CLASSIFICATION_PROMPT.format(
                            title=item.title,
                            description=item.description,
                            category=memory.category,
                            type_guide=prompts.TYPE_GUIDE,
                        )
                    )
                )
            except AnalyzerError as exc:
                logger.warning("Classification failed for concept %d of memory %s: %s", index, memory.id, exc)
                continue
            concepts.append(
                Concept(
                    title=item.title,
                    description=item.description,
                    memory_type=classification.memory_type,
                    confidence=classification.confidence,
                    mood=classification.mood,
                    keywords=classification.keywords,
                    extracted_concepts=classification.extracted_concepts,
                )
            )
        logger.debug("Extracted %d/%d concept(s) for memory %s", len(concepts), len(extracted), memory.id)
        return concepts

    async def evaluate_significance(self, memory: Memory, memory_type: str) -> SignificanceVerdict:
        reply = await self._complete(
            prompts.SIGNIFICANCE_PROMPT.format(
                memory_type=memory_type, topic=memory.topic, content=memory.content
            )
        )
        return parse_significance(reply)

    async def score_relevance(self, query: str, hits: Sequence[SearchHit]) -> List[float]:
        if not hits:
            return []
        items = "\n".join(
            f"{i}. [{hit.memory.topic}] {hit.memory.content[:RELEVANCE_SNIPPET_CHARS]}"
            for i, hit in enumerate(hits, start=1)
        )
        reply = await self._complete(
            prompts.RELEVANCE_PROMPT.format(query=query, items=items, count=len(hits))
        )
        return parse_relevance(reply, len(hits))


def build_analyzer(client: Optional[Any] = None) -> Optional[OpenAISemanticAnalyzer]:
    """Analyzer from configuration, or ``None`` when no endpoint is set."""
    if client is None and not (cfg.OPENAI_API_KEY or cfg.OPENAI_BASE_URL):
        logger.info("LLM endpoint not configured; semantic analysis disabled.")
        return None
    return OpenAISemanticAnalyzer(client)
