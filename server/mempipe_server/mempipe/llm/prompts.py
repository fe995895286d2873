"""Prompt templates for the semantic analyzer.

Each template asks for bare JSON; replies are parsed leniently (the first
JSON object/array in the text) and validated by ``mempipe.llm.analyzer``.
"""

from __future__ import annotations

TYPE_GUIDE = """\
- faktenwissen: objective information, definitions, concepts
- prozedurales_wissen: how-tos, workflows, debugging steps, methods
- erlebnisse: subjective experiences, dialogues, shared activities
- bewusstsein: reflections, opinions, self-perception of the assistant
- humor: jokes, running gags, humor patterns, tension relief
- zusammenarbeit: division of work, trust milestones, team dynamics, communication patterns"""

EXTRACTION_PROMPT = """\
Break this memory down into 2-4 semantic concepts that can be stored and \
searched separately. Each concept must capture a distinct aspect of the memory.

Return ONLY a JSON array:
[
  {{"title": "Short descriptive title", "description": "2-3 self-contained sentences"}}
]

Memory:
Category: {category}
Topic: {topic}
Content: {content}

Guidelines:
- Preserve all information of the original content
- Answer in the language of the memory
- Every description must stand alone and be searchable
- Cover different aspects (technical details, relationships, lessons learned, methods)
- Avoid redundancy; return at most 4 concepts

Return ONLY the JSON array, no explanation."""

CLASSIFICATION_PROMPT = """\
Classify this semantic concept. Return ONLY a JSON object:
{{
  "memory_type": "faktenwissen|prozedurales_wissen|erlebnisse|bewusstsein|humor|zusammenarbeit",
  "confidence": 0.85,
  "mood": "positive|neutral|negative",
  "keywords": ["keyword1", "keyword2"],
  "extracted_concepts": ["concept1", "concept2"]
}}

Concept:
Title: {title}
Description: {description}
Original category: {category}

Classification guide:
{type_guide}

Extract 2-4 concept-specific keywords for hybrid search.
Return ONLY the JSON, no explanation."""

SIGNIFICANCE_PROMPT = """\
Decide whether this memory is SIGNIFICANT enough for permanent core storage. \
Only about one memory in ten should qualify.

MEMORY TYPE: {memory_type}
CONTENT: {topic} - {content}

Significant when it records:
- erlebnisse: first-time achievements, breakthroughs, trust milestones, paradigm shifts
- bewusstsein: leaps in self-reflection, ethical insights, meta-cognitive insights
- humor: an established running gag or humor that shapes the relationship
- zusammenarbeit: better delegation, major efficiency gains, evolved communication patterns

Never significant: plain technical facts, routine debugging, routine tasks.

Weigh relationship impact, development impact and whether it will still matter in six months.

Return ONLY: {{"significant": true/false, "reason": "brief explanation"}}"""

RELEVANCE_PROMPT = """\
Rate how relevant each numbered memory is to the query on a scale from 0 \
(unrelated) to 10 (answers it directly).

Query: {query}

Memories:
{items}

Return ONLY a JSON array of {count} numbers in the same order, no explanation."""
