"""Relationship auto-detection for newly saved memories.

Candidates come from a similarity search over the vector concept store,
restricted to the new memory's resolved category.  Each candidate memory
gets exactly one edge, typed by the first matching rule:

1. same category              -> SAME_CATEGORY
2. similarity above threshold -> HIGHLY_SIMILAR
3. created within the window  -> TEMPORAL_ADJACENT
4. otherwise                  -> RELATED_TO

Because candidates are filtered to the same category, rule 1 matches
whenever the vector store honours the filter; the later rules only apply
to hits without a category in their metadata.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from mempipe import config as cfg
from mempipe.errors import ValidationError
from mempipe.models import (
    Memory,
    Relationship,
    RelationshipSpec,
    RelationshipType,
    VectorHit,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)


def classify(
    memory: Memory,
    hit: VectorHit,
    *,
    high_similarity: float = cfg.HIGH_SIMILARITY_THRESHOLD,
    window_days: int = cfg.TEMPORAL_WINDOW_DAYS,
) -> RelationshipType:
    if hit.source_category and hit.source_category == memory.category:
        return RelationshipType.SAME_CATEGORY
    if hit.similarity > high_similarity:
        return RelationshipType.HIGHLY_SIMILAR
    days = day_distance(memory.created_at, parse_datetime(hit.source_created_at))
    if days is not None and days <= window_days:
        return RelationshipType.TEMPORAL_ADJACENT
    return RelationshipType.RELATED_TO


def day_distance(a: Optional[datetime], b: Optional[datetime]) -> Optional[float]:
    if a is None or b is None:
        return None
    return abs((a - b).total_seconds()) / 86400.0


def detect(
    memory: Memory,
    hits: Sequence[VectorHit],
    *,
    high_similarity: float = cfg.HIGH_SIMILARITY_THRESHOLD,
    window_days: int = cfg.TEMPORAL_WINDOW_DAYS,
) -> List[Relationship]:
    """Type one relationship per distinct candidate memory.

    Hits without a source id, and hits that point back at *memory*, are
    ignored.  Hits are deduplicated by source id, keeping the first (best
    ranked) one.
    """
    seen = set()
    relationships: List[Relationship] = []
    now = utc_now().isoformat()
    for hit in hits:
        target = hit.source_memory_id
        if target is None or target == memory.id or target in seen:
            continue
        seen.add(target)
        rel_type = classify(memory, hit, high_similarity=high_similarity, window_days=window_days)
        days = day_distance(memory.created_at, parse_datetime(hit.source_created_at))
        properties: Dict[str, Any] = {
            "similarity": round(hit.similarity, 4),
            "origin": "auto",
            "created_at": now,
        }
        if days is not None:
            properties["day_distance"] = round(days, 3)
        relationships.append(
            Relationship(from_id=memory.id, to_id=target, type=rel_type.value, properties=properties)
        )
    return relationships


def from_specs(memory_id: int, specs: Sequence[RelationshipSpec]) -> List[Relationship]:
    now = utc_now().isoformat()
    return [
        Relationship(
            from_id=memory_id,
            to_id=spec.target_id,
            type=spec.type,
            properties={"origin": "caller", "created_at": now, **spec.properties},
        )
        for spec in specs
    ]


def coerce_specs(raw: Optional[Sequence[Any]]) -> List[RelationshipSpec]:
    """Accept ``RelationshipSpec`` objects or plain dicts from callers."""
    specs: List[RelationshipSpec] = []
    for item in raw or []:
        if isinstance(item, RelationshipSpec):
            spec = item
        elif isinstance(item, dict):
            target = item.get("target_id", item.get("to_id", item.get("target_memory_id")))
            try:
                target_id = int(target)
            except (TypeError, ValueError):
                raise ValidationError(f"relationship target id must be an integer, got {target!r}") from None
            spec = RelationshipSpec(
                target_id=target_id,
                type=str(item.get("type") or item.get("relationship_type") or RelationshipType.RELATED_TO.value),
                properties=dict(item.get("properties") or {}),
            )
        else:
            raise ValidationError(f"unsupported relationship spec: {item!r}")
        if not spec.type or not spec.type.strip():
            raise ValidationError("relationship type must not be empty")
        specs.append(spec)
    return specs
