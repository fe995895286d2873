"""Data models for the memory pipeline.

Each backing store speaks its own DTO (``Memory`` rows, ``VectorHit``
concept matches, ``GraphNode``/``GraphEdge``); search converts them into
the tagged ``SearchHit`` at the boundary so rerankers only ever see one
shape.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

# ── Categories ───────────────────────────────────────────────────────

CATEGORY_SCHEMA_VERSION = 2


class MemoryCategory(str, enum.Enum):
    FAKTENWISSEN = "faktenwissen"
    PROZEDURALES_WISSEN = "prozedurales_wissen"
    ERLEBNISSE = "erlebnisse"
    BEWUSSTSEIN = "bewusstsein"
    HUMOR = "humor"
    ZUSAMMENARBEIT = "zusammenarbeit"
    FORGOTTEN_MEMORIES = "forgotten_memories"
    KERNERINNERUNGEN = "kernerinnerungen"
    SHORT_MEMORY = "short_memory"


# Transient sentinel; only valid between Phase 0 and the category backfill.
PENDING_CATEGORY = "undefined"

KNOWN_CATEGORIES = frozenset(c.value for c in MemoryCategory)

# Labels the semantic analyzer may assign to a concept.
ANALYSIS_TYPES = frozenset(
    {
        MemoryCategory.FAKTENWISSEN.value,
        MemoryCategory.PROZEDURALES_WISSEN.value,
        MemoryCategory.ERLEBNISSE.value,
        MemoryCategory.BEWUSSTSEIN.value,
        MemoryCategory.HUMOR.value,
        MemoryCategory.ZUSAMMENARBEIT.value,
    }
)

# Pure factual/procedural knowledge lives only in the vector concept store.
CONCEPT_ONLY_TYPES = frozenset(
    {
        MemoryCategory.FAKTENWISSEN.value,
        MemoryCategory.PROZEDURALES_WISSEN.value,
    }
)

SHORT_TERM_CATEGORY = MemoryCategory.SHORT_MEMORY.value


def normalize_category(category: str) -> str:
    """Return *category* if known, else the pending-classification sentinel."""
    return category if category in KNOWN_CATEGORIES else PENDING_CATEGORY


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what the relational store persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ── Memories & concepts ──────────────────────────────────────────────

@dataclass
class Memory:
    """A categorized, timestamped unit of content."""

    id: Optional[int]
    category: str
    topic: str
    content: str
    date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.category == PENDING_CATEGORY

    @property
    def category_known(self) -> bool:
        return self.category in KNOWN_CATEGORIES


@dataclass
class Concept:
    """A semantically distinct fragment extracted from a memory."""

    title: str
    description: str
    memory_type: str
    confidence: float = 0.0
    mood: str = "neutral"
    keywords: List[str] = field(default_factory=list)
    extracted_concepts: List[str] = field(default_factory=list)


@dataclass
class ConceptEntry:
    """One vector-store entry: a concept plus denormalized source metadata."""

    id: str
    title: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_concept(cls, memory: Memory, concept: Concept, index: int) -> "ConceptEntry":
        """Build the entry for the *index*-th (1-based) concept of *memory*."""
        title = concept.title or f"Concept {index}"
        return cls(
            id=f"{memory.id}_concept_{index}",
            title=title,
            description=concept.description,
            metadata={
                "source_memory_id": memory.id,
                "source_category": memory.category,
                "source_topic": memory.topic,
                "source_date": memory.date.isoformat() if memory.date else "",
                "source_created_at": memory.created_at.isoformat() if memory.created_at else "",
                "concept_title": title,
                "concept_index": index,
                "concept_memory_type": concept.memory_type,
                "concept_confidence": concept.confidence,
                "concept_mood": concept.mood or "",
                "concept_keywords": ", ".join(concept.keywords),
                "concept_summary": concept.description,
                "is_granular_concept": True,
            },
        )


@dataclass
class ConceptStoreResult:
    stored_count: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SignificanceVerdict:
    significant: bool
    reason: str


# ── Relationships ────────────────────────────────────────────────────

class RelationshipType(str, enum.Enum):
    SAME_CATEGORY = "SAME_CATEGORY"
    HIGHLY_SIMILAR = "HIGHLY_SIMILAR"
    TEMPORAL_ADJACENT = "TEMPORAL_ADJACENT"
    RELATED_TO = "RELATED_TO"


@dataclass
class Relationship:
    """A directed, typed edge between two memory nodes."""

    from_id: int
    to_id: int
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RelationshipSpec:
    """A caller-supplied relationship for a memory that is being saved."""

    target_id: int
    type: str = RelationshipType.RELATED_TO.value
    properties: Dict[str, Any] = field(default_factory=dict)


# ── Analysis jobs ────────────────────────────────────────────────────

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _JOB_TRANSITIONS[self]


_JOB_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass
class AnalysisJob:
    id: str
    status: JobStatus
    memory_ids: List[int]
    progress_current: int = 0
    progress_total: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class AnalysisResult:
    job_id: str
    memory_id: int
    memory_type: str
    confidence: float
    mood: str
    keywords: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


# ── Pipeline result ──────────────────────────────────────────────────

@dataclass
class PipelineResult:
    """Composite outcome of one save call.

    ``memory_id`` is the provisional relational id; it stays the identity of
    the memory in the vector and graph stores even after the relational row
    has been removed.
    """

    memory_id: Optional[int] = None
    stored_in_relational: bool = False
    stored_in_vector: bool = False
    stored_in_graph: bool = False
    stored_in_short_term: bool = False
    concepts_stored: int = 0
    relationships_created: int = 0
    category: str = ""
    reason: str = ""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Capabilities:
    """Which optional collaborators are configured, computed once."""

    analyzer: bool = False
    vector: bool = False
    graph: bool = False

    @classmethod
    def from_collaborators(cls, analyzer: Any = None, vector: Any = None, graph: Any = None) -> "Capabilities":
        return cls(analyzer=analyzer is not None, vector=vector is not None, graph=graph is not None)


# ── Store DTOs ───────────────────────────────────────────────────────

@dataclass
class VectorHit:
    """A concept match returned by the vector concept store."""

    concept_id: str
    content: str
    similarity: float
    source_memory_id: Optional[int] = None
    source_category: str = ""
    source_topic: str = ""
    source_date: str = ""
    source_created_at: str = ""
    concept_title: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, concept_id: str, content: str, similarity: float, payload: Dict[str, Any]) -> "VectorHit":
        raw_source = payload.get("source_memory_id")
        try:
            source_id = int(raw_source) if raw_source not in (None, "") else None
        except (TypeError, ValueError):
            source_id = None
        return cls(
            concept_id=concept_id,
            content=content,
            similarity=float(similarity or 0.0),
            source_memory_id=source_id,
            source_category=str(payload.get("source_category") or ""),
            source_topic=str(payload.get("source_topic") or ""),
            source_date=str(payload.get("source_date") or ""),
            source_created_at=str(payload.get("source_created_at") or ""),
            concept_title=str(payload.get("concept_title") or ""),
            metadata=dict(payload),
        )


@dataclass
class GraphNode:
    memory_id: int
    category: str = ""
    topic: str = ""
    content: str = ""
    date: Optional[str] = None
    created_at: Optional[str] = None
    score: float = 0.0
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphEdge:
    from_id: int
    to_id: int
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def similarity(self) -> float:
        try:
            return float(self.properties.get("similarity", 0.0) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    def touches(self, memory_id: Any) -> bool:
        return memory_id in (self.from_id, self.to_id)


@dataclass
class GraphNeighborhood:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)


# ── Search ───────────────────────────────────────────────────────────

class Provenance(enum.Flag):
    RELATIONAL = enum.auto()
    VECTOR = enum.auto()
    GRAPH = enum.auto()

    @property
    def label(self) -> str:
        if self == Provenance.RELATIONAL | Provenance.VECTOR:
            return "both"
        names = [
            member.name.lower()
            for member in (Provenance.RELATIONAL, Provenance.VECTOR, Provenance.GRAPH)
            if member in self
        ]
        return "+".join(names)


@dataclass
class SearchHit:
    """One memory-shaped search result, tagged with where it came from."""

    memory: Memory
    provenance: Provenance
    score: float = 0.0
    similarity: float = 0.0
    reconstructed: bool = False
    graph_enhanced: bool = False
    concept_id: Optional[str] = None
    concept_titles: List[str] = field(default_factory=list)
    rerank_score: Optional[float] = None
    rerank_details: Dict[str, float] = field(default_factory=dict)

    @property
    def key(self) -> str:
        if self.memory.id is not None:
            return str(self.memory.id)
        return f"concept:{self.concept_id}"

    @property
    def source(self) -> str:
        return self.provenance.label


@dataclass
class SearchResponse:
    query: str
    results: List[SearchHit] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    search_strategy: str = "hybrid"
    rerank_strategy: Optional[str] = None
    reranked: bool = False
    relationships: List[GraphEdge] = field(default_factory=list)
    graph_context: Dict[str, Any] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    @property
    def total_found(self) -> int:
        return len(self.results)


# ── Record access ────────────────────────────────────────────────────

@dataclass
class MemoryStatus:
    """Snapshot of what the service holds and which collaborators it uses."""

    categories: Dict[str, int] = field(default_factory=dict)
    short_term_count: int = 0
    short_term_capacity: int = 0
    capabilities: Capabilities = field(default_factory=Capabilities)
    pool: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_memories(self) -> int:
        return sum(self.categories.values())


@dataclass
class MemoryDetails:
    """One relational record plus everything the other stores know about it.

    ``related_concepts`` are raw concept matches for the record's own text;
    ``related_memories`` groups them by source memory (best similarity
    first) and adds the graph neighbours from ``graph``.
    """

    memory: Memory
    related_concepts: List[VectorHit] = field(default_factory=list)
    related_memories: List[SearchHit] = field(default_factory=list)
    graph: GraphNeighborhood = field(default_factory=GraphNeighborhood)
