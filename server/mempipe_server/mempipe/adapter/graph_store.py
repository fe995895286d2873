"""Gremlin graph store client.

``Memory`` vertices keyed by the relational ``memory_id``; directed edges
labelled with the relationship type.  Works against any TinkerPop server
(Gremlin Server, JanusGraph, Neptune without IAM).

The ``gremlin_python`` driver is blocking, so every traversal runs in a
worker thread via ``asyncio.to_thread``.  Bounded-depth traversal is done
breadth-first in Python on top of a one-hop edge query, which keeps the
server-side traversal portable across providers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from mempipe import config as cfg
from mempipe.errors import StoreError
from mempipe.models import Concept, GraphEdge, GraphNeighborhood, GraphNode, Memory

logger = logging.getLogger(__name__)

VERTEX_LABEL = "Memory"
NODE_FIELDS = ("memory_id", "category", "topic", "content", "date", "created_at")


def _translate_errors(func):
    """Run the wrapped sync traversal in a thread; re-raise as ``StoreError``."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, self, *args, **kwargs)
        except StoreError:
            raise
        except Exception as exc:
            logger.error("Graph store %s failed: %s", func.__name__, exc)
            raise StoreError(f"Failed to {func.__name__}: {exc}") from exc

    return wrapper


# ── Pure helpers ─────────────────────────────────────────────────────

def flatten_value_map(data: Dict[Any, Any]) -> Dict[str, Any]:
    """Unwrap single-element lists that ``valueMap()`` returns per property."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = getattr(key, "name", key)
        if isinstance(value, list):
            value = value[0] if len(value) == 1 else value
        flat[str(name)] = value
    return flat


def _primitive(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def node_properties(memory: Memory, concepts: Optional[Sequence[Concept]] = None) -> Dict[str, Any]:
    titles = [c.title for c in concepts or [] if c.title]
    keywords = sorted({k for c in concepts or [] for k in c.keywords})
    search_text = " ".join([memory.topic, memory.content, *titles]).lower()
    return {
        "category": memory.category,
        "topic": memory.topic,
        "content": memory.content,
        "date": _primitive(memory.date) or "",
        "created_at": _primitive(memory.created_at) or "",
        "concepts": ", ".join(titles),
        "keywords": ", ".join(keywords),
        "search_text": search_text,
    }


def node_from_properties(props: Dict[str, Any], score: float = 0.0) -> Optional[GraphNode]:
    try:
        memory_id = int(props.get("memory_id"))
    except (TypeError, ValueError):
        return None
    extra = {k: v for k, v in props.items() if k not in NODE_FIELDS}
    return GraphNode(
        memory_id=memory_id,
        category=str(props.get("category") or ""),
        topic=str(props.get("topic") or ""),
        content=str(props.get("content") or ""),
        date=props.get("date") or None,
        created_at=props.get("created_at") or None,
        score=score,
        properties=extra,
    )


def term_score(props: Dict[str, Any], terms: Sequence[str]) -> float:
    """Fraction of *terms* that occur in the node's searchable text."""
    if not terms:
        return 0.0
    haystack = str(props.get("search_text") or "")
    return sum(1 for t in terms if t in haystack) / len(terms)


def breadth_first(
    seed: int,
    fetch_edges: Callable[[List[int]], Iterable[GraphEdge]],
    max_depth: int,
) -> Tuple[List[int], List[GraphEdge]]:
    """Expand *seed* level by level up to *max_depth* hops.

    Returns the discovered memory ids in visit order (seed excluded) and the
    traversed edges, each reported once.
    """
    visited: Set[int] = {seed}
    order: List[int] = []
    edges: List[GraphEdge] = []
    seen_edges: Set[Tuple[int, int, str]] = set()
    frontier = deque([seed])

    for _ in range(max(0, max_depth)):
        if not frontier:
            break
        current = list(frontier)
        frontier.clear()
        for edge in fetch_edges(current):
            key = (edge.from_id, edge.to_id, edge.type)
            if key not in seen_edges:
                seen_edges.add(key)
                edges.append(edge)
            for neighbour in (edge.from_id, edge.to_id):
                if neighbour not in visited:
                    visited.add(neighbour)
                    order.append(neighbour)
                    frontier.append(neighbour)
    return order, edges


# ── Client ───────────────────────────────────────────────────────────

class GremlinGraphStore:
    """``GraphStore`` over a ``gremlin_python`` remote traversal source."""

    def __init__(self, url: str = cfg.GREMLIN_URL, traversal_source: str = cfg.GREMLIN_TRAVERSAL_SOURCE):
        self.url = url
        self.traversal_source = traversal_source
        self.connection = None
        self.g = None

    def _connect(self) -> None:
        from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
        from gremlin_python.process.anonymous_traversal import traversal

        self.connection = DriverRemoteConnection(self.url, self.traversal_source)
        self.g = traversal().with_remote(self.connection)
        logger.info("Connected to Gremlin server at %s", self.url)

    def _traversal(self):
        if self.g is None:
            self._connect()
        return self.g

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None
            self.g = None

    @_translate_errors
    def health_check(self) -> bool:
        self._traversal().V().limit(1).count().next()
        return True

    @_translate_errors
    def create_node(self, memory: Memory, concepts: Optional[Sequence[Concept]] = None) -> bool:
        from gremlin_python.process.graph_traversal import __
        from gremlin_python.process.traversal import Cardinality

        g = self._traversal()
        t = (
            g.V()
            .has(VERTEX_LABEL, "memory_id", memory.id)
            .fold()
            .coalesce(__.unfold(), __.addV(VERTEX_LABEL).property("memory_id", memory.id))
        )
        for key, value in node_properties(memory, concepts).items():
            t = t.property(Cardinality.single, key, value)
        t.iterate()
        logger.debug("Upserted graph node for memory %s", memory.id)
        return True

    @_translate_errors
    def create_relationship(
        self, from_id: int, to_id: int, rel_type: str, properties: Dict[str, Any]
    ) -> bool:
        from gremlin_python.process.graph_traversal import __

        g = self._traversal()
        t = (
            g.V()
            .has(VERTEX_LABEL, "memory_id", from_id)
            .addE(rel_type)
            .to(__.V().has(VERTEX_LABEL, "memory_id", to_id))
        )
        for key, value in (properties or {}).items():
            t = t.property(key, _primitive(value))
        created = t.to_list()
        if not created:
            logger.warning("Relationship %s -> %s not created: endpoint missing", from_id, to_id)
        return bool(created)

    @_translate_errors
    def search_by_concepts(self, terms: Sequence[str], limit: int = 10) -> List[GraphNode]:
        from gremlin_python.process.graph_traversal import __
        from gremlin_python.process.traversal import TextP

        needles = [t.lower() for t in terms if t and t.strip()]
        if not needles:
            return []

        g = self._traversal()
        rows = (
            g.V()
            .hasLabel(VERTEX_LABEL)
            .or_(*[__.has("search_text", TextP.containing(n)) for n in needles])
            .limit(limit * 3)
            .valueMap()
            .to_list()
        )
        nodes = []
        for row in rows:
            props = flatten_value_map(row)
            node = node_from_properties(props, score=term_score(props, needles))
            if node is not None:
                nodes.append(node)
        nodes.sort(key=lambda n: (-n.score, n.memory_id))
        return nodes[:limit]

    @_translate_errors
    def search_related(
        self,
        memory_id: int,
        types: Optional[Sequence[str]] = None,
        max_depth: int = 2,
    ) -> GraphNeighborhood:
        from gremlin_python.process.traversal import P

        g = self._traversal()
        labels = list(types or [])

        def fetch_edges(ids: List[int]) -> List[GraphEdge]:
            from gremlin_python.process.graph_traversal import __

            t = g.V().has(VERTEX_LABEL, "memory_id", P.within(*ids))
            t = t.bothE(*labels) if labels else t.bothE()
            rows = (
                t.dedup()
                .project("from_id", "to_id", "type", "props")
                .by(__.outV().values("memory_id"))
                .by(__.inV().values("memory_id"))
                .by(__.label())
                .by(__.valueMap())
                .to_list()
            )
            return [
                GraphEdge(
                    from_id=int(row["from_id"]),
                    to_id=int(row["to_id"]),
                    type=str(row["type"]),
                    properties=flatten_value_map(row.get("props") or {}),
                )
                for row in rows
            ]

        related_ids, edges = breadth_first(memory_id, fetch_edges, max_depth)
        if not related_ids:
            return GraphNeighborhood(edges=edges)

        rows = g.V().has(VERTEX_LABEL, "memory_id", P.within(*related_ids)).valueMap().to_list()
        by_id: Dict[int, GraphNode] = {}
        for row in rows:
            node = node_from_properties(flatten_value_map(row))
            if node is not None:
                by_id[node.memory_id] = node
        nodes = [by_id[i] for i in related_ids if i in by_id]
        return GraphNeighborhood(nodes=nodes, edges=edges)
