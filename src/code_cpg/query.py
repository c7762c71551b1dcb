#!/usr/bin/env python3
"""
query.py

QueryEngine — read-only analytics over the Code Property Graph.

Relationship lookups, bounded traversals, path search, impact analysis,
centrality ranking and fuzzy search.  Every traversal keeps a visited set
and stops at the caller's depth bound; nodes that cannot be resolved are
silently left out of results.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Iterable, Sequence
from typing import Dict, List, Optional

from code_cpg.models import (
    DEPENDENCY_EDGE_TYPES,
    PATH_EDGE_TYPES,
    Bottleneck,
    CircularDependency,
    EdgeQuery,
    EdgeType,
    GraphEdge,
    GraphNode,
    ImpactAnalysis,
    NodeQuery,
    NodeSearchResult,
    NodeType,
    PathSearchResult,
)
from code_cpg.store import GraphStore

logger = logging.getLogger(__name__)

_INDIRECT_DEPTH = 5


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def levenshtein(a: str, b: str) -> int:
    """Edit distance between *a* and *b*."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """``1 - levenshtein / max_len`` on lowercased strings (``1.0`` for two empties)."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein(a.lower(), b.lower())) / max_len


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the whitespace-token sets of *a* and *b*."""
    words_a, words_b = set(a.split()), set(b.split())
    union = words_a | words_b
    return len(words_a & words_b) / len(union) if union else 0.0


def risk_level(total_affected: int) -> str:
    """Risk tier for a change touching *total_affected* nodes."""
    if total_affected > 50:
        return "critical"
    if total_affected > 20:
        return "high"
    if total_affected > 5:
        return "medium"
    return "low"


def centrality(incoming: int, outgoing: int, complexity: int) -> float:
    """``(2 * incoming + outgoing) * ln(complexity + 1)``."""
    return (incoming * 2 + outgoing) * math.log(complexity + 1)


def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------


class QueryEngine:
    """
    Graph analytics on top of a :class:`~code_cpg.store.GraphStore`.

    Node-centred methods read the version that holds the node unless a
    ``version_id`` is pinned; project-centred methods default to the
    project's current version.

    :param store: Graph store to read from.
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Basic lookups
    # ------------------------------------------------------------------

    def resolve_node(
        self, project_id: str, ref: str, *, version_id: Optional[str] = None
    ) -> Optional[GraphNode]:
        """Look a node up by id, falling back to its ``path:line:name`` key."""
        node = self.store.get_node(ref)
        if node is not None and node.project_id == project_id:
            return node
        return self.store.get_node_by_key(project_id, ref, version_id)

    def find_nodes_by_name(
        self,
        project_id: str,
        name: str,
        *,
        fuzzy: bool = False,
        node_type: Optional[NodeType] = None,
        limit: int = 50,
        version_id: Optional[str] = None,
    ) -> List[NodeSearchResult]:
        """
        Nodes named *name* (exact), or whose name/key contains it (fuzzy).

        Fuzzy hits are scored with :func:`name_similarity`.
        """
        query = NodeQuery(project_id=project_id, version_id=version_id, node_type=node_type, limit=limit)
        if fuzzy:
            query.pattern = name
        else:
            query.name = name
        nodes = self.store.query_nodes(query).data
        if not fuzzy:
            return [NodeSearchResult(node=n, similarity=1.0, match_reason="exact_name_match") for n in nodes]
        return [
            NodeSearchResult(node=n, similarity=name_similarity(n.name or "", name), match_reason="fuzzy_name_match")
            for n in nodes
        ]

    def find_nodes_in_file(
        self, project_id: str, file_path: str, *, version_id: Optional[str] = None
    ) -> List[GraphNode]:
        """All nodes located in *file_path*, in line order."""
        return self.store.query_nodes(
            NodeQuery(project_id=project_id, version_id=version_id, file_path=file_path)
        ).data

    def find_nodes_by_type(
        self,
        project_id: str,
        node_type: NodeType,
        limit: Optional[int] = 100,
        *,
        version_id: Optional[str] = None,
    ) -> List[GraphNode]:
        """Up to *limit* nodes of *node_type*."""
        return self.store.query_nodes(
            NodeQuery(project_id=project_id, version_id=version_id, node_type=node_type, limit=limit)
        ).data

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def find_callers(self, node_id: str, *, version_id: Optional[str] = None) -> List[GraphNode]:
        """Nodes with a ``CALLS`` edge into *node_id*."""
        return self._one_hop(node_id, "in", (EdgeType.CALLS,), version_id)

    def find_callees(self, node_id: str, *, version_id: Optional[str] = None) -> List[GraphNode]:
        """Nodes that *node_id* has a ``CALLS`` edge to."""
        return self._one_hop(node_id, "out", (EdgeType.CALLS,), version_id)

    def find_dependencies(
        self,
        node_id: str,
        max_depth: int = 5,
        edge_types: Sequence[EdgeType] = DEPENDENCY_EDGE_TYPES,
        *,
        version_id: Optional[str] = None,
    ) -> List[GraphNode]:
        """
        Everything *node_id* depends on, up to *max_depth* hops outward.

        :return: Reached nodes (start excluded) in discovery order.
        """
        return self._traverse(node_id, "out", max_depth, edge_types, version_id)

    def find_dependents(
        self,
        node_id: str,
        max_depth: int = 5,
        edge_types: Sequence[EdgeType] = DEPENDENCY_EDGE_TYPES,
        *,
        version_id: Optional[str] = None,
    ) -> List[GraphNode]:
        """Everything depending on *node_id*, up to *max_depth* hops inward."""
        return self._traverse(node_id, "in", max_depth, edge_types, version_id)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def find_path(
        self,
        from_id: str,
        to_id: str,
        max_depth: int = 10,
        edge_types: Sequence[EdgeType] = PATH_EDGE_TYPES,
        *,
        version_id: Optional[str] = None,
    ) -> Optional[PathSearchResult]:
        """
        Fewest-edge path from *from_id* to *to_id*.

        :param max_depth: Maximum path length in edges.
        :return: :class:`PathSearchResult` or ``None`` if unreachable within
                 the bound.
        """
        return self.find_shortest_paths(
            from_id, [to_id], max_depth, edge_types, version_id=version_id
        ).get(to_id)

    def find_shortest_paths(
        self,
        from_id: str,
        to_ids: Iterable[str],
        max_depth: int = 10,
        edge_types: Sequence[EdgeType] = PATH_EDGE_TYPES,
        *,
        version_id: Optional[str] = None,
    ) -> Dict[str, Optional[PathSearchResult]]:
        """
        Fewest-edge paths from *from_id* to each of *to_ids* (one BFS).

        :return: ``{to_id: PathSearchResult | None}``.
        """
        targets = list(dict.fromkeys(to_ids))
        start = self.store.get_node(from_id)
        if start is None:
            return {t: None for t in targets}
        version = version_id or start.version_id

        parents: Dict[str, Optional[GraphEdge]] = {from_id: None}
        pending = set(targets) - {from_id}
        frontier = deque([(from_id, 0)])
        while frontier and pending:
            current, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for edge in self._edges(current, "out", edge_types, start.project_id, version):
                nxt = edge.target_node_id
                if nxt in parents:
                    continue
                parents[nxt] = edge
                pending.discard(nxt)
                frontier.append((nxt, depth + 1))

        results: Dict[str, Optional[PathSearchResult]] = {}
        for target in targets:
            results[target] = self._reconstruct(target, parents) if target in parents else None
        return results

    def _reconstruct(self, target: str, parents: Dict[str, Optional[GraphEdge]]) -> Optional[PathSearchResult]:
        edges: List[GraphEdge] = []
        current = target
        while parents[current] is not None:
            edge = parents[current]
            edges.append(edge)
            current = edge.source_node_id
        edges.reverse()

        ids = [current, *(e.target_node_id for e in edges)]
        nodes = [self.store.get_node(i) for i in ids]
        if any(n is None for n in nodes):
            return None
        return PathSearchResult(
            path=nodes,
            edges=edges,
            total_weight=sum(e.weight if e.weight is not None else 1.0 for e in edges),
            length=len(edges),
        )

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_impact(self, node_id: str, *, version_id: Optional[str] = None) -> ImpactAnalysis:
        """
        Estimate what a change to *node_id* affects.

        ``directly_affected`` are depth-1 dependents, ``indirectly_affected``
        the remaining dependents up to depth 5.

        :raises ValueError: *node_id* does not exist.
        """
        target = self.store.get_node(node_id)
        if target is None:
            raise ValueError(f"node {node_id!r} not found")

        direct = self.find_dependents(node_id, max_depth=1, version_id=version_id)
        reached = self.find_dependents(node_id, max_depth=_INDIRECT_DEPTH, version_id=version_id)
        direct_ids = {n.id for n in direct}
        indirect = [n for n in reached if n.id not in direct_ids]

        files = list(dict.fromkeys(n.location.file_path for n in [*direct, *indirect]))
        complexity = (
            (target.complexity or 1)
            + 0.8 * sum(n.complexity or 1 for n in direct)
            + 0.3 * sum(n.complexity or 1 for n in indirect)
        )
        return ImpactAnalysis(
            target_node=target,
            directly_affected=direct,
            indirectly_affected=indirect,
            risk_level=risk_level(len(direct) + len(indirect)),
            affected_files=files,
            estimated_change_complexity=_round_half_up(complexity),
        )

    def find_circular_dependencies(
        self, project_id: str, max_depth: int = 10, *, version_id: Optional[str] = None
    ) -> List[CircularDependency]:
        """Dependency cycles of at most *max_depth* edges (see the store)."""
        return self.store.find_circular_dependencies(project_id, max_depth, version_id=version_id)

    def find_bottlenecks(
        self, project_id: str, limit: int = 20, *, version_id: Optional[str] = None
    ) -> List[Bottleneck]:
        """
        Rank ``FUNCTION`` nodes by :func:`centrality` over all their edges.

        :return: Top *limit* bottlenecks, highest centrality first.
        """
        version = version_id or self.store.get_current_version(project_id)
        if version is None:
            return []
        functions = self.find_nodes_by_type(project_id, NodeType.FUNCTION, limit=None, version_id=version)
        incoming: Dict[str, int] = {}
        outgoing: Dict[str, int] = {}
        for edge in self.store.query_edges(EdgeQuery(project_id=project_id, version_id=version)).data:
            outgoing[edge.source_node_id] = outgoing.get(edge.source_node_id, 0) + 1
            incoming[edge.target_node_id] = incoming.get(edge.target_node_id, 0) + 1

        ranked = []
        for node in functions:
            n_in, n_out = incoming.get(node.id, 0), outgoing.get(node.id, 0)
            ranked.append(
                Bottleneck(
                    node=node,
                    incoming_connections=n_in,
                    outgoing_connections=n_out,
                    total_connections=n_in + n_out,
                    centrality=centrality(n_in, n_out, node.complexity or 1),
                )
            )
        ranked.sort(key=lambda b: b.centrality, reverse=True)
        return ranked[:limit]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_nodes(
        self,
        project_id: str,
        query: str,
        node_types: Optional[Sequence[NodeType]] = None,
        include_content: bool = False,
        fuzzy_threshold: float = 0.3,
        limit: int = 50,
        *,
        version_id: Optional[str] = None,
    ) -> List[NodeSearchResult]:
        """
        Fuzzy name search, optionally extended to docstrings and purposes.

        Name hits are scored by :func:`name_similarity`; content hits (nodes
        whose name/docstring/purpose contains *query*) by
        :func:`text_similarity`.  Hits below *fuzzy_threshold* are dropped and
        a node found twice keeps its higher score.
        """
        types = list(node_types) if node_types else list(NodeType)
        hits: List[NodeSearchResult] = []
        for node_type in types:
            hits.extend(
                r
                for r in self.find_nodes_by_name(
                    project_id, query, fuzzy=True, node_type=node_type, version_id=version_id
                )
                if r.similarity >= fuzzy_threshold
            )

        if include_content:
            needle = query.lower()
            for node in self.store.query_nodes(
                NodeQuery(project_id=project_id, version_id=version_id, limit=1000)
            ).data:
                if node.node_type not in types:
                    continue
                text = " ".join(t for t in (node.name, node.docstring, node.purpose) if t).lower()
                if needle not in text:
                    continue
                score = text_similarity(text, needle)
                if score >= fuzzy_threshold:
                    hits.append(NodeSearchResult(node=node, similarity=score, match_reason="content_match"))

        best: Dict[str, NodeSearchResult] = {}
        for hit in hits:
            prev = best.get(hit.node.id)
            if prev is None or hit.similarity > prev.similarity:
                best[hit.node.id] = hit
        return sorted(best.values(), key=lambda r: r.similarity, reverse=True)[:limit]

    # ------------------------------------------------------------------
    # Traversal internals
    # ------------------------------------------------------------------

    def _edges(
        self,
        node_id: str,
        direction: str,
        edge_types: Sequence[EdgeType],
        project_id: str,
        version_id: Optional[str],
    ) -> List[GraphEdge]:
        query = EdgeQuery(project_id=project_id, version_id=version_id, edge_types=tuple(edge_types))
        if direction == "out":
            query.source_node_id = node_id
        else:
            query.target_node_id = node_id
        return self.store.query_edges(query).data

    def _one_hop(
        self,
        node_id: str,
        direction: str,
        edge_types: Sequence[EdgeType],
        version_id: Optional[str],
    ) -> List[GraphNode]:
        return self._traverse(node_id, direction, 1, edge_types, version_id)

    def _traverse(
        self,
        node_id: str,
        direction: str,
        max_depth: int,
        edge_types: Sequence[EdgeType],
        version_id: Optional[str],
    ) -> List[GraphNode]:
        start = self.store.get_node(node_id)
        if start is None:
            return []
        version = version_id or start.version_id

        visited = {node_id}
        found: List[GraphNode] = []
        frontier = [node_id]
        for _ in range(max_depth):
            next_frontier: List[str] = []
            for current in frontier:
                for edge in self._edges(current, direction, edge_types, start.project_id, version):
                    other = edge.target_node_id if direction == "out" else edge.source_node_id
                    if other in visited:
                        continue
                    visited.add(other)
                    node = self.store.get_node(other)
                    if node is None:
                        continue
                    found.append(node)
                    next_frontier.append(other)
            if not next_frontier:
                break
            frontier = next_frontier
        return found
