#!/usr/bin/env python3
"""
models.py

Data model for the versioned Code Property Graph.

Graph primitives (nodes, edges, versions, operation-log entries) plus the
request/response shapes exchanged with the builder, updater and query
engine.  Every response type exposes ``to_dict()`` returning plain,
JSON-serialisable data.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

# ============================================================================
# Enumerations
# ============================================================================


class NodeType(str, Enum):
    """Kinds of structural code element stored as graph nodes."""

    FUNCTION = "FUNCTION"
    CLASS = "CLASS"
    VARIABLE = "VARIABLE"
    MODULE = "MODULE"
    PARAMETER = "PARAMETER"
    RETURN = "RETURN"
    CALL_SITE = "CALL_SITE"
    IMPORT = "IMPORT"
    EXPORT = "EXPORT"
    INTERFACE = "INTERFACE"
    TYPE = "TYPE"
    NAMESPACE = "NAMESPACE"
    BLOCK = "BLOCK"


class EdgeType(str, Enum):
    """Relationship types between graph nodes."""

    CALLS = "CALLS"
    IMPORTS = "IMPORTS"
    EXTENDS = "EXTENDS"
    IMPLEMENTS = "IMPLEMENTS"
    DATA_FLOW = "DATA_FLOW"
    CONTROL_FLOW = "CONTROL_FLOW"
    CONTAINS = "CONTAINS"
    USES = "USES"
    DEFINES = "DEFINES"
    REFERENCES = "REFERENCES"


class OperationType(str, Enum):
    """Mutation kinds recorded in the operation log."""

    ADD_NODE = "ADD_NODE"
    UPDATE_NODE = "UPDATE_NODE"
    DELETE_NODE = "DELETE_NODE"
    ADD_EDGE = "ADD_EDGE"
    UPDATE_EDGE = "UPDATE_EDGE"
    DELETE_EDGE = "DELETE_EDGE"


class ChangeType(str, Enum):
    """File-level change kinds consumed by the incremental updater."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


# Default edge types for dependency traversal and path finding
DEPENDENCY_EDGE_TYPES: tuple[EdgeType, ...] = (
    EdgeType.USES,
    EdgeType.IMPORTS,
    EdgeType.CALLS,
)
PATH_EDGE_TYPES: tuple[EdgeType, ...] = (EdgeType.CALLS, EdgeType.USES)
CYCLE_EDGE_TYPES: tuple[EdgeType, ...] = (
    EdgeType.CALLS,
    EdgeType.IMPORTS,
    EdgeType.EXTENDS,
    EdgeType.USES,
)


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Graph primitives
# ============================================================================


@dataclass
class CodeLocation:
    """
    Source span of a code element.

    :param file_path: Repo-relative POSIX path.
    :param start_line: 1-based first line.
    :param end_line: 1-based last line.
    :param start_column: 0-based start column.
    :param end_column: 0-based end column.
    """

    file_path: str
    start_line: int
    end_line: int
    start_column: int = 0
    end_column: int = 0

    def contains(self, other: CodeLocation) -> bool:
        """
        ``True`` if *other* starts after this span's first line and ends
        within it (same file).

        The end is inclusive: a Python class ends on the last line of its
        last method.
        """
        return (
            self.file_path == other.file_path
            and other.start_line > self.start_line
            and other.end_line <= self.end_line
        )

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "start_column": self.start_column,
            "end_column": self.end_column,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CodeLocation:
        return cls(
            file_path=d["file_path"],
            start_line=int(d["start_line"]),
            end_line=int(d["end_line"]),
            start_column=int(d.get("start_column") or 0),
            end_column=int(d.get("end_column") or 0),
        )


@dataclass
class Parameter:
    """A function or method parameter."""

    name: str
    type: Optional[str] = None
    default_value: Optional[str] = None
    is_optional: bool = False
    is_rest: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "default_value": self.default_value,
            "is_optional": self.is_optional,
            "is_rest": self.is_rest,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Parameter:
        return cls(
            name=d["name"],
            type=d.get("type"),
            default_value=d.get("default_value"),
            is_optional=bool(d.get("is_optional", False)),
            is_rest=bool(d.get("is_rest", False)),
        )


@dataclass
class GraphNode:
    """
    A structural code element.

    ``id``, ``created_at`` and ``updated_at`` are assigned by the store; a
    node produced by extraction carries ``id=None`` until persisted.

    :param node_key: Deterministic identity ``path:start_line:name``,
                     unique within ``(project_id, version_id)``.
    :param hash: SHA-256 of the element's source text, used for change
                 detection.
    """

    project_id: str
    version_id: str
    node_key: str
    node_type: NodeType
    location: CodeLocation
    language: str
    hash: str
    name: Optional[str] = None
    signature: Optional[str] = None
    visibility: Optional[str] = None
    is_async: bool = False
    is_static: bool = False
    is_abstract: bool = False
    complexity: int = 1
    parameters: List[Parameter] = field(default_factory=list)
    return_type: Optional[str] = None
    docstring: Optional[str] = None
    purpose: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_id": self.version_id,
            "node_key": self.node_key,
            "node_type": self.node_type.value,
            "location": self.location.to_dict(),
            "name": self.name,
            "signature": self.signature,
            "language": self.language,
            "visibility": self.visibility,
            "is_async": self.is_async,
            "is_static": self.is_static,
            "is_abstract": self.is_abstract,
            "complexity": self.complexity,
            "parameters": [p.to_dict() for p in self.parameters],
            "return_type": self.return_type,
            "docstring": self.docstring,
            "purpose": self.purpose,
            "hash": self.hash,
            "dependencies": list(self.dependencies),
            "exports": list(self.exports),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> GraphNode:
        return cls(
            id=d.get("id"),
            project_id=d["project_id"],
            version_id=d["version_id"],
            node_key=d["node_key"],
            node_type=NodeType(d["node_type"]),
            location=CodeLocation.from_dict(d["location"]),
            name=d.get("name"),
            signature=d.get("signature"),
            language=d["language"],
            visibility=d.get("visibility"),
            is_async=bool(d.get("is_async", False)),
            is_static=bool(d.get("is_static", False)),
            is_abstract=bool(d.get("is_abstract", False)),
            complexity=int(d.get("complexity") or 1),
            parameters=[Parameter.from_dict(p) for p in d.get("parameters") or []],
            return_type=d.get("return_type"),
            docstring=d.get("docstring"),
            purpose=d.get("purpose"),
            hash=d["hash"],
            dependencies=list(d.get("dependencies") or []),
            exports=list(d.get("exports") or []),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class GraphEdge:
    """
    A directed relationship between two nodes of the same project/version.

    :param weight: Traversal cost used by path search (default 1.0).
    :param call_type: ``direct`` | ``indirect`` | ``dynamic`` (CALLS only).
    """

    project_id: str
    version_id: str
    source_node_id: str
    target_node_id: str
    edge_type: EdgeType
    weight: float = 1.0
    call_type: Optional[str] = None
    is_conditional: bool = False
    is_loop_dependent: bool = False
    is_async_context: bool = False
    properties: dict = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_id": self.version_id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "edge_type": self.edge_type.value,
            "weight": self.weight,
            "call_type": self.call_type,
            "is_conditional": self.is_conditional,
            "is_loop_dependent": self.is_loop_dependent,
            "is_async_context": self.is_async_context,
            "properties": dict(self.properties),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> GraphEdge:
        return cls(
            id=d.get("id"),
            project_id=d["project_id"],
            version_id=d["version_id"],
            source_node_id=d["source_node_id"],
            target_node_id=d["target_node_id"],
            edge_type=EdgeType(d["edge_type"]),
            weight=float(d["weight"]) if d.get("weight") is not None else 1.0,
            call_type=d.get("call_type"),
            is_conditional=bool(d.get("is_conditional", False)),
            is_loop_dependent=bool(d.get("is_loop_dependent", False)),
            is_async_context=bool(d.get("is_async_context", False)),
            properties=dict(d.get("properties") or {}),
            created_at=d.get("created_at"),
        )


@dataclass
class Version:
    """A checkpoint in a project's linear version chain."""

    id: str
    project_id: str
    version_number: int
    checksum: str
    parent_version_id: Optional[str] = None
    operations_count: int = 0
    metadata: dict = field(default_factory=dict)
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "parent_version_id": self.parent_version_id,
            "checksum": self.checksum,
            "operations_count": self.operations_count,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


@dataclass
class UpdateOperation:
    """
    Audit-log entry for a single graph mutation.

    ``rollback_data`` holds what is needed to invert the mutation (see
    :mod:`code_cpg.rollback`).
    """

    project_id: str
    version_id: str
    operation_type: OperationType
    operation_data: dict
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    rollback_data: Optional[dict] = None
    file_path: Optional[str] = None
    change_reason: Optional[str] = None
    execution_time_ms: int = 0
    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_id": self.version_id,
            "operation_type": self.operation_type.value,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
            "operation_data": self.operation_data,
            "rollback_data": self.rollback_data,
            "file_path": self.file_path,
            "change_reason": self.change_reason,
            "execution_time_ms": self.execution_time_ms,
            "created_at": self.created_at,
        }


# ============================================================================
# Query shapes
# ============================================================================


@dataclass
class NodeQuery:
    """
    Node filter for :meth:`GraphStore.query_nodes`.

    ``version_id`` defaults to the project's current version.
    ``pattern`` is a case-insensitive substring match on name or node key.
    """

    project_id: str
    version_id: Optional[str] = None
    node_type: Optional[NodeType] = None
    name: Optional[str] = None
    file_path: Optional[str] = None
    pattern: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class EdgeQuery:
    """Edge filter for :meth:`GraphStore.query_edges`."""

    project_id: str
    version_id: Optional[str] = None
    source_node_id: Optional[str] = None
    target_node_id: Optional[str] = None
    edge_type: Optional[EdgeType] = None
    edge_types: Optional[tuple[EdgeType, ...]] = None
    limit: Optional[int] = None
    offset: int = 0


T = TypeVar("T")


@dataclass
class QueryResult(Generic[T]):
    """One page of query results."""

    data: List[T]
    total_count: int
    has_more: bool
    execution_time_ms: float

    def to_dict(self) -> dict:
        return {
            "data": [_as_dict(d) for d in self.data],
            "total_count": self.total_count,
            "has_more": self.has_more,
            "execution_time_ms": self.execution_time_ms,
        }


# ============================================================================
# Build / update shapes
# ============================================================================


@dataclass
class GraphContext:
    """
    Explicit write/read context threaded through builder and updater calls.

    :param project_id: Project the graph belongs to.
    :param version_id: Version being written (set by the batch checkpoint).
    :param root_path: Repository root on disk.
    :param include_patterns: fnmatch globs a repo-relative path must match
                             (empty = everything).
    :param exclude_patterns: fnmatch globs that exclude a path.
    :param languages: Restrict to these language ids (empty = all supported).
    """

    project_id: str
    version_id: Optional[str] = None
    root_path: str = "."
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)

    def with_version(self, version_id: str) -> GraphContext:
        """Return a copy pinned to *version_id*."""
        return replace(self, version_id=version_id)


@dataclass
class FileChange:
    """
    A single file change fed to the incremental updater.

    :param file_path: Repo-relative path (new path for renames).
    :param change_type: One of :class:`ChangeType`.
    :param old_content: Previous full content (``modified`` only).
    :param new_content: Current full content (``added``/``modified``).
    :param old_path: Previous path (``renamed`` only).
    """

    file_path: str
    change_type: ChangeType
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    old_path: Optional[str] = None

    def __post_init__(self) -> None:
        self.change_type = ChangeType(self.change_type)

    @classmethod
    def from_dict(cls, d: dict) -> FileChange:
        return cls(
            file_path=d["file_path"],
            change_type=ChangeType(d["change_type"]),
            old_content=d.get("old_content"),
            new_content=d.get("new_content"),
            old_path=d.get("old_path"),
        )


@dataclass
class NodeDiff:
    """One entry of an :class:`ASTDiff`."""

    node_key: str
    node_type: NodeType
    location: CodeLocation
    old_data: Optional[GraphNode] = None
    new_data: Optional[GraphNode] = None

    def to_dict(self) -> dict:
        return {
            "node_key": self.node_key,
            "node_type": self.node_type.value,
            "location": self.location.to_dict(),
            "old_key": self.old_data.node_key if self.old_data else None,
        }


@dataclass
class ASTDiff:
    """Classification of significant-node changes between two parse trees."""

    added: List[NodeDiff] = field(default_factory=list)
    modified: List[NodeDiff] = field(default_factory=list)
    deleted: List[NodeDiff] = field(default_factory=list)
    moved: List[NodeDiff] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted or self.moved)

    def to_dict(self) -> dict:
        return {
            "added": [d.to_dict() for d in self.added],
            "modified": [d.to_dict() for d in self.modified],
            "deleted": [d.to_dict() for d in self.deleted],
            "moved": [d.to_dict() for d in self.moved],
        }


@dataclass
class FileBuildResult:
    """Outcome of :meth:`GraphBuilder.process_file`."""

    file_path: str
    nodes_added: int = 0
    edges_added: int = 0
    edges_dropped: int = 0
    node_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "nodes_added": self.nodes_added,
            "edges_added": self.edges_added,
            "edges_dropped": self.edges_dropped,
            "node_ids": list(self.node_ids),
            "errors": list(self.errors),
        }


@dataclass
class GraphUpdateResult:
    """
    Result of a whole-project build or an incremental update batch.

    ``success`` is ``False`` when at least one file failed; everything that
    succeeded is still persisted under ``version_id``.
    """

    success: bool
    version_id: str
    operations_applied: int = 0
    nodes_affected: int = 0
    edges_affected: int = 0
    edges_dropped: int = 0
    execution_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "version_id": self.version_id,
            "operations_applied": self.operations_applied,
            "nodes_affected": self.nodes_affected,
            "edges_affected": self.edges_affected,
            "edges_dropped": self.edges_dropped,
            "execution_time_ms": self.execution_time_ms,
            "errors": list(self.errors),
        }

    def to_json(self, *, indent: int = 2) -> str:
        """Serialise to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    def __str__(self) -> str:
        lines = [
            f"version     : {self.version_id}",
            f"success     : {self.success}",
            f"operations  : {self.operations_applied}",
            f"nodes       : {self.nodes_affected}",
            f"edges       : {self.edges_affected}  (dropped {self.edges_dropped})",
            f"time        : {self.execution_time_ms:.1f} ms",
        ]
        for err in self.errors:
            lines.append(f"error       : {err}")
        return "\n".join(lines)


# ============================================================================
# Analysis shapes
# ============================================================================


@dataclass
class NodeConnections:
    """A node together with its incoming and outgoing edges."""

    node: GraphNode
    incoming_edges: List[GraphEdge]
    outgoing_edges: List[GraphEdge]

    def to_dict(self) -> dict:
        return {
            "node": self.node.to_dict(),
            "incoming_edges": [e.to_dict() for e in self.incoming_edges],
            "outgoing_edges": [e.to_dict() for e in self.outgoing_edges],
        }


@dataclass
class GraphStatistics:
    """Aggregate counts for one version of a project graph."""

    project_id: str
    version_id: Optional[str]
    version_number: int
    total_nodes: int
    total_edges: int
    total_files: int
    node_type_counts: dict[str, int]
    edge_type_counts: dict[str, int]
    average_complexity: float
    version_created: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "version_id": self.version_id,
            "version_number": self.version_number,
            "total_nodes": self.total_nodes,
            "total_edges": self.total_edges,
            "total_files": self.total_files,
            "node_type_counts": dict(self.node_type_counts),
            "edge_type_counts": dict(self.edge_type_counts),
            "average_complexity": self.average_complexity,
            "version_created": self.version_created,
        }


@dataclass
class CircularDependency:
    """A dependency cycle; ``cycle_length`` counts edges."""

    nodes: List[str]
    edges: List[str]
    cycle_length: int
    edge_types: List[str]
    severity: str

    def to_dict(self) -> dict:
        return {
            "nodes": list(self.nodes),
            "edges": list(self.edges),
            "cycle_length": self.cycle_length,
            "edge_types": list(self.edge_types),
            "severity": self.severity,
        }


@dataclass
class PathSearchResult:
    """A path found by :meth:`QueryEngine.find_path`; ``length`` counts edges."""

    path: List[GraphNode]
    edges: List[GraphEdge]
    total_weight: float
    length: int

    def to_dict(self) -> dict:
        return {
            "path": [n.to_dict() for n in self.path],
            "edges": [e.to_dict() for e in self.edges],
            "total_weight": self.total_weight,
            "length": self.length,
        }


@dataclass
class NodeSearchResult:
    """A scored search hit."""

    node: GraphNode
    similarity: float
    match_reason: str

    def to_dict(self) -> dict:
        return {
            "node": self.node.to_dict(),
            "similarity": self.similarity,
            "match_reason": self.match_reason,
        }


@dataclass
class ImpactAnalysis:
    """Nodes and files potentially affected by changing ``target_node``."""

    target_node: GraphNode
    directly_affected: List[GraphNode]
    indirectly_affected: List[GraphNode]
    risk_level: str
    affected_files: List[str]
    estimated_change_complexity: int

    def to_dict(self) -> dict:
        return {
            "target_node": self.target_node.to_dict(),
            "directly_affected": [n.to_dict() for n in self.directly_affected],
            "indirectly_affected": [n.to_dict() for n in self.indirectly_affected],
            "risk_level": self.risk_level,
            "affected_files": list(self.affected_files),
            "estimated_change_complexity": self.estimated_change_complexity,
        }


@dataclass
class Bottleneck:
    """A highly connected function ranked by centrality."""

    node: GraphNode
    incoming_connections: int
    outgoing_connections: int
    total_connections: int
    centrality: float

    def to_dict(self) -> dict:
        return {
            "node": self.node.to_dict(),
            "incoming_connections": self.incoming_connections,
            "outgoing_connections": self.outgoing_connections,
            "total_connections": self.total_connections,
            "centrality": self.centrality,
        }


def _as_dict(obj: Any) -> Any:
    return obj.to_dict() if hasattr(obj, "to_dict") else obj
