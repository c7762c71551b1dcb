#!/usr/bin/env python3
"""
store.py

GraphStore — SQLite persistence layer for the versioned Code Property Graph.

SQLite is the authoritative, canonical store.  Four logical tables:
versions (linear chain per project), nodes, edges and an append-only
operation log.  Nodes and edges live in flat tables keyed by opaque ids, so
cascade deletes and cycle detection are index operations.

No parsing, no graph building, no analytics beyond the primitives below.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from code_cpg.errors import Conflict, StorageFailure
from code_cpg.models import (
    CYCLE_EDGE_TYPES,
    CircularDependency,
    CodeLocation,
    EdgeQuery,
    EdgeType,
    GraphEdge,
    GraphNode,
    GraphStatistics,
    NodeConnections,
    NodeQuery,
    NodeType,
    OperationType,
    Parameter,
    QueryResult,
    UpdateOperation,
    Version,
    utcnow,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS graph_versions (
  id                TEXT PRIMARY KEY,
  project_id        TEXT NOT NULL,
  version_number    INTEGER NOT NULL,
  parent_version_id TEXT REFERENCES graph_versions(id),
  checksum          TEXT NOT NULL,
  operations_count  INTEGER NOT NULL DEFAULT 0,
  metadata          TEXT,
  created_at        TEXT NOT NULL,
  UNIQUE (project_id, version_number)
);

CREATE TABLE IF NOT EXISTS graph_nodes (
  id           TEXT PRIMARY KEY,
  project_id   TEXT NOT NULL,
  version_id   TEXT NOT NULL REFERENCES graph_versions(id),
  node_key     TEXT NOT NULL,
  node_type    TEXT NOT NULL,
  file_path    TEXT NOT NULL,
  start_line   INTEGER NOT NULL,
  end_line     INTEGER NOT NULL,
  start_column INTEGER DEFAULT 0,
  end_column   INTEGER DEFAULT 0,
  name         TEXT,
  signature    TEXT,
  language     TEXT NOT NULL,
  visibility   TEXT,
  is_async     INTEGER DEFAULT 0,
  is_static    INTEGER DEFAULT 0,
  is_abstract  INTEGER DEFAULT 0,
  complexity   INTEGER DEFAULT 1,
  parameters   TEXT,
  return_type  TEXT,
  docstring    TEXT,
  purpose      TEXT,
  hash         TEXT NOT NULL,
  dependencies TEXT,
  exports      TEXT,
  created_at   TEXT NOT NULL,
  updated_at   TEXT NOT NULL,
  UNIQUE (project_id, version_id, node_key)
);

CREATE TABLE IF NOT EXISTS graph_edges (
  id                TEXT PRIMARY KEY,
  project_id        TEXT NOT NULL,
  version_id        TEXT NOT NULL REFERENCES graph_versions(id),
  source_node_id    TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
  target_node_id    TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
  edge_type         TEXT NOT NULL,
  weight            REAL DEFAULT 1.0,
  call_type         TEXT,
  is_conditional    INTEGER DEFAULT 0,
  is_loop_dependent INTEGER DEFAULT 0,
  is_async_context  INTEGER DEFAULT 0,
  properties        TEXT,
  created_at        TEXT NOT NULL,
  UNIQUE (source_node_id, target_node_id, edge_type, version_id)
);

CREATE TABLE IF NOT EXISTS graph_update_operations (
  id                TEXT PRIMARY KEY,
  project_id        TEXT NOT NULL,
  version_id        TEXT NOT NULL,
  operation_type    TEXT NOT NULL,
  node_id           TEXT,
  edge_id           TEXT,
  operation_data    TEXT NOT NULL,
  rollback_data     TEXT,
  file_path         TEXT,
  change_reason     TEXT,
  execution_time_ms INTEGER DEFAULT 0,
  created_at        TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS trg_version_parent_immutable
BEFORE UPDATE OF parent_version_id ON graph_versions
WHEN OLD.parent_version_id IS NOT NULL
BEGIN
  SELECT RAISE(ABORT, 'parent_version_id is immutable');
END;

CREATE INDEX IF NOT EXISTS idx_nodes_project_type ON graph_nodes(project_id, version_id, node_type);
CREATE INDEX IF NOT EXISTS idx_nodes_file_path    ON graph_nodes(project_id, version_id, file_path);
CREATE INDEX IF NOT EXISTS idx_nodes_name         ON graph_nodes(project_id, version_id, name);
CREATE INDEX IF NOT EXISTS idx_nodes_hash         ON graph_nodes(hash);

CREATE INDEX IF NOT EXISTS idx_edges_source  ON graph_edges(source_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_target  ON graph_edges(target_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_type    ON graph_edges(project_id, version_id, edge_type);

CREATE INDEX IF NOT EXISTS idx_versions_project ON graph_versions(project_id, version_number DESC);
CREATE INDEX IF NOT EXISTS idx_operations_version ON graph_update_operations(project_id, version_id);
"""

# Node fields accepted by update_node() and the columns they map to
_NODE_SCALAR_FIELDS: Dict[str, str] = {
    "node_key": "node_key",
    "name": "name",
    "signature": "signature",
    "language": "language",
    "visibility": "visibility",
    "return_type": "return_type",
    "docstring": "docstring",
    "purpose": "purpose",
    "hash": "hash",
    "version_id": "version_id",
    "complexity": "complexity",
}
_NODE_BOOL_FIELDS = ("is_async", "is_static", "is_abstract")
_NODE_JSON_FIELDS = ("dependencies", "exports")


# ---------------------------------------------------------------------------
# GraphStore
# ---------------------------------------------------------------------------


class GraphStore:
    """
    SQLite-backed authoritative store for the Code Property Graph.

    Provides version management, node/edge CRUD with cascade deletes,
    filtered and paginated queries, cycle detection and a best-effort
    operation log.

    Example::

        store = GraphStore("cpg.sqlite")
        vid = store.create_new_version("my-project")
        nid = store.add_node(node)
        print(store.get_graph_statistics("my-project"))

    Failure semantics: single-item lookups return ``None`` when absent;
    integrity violations raise :class:`~code_cpg.errors.Conflict`; any other
    SQLite error raises :class:`~code_cpg.errors.StorageFailure` chained to
    the cause.

    :param db_path: Path to the SQLite database file (created if absent).
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._con: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def con(self) -> sqlite3.Connection:
        """Lazy SQLite connection (created on first access)."""
        if self._con is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._con = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # access is serialised by self._lock
            )
            self._con.row_factory = sqlite3.Row
            self._con.executescript(_SCHEMA_SQL)
        return self._con

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            if self._con is not None:
                self._con.close()
                self._con = None

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        """Serialise access and translate SQLite errors into the engine taxonomy."""
        with self._lock:
            try:
                yield self.con
            except sqlite3.IntegrityError as exc:
                self._rollback()
                raise Conflict(f"{action}: {exc}") from exc
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageFailure(f"{action}: {exc}") from exc

    def _rollback(self) -> None:
        if self._con is not None and self._con.in_transaction:
            self._con.rollback()

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def create_new_version(
        self,
        project_id: str,
        parent_version_id: Optional[str] = None,
        checksum: Optional[str] = None,
        *,
        carry_forward: bool = False,
        metadata: Optional[dict] = None,
    ) -> str:
        """
        Append a new version to the project's chain.

        With ``carry_forward=True`` the live node and edge rows of the parent
        version are reassigned to the new version in the same transaction,
        so the new version holds the full current graph.  The parent itself
        keeps its metadata but no longer owns rows.

        :param project_id: Project identifier.
        :param parent_version_id: Parent version (must belong to the project).
        :param checksum: Content checksum; a random token when omitted.
        :param carry_forward: Move the parent's rows into the new version.
        :param metadata: Free-form JSON metadata.
        :return: New version id.
        """
        if carry_forward and parent_version_id is None:
            raise ValueError("carry_forward requires a parent_version_id")

        version_id = uuid.uuid4().hex
        with self._guard("create version") as con:
            if parent_version_id is not None:
                row = con.execute(
                    "SELECT project_id FROM graph_versions WHERE id = ?",
                    (parent_version_id,),
                ).fetchone()
                if row is None or row["project_id"] != project_id:
                    raise ValueError(
                        f"parent version {parent_version_id!r} does not belong "
                        f"to project {project_id!r}"
                    )
            next_number = con.execute(
                "SELECT COALESCE(MAX(version_number), 0) + 1 FROM graph_versions "
                "WHERE project_id = ?",
                (project_id,),
            ).fetchone()[0]
            con.execute(
                """
                INSERT INTO graph_versions
                  (id, project_id, version_number, parent_version_id, checksum,
                   operations_count, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    version_id,
                    project_id,
                    next_number,
                    parent_version_id,
                    checksum or secrets.token_hex(16),
                    _dumps(metadata or {}),
                    utcnow(),
                ),
            )
            if carry_forward:
                con.execute(
                    "UPDATE graph_nodes SET version_id = ? WHERE version_id = ?",
                    (version_id, parent_version_id),
                )
                con.execute(
                    "UPDATE graph_edges SET version_id = ? WHERE version_id = ?",
                    (version_id, parent_version_id),
                )
            con.commit()

        logger.debug(
            "created version %s (#%d) for %s parent=%s carry_forward=%s",
            version_id,
            next_number,
            project_id,
            parent_version_id,
            carry_forward,
        )
        return version_id

    def get_current_version(self, project_id: str) -> Optional[str]:
        """
        Return the id of the project's newest version, or ``None``.

        :param project_id: Project identifier.
        """
        with self._guard("get current version") as con:
            row = con.execute(
                """
                SELECT id FROM graph_versions WHERE project_id = ?
                ORDER BY version_number DESC LIMIT 1
                """,
                (project_id,),
            ).fetchone()
        return row["id"] if row else None

    def get_version(self, version_id: str) -> Optional[Version]:
        """Fetch a version by id, or ``None`` if absent."""
        with self._guard("get version") as con:
            row = con.execute(
                "SELECT * FROM graph_versions WHERE id = ?", (version_id,)
            ).fetchone()
        return _row_to_version(row) if row else None

    def get_version_history(self, project_id: str, limit: int = 10) -> List[Version]:
        """
        Return the project's versions, newest first.

        :param project_id: Project identifier.
        :param limit: Maximum number of versions.
        """
        with self._guard("get version history") as con:
            rows = con.execute(
                """
                SELECT * FROM graph_versions WHERE project_id = ?
                ORDER BY version_number DESC LIMIT ?
                """,
                (project_id, limit),
            ).fetchall()
        return [_row_to_version(r) for r in rows]

    def _resolve_version(self, project_id: str, version_id: Optional[str]) -> Optional[str]:
        return version_id if version_id is not None else self.get_current_version(project_id)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, node: GraphNode) -> str:
        """
        Insert a node and return its new id.

        :param node: Node to persist; a fresh id is assigned unless ``node.id`` is set.
        :raises Conflict: ``node_key`` already exists in the version.
        """
        if not node.version_id:
            raise ValueError("node.version_id is required")
        node_id = node.id or uuid.uuid4().hex
        now = utcnow()
        loc = node.location
        with self._guard(f"add node {node.node_key!r}") as con:
            con.execute(
                """
                INSERT INTO graph_nodes
                  (id, project_id, version_id, node_key, node_type,
                   file_path, start_line, end_line, start_column, end_column,
                   name, signature, language, visibility,
                   is_async, is_static, is_abstract, complexity,
                   parameters, return_type, docstring, purpose, hash,
                   dependencies, exports, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node_id,
                    node.project_id,
                    node.version_id,
                    node.node_key,
                    NodeType(node.node_type).value,
                    loc.file_path,
                    loc.start_line,
                    loc.end_line,
                    loc.start_column,
                    loc.end_column,
                    node.name,
                    node.signature,
                    node.language,
                    node.visibility,
                    int(node.is_async),
                    int(node.is_static),
                    int(node.is_abstract),
                    node.complexity,
                    _dumps([p.to_dict() for p in node.parameters]),
                    node.return_type,
                    node.docstring,
                    node.purpose,
                    node.hash,
                    _dumps(list(node.dependencies)),
                    _dumps(list(node.exports)),
                    now,
                    now,
                ),
            )
            con.commit()
        return node_id

    def update_node(self, node_id: str, updates: dict) -> bool:
        """
        Patch the named fields of a node in place.

        Accepted keys are the :class:`GraphNode` field names (``location``
        may be a :class:`CodeLocation` or a dict).  ``updated_at`` is always
        refreshed.

        :param node_id: Node to patch.
        :param updates: ``{field: value}`` mapping.
        :return: ``True`` if a row was updated.
        :raises ValueError: An unknown or read-only field was named.
        """
        sets, params = _node_update_clause(updates)
        sets.append("updated_at = ?")
        params.append(utcnow())
        with self._guard(f"update node {node_id}") as con:
            cur = con.execute(
                f"UPDATE graph_nodes SET {', '.join(sets)} WHERE id = ?",
                (*params, node_id),
            )
            con.commit()
        return cur.rowcount > 0

    def delete_node(self, node_id: str) -> int:
        """
        Delete a node together with every edge referencing it.

        Edges are removed *before* the node so no edge ever dangles, even if
        the second statement fails.

        :param node_id: Node to delete.
        :return: Number of edges removed.
        """
        with self._guard(f"delete node {node_id}") as con:
            cur = con.execute(
                "DELETE FROM graph_edges WHERE source_node_id = ? OR target_node_id = ?",
                (node_id, node_id),
            )
            removed = cur.rowcount
            con.commit()
            con.execute("DELETE FROM graph_nodes WHERE id = ?", (node_id,))
            con.commit()
        return removed

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        """
        Fetch a single node by id.

        :param node_id: Opaque node id.
        :return: :class:`GraphNode` or ``None`` if not found.
        """
        with self._guard("get node") as con:
            row = con.execute(
                "SELECT * FROM graph_nodes WHERE id = ?", (node_id,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def get_node_by_key(
        self,
        project_id: str,
        node_key: str,
        version_id: Optional[str] = None,
    ) -> Optional[GraphNode]:
        """
        Fetch a node by its deterministic key.

        :param project_id: Project identifier.
        :param node_key: ``path:line:name`` key.
        :param version_id: Version to read (defaults to the current one).
        :return: :class:`GraphNode` or ``None``.
        """
        version_id = self._resolve_version(project_id, version_id)
        if version_id is None:
            return None
        with self._guard("get node by key") as con:
            row = con.execute(
                """
                SELECT * FROM graph_nodes
                WHERE project_id = ? AND version_id = ? AND node_key = ?
                """,
                (project_id, version_id, node_key),
            ).fetchone()
        return _row_to_node(row) if row else None

    def query_nodes(self, query: NodeQuery) -> QueryResult[GraphNode]:
        """
        Return one page of nodes matching the filter.

        :param query: :class:`NodeQuery` filter; the version defaults to the
                      project's current version.
        :return: :class:`QueryResult` with ``total_count`` over all pages.
        """
        t0 = time.perf_counter()
        version_id = self._resolve_version(query.project_id, query.version_id)
        if version_id is None:
            return QueryResult(data=[], total_count=0, has_more=False, execution_time_ms=0.0)

        clauses = ["project_id = ?", "version_id = ?"]
        params: List[object] = [query.project_id, version_id]
        if query.node_type is not None:
            clauses.append("node_type = ?")
            params.append(NodeType(query.node_type).value)
        if query.name is not None:
            clauses.append("name = ?")
            params.append(query.name)
        if query.file_path is not None:
            clauses.append("file_path = ?")
            params.append(query.file_path)
        if query.pattern:
            clauses.append(
                "(LOWER(COALESCE(name, '')) LIKE ? ESCAPE '\\' OR LOWER(node_key) LIKE ? ESCAPE '\\')"
            )
            like = f"%{_escape_like(query.pattern.lower())}%"
            params.extend([like, like])

        where = " AND ".join(clauses)
        with self._guard("query nodes") as con:
            total = con.execute(
                f"SELECT COUNT(*) FROM graph_nodes WHERE {where}", params
            ).fetchone()[0]
            rows = con.execute(
                f"""
                SELECT * FROM graph_nodes WHERE {where}
                ORDER BY file_path, start_line, node_key
                LIMIT ? OFFSET ?
                """,
                (*params, _limit(query.limit), query.offset),
            ).fetchall()

        data = [_row_to_node(r) for r in rows]
        return QueryResult(
            data=data,
            total_count=total,
            has_more=query.offset + len(data) < total,
            execution_time_ms=(time.perf_counter() - t0) * 1000.0,
        )

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, edge: GraphEdge) -> str:
        """
        Insert an edge and return its new id.

        :param edge: Edge to persist; both endpoints must already exist in
                     ``(edge.project_id, edge.version_id)``.
        :raises ValueError: An endpoint is missing.
        :raises Conflict: The same ``(source, target, type)`` already exists.
        """
        edge_id = edge.id or uuid.uuid4().hex
        endpoints = {edge.source_node_id, edge.target_node_id}
        with self._guard("add edge") as con:
            found = con.execute(
                f"""
                SELECT COUNT(*) FROM graph_nodes
                WHERE id IN ({",".join("?" for _ in endpoints)})
                  AND project_id = ? AND version_id = ?
                """,
                (*endpoints, edge.project_id, edge.version_id),
            ).fetchone()[0]
            if found != len(endpoints):
                raise ValueError(
                    "edge endpoints must exist in the same project and version: "
                    f"{edge.source_node_id} -> {edge.target_node_id}"
                )
            con.execute(
                """
                INSERT INTO graph_edges
                  (id, project_id, version_id, source_node_id, target_node_id,
                   edge_type, weight, call_type, is_conditional,
                   is_loop_dependent, is_async_context, properties, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    edge_id,
                    edge.project_id,
                    edge.version_id,
                    edge.source_node_id,
                    edge.target_node_id,
                    EdgeType(edge.edge_type).value,
                    edge.weight,
                    edge.call_type,
                    int(edge.is_conditional),
                    int(edge.is_loop_dependent),
                    int(edge.is_async_context),
                    _dumps(edge.properties or {}),
                    utcnow(),
                ),
            )
            con.commit()
        return edge_id

    def delete_edge(self, edge_id: str) -> bool:
        """Delete an edge; returns ``True`` if it existed."""
        with self._guard(f"delete edge {edge_id}") as con:
            cur = con.execute("DELETE FROM graph_edges WHERE id = ?", (edge_id,))
            con.commit()
        return cur.rowcount > 0

    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        """Fetch a single edge by id, or ``None``."""
        with self._guard("get edge") as con:
            row = con.execute(
                "SELECT * FROM graph_edges WHERE id = ?", (edge_id,)
            ).fetchone()
        return _row_to_edge(row) if row else None

    def query_edges(self, query: EdgeQuery) -> QueryResult[GraphEdge]:
        """
        Return one page of edges matching the filter, in creation order.

        :param query: :class:`EdgeQuery` filter; the version defaults to the
                      project's current version.
        """
        t0 = time.perf_counter()
        version_id = self._resolve_version(query.project_id, query.version_id)
        if version_id is None:
            return QueryResult(data=[], total_count=0, has_more=False, execution_time_ms=0.0)

        clauses = ["project_id = ?", "version_id = ?"]
        params: List[object] = [query.project_id, version_id]
        if query.source_node_id is not None:
            clauses.append("source_node_id = ?")
            params.append(query.source_node_id)
        if query.target_node_id is not None:
            clauses.append("target_node_id = ?")
            params.append(query.target_node_id)
        types: Tuple[EdgeType, ...] = ()
        if query.edge_type is not None:
            types = (EdgeType(query.edge_type),)
        elif query.edge_types:
            types = tuple(EdgeType(t) for t in query.edge_types)
        if types:
            clauses.append(f"edge_type IN ({','.join('?' for _ in types)})")
            params.extend(t.value for t in types)

        where = " AND ".join(clauses)
        with self._guard("query edges") as con:
            total = con.execute(
                f"SELECT COUNT(*) FROM graph_edges WHERE {where}", params
            ).fetchone()[0]
            rows = con.execute(
                f"""
                SELECT * FROM graph_edges WHERE {where}
                ORDER BY rowid LIMIT ? OFFSET ?
                """,
                (*params, _limit(query.limit), query.offset),
            ).fetchall()

        data = [_row_to_edge(r) for r in rows]
        return QueryResult(
            data=data,
            total_count=total,
            has_more=query.offset + len(data) < total,
            execution_time_ms=(time.perf_counter() - t0) * 1000.0,
        )

    def edges_within(self, node_ids: Set[str]) -> List[GraphEdge]:
        """
        Return all edges where both endpoints are in *node_ids*.

        :param node_ids: Set of node ids to restrict to.
        """
        if not node_ids:
            return []

        with self._guard("edges within") as con:
            con.execute("DROP TABLE IF EXISTS _tmp_ids;")
            con.execute("CREATE TEMP TABLE _tmp_ids (id TEXT PRIMARY KEY);")
            con.executemany(
                "INSERT INTO _tmp_ids (id) VALUES (?)", [(i,) for i in node_ids]
            )
            rows = con.execute(
                """
                SELECT e.* FROM graph_edges e
                JOIN _tmp_ids s ON s.id = e.source_node_id
                JOIN _tmp_ids d ON d.id = e.target_node_id
                ORDER BY e.rowid
                """
            ).fetchall()
            con.commit()
        return [_row_to_edge(r) for r in rows]

    # ------------------------------------------------------------------
    # Graph analysis primitives
    # ------------------------------------------------------------------

    def get_node_with_connections(self, node_id: str) -> Optional[NodeConnections]:
        """
        Fetch a node with its incoming and outgoing edges.

        :param node_id: Node id.
        :return: :class:`NodeConnections` or ``None`` if the node is absent.
        """
        node = self.get_node(node_id)
        if node is None:
            return None
        with self._guard("get node connections") as con:
            incoming = con.execute(
                "SELECT * FROM graph_edges WHERE target_node_id = ? ORDER BY rowid",
                (node_id,),
            ).fetchall()
            outgoing = con.execute(
                "SELECT * FROM graph_edges WHERE source_node_id = ? ORDER BY rowid",
                (node_id,),
            ).fetchall()
        return NodeConnections(
            node=node,
            incoming_edges=[_row_to_edge(r) for r in incoming],
            outgoing_edges=[_row_to_edge(r) for r in outgoing],
        )

    def find_circular_dependencies(
        self,
        project_id: str,
        max_depth: int = 10,
        *,
        version_id: Optional[str] = None,
        edge_types: Sequence[EdgeType] = CYCLE_EDGE_TYPES,
    ) -> List[CircularDependency]:
        """
        Detect dependency cycles of at most *max_depth* edges.

        Depth-bounded DFS from every node over the given edge types.  Each
        elementary cycle is reported once, rooted at its smallest node id.
        Self-loops are ignored.

        :param project_id: Project identifier.
        :param max_depth: Maximum cycle length in edges.
        :param version_id: Version to read (defaults to the current one).
        :param edge_types: Edge types that count as dependencies.
        :return: Cycles ordered by length.
        """
        version_id = self._resolve_version(project_id, version_id)
        if version_id is None or max_depth < 2:
            return []

        edges = self.query_edges(
            EdgeQuery(project_id=project_id, version_id=version_id, edge_types=tuple(edge_types))
        ).data
        adjacency: Dict[str, List[Tuple[str, str, str]]] = {}
        for e in edges:
            adjacency.setdefault(e.source_node_id, []).append(
                (e.target_node_id, e.id, e.edge_type.value)
            )

        cycles: List[CircularDependency] = []
        seen: Set[Tuple[str, ...]] = set()
        for start in sorted(adjacency):
            stack: List[Tuple[str, List[str], List[str], List[str]]] = [(start, [start], [], [])]
            while stack:
                current, path, edge_ids, types = stack.pop()
                for dst, eid, etype in adjacency.get(current, ()):
                    if dst == start:
                        if not edge_ids:
                            continue  # self-loop
                        key = tuple(path)
                        if key in seen:
                            continue
                        seen.add(key)
                        length = len(edge_ids) + 1
                        cycles.append(
                            CircularDependency(
                                nodes=list(path),
                                edges=[*edge_ids, eid],
                                cycle_length=length,
                                edge_types=[*types, etype],
                                severity=cycle_severity(length),
                            )
                        )
                        continue
                    if dst < start or dst in path or len(edge_ids) + 1 >= max_depth:
                        continue
                    stack.append((dst, [*path, dst], [*edge_ids, eid], [*types, etype]))

        cycles.sort(key=lambda c: (c.cycle_length, c.nodes))
        return cycles

    def get_graph_statistics(
        self, project_id: str, version_id: Optional[str] = None
    ) -> GraphStatistics:
        """
        Aggregate counts for a project version (the current one by default).

        :param project_id: Project identifier.
        :param version_id: Version to summarise.
        """
        version_id = self._resolve_version(project_id, version_id)
        version = self.get_version(version_id) if version_id else None
        if version is None:
            return GraphStatistics(
                project_id=project_id,
                version_id=None,
                version_number=0,
                total_nodes=0,
                total_edges=0,
                total_files=0,
                node_type_counts={},
                edge_type_counts={},
                average_complexity=0.0,
            )

        params = (project_id, version.id)
        with self._guard("graph statistics") as con:
            node_row = con.execute(
                """
                SELECT COUNT(*), COUNT(DISTINCT file_path), AVG(complexity)
                FROM graph_nodes WHERE project_id = ? AND version_id = ?
                """,
                params,
            ).fetchone()
            total_edges = con.execute(
                "SELECT COUNT(*) FROM graph_edges WHERE project_id = ? AND version_id = ?",
                params,
            ).fetchone()[0]
            node_types = con.execute(
                """
                SELECT node_type, COUNT(*) FROM graph_nodes
                WHERE project_id = ? AND version_id = ? GROUP BY node_type
                """,
                params,
            ).fetchall()
            edge_types = con.execute(
                """
                SELECT edge_type, COUNT(*) FROM graph_edges
                WHERE project_id = ? AND version_id = ? GROUP BY edge_type
                """,
                params,
            ).fetchall()

        return GraphStatistics(
            project_id=project_id,
            version_id=version.id,
            version_number=version.version_number,
            total_nodes=node_row[0],
            total_edges=total_edges,
            total_files=node_row[1],
            node_type_counts={r[0]: r[1] for r in node_types},
            edge_type_counts={r[0]: r[1] for r in edge_types},
            average_complexity=float(node_row[2] or 0.0),
            version_created=version.created_at,
        )

    # ------------------------------------------------------------------
    # Operation log
    # ------------------------------------------------------------------

    def log_update_operation(self, op: UpdateOperation) -> Optional[str]:
        """
        Append an entry to the operation log (best effort).

        A failure here is logged and swallowed; it never undoes or fails the
        mutation being recorded.

        :param op: Operation to record.
        :return: The new operation id, or ``None`` if logging failed.
        """
        op_id = op.id or uuid.uuid4().hex
        with self._lock:
            try:
                con = self.con
                con.execute(
                    """
                    INSERT INTO graph_update_operations
                      (id, project_id, version_id, operation_type, node_id, edge_id,
                       operation_data, rollback_data, file_path, change_reason,
                       execution_time_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        op_id,
                        op.project_id,
                        op.version_id,
                        OperationType(op.operation_type).value,
                        op.node_id,
                        op.edge_id,
                        _dumps(op.operation_data or {}),
                        _dumps(op.rollback_data),
                        op.file_path,
                        op.change_reason,
                        op.execution_time_ms,
                        op.created_at or utcnow(),
                    ),
                )
                con.execute(
                    "UPDATE graph_versions SET operations_count = operations_count + 1 "
                    "WHERE id = ?",
                    (op.version_id,),
                )
                con.commit()
            except (sqlite3.Error, TypeError, ValueError) as exc:
                self._rollback()
                logger.warning("failed to log %s operation: %s", op.operation_type, exc)
                return None
        return op_id

    def get_operations(
        self,
        project_id: str,
        version_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[UpdateOperation]:
        """
        Return logged operations in creation order.

        :param project_id: Project identifier.
        :param version_id: Restrict to one version (all versions if ``None``).
        :param limit: Maximum number of entries.
        """
        clauses = ["project_id = ?"]
        params: List[object] = [project_id]
        if version_id is not None:
            clauses.append("version_id = ?")
            params.append(version_id)
        with self._guard("get operations") as con:
            rows = con.execute(
                f"""
                SELECT * FROM graph_update_operations
                WHERE {' AND '.join(clauses)}
                ORDER BY rowid LIMIT ?
                """,
                (*params, _limit(limit)),
            ).fetchall()
        return [_row_to_operation(r) for r in rows]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """
        Return database-wide row counts.

        :return: dict with ``total_nodes``, ``total_edges``, ``total_versions``,
                 ``total_operations``, ``node_counts``, ``edge_counts``.
        """
        with self._guard("stats") as con:
            node_rows = con.execute(
                "SELECT node_type, COUNT(*) FROM graph_nodes GROUP BY node_type"
            ).fetchall()
            edge_rows = con.execute(
                "SELECT edge_type, COUNT(*) FROM graph_edges GROUP BY edge_type"
            ).fetchall()
            totals = {
                name: con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for name, table in (
                    ("total_nodes", "graph_nodes"),
                    ("total_edges", "graph_edges"),
                    ("total_versions", "graph_versions"),
                    ("total_operations", "graph_update_operations"),
                )
            }
        return {
            "db_path": str(self.db_path),
            **totals,
            "node_counts": {r[0]: r[1] for r in node_rows},
            "edge_counts": {r[0]: r[1] for r in edge_rows},
        }

    def __repr__(self) -> str:
        return f"GraphStore(db_path={self.db_path!r})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def cycle_severity(length: int) -> str:
    """Severity tier of a dependency cycle of *length* edges."""
    if length > 10:
        return "high"
    if length > 5:
        return "medium"
    return "low"


def _limit(limit: Optional[int]) -> int:
    # SQLite treats a negative LIMIT as "no limit"
    return -1 if limit is None else int(limit)


def _escape_like(text: str) -> str:
    """Escape ``%``, ``_`` and the escape character itself for ``LIKE ... ESCAPE '\\'``."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dumps(obj: object) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, ensure_ascii=False)


def _loads(text: Optional[str], default: object = None) -> object:
    if text is None:
        return default
    return json.loads(text)


def _node_update_clause(updates: dict) -> Tuple[List[str], List[object]]:
    sets: List[str] = []
    params: List[object] = []
    for key, value in updates.items():
        if key in _NODE_SCALAR_FIELDS:
            sets.append(f"{_NODE_SCALAR_FIELDS[key]} = ?")
            params.append(value)
        elif key in _NODE_BOOL_FIELDS:
            sets.append(f"{key} = ?")
            params.append(int(bool(value)))
        elif key in _NODE_JSON_FIELDS:
            sets.append(f"{key} = ?")
            params.append(_dumps(list(value or [])))
        elif key == "node_type":
            sets.append("node_type = ?")
            params.append(NodeType(value).value)
        elif key == "parameters":
            sets.append("parameters = ?")
            params.append(
                _dumps([p.to_dict() if isinstance(p, Parameter) else p for p in value or []])
            )
        elif key == "location":
            loc = value if isinstance(value, CodeLocation) else CodeLocation.from_dict(value)
            sets.extend(
                [
                    "file_path = ?",
                    "start_line = ?",
                    "end_line = ?",
                    "start_column = ?",
                    "end_column = ?",
                ]
            )
            params.extend(
                [loc.file_path, loc.start_line, loc.end_line, loc.start_column, loc.end_column]
            )
        else:
            raise ValueError(f"cannot update node field {key!r}")
    return sets, params


def _row_to_node(row: sqlite3.Row) -> GraphNode:
    return GraphNode(
        id=row["id"],
        project_id=row["project_id"],
        version_id=row["version_id"],
        node_key=row["node_key"],
        node_type=NodeType(row["node_type"]),
        location=CodeLocation(
            file_path=row["file_path"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            start_column=row["start_column"] or 0,
            end_column=row["end_column"] or 0,
        ),
        name=row["name"],
        signature=row["signature"],
        language=row["language"],
        visibility=row["visibility"],
        is_async=bool(row["is_async"]),
        is_static=bool(row["is_static"]),
        is_abstract=bool(row["is_abstract"]),
        complexity=row["complexity"] if row["complexity"] is not None else 1,
        parameters=[Parameter.from_dict(p) for p in _loads(row["parameters"], [])],
        return_type=row["return_type"],
        docstring=row["docstring"],
        purpose=row["purpose"],
        hash=row["hash"],
        dependencies=list(_loads(row["dependencies"], [])),
        exports=list(_loads(row["exports"], [])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_edge(row: sqlite3.Row) -> GraphEdge:
    return GraphEdge(
        id=row["id"],
        project_id=row["project_id"],
        version_id=row["version_id"],
        source_node_id=row["source_node_id"],
        target_node_id=row["target_node_id"],
        edge_type=EdgeType(row["edge_type"]),
        weight=row["weight"] if row["weight"] is not None else 1.0,
        call_type=row["call_type"],
        is_conditional=bool(row["is_conditional"]),
        is_loop_dependent=bool(row["is_loop_dependent"]),
        is_async_context=bool(row["is_async_context"]),
        properties=dict(_loads(row["properties"], {})),
        created_at=row["created_at"],
    )


def _row_to_version(row: sqlite3.Row) -> Version:
    return Version(
        id=row["id"],
        project_id=row["project_id"],
        version_number=row["version_number"],
        parent_version_id=row["parent_version_id"],
        checksum=row["checksum"],
        operations_count=row["operations_count"],
        metadata=dict(_loads(row["metadata"], {})),
        created_at=row["created_at"],
    )


def _row_to_operation(row: sqlite3.Row) -> UpdateOperation:
    return UpdateOperation(
        id=row["id"],
        project_id=row["project_id"],
        version_id=row["version_id"],
        operation_type=OperationType(row["operation_type"]),
        node_id=row["node_id"],
        edge_id=row["edge_id"],
        operation_data=dict(_loads(row["operation_data"], {})),
        rollback_data=_loads(row["rollback_data"]),
        file_path=row["file_path"],
        change_reason=row["change_reason"],
        execution_time_ms=row["execution_time_ms"] or 0,
        created_at=row["created_at"],
    )
