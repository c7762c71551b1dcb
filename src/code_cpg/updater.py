#!/usr/bin/env python3
"""
updater.py

IncrementalUpdater — file changes -> minimal graph mutations.

Each batch checkpoints a new version that carries the live graph forward,
then applies every :class:`~code_cpg.models.FileChange` independently:

- added     -> build the file
- deleted   -> delete the file's nodes (edges cascade)
- renamed   -> rewrite paths and keys in place
- modified  -> AST diff of old vs new content, applied as node-level
               deletes, adds and in-place patches, then edge reconciliation

Every mutation is appended to the operation log with enough rollback data
to invert it (see :mod:`code_cpg.rollback`).

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace

from code_cpg.analyzers import language_for_path
from code_cpg.builder import ExtractedGraph, GraphBuilder, PendingEdge, extract_file_graph
from code_cpg.errors import CPGError
from code_cpg.models import (
    ASTDiff,
    ChangeType,
    EdgeQuery,
    FileChange,
    GraphContext,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    NodeDiff,
    NodeQuery,
    OperationType,
    UpdateOperation,
)
from code_cpg.parsing import ParseNode, Parser
from code_cpg.store import GraphStore

logger = logging.getLogger(__name__)

# Fields compared (and patched) when a key-matched node changed
_PATCHABLE_FIELDS = (
    "node_type",
    "location",
    "name",
    "signature",
    "language",
    "visibility",
    "is_async",
    "is_static",
    "is_abstract",
    "complexity",
    "parameters",
    "return_type",
    "docstring",
    "hash",
    "dependencies",
    "exports",
)


# ============================================================================
# AST diff
# ============================================================================


def compute_ast_diff(
    old_tree: ParseNode,
    new_tree: ParseNode,
    rel_path: str,
    language: str,
    context: GraphContext,
) -> ASTDiff:
    """
    Classify significant-node changes between two parse trees of one file.

    1. Keys present in both trees: differing hash -> modified, else unchanged.
    2. Each new-only node, in scan order, claims the first unclaimed
       old-only node with the same hash -> moved.
    3. Remaining new-only keys -> added; remaining old-only keys -> deleted.

    :param old_tree: Parse tree of the previous content.
    :param new_tree: Parse tree of the current content.
    :param rel_path: Repo-relative path used for node keys.
    :param language: Language id.
    :param context: Context stamped onto extracted nodes.
    """
    old = extract_file_graph(old_tree, rel_path, language, context).node_by_key()
    new = extract_file_graph(new_tree, rel_path, language, context).node_by_key()
    return diff_extracted_nodes(old, new)


def diff_extracted_nodes(old: dict[str, GraphNode], new: dict[str, GraphNode]) -> ASTDiff:
    """Key/hash classification of two ``{node_key: node}`` maps (see :func:`compute_ast_diff`)."""
    diff = ASTDiff()

    for key, node in new.items():
        prev = old.get(key)
        if prev is not None and prev.hash != node.hash:
            diff.modified.append(NodeDiff(key, node.node_type, node.location, old_data=prev, new_data=node))

    unmatched_old = [k for k in old if k not in new]
    claimed: set[str] = set()
    for key, node in new.items():
        if key in old:
            continue
        match = next((k for k in unmatched_old if k not in claimed and old[k].hash == node.hash), None)
        if match is not None:
            claimed.add(match)
            diff.moved.append(NodeDiff(key, node.node_type, node.location, old_data=old[match], new_data=node))
        else:
            diff.added.append(NodeDiff(key, node.node_type, node.location, new_data=node))

    for key in unmatched_old:
        if key not in claimed:
            prev = old[key]
            diff.deleted.append(NodeDiff(key, prev.node_type, prev.location, old_data=prev))
    return diff


def _field_value(node: GraphNode, name: str) -> object:
    value = getattr(node, name)
    if name == "location":
        return value.to_dict()
    if name == "parameters":
        return [p.to_dict() for p in value]
    if name == "node_type":
        return value.value
    return value


def changed_fields(old: GraphNode, new: GraphNode) -> tuple[dict, dict]:
    """
    Compare two versions of a node.

    :return: ``(updates, previous)``, JSON-serialisable dicts of the new and
             old values of every field that differs.
    """
    updates: dict = {}
    previous: dict = {}
    for name in _PATCHABLE_FIELDS:
        before, after = _field_value(old, name), _field_value(new, name)
        if before != after:
            updates[name] = after
            previous[name] = before
    return updates, previous


# ============================================================================
# IncrementalUpdater
# ============================================================================


@dataclass
class _BatchStats:
    operations: int = 0
    nodes: int = 0
    edges: int = 0
    dropped: int = 0
    errors: list[str] = field(default_factory=list)


class IncrementalUpdater:
    """
    Applies file-level changes to the current graph version.

    :param store: Graph store.
    :param builder: Builder used for added files (created when omitted).
    :param parser: Parser for diffing (the builder's parser by default).
    """

    def __init__(
        self,
        store: GraphStore,
        builder: GraphBuilder | None = None,
        parser: Parser | None = None,
    ) -> None:
        self.store = store
        self.builder = builder or GraphBuilder(store, parser)
        self.parser = parser or self.builder.parser

    def update_from_file_changes(
        self,
        project_id: str,
        changes: list[FileChange],
        context: GraphContext,
    ) -> GraphUpdateResult:
        """
        Apply a batch of file changes under a new version.

        The new version carries forward the current graph.  Each change is
        applied independently: a failure is logged, recorded in ``errors``
        and does not stop the rest of the batch.

        :param project_id: Project identifier.
        :param changes: File changes, applied in order.
        :param context: Root path and selection settings.
        :return: :class:`GraphUpdateResult`; ``success`` is ``False`` if any
                 change failed.
        """
        t0 = time.perf_counter()
        parent = self.store.get_current_version(project_id)
        metadata = {"kind": "incremental", "changes": len(changes)}
        if parent is None:
            version_id = self.store.create_new_version(project_id, metadata=metadata)
        else:
            version_id = self.store.create_new_version(
                project_id, parent, carry_forward=True, metadata=metadata
            )
        ctx = replace(context, project_id=project_id, version_id=version_id)
        logger.info("applying %d file changes to %s in version %s", len(changes), project_id, version_id)

        stats = _BatchStats()
        for change in changes:
            try:
                self._apply_change(change, ctx, stats)
            except (CPGError, OSError, UnicodeDecodeError, ValueError) as exc:
                logger.error("failed to apply %s change to %s: %s", change.change_type.value, change.file_path, exc)
                stats.errors.append(f"{change.file_path}: {exc}")

        result = GraphUpdateResult(
            success=not stats.errors,
            version_id=version_id,
            operations_applied=stats.operations,
            nodes_affected=stats.nodes,
            edges_affected=stats.edges,
            edges_dropped=stats.dropped,
            execution_time_ms=(time.perf_counter() - t0) * 1000.0,
            errors=stats.errors,
        )
        logger.info(
            "incremental update complete: %d operations, %d errors",
            result.operations_applied,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Per-change handlers
    # ------------------------------------------------------------------

    def _apply_change(self, change: FileChange, ctx: GraphContext, stats: _BatchStats) -> None:
        if change.change_type is ChangeType.ADDED:
            self._add_file(change.file_path, change.new_content, ctx, stats)
        elif change.change_type is ChangeType.DELETED:
            self._delete_file(change.file_path, ctx, stats, "file_deleted")
        elif change.change_type is ChangeType.RENAMED:
            self._rename_file(change, ctx, stats)
        elif change.change_type is ChangeType.MODIFIED:
            self._modify_file(change, ctx, stats)
        else:
            raise ValueError(f"unknown change type {change.change_type!r}")

    def _add_file(self, path: str, content: str | None, ctx: GraphContext, stats: _BatchStats) -> None:
        res = self.builder.process_file(path, ctx, content=content, change_reason="file_added")
        stats.operations += res.nodes_added + res.edges_added
        stats.nodes += res.nodes_added
        stats.edges += res.edges_added
        stats.dropped += res.edges_dropped
        stats.errors.extend(f"{path}: {err}" for err in res.errors)

    def _delete_file(self, path: str, ctx: GraphContext, stats: _BatchStats, reason: str) -> None:
        for node in self._file_nodes(path, ctx):
            self._delete_node(node, ctx, stats, reason)

    def _rename_file(self, change: FileChange, ctx: GraphContext, stats: _BatchStats) -> None:
        old_path = change.old_path
        if not old_path:
            raise ValueError("renamed change requires old_path")
        new_path = change.file_path
        prefix = f"{old_path}:"
        for node in self._file_nodes(old_path, ctx):
            t0 = time.perf_counter()
            new_key = (
                f"{new_path}:{node.node_key[len(prefix):]}"
                if node.node_key.startswith(prefix)
                else node.node_key
            )
            new_loc = replace(node.location, file_path=new_path)
            self.store.update_node(node.id, {"node_key": new_key, "location": new_loc})
            self._record(
                ctx,
                stats,
                OperationType.UPDATE_NODE,
                t0,
                node_id=node.id,
                data={"node_key": new_key, "updates": {"node_key": new_key, "location": new_loc.to_dict()}},
                rollback={"node_key": node.node_key, "location": node.location.to_dict()},
                file_path=new_path,
                reason="file_renamed",
            )
            stats.nodes += 1

    def _modify_file(self, change: FileChange, ctx: GraphContext, stats: _BatchStats) -> None:
        rel = change.file_path
        language = language_for_path(rel)
        old_tree = new_tree = None
        if language is not None and change.old_content is not None and change.new_content is not None:
            old_tree = self.parser.parse(change.old_content, language)
            new_tree = self.parser.parse(change.new_content, language)

        if old_tree is None or new_tree is None:
            logger.debug("no AST diff for %s, replacing file", rel)
            self._delete_file(rel, ctx, stats, "file_deleted")
            self._add_file(rel, change.new_content, ctx, stats)
            return

        old = extract_file_graph(old_tree, rel, language, ctx).node_by_key()
        new_graph = extract_file_graph(new_tree, rel, language, ctx)
        diff = diff_extracted_nodes(old, new_graph.node_by_key())
        if diff.is_empty:
            logger.debug("%s: no structural changes", rel)
        self._apply_diff(diff, rel, ctx, stats)
        self._reconcile_edges(new_graph, rel, ctx, stats)

    # ------------------------------------------------------------------
    # Diff application
    # ------------------------------------------------------------------

    def _apply_diff(self, diff: ASTDiff, rel: str, ctx: GraphContext, stats: _BatchStats) -> None:
        for entry in diff.deleted:
            stored = self.store.get_node_by_key(ctx.project_id, entry.node_key, ctx.version_id)
            if stored is not None:
                self._delete_node(stored, ctx, stats, "node_deleted")

        for entry in diff.added:
            t0 = time.perf_counter()
            node = replace(entry.new_data, version_id=ctx.version_id, id=None)
            node_id = self.store.add_node(node)
            self._record(
                ctx,
                stats,
                OperationType.ADD_NODE,
                t0,
                node_id=node_id,
                data={"node_key": node.node_key, "node_type": node.node_type.value},
                rollback={"node_id": node_id},
                file_path=rel,
                reason="node_added",
            )
            stats.nodes += 1

        for entry in diff.modified:
            stored = self.store.get_node_by_key(ctx.project_id, entry.node_key, ctx.version_id)
            if stored is None:
                continue
            updates, previous = changed_fields(stored, entry.new_data)
            if not updates:
                continue
            t0 = time.perf_counter()
            self.store.update_node(stored.id, updates)
            self._record(
                ctx,
                stats,
                OperationType.UPDATE_NODE,
                t0,
                node_id=stored.id,
                data={"node_key": entry.node_key, "updates": updates},
                rollback=previous,
                file_path=rel,
                reason="node_modified",
            )
            stats.nodes += 1

        for entry in diff.moved:
            stored = self.store.get_node_by_key(ctx.project_id, entry.old_data.node_key, ctx.version_id)
            if stored is None:
                continue
            t0 = time.perf_counter()
            new_loc = entry.new_data.location
            self.store.update_node(stored.id, {"node_key": entry.node_key, "location": new_loc})
            self._record(
                ctx,
                stats,
                OperationType.UPDATE_NODE,
                t0,
                node_id=stored.id,
                data={"node_key": entry.node_key, "updates": {"node_key": entry.node_key, "location": new_loc.to_dict()}},
                rollback={"node_key": stored.node_key, "location": stored.location.to_dict()},
                file_path=rel,
                reason="node_moved",
            )
            stats.nodes += 1

    def _reconcile_edges(self, graph: ExtractedGraph, rel: str, ctx: GraphContext, stats: _BatchStats) -> None:
        nodes = self._file_nodes(rel, ctx)
        ids = {n.node_key: n.id for n in nodes}
        keys = {n.id: n.node_key for n in nodes}

        desired: dict[tuple[str, str, str], PendingEdge] = {}
        for pending in graph.edges:
            if pending.source_key in ids and pending.target_key in ids:
                desired[(pending.source_key, pending.target_key, pending.edge_type.value)] = pending
            else:
                stats.dropped += 1

        existing: dict[tuple[str, str, str], GraphEdge] = {}
        for node in nodes:
            for edge in self.store.query_edges(
                EdgeQuery(project_id=ctx.project_id, version_id=ctx.version_id, source_node_id=node.id)
            ).data:
                if edge.target_node_id in keys:
                    existing[(node.node_key, keys[edge.target_node_id], edge.edge_type.value)] = edge

        for triple, edge in existing.items():
            if triple in desired:
                continue
            t0 = time.perf_counter()
            self.store.delete_edge(edge.id)
            self._record(
                ctx,
                stats,
                OperationType.DELETE_EDGE,
                t0,
                edge_id=edge.id,
                data={"source_key": triple[0], "target_key": triple[1], "edge_type": triple[2]},
                rollback={"edge": edge.to_dict()},
                file_path=rel,
                reason="edge_removed",
            )
            stats.edges += 1

        for triple, pending in desired.items():
            if triple in existing:
                continue
            t0 = time.perf_counter()
            edge_id = self.store.add_edge(
                GraphEdge(
                    project_id=ctx.project_id,
                    version_id=ctx.version_id,
                    source_node_id=ids[pending.source_key],
                    target_node_id=ids[pending.target_key],
                    edge_type=pending.edge_type,
                    call_type=pending.call_type,
                )
            )
            self._record(
                ctx,
                stats,
                OperationType.ADD_EDGE,
                t0,
                edge_id=edge_id,
                data={"source_key": triple[0], "target_key": triple[1], "edge_type": triple[2]},
                rollback={"edge_id": edge_id},
                file_path=rel,
                reason="edge_added",
            )
            stats.edges += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _file_nodes(self, path: str, ctx: GraphContext) -> list[GraphNode]:
        return self.store.query_nodes(
            NodeQuery(project_id=ctx.project_id, version_id=ctx.version_id, file_path=path)
        ).data

    def _delete_node(self, node: GraphNode, ctx: GraphContext, stats: _BatchStats, reason: str) -> None:
        t0 = time.perf_counter()
        connections = self.store.get_node_with_connections(node.id)
        edges: dict[str, GraphEdge] = {}
        if connections is not None:
            for edge in [*connections.outgoing_edges, *connections.incoming_edges]:
                edges.setdefault(edge.id, edge)
        removed = self.store.delete_node(node.id)
        self._record(
            ctx,
            stats,
            OperationType.DELETE_NODE,
            t0,
            node_id=node.id,
            data={"node_key": node.node_key, "edges_removed": removed},
            rollback={"node": node.to_dict(), "edges": [e.to_dict() for e in edges.values()]},
            file_path=node.location.file_path,
            reason=reason,
        )
        stats.nodes += 1
        stats.edges += removed

    def _record(
        self,
        ctx: GraphContext,
        stats: _BatchStats,
        op_type: OperationType,
        t0: float,
        *,
        data: dict,
        rollback: dict | None,
        reason: str,
        file_path: str | None = None,
        node_id: str | None = None,
        edge_id: str | None = None,
    ) -> None:
        stats.operations += 1
        self.store.log_update_operation(
            UpdateOperation(
                project_id=ctx.project_id,
                version_id=ctx.version_id,
                operation_type=op_type,
                operation_data=data,
                node_id=node_id,
                edge_id=edge_id,
                rollback_data=rollback,
                file_path=file_path,
                change_reason=reason,
                execution_time_ms=int((time.perf_counter() - t0) * 1000),
            )
        )
