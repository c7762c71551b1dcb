#!/usr/bin/env python3
"""
rollback.py

Best-effort reversal of logged graph mutations.

Each :class:`~code_cpg.models.UpdateOperation` written by the builder or
the updater carries rollback data.  :func:`reverse_operation` applies the
inverse of one entry; :func:`rollback_version` reverses a whole version's
log newest-first.  Nothing calls this implicitly; it is not a transaction.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from code_cpg.errors import Conflict, CPGError
from code_cpg.models import GraphEdge, GraphNode, OperationType, UpdateOperation
from code_cpg.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass
class ReversalResult:
    """Outcome of reversing one operation."""

    operation_id: str | None
    success: bool
    message: str = ""

    def to_dict(self) -> dict:
        return {"operation_id": self.operation_id, "success": self.success, "message": self.message}


@dataclass
class RollbackResult:
    """Outcome of reversing every operation of a version."""

    version_id: str
    reversed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "version_id": self.version_id,
            "reversed": self.reversed,
            "success": self.success,
            "errors": list(self.errors),
        }


def _restore_edge(store: GraphStore, data: dict) -> bool:
    edge = GraphEdge.from_dict(data)
    if store.get_node(edge.source_node_id) is None or store.get_node(edge.target_node_id) is None:
        return False
    if store.get_edge(edge.id) is not None:
        return True
    try:
        store.add_edge(edge)
    except Conflict:
        logger.debug("edge %s already present", edge.id)
    return True


def reverse_operation(store: GraphStore, op: UpdateOperation) -> ReversalResult:
    """
    Apply the inverse of one logged operation.

    ============  ===============================================
    ADD_NODE      delete the node
    DELETE_NODE   re-add the node, then every captured edge whose
                  endpoints exist again
    UPDATE_NODE   patch the previous field values back
    ADD_EDGE      delete the edge
    DELETE_EDGE   re-add the edge if both endpoints exist
    ============  ===============================================

    :param store: Store holding the mutated rows.
    :param op: Logged operation.
    :raises CPGError: The store rejected the inverse mutation.
    """
    rollback = op.rollback_data or {}
    kind = OperationType(op.operation_type)

    if kind is OperationType.ADD_NODE:
        node_id = op.node_id or rollback.get("node_id")
        store.delete_node(node_id)
        return ReversalResult(op.id, True, f"deleted node {node_id}")

    if kind is OperationType.DELETE_NODE:
        if "node" not in rollback:
            return ReversalResult(op.id, False, "no node snapshot in rollback data")
        node = GraphNode.from_dict(rollback["node"])
        if store.get_node(node.id) is None:
            store.add_node(node)
        restored = sum(_restore_edge(store, e) for e in rollback.get("edges", []))
        return ReversalResult(op.id, True, f"restored node {node.id} with {restored} edges")

    if kind is OperationType.UPDATE_NODE:
        if not rollback:
            return ReversalResult(op.id, False, "no previous values in rollback data")
        updated = store.update_node(op.node_id, dict(rollback))
        return ReversalResult(op.id, updated, f"restored {', '.join(sorted(rollback))}")

    if kind is OperationType.ADD_EDGE:
        edge_id = op.edge_id or rollback.get("edge_id")
        removed = store.delete_edge(edge_id)
        return ReversalResult(op.id, removed, f"deleted edge {edge_id}")

    if kind is OperationType.DELETE_EDGE:
        if "edge" not in rollback:
            return ReversalResult(op.id, False, "no edge snapshot in rollback data")
        ok = _restore_edge(store, rollback["edge"])
        return ReversalResult(op.id, ok, "restored edge" if ok else "edge endpoints are gone")

    return ReversalResult(op.id, False, f"{kind.value} cannot be reversed")


def rollback_version(store: GraphStore, project_id: str, version_id: str) -> RollbackResult:
    """
    Reverse every logged operation of *version_id*, newest first.

    Failures are collected, not raised; the remaining operations are still
    attempted.
    """
    result = RollbackResult(version_id=version_id)
    for op in reversed(store.get_operations(project_id, version_id)):
        try:
            outcome = reverse_operation(store, op)
        except (CPGError, ValueError) as exc:
            logger.error("failed to reverse %s %s: %s", op.operation_type.value, op.id, exc)
            result.errors.append(f"{op.id}: {exc}")
            continue
        if outcome.success:
            result.reversed += 1
        else:
            result.errors.append(f"{op.id}: {outcome.message}")
    logger.info("rolled back %d operations of version %s", result.reversed, version_id)
    return result
