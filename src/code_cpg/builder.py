#!/usr/bin/env python3
"""
builder.py

GraphBuilder — parse trees -> graph nodes and edges.

Two passes per file:

PASS 1: walk the parse tree, emit one node per significant element and
        record import bindings, call sites and base classes
PASS 2: resolve relationships inside the file's batch (USES, CALLS,
        EXTENDS, CONTAINS)

Extraction (:func:`extract_file_graph`) is pure; :class:`GraphBuilder`
persists the result through the :class:`~code_cpg.store.GraphStore` and
drives whole-project builds.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import threading
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from code_cpg.analyzers import LanguageAnalyzer, get_analyzer, language_for_path
from code_cpg.errors import CPGError
from code_cpg.models import (
    CodeLocation,
    EdgeType,
    FileBuildResult,
    GraphContext,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    NodeType,
    OperationType,
    UpdateOperation,
)
from code_cpg.parsing import DefaultParser, ParseNode, Parser
from code_cpg.store import GraphStore
from code_cpg.summarizer import PurposeAnnotator, Summarizer

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

SKIP_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "env",
    "node_modules",
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
    "dist",
    "build",
}


# ============================================================================
# Extraction
# ============================================================================


@dataclass(frozen=True)
class PendingEdge:
    """An edge between two nodes of one extraction batch, keyed by node_key."""

    source_key: str
    target_key: str
    edge_type: EdgeType
    call_type: str | None = None


@dataclass
class ExtractedGraph:
    """Nodes and key-addressed edges extracted from one file."""

    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[PendingEdge] = field(default_factory=list)

    def node_by_key(self) -> dict[str, GraphNode]:
        return {n.node_key: n for n in self.nodes}


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text*."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_node_key(rel_path: str, start_line: int, name: str | None) -> str:
    """
    Construct the deterministic node key.

    :param rel_path: Repo-relative POSIX path.
    :param start_line: 1-based first line.
    :param name: Element name (``anonymous`` when missing).
    """
    return f"{rel_path}:{start_line}:{name or 'anonymous'}"


def extract_file_graph(
    tree: ParseNode,
    rel_path: str,
    language: str,
    context: GraphContext,
    analyzer: LanguageAnalyzer | None = None,
) -> ExtractedGraph:
    """
    Extract nodes and edges from one parsed file.

    This function is pure and deterministic: the same tree always yields the
    same keys, hashes and edges.  Nodes carry ``context.version_id`` and
    ``id=None``.

    :param tree: Root of the file's parse tree.
    :param rel_path: Repo-relative POSIX path.
    :param language: Language id.
    :param context: Write context (project and version).
    :param analyzer: Analyzer override (registry lookup by default).
    :return: :class:`ExtractedGraph`; empty for an unsupported language.
    """
    analyzer = analyzer or get_analyzer(language)
    graph = ExtractedGraph()
    if analyzer is None:
        return graph

    # ------------------------------------------------------------------
    # PASS 1: significant nodes
    # ------------------------------------------------------------------

    imports: dict[str, str] = {}  # bound name -> import node_key
    calls: dict[str, list[str]] = {}
    bases: dict[str, list[str]] = {}
    seen: set[str] = set()

    for pnode in analyzer.extract_significant_nodes(tree):
        info = analyzer.extract_semantic_info(pnode)
        key = make_node_key(rel_path, pnode.start_line, info.name)
        if key in seen:
            logger.debug("duplicate node key %s skipped", key)
            continue
        seen.add(key)

        graph.nodes.append(
            GraphNode(
                project_id=context.project_id,
                version_id=context.version_id or "",
                node_key=key,
                node_type=info.node_type,
                location=CodeLocation(
                    file_path=rel_path,
                    start_line=pnode.start_line,
                    end_line=pnode.end_line,
                    start_column=pnode.start_column,
                    end_column=pnode.end_column,
                ),
                language=language,
                hash=content_hash(pnode.text),
                name=info.name,
                signature=info.signature,
                visibility=info.visibility,
                is_async=info.is_async,
                is_static=info.is_static,
                is_abstract=info.is_abstract,
                complexity=analyzer.complexity(pnode),
                parameters=info.parameters,
                return_type=info.return_type,
                docstring=info.docstring,
                dependencies=info.dependencies,
                exports=info.exports,
            )
        )

        if info.node_type is NodeType.IMPORT:
            for bound in info.imported_names:
                imports[bound] = key
        if info.function_calls:
            calls[key] = info.function_calls
        if info.base_classes:
            bases[key] = info.base_classes

    # ------------------------------------------------------------------
    # PASS 2: relationships within the batch
    # ------------------------------------------------------------------

    edges: dict[tuple[str, str, EdgeType], PendingEdge] = {}

    def add(src: str, dst: str, rel: EdgeType, call_type: str | None = None) -> None:
        if src != dst:
            edges.setdefault((src, dst, rel), PendingEdge(src, dst, rel, call_type))

    def first_named(name: str, types: tuple[NodeType, ...]) -> GraphNode | None:
        return next((n for n in graph.nodes if n.node_type in types and n.name == name), None)

    for node in graph.nodes:
        for dep in node.dependencies:
            target = imports.get(dep)
            if target:
                add(node.node_key, target, EdgeType.USES)

        for called in calls.get(node.node_key, ()):
            target_node = first_named(called, (NodeType.FUNCTION,))
            if target_node is not None:
                add(node.node_key, target_node.node_key, EdgeType.CALLS, "direct")

        for base in bases.get(node.node_key, ()):
            target_node = first_named(base, (NodeType.CLASS, NodeType.INTERFACE))
            if target_node is not None:
                add(node.node_key, target_node.node_key, EdgeType.EXTENDS)

        if node.node_type is NodeType.CLASS:
            for member in graph.nodes:
                if member.node_type is NodeType.FUNCTION and node.location.contains(member.location):
                    add(node.node_key, member.node_key, EdgeType.CONTAINS)

    graph.edges = list(edges.values())
    return graph


# ============================================================================
# File enumeration
# ============================================================================


def rel_posix_path(path: Path, root: Path) -> str:
    """
    Convert file path to a repo-relative POSIX path.

    :param path: Absolute (or root-relative) file path
    :param root: Repo root
    """
    return path.relative_to(root).as_posix()


def path_selected(rel_path: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    """``True`` if *rel_path* matches an include glob (or none are given) and no exclude glob."""
    include = list(include)
    if include and not any(fnmatch.fnmatch(rel_path, pat) for pat in include):
        return False
    return not any(fnmatch.fnmatch(rel_path, pat) for pat in exclude)


def iter_source_files(context: GraphContext) -> Iterator[Path]:
    """
    Yield supported source files under ``context.root_path``, sorted per directory.

    :param context: Supplies root path, include/exclude globs and languages.
    """
    root = Path(context.root_path)
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS and not d.startswith("."))
        for fname in sorted(files):
            if fname.startswith("."):
                continue
            path = Path(dirpath) / fname
            rel = rel_posix_path(path, root)
            language = language_for_path(rel)
            if language is None:
                continue
            if context.languages and language not in context.languages:
                continue
            if path_selected(rel, context.include_patterns, context.exclude_patterns):
                yield path


# ============================================================================
# GraphBuilder
# ============================================================================


class GraphBuilder:
    """
    Builds and persists the graph for single files or whole projects.

    :param store: Destination :class:`GraphStore`.
    :param parser: Parser (defaults to :class:`~code_cpg.parsing.DefaultParser`).
    :param summarizer: Optional purpose summarizer; when set, full builds
                       are followed by a purpose annotation pass.
    :param purpose_batch_size: Concurrent summaries per batch.
    :param purpose_rate_limit_seconds: Pause between batches.
    :param purpose_in_background: Run the annotation pass on a background
                                  thread (``wait_for_annotations`` joins it).
    """

    def __init__(
        self,
        store: GraphStore,
        parser: Parser | None = None,
        *,
        summarizer: Summarizer | None = None,
        purpose_batch_size: int = 5,
        purpose_rate_limit_seconds: float = 1.0,
        purpose_in_background: bool = True,
    ) -> None:
        self.store = store
        self.parser = parser or DefaultParser()
        self.summarizer = summarizer
        self.purpose_batch_size = purpose_batch_size
        self.purpose_rate_limit_seconds = purpose_rate_limit_seconds
        self.purpose_in_background = purpose_in_background
        self._annotation_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    def process_file(
        self,
        path: str | Path,
        context: GraphContext,
        *,
        content: str | None = None,
        change_reason: str | None = None,
    ) -> FileBuildResult:
        """
        Extract and persist one file into ``context.version_id``.

        :param path: File path, absolute or relative to ``context.root_path``.
        :param context: Write context; ``version_id`` must be set.
        :param content: Source text (read from disk when omitted).
        :param change_reason: When given, every stored node and edge is
                              logged as an operation with this reason.
        :return: :class:`FileBuildResult`; zero counts for unsupported or
                 unparsable files.
        :raises OSError: The file could not be read.
        """
        if not context.version_id:
            raise ValueError("context.version_id is required to write")

        rel = self._rel_path(path, context)
        language = language_for_path(rel)
        if language is None or get_analyzer(language) is None:
            logger.debug("unsupported language, skipping %s", rel)
            return FileBuildResult(file_path=rel)

        if content is None:
            content = (Path(context.root_path) / rel).read_text(encoding="utf-8")

        tree = self.parser.parse(content, language)
        if tree is None:
            logger.warning("failed to parse %s", rel)
            return FileBuildResult(file_path=rel)

        graph = extract_file_graph(tree, rel, language, context)
        return self.persist(graph, rel, context, change_reason=change_reason)

    def persist(
        self,
        graph: ExtractedGraph,
        rel_path: str,
        context: GraphContext,
        *,
        change_reason: str | None = None,
    ) -> FileBuildResult:
        """
        Store an extracted graph: nodes first, then edges.

        A node whose write fails is logged, skipped and reported in
        ``errors``.  An edge whose endpoint did not resolve to a stored node
        is dropped and counted, never retried.
        """
        result = FileBuildResult(file_path=rel_path)
        ids: dict[str, str] = {}

        for node in graph.nodes:
            t0 = time.perf_counter()
            node.version_id = context.version_id or node.version_id
            try:
                node_id = self.store.add_node(node)
            except CPGError as exc:
                logger.error("failed to add node %s: %s", node.node_key, exc)
                result.errors.append(f"{node.node_key}: {exc}")
                continue
            ids[node.node_key] = node_id
            result.node_ids.append(node_id)
            result.nodes_added += 1
            if change_reason:
                self._log(
                    context,
                    OperationType.ADD_NODE,
                    t0,
                    node_id=node_id,
                    data={"node_key": node.node_key, "node_type": node.node_type.value},
                    rollback={"node_id": node_id},
                    file_path=rel_path,
                    reason=change_reason,
                )

        for pending in graph.edges:
            src = ids.get(pending.source_key)
            dst = ids.get(pending.target_key)
            if src is None or dst is None:
                result.edges_dropped += 1
                continue
            t0 = time.perf_counter()
            try:
                edge_id = self.store.add_edge(
                    GraphEdge(
                        project_id=context.project_id,
                        version_id=context.version_id or "",
                        source_node_id=src,
                        target_node_id=dst,
                        edge_type=pending.edge_type,
                        call_type=pending.call_type,
                    )
                )
            except (CPGError, ValueError) as exc:
                logger.error("failed to add edge %s -> %s: %s", pending.source_key, pending.target_key, exc)
                result.edges_dropped += 1
                continue
            result.edges_added += 1
            if change_reason:
                self._log(
                    context,
                    OperationType.ADD_EDGE,
                    t0,
                    edge_id=edge_id,
                    data={
                        "source_key": pending.source_key,
                        "target_key": pending.target_key,
                        "edge_type": pending.edge_type.value,
                    },
                    rollback={"edge_id": edge_id},
                    file_path=rel_path,
                    reason=change_reason,
                )

        logger.debug(
            "%s: %d nodes, %d edges (%d dropped)",
            rel_path,
            result.nodes_added,
            result.edges_added,
            result.edges_dropped,
        )
        return result

    # ------------------------------------------------------------------
    # Whole project
    # ------------------------------------------------------------------

    def build_graph_from_project(self, context: GraphContext) -> GraphUpdateResult:
        """
        Build a fresh graph version for every supported file under the root.

        A new child version of the current one is created first (no rows are
        carried).  Each file is processed independently; failures are
        collected in ``errors`` and the rest of the build continues.

        :param context: Project id, root path and file selection.
        :return: :class:`GraphUpdateResult` for the new version.
        """
        t0 = time.perf_counter()
        project_id = context.project_id
        parent = self.store.get_current_version(project_id)
        version_id = self.store.create_new_version(
            project_id,
            parent,
            metadata={"kind": "full_build", "root_path": str(context.root_path)},
        )
        ctx = context.with_version(version_id)
        logger.info("building graph for %s into version %s", project_id, version_id)

        errors: list[str] = []
        nodes = edges = dropped = 0
        for path in iter_source_files(ctx):
            rel = rel_posix_path(path, Path(ctx.root_path))
            try:
                res = self.process_file(path, ctx)
            except (OSError, UnicodeDecodeError, CPGError) as exc:
                logger.error("failed to process %s: %s", rel, exc)
                errors.append(f"{rel}: {exc}")
                continue
            nodes += res.nodes_added
            edges += res.edges_added
            dropped += res.edges_dropped
            errors.extend(f"{rel}: {err}" for err in res.errors)

        result = GraphUpdateResult(
            success=not errors,
            version_id=version_id,
            operations_applied=nodes + edges,
            nodes_affected=nodes,
            edges_affected=edges,
            edges_dropped=dropped,
            execution_time_ms=(time.perf_counter() - t0) * 1000.0,
            errors=errors,
        )
        logger.info(
            "build complete: %d nodes, %d edges, %d errors in %.1f ms",
            nodes,
            edges,
            len(errors),
            result.execution_time_ms,
        )

        if self.summarizer is not None:
            self._annotate(project_id, version_id)
        return result

    def wait_for_annotations(self, timeout: float | None = None) -> bool:
        """
        Join the background purpose pass, if one is running.

        :return: ``True`` when no pass is running anymore.
        """
        thread = self._annotation_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------

    def _annotate(self, project_id: str, version_id: str) -> None:
        annotator = PurposeAnnotator(
            self.store,
            self.summarizer,
            batch_size=self.purpose_batch_size,
            rate_limit_seconds=self.purpose_rate_limit_seconds,
        )
        if self.purpose_in_background:
            self._annotation_thread = annotator.start(project_id, version_id)
        else:
            annotator.run(project_id, version_id)

    @staticmethod
    def _rel_path(path: str | Path, context: GraphContext) -> str:
        p = Path(path)
        try:
            return rel_posix_path(p, Path(context.root_path))
        except ValueError:
            return p.as_posix()

    def _log(
        self,
        context: GraphContext,
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
        self.store.log_update_operation(
            UpdateOperation(
                project_id=context.project_id,
                version_id=context.version_id or "",
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
