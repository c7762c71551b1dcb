#!/usr/bin/env python3
"""
cpg.py

CodeCPG — top-level orchestrator for the versioned Code Property Graph.

Owns the full pipeline:
    repo -> GraphBuilder -> GraphStore <- IncrementalUpdater
                               |
                          QueryEngine

Every layer is created lazily on first use and shares one store.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
from pathlib import Path

from code_cpg.builder import GraphBuilder
from code_cpg.config import CPGSettings, get_settings
from code_cpg.models import FileChange, GraphContext, GraphStatistics, GraphUpdateResult
from code_cpg.query import QueryEngine
from code_cpg.rollback import RollbackResult, rollback_version
from code_cpg.store import GraphStore
from code_cpg.summarizer import Summarizer
from code_cpg.updater import IncrementalUpdater

logger = logging.getLogger(__name__)


class CodeCPG:
    """
    Code Property Graph for one repository.

    Example::

        cpg = CodeCPG(repo_root="/path/to/repo", db_path=".codecpg/graph.sqlite")
        print(cpg.build())
        for hit in cpg.query.search_nodes(cpg.project_id, "parse"):
            print(hit.node.node_key, hit.similarity)

    :param repo_root: Repository root directory.
    :param db_path: SQLite database path (settings default when omitted).
    :param project_id: Project identifier (defaults to the root's name).
    :param summarizer: Optional purpose summarizer for full builds.
    :param settings: Settings override (process settings by default).
    """

    def __init__(
        self,
        repo_root: str | Path,
        db_path: str | Path | None = None,
        *,
        project_id: str | None = None,
        summarizer: Summarizer | None = None,
        settings: CPGSettings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repo_root = Path(repo_root).resolve()
        self.db_path = Path(db_path or self.settings.db_path)
        self.project_id = project_id or self.repo_root.name
        self.summarizer = summarizer

        # Lazy-initialised layers
        self._store: GraphStore | None = None
        self._builder: GraphBuilder | None = None
        self._updater: IncrementalUpdater | None = None
        self._query: QueryEngine | None = None

    # ------------------------------------------------------------------
    # Layer accessors (lazy init)
    # ------------------------------------------------------------------

    @property
    def store(self) -> GraphStore:
        """SQLite persistence layer (lazy)."""
        if self._store is None:
            self._store = GraphStore(self.db_path)
        return self._store

    @property
    def builder(self) -> GraphBuilder:
        """Graph builder (lazy)."""
        if self._builder is None:
            self._builder = GraphBuilder(
                self.store,
                summarizer=self.summarizer,
                purpose_batch_size=self.settings.purpose_batch_size,
                purpose_rate_limit_seconds=self.settings.purpose_rate_limit_seconds,
                purpose_in_background=self.settings.purpose_in_background,
            )
        return self._builder

    @property
    def updater(self) -> IncrementalUpdater:
        """Incremental updater sharing the builder (lazy)."""
        if self._updater is None:
            self._updater = IncrementalUpdater(self.store, self.builder)
        return self._updater

    @property
    def query(self) -> QueryEngine:
        """Read-only query engine (lazy)."""
        if self._query is None:
            self._query = QueryEngine(self.store)
        return self._query

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def context(self) -> GraphContext:
        """Write context for this repository, from settings."""
        return GraphContext(
            project_id=self.project_id,
            root_path=str(self.repo_root),
            include_patterns=list(self.settings.include_patterns),
            exclude_patterns=list(self.settings.exclude_patterns),
            languages=list(self.settings.languages),
        )

    def build(self) -> GraphUpdateResult:
        """Build a new full graph version of the repository."""
        return self.builder.build_graph_from_project(self.context())

    def update(self, changes: list[FileChange]) -> GraphUpdateResult:
        """Apply file changes incrementally under a new version."""
        return self.updater.update_from_file_changes(self.project_id, changes, self.context())

    def stats(self, version_id: str | None = None) -> GraphStatistics:
        """Aggregate counts for a version (current by default)."""
        return self.store.get_graph_statistics(self.project_id, version_id)

    def rollback(self, version_id: str | None = None) -> RollbackResult:
        """
        Reverse the logged operations of a version (current by default).

        :raises ValueError: The project has no versions.
        """
        version_id = version_id or self.store.get_current_version(self.project_id)
        if version_id is None:
            raise ValueError(f"project {self.project_id!r} has no versions")
        return rollback_version(self.store, self.project_id, version_id)

    def wait_for_annotations(self, timeout: float | None = None) -> bool:
        """Join a running background purpose pass."""
        if self._builder is None:
            return True
        return self._builder.wait_for_annotations(timeout)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the store connection."""
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> "CodeCPG":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"CodeCPG(repo_root={self.repo_root!r}, db_path={self.db_path!r}, project_id={self.project_id!r})"
