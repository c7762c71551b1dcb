"""
code_cpg: A versioned Code Property Graph for Python and TypeScript/JavaScript
repositories.

Parse trees → significant nodes + relationships → SQLite (versioned), kept
current by incremental file-change updates.

Public API
----------
Primary entry point::

    from code_cpg import CodeCPG

    cpg = CodeCPG(repo_root, db_path)
    result = cpg.build()
    cpg.update([FileChange("src/app.py", ChangeType.MODIFIED, old_content=a, new_content=b)])
    impact = cpg.query.analyze_impact(node_id)

Individual layers::

    from code_cpg import GraphStore, GraphBuilder, IncrementalUpdater, QueryEngine

Data model::

    from code_cpg import GraphNode, GraphEdge, NodeType, EdgeType, FileChange
"""

__version__ = "0.1.0"
__author__ = "Eric G. Suchanek, PhD"

# Data model
from code_cpg.errors import Conflict, CPGError, StorageFailure
from code_cpg.models import (
    ASTDiff,
    ChangeType,
    CodeLocation,
    EdgeType,
    FileChange,
    GraphContext,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    NodeType,
    OperationType,
)

# Layered classes
from code_cpg.analyzers import LanguageAnalyzer, get_analyzer, register_analyzer
from code_cpg.builder import GraphBuilder
from code_cpg.config import CPGSettings, get_settings
from code_cpg.query import QueryEngine
from code_cpg.store import GraphStore
from code_cpg.summarizer import DocstringSummarizer, PurposeAnnotator, Summarizer
from code_cpg.updater import IncrementalUpdater, compute_ast_diff

# Orchestrator
from code_cpg.cpg import CodeCPG
from code_cpg.rollback import rollback_version

__all__ = [
    # data model
    "ASTDiff",
    "ChangeType",
    "CodeLocation",
    "EdgeType",
    "FileChange",
    "GraphContext",
    "GraphEdge",
    "GraphNode",
    "GraphUpdateResult",
    "NodeType",
    "OperationType",
    # errors
    "CPGError",
    "Conflict",
    "StorageFailure",
    # layers
    "GraphStore",
    "GraphBuilder",
    "IncrementalUpdater",
    "QueryEngine",
    "LanguageAnalyzer",
    "get_analyzer",
    "register_analyzer",
    "compute_ast_diff",
    "Summarizer",
    "DocstringSummarizer",
    "PurposeAnnotator",
    "CPGSettings",
    "get_settings",
    # orchestrator
    "CodeCPG",
    "rollback_version",
]
