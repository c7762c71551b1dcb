#!/usr/bin/env python3
"""
mcp_server.py — code-cpg MCP Server

Exposes the versioned Code Property Graph as Model Context Protocol (MCP)
tools, so an MCP-compatible agent can build, update and interrogate the graph
of a repository directly.

Tools
-----
build_project_graph()
    Build a new full graph version.  Returns the update result as JSON.

update_graph_incremental(changes)
    Apply a JSON list of file changes as a new incremental version.

get_graph_stats(version_id)
    Node/edge/file counts for a version.  Returns JSON.

search_graph_nodes(query, node_types, include_content, fuzzy_threshold, limit)
    Fuzzy node search.  Returns ranked hits as JSON.

get_node_relationships(node, relationship, max_depth)
    Callers, callees, dependencies or dependents of a node.  Returns JSON.

analyze_impact(node)
    Impact analysis for a node.  Returns JSON.

find_bottlenecks(limit)
    Most central functions.  Returns JSON.

find_circular_dependencies(max_depth)
    Dependency cycles.  Returns JSON.

Usage
-----
Install the package, then run::

    codecpg-mcp --repo /path/to/repo --db /path/to/repo/codecpg.sqlite

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from code_cpg.config import configure_logging, get_settings
from code_cpg.cpg import CodeCPG
from code_cpg.models import FileChange, NodeType

# ---------------------------------------------------------------------------
# Global state — initialised in main() before the server starts
# ---------------------------------------------------------------------------

_cpg: CodeCPG | None = None

_RELATIONSHIPS = ("callers", "callees", "dependencies", "dependents")


def _get_cpg() -> CodeCPG:
    if _cpg is None:
        raise RuntimeError(
            "code-cpg not initialised.  Run the server via 'codecpg-mcp --repo ... --db ...'"
        )
    return _cpg


def _dumps(obj: object) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


def _error(message: str) -> str:
    return json.dumps({"error": message})


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "codecpg",
    instructions=(
        "code-cpg keeps a versioned graph of functions, classes, imports and their "
        "call/use/containment relationships. Use search_graph_nodes to find node ids, "
        "then get_node_relationships or analyze_impact to reason about a change. "
        "Call update_graph_incremental after editing files so the graph stays current."
    ),
)


@mcp.tool()
def build_project_graph() -> str:
    """
    Parse the whole repository into a new graph version.

    :return: JSON with success, version_id, operations_applied,
             nodes_affected, edges_affected, edges_dropped, errors.
    """
    cpg = _get_cpg()
    result = cpg.build()
    return result.to_json()


@mcp.tool()
def update_graph_incremental(changes: str) -> str:
    """
    Apply file changes to the graph as a new version.

    :param changes: JSON list of objects with ``file_path``, ``change_type``
                    (added | modified | deleted | renamed) and optional
                    ``old_content``, ``new_content``, ``old_path``.
    :return: JSON update result, or an error message.
    """
    try:
        payload = json.loads(changes)
        parsed = [FileChange.from_dict(d) for d in payload]
    except (ValueError, TypeError, KeyError) as exc:
        return _error(f"invalid changes: {exc}")
    return _get_cpg().update(parsed).to_json()


@mcp.tool()
def get_graph_stats(version_id: str = "") -> str:
    """
    Node, edge and file counts for a graph version.

    :param version_id: Version to describe (default: current).
    :return: JSON graph statistics.
    """
    return _dumps(_get_cpg().stats(version_id or None).to_dict())


@mcp.tool()
def search_graph_nodes(
    query: str,
    node_types: str = "",
    include_content: bool = False,
    fuzzy_threshold: float = 0.3,
    limit: int = 20,
) -> str:
    """
    Fuzzy search over node names, optionally also docstrings and purposes.

    :param query: Text to look for, e.g. "parse_file".
    :param node_types: Comma-separated node types (FUNCTION, CLASS, ...).
    :param include_content: Also match docstrings and purposes.
    :param fuzzy_threshold: Minimum similarity in [0, 1] (default 0.3).
    :param limit: Maximum hits (default 20).
    :return: JSON list of ``{node, similarity, match_reason}``.
    """
    try:
        types = [NodeType(t.strip().upper()) for t in node_types.split(",") if t.strip()]
    except ValueError as exc:
        return _error(str(exc))
    cpg = _get_cpg()
    hits = cpg.query.search_nodes(
        cpg.project_id,
        query,
        node_types=types or None,
        include_content=include_content,
        fuzzy_threshold=fuzzy_threshold,
        limit=limit,
    )
    return _dumps([h.to_dict() for h in hits])


@mcp.tool()
def get_node_relationships(node: str, relationship: str = "callers", max_depth: int = 5) -> str:
    """
    Related nodes of one node.

    :param node: Node id or ``path:line:name`` key.
    :param relationship: callers | callees | dependencies | dependents.
    :param max_depth: Hop bound for dependencies/dependents (default 5).
    :return: JSON with the node and its related nodes, or an error message.
    """
    if relationship not in _RELATIONSHIPS:
        return _error(f"relationship must be one of {', '.join(_RELATIONSHIPS)}")
    cpg = _get_cpg()
    target = cpg.query.resolve_node(cpg.project_id, node)
    if target is None:
        return _error(f"Node not found: {node!r}")

    q = cpg.query
    if relationship == "callers":
        related = q.find_callers(target.id)
    elif relationship == "callees":
        related = q.find_callees(target.id)
    elif relationship == "dependencies":
        related = q.find_dependencies(target.id, max_depth=max_depth)
    else:
        related = q.find_dependents(target.id, max_depth=max_depth)
    return _dumps(
        {
            "node": target.to_dict(),
            "relationship": relationship,
            "related": [n.to_dict() for n in related],
        }
    )


@mcp.tool()
def analyze_impact(node: str) -> str:
    """
    Estimate what a change to a node affects.

    :param node: Node id or ``path:line:name`` key.
    :return: JSON impact analysis (direct/indirect dependents, risk level,
             affected files, estimated change complexity).
    """
    cpg = _get_cpg()
    target = cpg.query.resolve_node(cpg.project_id, node)
    if target is None:
        return _error(f"Node not found: {node!r}")
    return _dumps(cpg.query.analyze_impact(target.id).to_dict())


@mcp.tool()
def find_bottlenecks(limit: int = 20) -> str:
    """
    Functions ranked by connection centrality.

    :param limit: Maximum results (default 20).
    :return: JSON list of bottlenecks, most central first.
    """
    cpg = _get_cpg()
    return _dumps([b.to_dict() for b in cpg.query.find_bottlenecks(cpg.project_id, limit=limit)])


@mcp.tool()
def find_circular_dependencies(max_depth: int = 10) -> str:
    """
    Dependency cycles in the current version.

    :param max_depth: Longest cycle searched, in edges (default 10).
    :return: JSON list of cycles with node ids, edge types and severity.
    """
    cpg = _get_cpg()
    cycles = cpg.query.find_circular_dependencies(cpg.project_id, max_depth=max_depth)
    return _dumps([c.to_dict() for c in cycles])


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _parse_args(argv: list | None = None) -> argparse.Namespace:
    settings = get_settings()
    p = argparse.ArgumentParser(
        prog="codecpg-mcp",
        description="code-cpg MCP server — exposes graph tools to AI agents.",
    )
    p.add_argument(
        "--repo",
        default=".",
        help="Repository root directory (default: current directory)",
    )
    p.add_argument(
        "--db",
        default=settings.db_path,
        help=f"Path to the SQLite graph (default: {settings.db_path}, relative to --repo)",
    )
    p.add_argument("--project", default=None, help="Project id (default: repo directory name)")
    p.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="MCP transport: stdio (default) or sse (HTTP)",
    )
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    return p.parse_args(argv)


def main(argv: list | None = None) -> None:
    """
    CLI entry point for the code-cpg MCP server.

    Initialises the CodeCPG instance and starts the MCP server using the
    requested transport.
    """
    global _cpg

    args = _parse_args(argv)
    configure_logging(args.log_level)

    repo = Path(args.repo).resolve()
    db = Path(args.db) if Path(args.db).is_absolute() else repo / args.db

    if not db.exists():
        print(
            f"WARNING: SQLite database not found at '{db}'.\n"
            "Call build_project_graph or run 'codecpg-build' first.",
            file=sys.stderr,
        )

    print(
        f"code-cpg MCP server starting\n"
        f"  repo     : {repo}\n"
        f"  db       : {db}\n"
        f"  transport: {args.transport}",
        file=sys.stderr,
    )

    _cpg = CodeCPG(repo_root=repo, db_path=db, project_id=args.project)

    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
