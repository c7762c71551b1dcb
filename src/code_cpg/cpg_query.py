#!/usr/bin/env python3
"""
cpg_query.py

Query the Code Property Graph from the command line.

Subcommands: stats, history, search, node, callers, callees, deps,
dependents, path, impact, cycles, bottlenecks.  Nodes may be given by id or
by ``path:line:name`` key.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from code_cpg.config import configure_logging, get_settings
from code_cpg.cpg import CodeCPG
from code_cpg.models import GraphNode, NodeType

# -----------------------------------------------------------------------------
# Output helpers
# -----------------------------------------------------------------------------


def _node_line(n: GraphNode) -> str:
    return f"{n.node_type.value:10s} {n.node_key}  [{n.id}]"


def _print_nodes(title: str, nodes: list[GraphNode]) -> None:
    print("=" * 80)
    print(f"{title}: {len(nodes)}")
    print("=" * 80)
    for n in nodes:
        print(_node_line(n))
        if n.purpose or n.docstring:
            print("    ", (n.purpose or n.docstring).strip().splitlines()[0][:120])


def _emit(data: Any, as_json: bool, human) -> None:
    if as_json:
        print(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        human()


def _resolve(cpg: CodeCPG, ref: str) -> GraphNode:
    node = cpg.query.resolve_node(cpg.project_id, ref)
    if node is None:
        print(f"error: node not found: {ref}", file=sys.stderr)
        sys.exit(1)
    return node


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    p = argparse.ArgumentParser(description="Query the Code Property Graph.")
    p.add_argument("--repo", default=".", help="Path to repository root (default: .)")
    p.add_argument("--db", default=settings.db_path, help=f"SQLite database path (default: {settings.db_path})")
    p.add_argument("--project", default=None, help="Project id (default: repo directory name)")
    p.add_argument("--json", action="store_true", help="Print JSON instead of text")
    p.add_argument("--log-level", default=None, help=f"Logging level (default: {settings.log_level})")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Graph statistics for the current version")
    h = sub.add_parser("history", help="Version history")
    h.add_argument("--limit", type=int, default=10)

    s = sub.add_parser("search", help="Fuzzy node search")
    s.add_argument("query")
    s.add_argument("--types", default="", help="Comma-separated node types (e.g. FUNCTION,CLASS)")
    s.add_argument("--content", action="store_true", help="Also match docstrings and purposes")
    s.add_argument("--threshold", type=float, default=0.3)
    s.add_argument("--limit", type=int, default=20)

    for name, help_text in (
        ("node", "Show a node with its edges"),
        ("callers", "Functions calling a node"),
        ("callees", "Functions called by a node"),
        ("impact", "Impact analysis for a node"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("ref", help="Node id or key")

    for name in ("deps", "dependents"):
        sp = sub.add_parser(name, help=f"Transitive {name} of a node")
        sp.add_argument("ref", help="Node id or key")
        sp.add_argument("--depth", type=int, default=settings.default_max_depth)

    pa = sub.add_parser("path", help="Shortest path between two nodes")
    pa.add_argument("source")
    pa.add_argument("target")
    pa.add_argument("--depth", type=int, default=10)

    c = sub.add_parser("cycles", help="Circular dependencies")
    c.add_argument("--depth", type=int, default=10)

    b = sub.add_parser("bottlenecks", help="Most central functions")
    b.add_argument("--limit", type=int, default=20)
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    with CodeCPG(args.repo, args.db, project_id=args.project) as cpg:
        run(cpg, args)


def run(cpg: CodeCPG, args: argparse.Namespace) -> None:
    """Execute one parsed subcommand against *cpg*."""
    q = cpg.query
    pid = cpg.project_id
    cmd = args.command

    if cmd == "stats":
        stats = cpg.stats()
        _emit(stats.to_dict(), args.json, lambda: print(json.dumps(stats.to_dict(), indent=2)))

    elif cmd == "history":
        versions = cpg.store.get_version_history(pid, args.limit)

        def show() -> None:
            for v in versions:
                kind = v.metadata.get("kind", "")
                print(f"#{v.version_number:<4d} {v.id}  ops={v.operations_count:<5d} {kind:12s} {v.created_at}")

        _emit([v.to_dict() for v in versions], args.json, show)

    elif cmd == "search":
        types = [NodeType(t.strip().upper()) for t in args.types.split(",") if t.strip()] or None
        hits = q.search_nodes(
            pid,
            args.query,
            node_types=types,
            include_content=args.content,
            fuzzy_threshold=args.threshold,
            limit=args.limit,
        )

        def show() -> None:
            for hit in hits:
                print(f"{hit.similarity:.3f}  {hit.match_reason:17s} {_node_line(hit.node)}")

        _emit([h.to_dict() for h in hits], args.json, show)

    elif cmd == "node":
        node = _resolve(cpg, args.ref)
        conns = cpg.store.get_node_with_connections(node.id)

        def show() -> None:
            print(_node_line(node))
            print(f"    signature : {node.signature}")
            print(f"    complexity: {node.complexity}")
            for e in conns.incoming_edges:
                print(f"    <-[{e.edge_type.value}]- {e.source_node_id}")
            for e in conns.outgoing_edges:
                print(f"    -[{e.edge_type.value}]-> {e.target_node_id}")

        _emit(conns.to_dict(), args.json, show)

    elif cmd in ("callers", "callees", "deps", "dependents"):
        node = _resolve(cpg, args.ref)
        if cmd == "callers":
            nodes = q.find_callers(node.id)
        elif cmd == "callees":
            nodes = q.find_callees(node.id)
        elif cmd == "deps":
            nodes = q.find_dependencies(node.id, max_depth=args.depth)
        else:
            nodes = q.find_dependents(node.id, max_depth=args.depth)
        _emit([n.to_dict() for n in nodes], args.json, lambda: _print_nodes(f"{cmd} of {node.node_key}", nodes))

    elif cmd == "path":
        src = _resolve(cpg, args.source)
        dst = _resolve(cpg, args.target)
        found = q.find_path(src.id, dst.id, max_depth=args.depth)

        def show() -> None:
            if found is None:
                print("No path found.")
                return
            print(f"length={found.length} weight={found.total_weight}")
            print("  ->  ".join(n.node_key for n in found.path))

        _emit(found.to_dict() if found else None, args.json, show)

    elif cmd == "impact":
        node = _resolve(cpg, args.ref)
        impact = q.analyze_impact(node.id)

        def show() -> None:
            print(f"risk={impact.risk_level} complexity={impact.estimated_change_complexity}")
            _print_nodes("directly affected", impact.directly_affected)
            _print_nodes("indirectly affected", impact.indirectly_affected)
            print("files:", ", ".join(impact.affected_files))

        _emit(impact.to_dict(), args.json, show)

    elif cmd == "cycles":
        cycles = q.find_circular_dependencies(pid, max_depth=args.depth)

        def show() -> None:
            print(f"{len(cycles)} cycles")
            for c in cycles:
                print(f"[{c.severity}] length={c.cycle_length} types={','.join(c.edge_types)}")
                print("    " + " -> ".join(c.nodes))

        _emit([c.to_dict() for c in cycles], args.json, show)

    elif cmd == "bottlenecks":
        ranked = q.find_bottlenecks(pid, limit=args.limit)

        def show() -> None:
            for b in ranked:
                print(f"{b.centrality:8.2f}  in={b.incoming_connections:<3d} out={b.outgoing_connections:<3d} {b.node.node_key}")

        _emit([b.to_dict() for b in ranked], args.json, show)


if __name__ == "__main__":
    main()
