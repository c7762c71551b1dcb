#!/usr/bin/env python3
"""
viz.py — render part of the Code Property Graph as interactive HTML.

Usage:
    codecpg-viz [--db PATH] [--node REF] [--hops N] [--out graph.html]

With ``--node`` the neighbourhood of that node (``--hops`` steps over any
edge, in either direction) is drawn; without it, the first ``--max-nodes``
nodes of the current version are drawn.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import tempfile
from pathlib import Path

from pyvis.network import Network

from code_cpg.config import configure_logging, get_settings
from code_cpg.cpg import CodeCPG
from code_cpg.models import GraphEdge, GraphNode, NodeQuery
from code_cpg.store import GraphStore

# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------

_TYPE_COLOR: dict[str, str] = {
    "MODULE": "#4A90D9",  # blue
    "CLASS": "#E67E22",  # orange
    "INTERFACE": "#D35400",  # dark orange
    "FUNCTION": "#27AE60",  # green
    "IMPORT": "#3498DB",  # light blue
    "VARIABLE": "#8E44AD",  # purple
    "TYPE": "#16A085",  # teal
}

_TYPE_SHAPE: dict[str, str] = {
    "MODULE": "box",
    "CLASS": "diamond",
    "INTERFACE": "diamond",
    "FUNCTION": "ellipse",
    "IMPORT": "triangle",
    "VARIABLE": "dot",
}

_EDGE_COLOR: dict[str, str] = {
    "CONTAINS": "#BDC3C7",
    "CALLS": "#E74C3C",
    "IMPORTS": "#3498DB",
    "USES": "#9B59B6",
    "EXTENDS": "#F39C12",
}


# ---------------------------------------------------------------------------
# Graph selection
# ---------------------------------------------------------------------------


def neighbourhood(store: GraphStore, node_id: str, hops: int = 1) -> tuple[list[GraphNode], list[GraphEdge]]:
    """
    Nodes within *hops* edges of *node_id* (either direction) and the edges
    among them.

    :return: ``(nodes, edges)``; both empty if the node does not exist.
    """
    start = store.get_node_with_connections(node_id)
    if start is None:
        return [], []

    nodes: dict[str, GraphNode] = {node_id: start.node}
    frontier = [start]
    for _ in range(hops):
        next_frontier = []
        for conns in frontier:
            neighbours = [e.source_node_id for e in conns.incoming_edges]
            neighbours += [e.target_node_id for e in conns.outgoing_edges]
            for other in neighbours:
                if other in nodes:
                    continue
                found = store.get_node_with_connections(other)
                if found is None:
                    continue
                nodes[other] = found.node
                next_frontier.append(found)
        frontier = next_frontier

    return list(nodes.values()), store.edges_within(set(nodes))


def version_nodes(store: GraphStore, project_id: str, max_nodes: int = 300) -> tuple[list[GraphNode], list[GraphEdge]]:
    """The first *max_nodes* nodes of the current version and their edges."""
    nodes = store.query_nodes(NodeQuery(project_id=project_id, limit=max_nodes)).data
    return nodes, store.edges_within({n.id for n in nodes})


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _node_tooltip(n: GraphNode) -> str:
    """HTML hover text: type, key, signature and the start of the docstring."""
    loc = n.location
    lines = f"line {loc.start_line}" if loc.start_line == loc.end_line else f"lines {loc.start_line}–{loc.end_line}"
    parts = [
        f"<b>{n.node_type.value}</b> {_escape(n.name or 'anonymous')}",
        f"{_escape(loc.file_path)} · {lines}",
    ]
    if n.signature:
        parts.append(f"<code>{_escape(n.signature)}</code>")
    parts.append(f"complexity {n.complexity}")
    text = n.purpose or n.docstring
    if text:
        parts.append("<br>".join(_escape(line) for line in text.strip().splitlines()[:8]))
    return "<br>".join(parts)


def build_pyvis_html(
    nodes: list[GraphNode],
    edges: list[GraphEdge],
    *,
    height: str = "720px",
    seed_ids: set[str] | None = None,
    physics: bool = True,
) -> str:
    """
    Build a pyvis Network from graph nodes and edges and return the HTML.

    Seed nodes are rendered with a gold border.
    """
    net = Network(
        height=height,
        width="100%",
        bgcolor="#0e1117",
        font_color="#e0e0e0",
        directed=True,
        notebook=False,
    )
    net.set_options(
        json.dumps(
            {
                "physics": {
                    "enabled": physics,
                    "barnesHut": {
                        "gravitationalConstant": -8000,
                        "centralGravity": 0.3,
                        "springLength": 120,
                        "springConstant": 0.04,
                        "damping": 0.09,
                    },
                    "stabilization": {"iterations": 150},
                },
                "edges": {
                    "smooth": {"type": "dynamic"},
                    "arrows": {"to": {"enabled": True, "scaleFactor": 0.6}},
                    "font": {"size": 10, "color": "#aaaaaa"},
                },
                "interaction": {"hover": True, "tooltipDelay": 80, "navigationButtons": True},
            }
        )
    )

    seed_ids = seed_ids or set()
    for n in nodes:
        kind = n.node_type.value
        color = _TYPE_COLOR.get(kind, "#95A5A6")
        label = n.name or "anonymous"
        if len(label) > 28:
            label = label[:25] + "…"
        net.add_node(
            n.id,
            label=label,
            title=_node_tooltip(n),
            color={
                "background": color,
                "border": "#FFD700" if n.id in seed_ids else color,
                "highlight": {"background": color, "border": "#FFFFFF"},
            },
            shape=_TYPE_SHAPE.get(kind, "dot"),
            size=18 if kind in ("CLASS", "INTERFACE", "MODULE") else 12,
            borderWidth=3 if n.id in seed_ids else 1,
            font={"size": 11},
        )

    for e in edges:
        rel = e.edge_type.value
        net.add_edge(
            e.source_node_id,
            e.target_node_id,
            label=rel,
            color=_EDGE_COLOR.get(rel, "#888888"),
            width=1.5,
            title=rel,
        )

    # Write to a temp file and read back as HTML string
    with tempfile.NamedTemporaryFile(suffix=".html", delete=False, mode="w") as f:
        tmp_path = f.name
    net.save_graph(tmp_path)
    html = Path(tmp_path).read_text(encoding="utf-8")
    os.unlink(tmp_path)
    return html


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Render the Code Property Graph to an HTML file.")
    parser.add_argument("--repo", default=".", help="Path to repository root (default: .)")
    parser.add_argument("--db", default=settings.db_path, help=f"SQLite database path (default: {settings.db_path})")
    parser.add_argument("--project", default=None, help="Project id (default: repo directory name)")
    parser.add_argument("--node", default=None, help="Centre node id or key")
    parser.add_argument("--hops", type=int, default=1, help="Neighbourhood radius (default: 1)")
    parser.add_argument("--max-nodes", type=int, default=300, help="Node cap without --node (default: 300)")
    parser.add_argument("--out", default="cpg_graph.html", help="Output HTML file (default: cpg_graph.html)")
    parser.add_argument("--no-physics", action="store_true", help="Disable the physics layout")
    parser.add_argument("--log-level", default=None, help=f"Logging level (default: {settings.log_level})")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    with CodeCPG(args.repo, args.db, project_id=args.project) as cpg:
        seeds: set[str] = set()
        if args.node:
            centre = cpg.query.resolve_node(cpg.project_id, args.node)
            if centre is None:
                print(f"ERROR: node not found: {args.node}", file=sys.stderr)
                sys.exit(1)
            seeds = {centre.id}
            nodes, edges = neighbourhood(cpg.store, centre.id, args.hops)
        else:
            nodes, edges = version_nodes(cpg.store, cpg.project_id, args.max_nodes)

    html = build_pyvis_html(nodes, edges, seed_ids=seeds, physics=not args.no_physics)
    Path(args.out).write_text(html, encoding="utf-8")
    print(f"OK: wrote {len(nodes)} nodes, {len(edges)} edges -> {args.out}")


if __name__ == "__main__":
    main()
