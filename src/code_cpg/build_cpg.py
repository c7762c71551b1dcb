#!/usr/bin/env python3
"""
build_cpg.py

CLI entry point: repo -> parse trees -> versioned graph in SQLite

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import argparse
import sys

from code_cpg.config import configure_logging, get_settings
from code_cpg.cpg import CodeCPG
from code_cpg.summarizer import DocstringSummarizer


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    p = argparse.ArgumentParser(
        description="Build a new Code Property Graph version for a repository."
    )
    p.add_argument("--repo", default=".", help="Path to repository root (default: .)")
    p.add_argument(
        "--db",
        default=settings.db_path,
        help=f"SQLite database path (default: {settings.db_path})",
    )
    p.add_argument("--project", default=None, help="Project id (default: repo directory name)")
    p.add_argument(
        "--purposes",
        action="store_true",
        help="Annotate functions with a docstring-derived purpose after the build",
    )
    p.add_argument("--json", action="store_true", help="Print the result as JSON")
    p.add_argument("--log-level", default=None, help=f"Logging level (default: {settings.log_level})")
    args = p.parse_args(argv)

    configure_logging(args.log_level)

    with CodeCPG(
        args.repo,
        args.db,
        project_id=args.project,
        summarizer=DocstringSummarizer() if args.purposes else None,
    ) as cpg:
        result = cpg.build()
        cpg.wait_for_annotations()
        stats = cpg.stats(result.version_id)

    if args.json:
        print(result.to_json())
    else:
        print(result)
        print(
            f"OK: nodes={stats.total_nodes} edges={stats.total_edges} "
            f"files={stats.total_files} version=#{stats.version_number} db={args.db}"
        )
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
