#!/usr/bin/env python3
"""
cpg_update.py

CLI entry point: file changes -> incremental graph version

Changes come either from flags (``--added``, ``--modified``, ``--deleted``,
``--renamed OLD NEW``; the updater reads current content from disk) or from a JSON
file holding a list of ``{file_path, change_type, old_content?,
new_content?, old_path?}`` objects.  Modified files without old content are
replaced wholesale rather than diffed.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from code_cpg.config import configure_logging, get_settings
from code_cpg.cpg import CodeCPG
from code_cpg.models import ChangeType, FileChange


def collect_changes(args: argparse.Namespace) -> list[FileChange]:
    """Translate CLI arguments into :class:`FileChange` objects."""
    changes: list[FileChange] = []
    if args.changes:
        payload = json.loads(Path(args.changes).read_text(encoding="utf-8"))
        changes.extend(FileChange.from_dict(d) for d in payload)
    for rel in args.added:
        changes.append(FileChange(rel, ChangeType.ADDED))
    for rel in args.modified:
        changes.append(FileChange(rel, ChangeType.MODIFIED))
    for rel in args.deleted:
        changes.append(FileChange(rel, ChangeType.DELETED))
    for old, new in args.renamed:
        changes.append(FileChange(new, ChangeType.RENAMED, old_path=old))
    return changes


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    p = argparse.ArgumentParser(description="Apply file changes to the current graph version.")
    p.add_argument("--repo", default=".", help="Path to repository root (default: .)")
    p.add_argument("--db", default=settings.db_path, help=f"SQLite database path (default: {settings.db_path})")
    p.add_argument("--project", default=None, help="Project id (default: repo directory name)")
    p.add_argument("--changes", default=None, help="JSON file with a list of file changes")
    p.add_argument("--added", action="append", default=[], metavar="PATH", help="Added file (repeatable)")
    p.add_argument("--modified", action="append", default=[], metavar="PATH", help="Modified file (repeatable)")
    p.add_argument("--deleted", action="append", default=[], metavar="PATH", help="Deleted file (repeatable)")
    p.add_argument(
        "--renamed",
        action="append",
        nargs=2,
        default=[],
        metavar=("OLD", "NEW"),
        help="Renamed file (repeatable)",
    )
    p.add_argument("--json", action="store_true", help="Print the result as JSON")
    p.add_argument("--log-level", default=None, help=f"Logging level (default: {settings.log_level})")
    args = p.parse_args(argv)

    configure_logging(args.log_level)

    repo = Path(args.repo).resolve()
    changes = collect_changes(args)
    if not changes:
        print("No changes given.", file=sys.stderr)
        sys.exit(2)

    with CodeCPG(repo, args.db, project_id=args.project) as cpg:
        result = cpg.update(changes)

    print(result.to_json() if args.json else result)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
