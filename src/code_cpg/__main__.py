"""Dispatcher for ``python -m code_cpg <subcommand> [args…]``.

Allows code-cpg to be invoked without the console scripts, as long as the
package is installed in the active Python environment.

Subcommands
-----------
build           Build a new full graph version
update          Apply file changes as an incremental version
query           Query the current graph version
viz             Render a node neighbourhood to HTML
mcp             Start the MCP server
"""

import sys

_COMMANDS: dict[str, str] = {
    "build": "code_cpg.build_cpg",
    "update": "code_cpg.cpg_update",
    "query": "code_cpg.cpg_query",
    "viz": "code_cpg.viz",
    "mcp": "code_cpg.mcp_server",
}

_HELP = """\
usage: python -m code_cpg <subcommand> [options]

subcommands:
  build           Build a new full graph version
  update          Apply file changes as an incremental version
  query           Query the current graph version
  viz             Render a node neighbourhood to HTML
  mcp             Start the MCP server

Run  python -m code_cpg <subcommand> --help  for per-command options.
"""


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(_HELP, end="")
        sys.exit(0)

    subcommand = sys.argv[1]
    if subcommand not in _COMMANDS:
        print(f"error: unknown subcommand '{subcommand}'\n", file=sys.stderr)
        print(_HELP, end="", file=sys.stderr)
        sys.exit(1)

    # ["code_cpg", "build", "--repo", "."] -> ["python -m code_cpg build", "--repo", "."]
    sys.argv = [f"python -m code_cpg {subcommand}", *sys.argv[2:]]

    import importlib

    mod = importlib.import_module(_COMMANDS[subcommand])
    mod.main()


if __name__ == "__main__":
    main()
