"""Entry point for ``python -m memorymesh``.

Dispatches to CLI commands (maintain, stats, health, process, mesh) or
starts the MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    if args and args[0] in ("maintain", "stats", "health", "process", "mesh", "--verbose"):
        from memorymesh.cli import dispatch
        dispatch(args)
        return

    # Multiple server processes are safe: SQLite WAL, the per-process write
    # lock and the maintenance advisory lock handle concurrent access.
    from memorymesh.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
