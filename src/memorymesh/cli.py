"""CLI entry points for maintenance, statistics and health checks.

Usage::

    python -m memorymesh maintain [--dry-run]
    python -m memorymesh stats [<owner>]
    python -m memorymesh health
    python -m memorymesh process <owner> <memory-id> [<memory-id> ...]
    python -m memorymesh mesh <owner> [--limit N]

Add ``--verbose`` to any command for debug logging on stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from memorymesh.engine import MeshEngine

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("maintain", "stats", "health", "process", "mesh")


async def _get_engine() -> MeshEngine:
    engine = MeshEngine()
    await engine.initialize()
    return engine


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

async def _maintain(dry_run: bool) -> str:
    """Run one maintenance pass and describe it."""
    engine = await _get_engine()
    try:
        result = await engine.run_maintenance(dry_run=dry_run)
    finally:
        await engine.shutdown()

    if result.skipped:
        return "memorymesh maintain: another process is maintaining; skipped"
    lines = [
        f"memorymesh maintain{' (dry run)' if dry_run else ''}:",
        f"  weak relations removed:   {result.pruned_weak}",
        f"  excess relations evicted: {result.evicted}",
        f"  stale relations removed:  {result.pruned_stale}",
        f"  cache entries swept:      {result.cache_swept}",
    ]
    if result.errors:
        lines.append(f"  failed steps: {', '.join(result.errors)}")
    return "\n".join(lines)


async def _stats(owner_id: str | None) -> str:
    """Relation counts per type and table sizes."""
    engine = await _get_engine()
    try:
        stats = await engine.relation_stats(owner_id)
    finally:
        await engine.shutdown()

    lines = [f"memorymesh stats{f' for {owner_id}' if owner_id else ''}:"]
    lines.append(f"  relations: {stats['total']}  (avg score {stats['average_score']:.2f})")
    for relation_type, count in stats["by_type"].items():
        lines.append(f"    {relation_type:9s} {count}")
    for table, count in sorted(stats.get("tables", {}).items()):
        lines.append(f"  {table}: {count}")
    return "\n".join(lines)


async def _health() -> str:
    """Storage and arbitration status."""
    try:
        engine = await _get_engine()
        try:
            status = await engine.health()
        finally:
            await engine.shutdown()
    except Exception as exc:
        return f"Health check failed: {exc}"

    return "\n".join(
        [
            "memorymesh health check:",
            f"  db: {status['db_path']}",
            f"  sqlite-vec: {'loaded' if status['vec_available'] else 'unavailable'}",
            f"  arbitration: {'healthy' if status['arbitration_available'] else 'unavailable'}",
            f"  cache backend: {status['cache_backend']}",
            f"  memories: {status['tables'].get('memories', 0)}",
            f"  relations: {status['tables'].get('relations', 0)}",
        ]
    )


async def _process(owner_id: str, memory_ids: list[str]) -> str:
    engine = await _get_engine()
    try:
        result = await engine.process_memories(memory_ids, owner_id)
    finally:
        await engine.shutdown()

    lines = [
        f"memorymesh process: {result['processed']} processed, {result['failed']} failed",
        f"  relations created: {result['created']}",
        f"  relations updated: {result['updated']}",
    ]
    for memory_id, error in sorted(result["errors"].items()):
        lines.append(f"  {memory_id}: {error}")
    return "\n".join(lines)


async def _mesh(owner_id: str, limit: int | None) -> str:
    engine = await _get_engine()
    try:
        mesh = await engine.get_mesh(owner_id, limit=limit)
    finally:
        await engine.shutdown()
    return json.dumps(mesh, indent=2)


# ------------------------------------------------------------------
# Dispatch
# ------------------------------------------------------------------

def _usage(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def _pop_flag(args: list[str], flag: str) -> bool:
    if flag in args:
        args.remove(flag)
        return True
    return False


def _pop_option(args: list[str], option: str) -> str | None:
    if option not in args:
        return None
    position = args.index(option)
    if position + 1 >= len(args):
        _usage(f"{option} needs a value")
    value = args[position + 1]
    del args[position : position + 2]
    return value


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m memorymesh``,
        e.g. ``["maintain", "--dry-run"]``.
    """
    if not args:
        return  # Fall through to the MCP server.

    args = list(args)
    if _pop_flag(args, "--verbose"):
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)
    if not args:
        _usage(f"Missing command. Commands: {', '.join(COMMANDS)}")

    command, rest = args[0], args[1:]

    if command == "maintain":
        print(asyncio.run(_maintain(_pop_flag(rest, "--dry-run"))))

    elif command == "stats":
        print(asyncio.run(_stats(rest[0] if rest else None)))

    elif command == "health":
        print(asyncio.run(_health()))

    elif command == "process":
        if len(rest) < 2:
            _usage("Usage: python -m memorymesh process <owner> <memory-id> [...]")
        print(asyncio.run(_process(rest[0], rest[1:])))

    elif command == "mesh":
        raw_limit = _pop_option(rest, "--limit")
        if not rest:
            _usage("Usage: python -m memorymesh mesh <owner> [--limit N]")
        try:
            limit = int(raw_limit) if raw_limit is not None else None
        except ValueError:
            _usage(f"--limit must be an integer, got {raw_limit!r}")
            return
        print(asyncio.run(_mesh(rest[0], limit)))

    else:
        _usage(f"Unknown command: {command}. Commands: {', '.join(COMMANDS)}")

    sys.exit(0)
