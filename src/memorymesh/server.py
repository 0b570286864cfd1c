"""MCP server exposing the memory-mesh engine as tools via stdio transport.

The ``mcp`` object is imported by :mod:`memorymesh.__main__` and launched
with ``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_engine` is lazily initialised on the first tool
  call via :func:`_ensure_engine`, which also starts the background cache
  sweep and maintenance loops.
* Empty-string parameters from MCP (which lacks first-class optionals) are
  normalised to ``None`` before forwarding to the engine.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from memorymesh.engine import MeshEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and engine instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memorymesh",
    instructions="Relationship graph over captured web memories",
)

_engine = MeshEngine()
_background: asyncio.Task | None = None


async def _ensure_engine() -> None:
    """Initialise the engine and start its background loops once."""
    global _background  # noqa: PLW0603
    if not _engine._initialized:
        await _engine.initialize()
    if _background is None or _background.done():
        _background = asyncio.create_task(_engine.run_background())


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# MCP Tools
# ===================================================================


@mcp.tool()
async def process_memory(memory_id: str, owner_id: str) -> dict[str, Any]:
    """Compute and store the relations of one memory.

    Run this after a memory is captured or updated.  Candidates come from
    embedding similarity, shared metadata and capture time; borderline
    ones may be checked by the local model.

    Args:
        memory_id: The memory to relate.
        owner_id: The user owning the memory.

    Returns:
        A dict with the accepted relations and counts of created, updated,
        unchanged and conflicting writes.
    """
    try:
        await _ensure_engine()
        return await _engine.process_memory(memory_id, owner_id)
    except Exception as exc:
        logger.exception("process_memory failed")
        return _error_response(exc)


@mcp.tool()
async def get_mesh(
    owner_id: str,
    limit: int = 50,
    similarity_threshold: float = 0.3,
) -> dict[str, Any]:
    """Build the memory mesh (nodes, edges, clusters) for a user.

    Args:
        owner_id: The user whose memories form the mesh.
        limit: Maximum number of most recent memories (1-200).
        similarity_threshold: Minimum weighted edge score kept by pruning.

    Returns:
        A dict with keys nodes, edges, clusters and metadata (total counts,
        average degree, layout method, edge source).
    """
    try:
        await _ensure_engine()
        return await _engine.get_mesh(owner_id, limit, similarity_threshold)
    except Exception as exc:
        logger.exception("get_mesh failed")
        return _error_response(exc)


@mcp.tool()
async def get_cluster(owner_id: str, center_memory_id: str, depth: int = 2) -> dict[str, Any]:
    """Expand outward from one memory along its strongest relations.

    Args:
        owner_id: The user owning the memories.
        center_memory_id: Where to start.
        depth: How many relation hops to follow.

    Returns:
        A dict with center_memory_id, cluster_size, max_depth and the
        memories found (each with its depth and relation_count).
    """
    try:
        await _ensure_engine()
        return await _engine.get_cluster(owner_id, center_memory_id, depth)
    except Exception as exc:
        logger.exception("get_cluster failed")
        return _error_response(exc)


@mcp.tool()
async def memory_relations(memory_id: str, owner_id: str) -> dict[str, Any]:
    """Show a memory with its outgoing and incoming relations.

    Args:
        memory_id: The memory to inspect.
        owner_id: The user owning the memory.
    """
    try:
        await _ensure_engine()
        return await _engine.get_memory_with_relations(memory_id, owner_id)
    except Exception as exc:
        logger.exception("memory_relations failed")
        return _error_response(exc)


@mcp.tool()
async def related_memories(memory_id: str, owner_id: str, limit: int = 5) -> dict[str, Any]:
    """Find the memories most similar to a memory by embedding.

    Args:
        memory_id: The memory to compare against.
        owner_id: The user owning the memory.
        limit: Maximum number of results.
    """
    try:
        await _ensure_engine()
        found = await _engine.find_related_memories(memory_id, owner_id, limit)
        return {"memories": found, "count": len(found)}
    except Exception as exc:
        logger.exception("related_memories failed")
        return _error_response(exc)


@mcp.tool()
async def maintain(dry_run: bool = False) -> dict[str, Any]:
    """Prune weak, excess and stale relations and sweep the verdict cache.

    Args:
        dry_run: Only count what would be removed.
    """
    try:
        await _ensure_engine()
        result = await _engine.run_maintenance(dry_run=dry_run)
        return result.to_dict()
    except Exception as exc:
        logger.exception("maintain failed")
        return _error_response(exc)


@mcp.tool()
async def status(owner_id: str = "") -> dict[str, Any]:
    """Engine health and relation statistics.

    Args:
        owner_id: Restrict relation statistics to one user.  Leave empty
            for global statistics.
    """
    try:
        await _ensure_engine()
        return {
            "health": await _engine.health(),
            "relations": await _engine.relation_stats(owner_id or None),
        }
    except Exception as exc:
        logger.exception("status failed")
        return _error_response(exc)
