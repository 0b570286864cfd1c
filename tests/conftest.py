"""Shared fixtures and helpers for the memorymesh test suite."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from memorymesh.arbitration import InMemoryArbitrationCache, OllamaArbitrator
from memorymesh.config import get_config
from memorymesh.engine import MeshEngine
from memorymesh.memories import Memory, MemoryMetadata
from memorymesh.storage import Storage, format_timestamp, serialize_embedding

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point every configured path into ``tmp_path`` and reset the cache.

    Tests never touch the user's database at ``~/.memorymesh/mesh.db``.
    """
    monkeypatch.setenv("MEMORYMESH_DB_PATH", str(tmp_path / "mesh.db"))
    monkeypatch.setenv("MEMORYMESH_BACKUP_DIR", str(tmp_path / "backups"))
    get_config(reload=True)
    yield
    get_config(reload=True)


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    s = Storage(tmp_path / "test.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def mock_arbitrator() -> MagicMock:
    """A stand-in arbitrator that answers "not relevant" unless overridden."""
    arbitrator = MagicMock(spec=OllamaArbitrator)
    arbitrator.evaluate_batch = AsyncMock(return_value=[])
    arbitrator.health_check = AsyncMock(return_value=True)
    return arbitrator


@pytest.fixture
async def engine(tmp_path: Path, mock_arbitrator: MagicMock) -> MeshEngine:
    """Provide an initialized MeshEngine with a mocked arbitrator."""
    e = MeshEngine(
        db_path=tmp_path / "engine.db",
        arbitrator=mock_arbitrator,
        cache=InMemoryArbitrationCache(),
    )
    await e.initialize()
    yield e  # type: ignore[misc]
    await e.shutdown()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing the stores
# ---------------------------------------------------------------------------


def make_memory(
    memory_id: str,
    owner_id: str = "alice",
    created_at: datetime = BASE_TIME,
    url: str | None = None,
    topics: list[str] | None = None,
    categories: list[str] | None = None,
    key_points: list[str] | None = None,
    searchable_terms: list[str] | None = None,
    title: str | None = None,
    source: str | None = "extension",
) -> Memory:
    """Build an unsaved :class:`Memory` for pure (non-storage) tests."""
    return Memory(
        id=memory_id,
        owner_id=owner_id,
        created_at=created_at,
        title=title or f"Memory {memory_id}",
        url=url,
        source=source,
        metadata=MemoryMetadata.from_dict(
            {
                "topics": topics or [],
                "categories": categories or [],
                "keyPoints": key_points or [],
                "searchableTerms": searchable_terms or [],
            }
        ),
    )


async def insert_memory(
    storage: Storage,
    memory_id: str,
    owner_id: str = "alice",
    created_at: datetime = BASE_TIME,
    url: str | None = None,
    topics: list[str] | None = None,
    categories: list[str] | None = None,
    key_points: list[str] | None = None,
    searchable_terms: list[str] | None = None,
    title: str | None = None,
    summary: str | None = None,
    source: str | None = "extension",
) -> None:
    """Insert a memory row directly via SQL."""
    metadata = {
        "topics": topics or [],
        "categories": categories or [],
        "keyPoints": key_points or [],
        "searchableTerms": searchable_terms or [],
    }
    await storage.execute_write(
        """
        INSERT INTO memories
            (id, owner_id, title, summary, content, url, source, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory_id,
            owner_id,
            title or f"Memory {memory_id}",
            summary,
            f"content of {memory_id}",
            url,
            source,
            json.dumps(metadata),
            format_timestamp(created_at),
        ),
    )


async def insert_embedding(
    storage: Storage,
    memory_id: str,
    vector: list[float],
    owner_id: str = "alice",
    facet: str = "content",
) -> None:
    """Insert an embedding row directly via SQL."""
    await storage.execute_write(
        """
        INSERT INTO embeddings (memory_id, facet, owner_id, dims, vector, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (memory_id, facet, owner_id, len(vector), serialize_embedding(vector), format_timestamp(BASE_TIME)),
    )


async def insert_relation(
    storage: Storage,
    source_id: str,
    target_id: str,
    relation_type: str = "semantic",
    score: float = 0.5,
    created_at: datetime | None = None,
) -> None:
    """Insert a relation row directly via SQL."""
    stamp = format_timestamp(created_at or datetime.now(tz=timezone.utc))
    await storage.execute_write(
        """
        INSERT INTO relations
            (source_id, target_id, relation_type, score, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (source_id, target_id, relation_type, score, stamp, stamp),
    )


async def count_relations(
    storage: Storage,
    source_id: str | None = None,
    target_id: str | None = None,
) -> int:
    """Count relations matching the given filters."""
    clauses: list[str] = []
    params: list[Any] = []

    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if target_id is not None:
        clauses.append("target_id = ?")
        params.append(target_id)

    where = " AND ".join(clauses) if clauses else "1=1"
    rows = await storage.execute(
        f"SELECT COUNT(*) AS cnt FROM relations WHERE {where}",
        tuple(params),
    )
    return rows[0]["cnt"]
