"""Memory records and the read-side store the engine consumes.

A **memory** is one captured content record owned by a single user: a
snippet of browsed content with its title, summary, source URL and a
metadata bag of topics, categories, key points and searchable terms.
Memories are written by the ingestion pipeline; the engine only reads them
(:meth:`MemoryStore.save` exists for ingestion and tests).

This module provides:

* :class:`MemoryMetadata` and :class:`Memory` -- dataclasses mapping 1:1
  onto rows of the ``memories`` table.
* :class:`MemoryStore` -- async lookups used by the candidate generators,
  the mesh assembler and the cluster traversal.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable
from urllib.parse import urlsplit

from memorymesh.storage import Storage, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


def _as_set(values: Any) -> frozenset[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v).strip().lower() for v in values if str(v).strip())


def url_host(url: str | None) -> str | None:
    """Return the lower-cased host of *url* without a leading ``www.``.

    Invalid or empty URLs yield ``None``.
    """
    if not url:
        return None
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


@dataclass(frozen=True)
class MemoryMetadata:
    """Facets extracted from a memory's page at ingestion time.

    All values are normalised to lower-case string sets so overlap ratios
    compare like with like.
    """

    topics: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()
    key_points: frozenset[str] = frozenset()
    searchable_terms: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MemoryMetadata:
        """Build metadata from the ingestion JSON bag.

        Accepts both ``keyPoints`` / ``searchableTerms`` (as produced by the
        capture pipeline) and their snake_case spellings.
        """
        if not data:
            return cls()
        return cls(
            topics=_as_set(data.get("topics")),
            categories=_as_set(data.get("categories")),
            key_points=_as_set(data.get("keyPoints", data.get("key_points"))),
            searchable_terms=_as_set(
                data.get("searchableTerms", data.get("searchable_terms"))
            ),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "topics": sorted(self.topics),
            "categories": sorted(self.categories),
            "keyPoints": sorted(self.key_points),
            "searchableTerms": sorted(self.searchable_terms),
        }

    @property
    def is_empty(self) -> bool:
        return not (self.topics or self.categories or self.key_points or self.searchable_terms)


@dataclass
class Memory:
    """In-memory representation of a single ``memories`` row.

    Parameters
    ----------
    id:
        Opaque memory identifier assigned by ingestion.
    owner_id:
        The user who captured the memory.
    created_at:
        Aware UTC capture time.
    title, summary, content:
        Text facets; any of them may be missing.
    url:
        Source URL of the captured page.
    source:
        Capture channel (``extension``, ``web``, ...); used as the node's
        source type in the mesh.
    metadata:
        Topics, categories, key points and searchable terms.
    """

    id: str
    owner_id: str
    created_at: datetime
    title: str | None = None
    summary: str | None = None
    content: str | None = None
    url: str | None = None
    source: str | None = None
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)

    @property
    def host(self) -> str | None:
        """Host part of :attr:`url` (see :func:`url_host`)."""
        return url_host(self.url)

    @property
    def label(self) -> str:
        """Short display label: the title, else the start of the summary."""
        if self.title:
            return self.title
        if self.summary:
            return self.summary[:20]
        return "Memory"

    def brief(self) -> str:
        """Compact text used when asking the arbitrator about this memory."""
        parts = [self.title or "", self.summary or (self.content or "")[:500]]
        if self.metadata.topics:
            parts.append("Topics: " + ", ".join(sorted(self.metadata.topics)))
        return "\n".join(p for p in parts if p)

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Create a :class:`Memory` from a :class:`sqlite3.Row`."""
        raw_meta = row["metadata"]
        try:
            meta = MemoryMetadata.from_dict(json.loads(raw_meta) if raw_meta else None)
        except (json.JSONDecodeError, TypeError, AttributeError):
            logger.debug("Unreadable metadata for memory %s", row["id"])
            meta = MemoryMetadata()
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            created_at=parse_timestamp(row["created_at"]),
            title=row["title"],
            summary=row["summary"],
            content=row["content"],
            url=row["url"],
            source=row["source"],
            metadata=meta,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "summary": self.summary,
            "url": self.url,
            "source": self.source,
            "created_at": format_timestamp(self.created_at),
            "metadata": self.metadata.to_dict(),
        }


class MemoryStore:
    """Async read access to the ``memories`` table.

    Parameters
    ----------
    storage:
        An initialised :class:`~memorymesh.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def save(self, memory: Memory) -> None:
        """Insert or replace a memory row (ingestion and tests only)."""
        await self._storage.execute_write(
            """
            INSERT INTO memories
                (id, owner_id, title, summary, content, url, source, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                title = excluded.title,
                summary = excluded.summary,
                content = excluded.content,
                url = excluded.url,
                source = excluded.source,
                metadata = excluded.metadata,
                created_at = excluded.created_at
            """,
            (
                memory.id,
                memory.owner_id,
                memory.title,
                memory.summary,
                memory.content,
                memory.url,
                memory.source,
                json.dumps(memory.metadata.to_dict()),
                format_timestamp(memory.created_at),
            ),
        )

    async def get(self, memory_id: str, owner_id: str | None = None) -> Memory | None:
        """Fetch one memory, optionally scoped to *owner_id*."""
        if owner_id is None:
            rows = await self._storage.execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            )
        else:
            rows = await self._storage.execute(
                "SELECT * FROM memories WHERE id = ? AND owner_id = ?",
                (memory_id, owner_id),
            )
        return Memory.from_row(rows[0]) if rows else None

    async def get_batch(self, memory_ids: Iterable[str]) -> dict[str, Memory]:
        """Fetch many memories in one query, keyed by id.  Missing ids are absent."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = await self._storage.execute(
            f"SELECT * FROM memories WHERE id IN ({placeholders})", tuple(ids)
        )
        return {row["id"]: Memory.from_row(row) for row in rows}

    async def list_for_owner(self, owner_id: str, limit: int) -> list[Memory]:
        """Most recent memories of *owner_id*, newest first."""
        rows = await self._storage.execute(
            """
            SELECT * FROM memories
            WHERE owner_id = ?
            ORDER BY created_at DESC, id
            LIMIT ?
            """,
            (owner_id, limit),
        )
        return [Memory.from_row(r) for r in rows]

    async def list_in_window(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
        limit: int = 500,
    ) -> list[Memory]:
        """Memories of *owner_id* created within ``[start, end]``."""
        rows = await self._storage.execute(
            """
            SELECT * FROM memories
            WHERE owner_id = ?
              AND created_at >= ? AND created_at <= ?
              AND id != ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (
                owner_id,
                format_timestamp(start),
                format_timestamp(end),
                exclude_id or "",
                limit,
            ),
        )
        return [Memory.from_row(r) for r in rows]
