"""Relation persistence: idempotent upserts and quality pruning.

A **relation** is a directed, typed, scored edge between two memories of the
same owner.  The ``relations`` table holds at most one row per ordered
``(source_id, target_id)`` pair.

Relation types, most to least specific:

- **semantic** -- embedding similarity.
- **topical** -- metadata overlap.
- **temporal** -- capture-time proximity.

Concurrent jobs may discover the same pair at once (A processing its
relations while B processes its own).  :meth:`RelationStore.upsert` resolves
this optimistically: it inserts when no row exists and treats a uniqueness
conflict as "already written by a concurrent job".  Updates are single-row
conditional statements, so no lock is held across reads and writes.
"""

from __future__ import annotations

import enum
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from memorymesh.config import get_config
from memorymesh.storage import Storage, format_timestamp, utcnow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RELATION_TYPES: tuple[str, ...] = ("semantic", "topical", "temporal")
"""Allowed values for ``relations.relation_type``, most specific first."""

SPECIFICITY: dict[str, int] = {"semantic": 3, "topical": 2, "temporal": 1}
"""Rank used to break ties between relation types."""

_SPECIFICITY_SQL = (
    "CASE relation_type WHEN 'semantic' THEN 3 WHEN 'topical' THEN 2 "
    "WHEN 'temporal' THEN 1 ELSE 0 END"
)


def is_more_specific(new_type: str, existing_type: str) -> bool:
    """Whether *new_type* ranks strictly above *existing_type*."""
    return SPECIFICITY.get(new_type, 0) > SPECIFICITY.get(existing_type, 0)


class UpsertOutcome(str, enum.Enum):
    """What :meth:`RelationStore.upsert` did."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    """A concurrent writer inserted the same pair first."""


# ---------------------------------------------------------------------------
# Relation dataclass
# ---------------------------------------------------------------------------


@dataclass
class Relation:
    """In-memory representation of a single ``relations`` row."""

    id: int
    source_id: str
    target_id: str
    relation_type: str
    score: float
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Any) -> Relation:
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relation_type=row["relation_type"],
            score=row["score"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relation_type": self.relation_type,
            "score": self.score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_relation_type(relation_type: str) -> None:
    if relation_type not in RELATION_TYPES:
        raise ValueError(
            f"Invalid relation type {relation_type!r}. "
            f"Must be one of: {', '.join(RELATION_TYPES)}"
        )


def _validate_score(score: float) -> None:
    if not 0.0 <= score <= 1.0:
        raise ValueError(f"Score must be between 0.0 and 1.0, got {score}")


def _validate_pair(source_id: str, target_id: str) -> None:
    if source_id == target_id:
        raise ValueError(f"Cannot relate a memory to itself (memory_id={source_id})")


# ---------------------------------------------------------------------------
# Relation store
# ---------------------------------------------------------------------------


class RelationStore:
    """Async persistence for relations.

    Parameters
    ----------
    storage:
        An initialised :class:`~memorymesh.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._cfg = get_config().relations

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        score: float,
    ) -> UpsertOutcome:
        """Insert a relation or improve the stored one.

        An existing row is updated only when the new score beats it by more
        than ``relations.update_margin``, or beats it at all with a strictly
        more specific type.

        Raises
        ------
        ValueError
            If the type, score or pair is invalid.
        sqlite3.Error
            For storage failures other than a uniqueness conflict.
        """
        _validate_relation_type(relation_type)
        _validate_score(score)
        _validate_pair(source_id, target_id)

        existing = await self.find_by_key(source_id, target_id)
        now = utcnow()

        if existing is None:
            try:
                await self._storage.execute_write(
                    """
                    INSERT INTO relations
                        (source_id, target_id, relation_type, score, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (source_id, target_id, relation_type, score, now, now),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" not in str(exc):
                    raise
                logger.debug(
                    "Relation %s -> %s already created by a concurrent writer",
                    source_id,
                    target_id,
                )
                return UpsertOutcome.CONFLICT
            return UpsertOutcome.CREATED

        changed = await self._storage.execute_write(
            f"""
            UPDATE relations
            SET score = ?, relation_type = ?, updated_at = ?
            WHERE source_id = ? AND target_id = ?
              AND (
                  ? > score + ?
                  OR (? > score AND ? > {_SPECIFICITY_SQL})
              )
            """,
            (
                score,
                relation_type,
                now,
                source_id,
                target_id,
                score,
                self._cfg.update_margin,
                score,
                SPECIFICITY[relation_type],
            ),
        )
        return UpsertOutcome.UPDATED if changed else UpsertOutcome.UNCHANGED

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def find_by_key(self, source_id: str, target_id: str) -> Relation | None:
        rows = await self._storage.execute(
            "SELECT * FROM relations WHERE source_id = ? AND target_id = ?",
            (source_id, target_id),
        )
        return Relation.from_row(rows[0]) if rows else None

    async def outgoing(
        self,
        memory_id: str,
        min_score: float | None = None,
        limit: int | None = None,
    ) -> list[Relation]:
        """Relations whose source is *memory_id*, strongest first.

        *min_score* is exclusive; ``None`` returns every relation.
        """
        rows = await self._storage.execute(
            """
            SELECT * FROM relations
            WHERE source_id = ? AND (? IS NULL OR score > ?)
            ORDER BY score DESC, target_id
            LIMIT ?
            """,
            (memory_id, min_score, min_score, -1 if limit is None else limit),
        )
        return [Relation.from_row(r) for r in rows]

    async def incoming(self, memory_id: str) -> list[Relation]:
        """Relations whose target is *memory_id*, strongest first."""
        rows = await self._storage.execute(
            "SELECT * FROM relations WHERE target_id = ? ORDER BY score DESC, source_id",
            (memory_id,),
        )
        return [Relation.from_row(r) for r in rows]

    async def among(self, memory_ids: Iterable[str]) -> list[Relation]:
        """Relations with both endpoints inside *memory_ids*."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self._storage.execute(
            f"SELECT * FROM relations "
            f"WHERE source_id IN ({placeholders}) AND target_id IN ({placeholders}) "
            f"ORDER BY score DESC, source_id, target_id",
            (*ids, *ids),
        )
        return [Relation.from_row(r) for r in rows]

    async def count(self, source_id: str | None = None) -> int:
        if source_id is None:
            rows = await self._storage.execute("SELECT COUNT(*) AS cnt FROM relations")
        else:
            rows = await self._storage.execute(
                "SELECT COUNT(*) AS cnt FROM relations WHERE source_id = ?", (source_id,)
            )
        return int(rows[0]["cnt"])

    async def stats(self, owner_id: str | None = None) -> dict[str, Any]:
        """Per-type counts and average score, optionally for one owner."""
        if owner_id is None:
            rows = await self._storage.execute(
                """
                SELECT relation_type, COUNT(*) AS cnt, AVG(score) AS avg_score
                FROM relations GROUP BY relation_type
                """
            )
        else:
            rows = await self._storage.execute(
                """
                SELECT r.relation_type, COUNT(*) AS cnt, AVG(r.score) AS avg_score
                FROM relations r JOIN memories m ON m.id = r.source_id
                WHERE m.owner_id = ?
                GROUP BY r.relation_type
                """,
                (owner_id,),
            )
        by_type = {rt: 0 for rt in RELATION_TYPES}
        total = 0
        weighted = 0.0
        for row in rows:
            by_type[row["relation_type"]] = row["cnt"]
            total += row["cnt"]
            weighted += (row["avg_score"] or 0.0) * row["cnt"]
        return {
            "total": total,
            "by_type": by_type,
            "average_score": round(weighted / total, 4) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_where(
        self,
        *,
        source_id: str | None = None,
        score_below: float | None = None,
        older_than: datetime | None = None,
    ) -> int:
        """Delete relations matching every given criterion.

        At least one criterion is required.

        Returns
        -------
        int
            Number of deleted rows.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if score_below is not None:
            clauses.append("score < ?")
            params.append(score_below)
        if older_than is not None:
            clauses.append("created_at < ?")
            params.append(format_timestamp(older_than))
        if not clauses:
            raise ValueError("delete_where needs at least one criterion")

        return await self._storage.execute_write(
            f"DELETE FROM relations WHERE {' AND '.join(clauses)}",
            tuple(params),
        )

    async def evict_excess(self, max_per_source: int) -> int:
        """Keep only the *max_per_source* highest-scoring relations per source."""
        return await self._storage.execute_write(
            """
            DELETE FROM relations WHERE id IN (
                SELECT id FROM (
                    SELECT id, ROW_NUMBER() OVER (
                        PARTITION BY source_id
                        ORDER BY score DESC, updated_at DESC, id ASC
                    ) AS rn
                    FROM relations
                )
                WHERE rn > ?
            )
            """,
            (max_per_source,),
        )

    async def count_excess(self, max_per_source: int) -> int:
        """Rows :meth:`evict_excess` would delete."""
        rows = await self._storage.execute(
            """
            SELECT COALESCE(SUM(cnt - ?), 0) AS excess FROM (
                SELECT COUNT(*) AS cnt FROM relations GROUP BY source_id
            ) WHERE cnt > ?
            """,
            (max_per_source, max_per_source),
        )
        return int(rows[0]["excess"])

    async def count_where(
        self,
        *,
        score_below: float | None = None,
        older_than: datetime | None = None,
    ) -> int:
        """Rows :meth:`delete_where` would delete for the same criteria."""
        clauses: list[str] = ["1=1"]
        params: list[Any] = []
        if score_below is not None:
            clauses.append("score < ?")
            params.append(score_below)
        if older_than is not None:
            clauses.append("created_at < ?")
            params.append(format_timestamp(older_than))
        rows = await self._storage.execute(
            f"SELECT COUNT(*) AS cnt FROM relations WHERE {' AND '.join(clauses)}",
            tuple(params),
        )
        return int(rows[0]["cnt"])


def stale_cutoff(days: int, now: datetime | None = None) -> datetime:
    """The creation time before which a relation counts as stale."""
    return (now or datetime.now(tz=timezone.utc)) - timedelta(days=days)
