"""Vector similarity index over memory embeddings.

Embeddings are computed elsewhere and handed to :meth:`SimilarityIndex.add`;
the engine only asks for nearest neighbours.  Ranking uses sqlite-vec's
``vec_distance_cosine`` when the extension is loaded and an in-process numpy
scan otherwise, so both paths return identical orderings.

Usage::

    index = SimilarityIndex(storage)
    await index.add("m1", "alice", "content", vector)
    hits = await index.search(vector, owner_id="alice", k=12, exclude_id="m1")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from memorymesh.config import get_config
from memorymesh.storage import Storage, deserialize_embedding, serialize_embedding, utcnow

logger = logging.getLogger(__name__)

FACETS: tuple[str, ...] = ("content", "summary", "title")
"""Text facets a memory can be embedded under."""


@dataclass(frozen=True)
class IndexHit:
    """One nearest-neighbour result.

    ``score`` is the cosine similarity clamped into ``[0, 1]``.
    """

    memory_id: str
    score: float
    vector: list[float] | None = None


def _validate_facet(facet: str) -> None:
    if facet not in FACETS:
        raise ValueError(f"Invalid facet {facet!r}. Must be one of: {', '.join(FACETS)}")


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of *query* against every row of *matrix*.

    Zero-norm rows score 0.
    """
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


class SimilarityIndex:
    """Nearest-neighbour search scoped by owner and facet.

    Parameters
    ----------
    storage:
        An initialised :class:`~memorymesh.storage.Storage` instance.
    """

    def __init__(self, storage: Storage, dims: int | None = None) -> None:
        self._storage = storage
        self._dims = get_config().embedding_dims if dims is None else dims

    async def add(
        self,
        memory_id: str,
        owner_id: str,
        facet: str,
        vector: list[float],
    ) -> None:
        """Store (or replace) the embedding of *memory_id* for *facet*."""
        _validate_facet(facet)
        if not vector:
            raise ValueError("Cannot index an empty vector")
        if len(vector) != self._dims:
            raise ValueError(f"Expected a {self._dims}-dimensional vector, got {len(vector)}")
        await self._storage.execute_write(
            """
            INSERT INTO embeddings (memory_id, facet, owner_id, dims, vector, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(memory_id, facet) DO UPDATE SET
                owner_id = excluded.owner_id,
                dims = excluded.dims,
                vector = excluded.vector,
                created_at = excluded.created_at
            """,
            (memory_id, facet, owner_id, len(vector), serialize_embedding(vector), utcnow()),
        )

    async def get_vector(self, memory_id: str, facet: str = "content") -> list[float] | None:
        """Return the stored vector, or ``None`` when the memory has none."""
        rows = await self._storage.execute(
            "SELECT vector FROM embeddings WHERE memory_id = ? AND facet = ?",
            (memory_id, facet),
        )
        return deserialize_embedding(rows[0]["vector"]) if rows else None

    async def get_vectors(
        self,
        memory_ids: Iterable[str],
        facet: str = "content",
    ) -> dict[str, list[float]]:
        """Batch variant of :meth:`get_vector`; ids without a vector are absent."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = await self._storage.execute(
            f"SELECT memory_id, vector FROM embeddings "
            f"WHERE facet = ? AND memory_id IN ({placeholders})",
            (facet, *ids),
        )
        return {row["memory_id"]: deserialize_embedding(row["vector"]) for row in rows}

    async def search(
        self,
        vector: list[float],
        owner_id: str,
        facet: str = "content",
        k: int = 10,
        exclude_id: str | None = None,
    ) -> list[IndexHit]:
        """Rank the owner's embeddings by cosine similarity to *vector*.

        Only vectors with the same dimensionality as *vector* are compared.

        Returns
        -------
        list[IndexHit]
            At most *k* hits, best first.
        """
        _validate_facet(facet)
        if not vector or k <= 0:
            return []

        if self._storage.vec_available:
            rows = await self._storage.execute(
                """
                SELECT memory_id, vector,
                       vec_distance_cosine(vector, ?) AS distance
                FROM embeddings
                WHERE owner_id = ? AND facet = ? AND dims = ? AND memory_id != ?
                ORDER BY distance ASC, memory_id ASC
                LIMIT ?
                """,
                (
                    serialize_embedding(vector),
                    owner_id,
                    facet,
                    len(vector),
                    exclude_id or "",
                    k,
                ),
            )
            return [
                IndexHit(
                    memory_id=row["memory_id"],
                    score=min(1.0, max(0.0, 1.0 - float(row["distance"]))),
                    vector=deserialize_embedding(row["vector"]),
                )
                for row in rows
            ]

        rows = await self._storage.execute(
            """
            SELECT memory_id, vector FROM embeddings
            WHERE owner_id = ? AND facet = ? AND dims = ? AND memory_id != ?
            """,
            (owner_id, facet, len(vector), exclude_id or ""),
        )
        if not rows:
            return []
        ids = [row["memory_id"] for row in rows]
        vectors = [deserialize_embedding(row["vector"]) for row in rows]
        scores = cosine_scores(
            np.asarray(vector, dtype=np.float32),
            np.asarray(vectors, dtype=np.float32),
        )
        ranked = sorted(zip(ids, scores.tolist(), vectors), key=lambda t: (-t[1], t[0]))
        return [
            IndexHit(memory_id=mid, score=min(1.0, max(0.0, score)), vector=vec)
            for mid, score, vec in ranked[:k]
        ]
