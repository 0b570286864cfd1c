"""Spatial layout of mesh nodes.

Three strategies, chosen by how many nodes carry an embedding:

* **projection** -- principal component projection of the embeddings
  (numpy SVD), seeded by a hash of the sorted id set so the same memories
  always land on the same coordinates.
* **grid** -- a ``ceil(sqrt(n))`` square grid with per-node jitter derived
  from a hash of the node id.
* **force** -- a damped spring simulation for meshes with no embeddings at
  all, started from the grid positions and clamped to a rectangle.

All coordinates lie within ``[-layout.extent, layout.extent]``.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import numpy as np

from memorymesh.config import get_config
from memorymesh.graph import MeshEdge

logger = logging.getLogger(__name__)

Point = tuple[float, float, float]

PROJECTION = "embedding-projection"
GRID = "grid-jitter"
FORCE = "force-directed"


def id_set_seed(node_ids: Iterable[str]) -> int:
    """64-bit seed derived from the sorted id set."""
    digest = hashlib.sha256("|".join(sorted(node_ids)).encode()).hexdigest()
    return int(digest[:16], 16)


def _hash_unit(node_id: str, salt: str) -> float:
    """Deterministic value in ``[-0.5, 0.5)`` for *node_id*."""
    digest = hashlib.sha256(f"{salt}:{node_id}".encode()).digest()
    return int.from_bytes(digest[:8], "big") / 2**64 - 0.5


@dataclass
class LayoutResult:
    """Node coordinates and how they were produced."""

    positions: dict[str, Point]
    method: str
    embedded: set[str] = field(default_factory=set)
    """Ids placed by the embedding projection."""


class SpatialLayoutEngine:
    """Place mesh nodes in 2D or 3D space."""

    def __init__(self) -> None:
        self._cfg = get_config().layout

    def layout(
        self,
        node_ids: Sequence[str],
        vectors: Mapping[str, Sequence[float]],
        edges: Sequence[MeshEdge] = (),
    ) -> LayoutResult:
        """Choose a strategy and place every node in *node_ids*."""
        ids = sorted(set(node_ids))
        if not ids:
            return LayoutResult({}, GRID)

        embedded = {i: vectors[i] for i in ids if vectors.get(i)}
        if len(embedded) >= self._cfg.min_embedded:
            projected = self.project(embedded)
            rest = [i for i in ids if i not in projected]
            positions = dict(projected)
            positions.update(self.grid(rest))
            return LayoutResult(positions, PROJECTION, set(projected))

        if embedded:
            return LayoutResult(self.grid(ids), GRID)

        return LayoutResult(self.force_directed(ids, edges), FORCE)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def project(self, vectors: Mapping[str, Sequence[float]]) -> dict[str, Point]:
        """Project embeddings onto their principal components.

        Only vectors sharing the most common dimensionality are projected;
        the others are left out of the result.
        """
        if not vectors:
            return {}
        width, _ = Counter(len(v) for v in vectors.values()).most_common(1)[0]
        ids = sorted(i for i, v in vectors.items() if len(v) == width)
        dims = self._cfg.dimensions

        matrix = np.asarray([vectors[i] for i in ids], dtype=np.float64)
        centered = matrix - matrix.mean(axis=0)
        _, _, vt = np.linalg.svd(centered, full_matrices=False)
        components = vt[:dims].copy()
        for row in components:
            if row[np.argmax(np.abs(row))] < 0:
                row *= -1
        coords = centered @ components.T
        if coords.shape[1] < dims:
            coords = np.pad(coords, ((0, 0), (0, dims - coords.shape[1])))

        rng = np.random.default_rng(id_set_seed(ids))
        coords = coords + rng.normal(scale=1e-9, size=coords.shape)
        coords = self._normalise(coords)
        return {i: self._point(coords[n]) for n, i in enumerate(ids)}

    def _normalise(self, coords: np.ndarray) -> np.ndarray:
        extent = self._cfg.extent
        low = coords.min(axis=0)
        span = coords.max(axis=0) - low
        scaled = np.zeros_like(coords)
        nonflat = span > 1e-12
        scaled[:, nonflat] = (coords[:, nonflat] - low[nonflat]) / span[nonflat] * 2 * extent - extent
        return scaled

    def _point(self, row: Sequence[float]) -> Point:
        x = float(row[0])
        y = float(row[1]) if len(row) > 1 else 0.0
        z = float(row[2]) if self._cfg.dimensions > 2 and len(row) > 2 else 0.0
        return (x, y, z)

    # ------------------------------------------------------------------
    # Grid
    # ------------------------------------------------------------------

    def grid(self, node_ids: Sequence[str]) -> dict[str, Point]:
        """Square grid over the bounding box with hash-derived jitter."""
        ids = list(node_ids)
        if not ids:
            return {}
        extent = self._cfg.extent
        size = math.ceil(math.sqrt(len(ids)))
        cell = 2 * extent / size
        jitter = cell * self._cfg.jitter_fraction

        positions: dict[str, Point] = {}
        for index, node_id in enumerate(ids):
            row, col = divmod(index, size)
            x = -extent + cell * (col + 0.5) + jitter * _hash_unit(node_id, "x")
            y = -extent + cell * (row + 0.5) + jitter * _hash_unit(node_id, "y")
            z = jitter * _hash_unit(node_id, "z") if self._cfg.dimensions > 2 else 0.0
            positions[node_id] = (x, y, z)
        return positions

    # ------------------------------------------------------------------
    # Force-directed
    # ------------------------------------------------------------------

    def force_directed(
        self,
        node_ids: Sequence[str],
        edges: Sequence[MeshEdge] = (),
    ) -> dict[str, Point]:
        """Damped spring simulation starting from the grid layout."""
        cfg = self._cfg
        ids = list(node_ids)
        if len(ids) < 2:
            return self.grid(ids)

        start = self.grid(ids)
        pos = np.asarray([start[i][:2] for i in ids], dtype=np.float64)
        index = {node_id: n for n, node_id in enumerate(ids)}
        pairs = np.asarray(
            [(index[e.source], index[e.target]) for e in edges if e.source in index and e.target in index],
            dtype=np.intp,
        ).reshape(-1, 2)

        half_width = cfg.extent
        half_height = cfg.extent * cfg.aspect
        iterations = max(1, cfg.force_iterations)

        for step in range(iterations):
            damping = cfg.initial_damping - (cfg.initial_damping - cfg.final_damping) * (
                step / max(1, iterations - 1)
            )

            delta = pos[:, None, :] - pos[None, :, :]
            dist = np.linalg.norm(delta, axis=2)
            np.fill_diagonal(dist, np.inf)
            dist = np.maximum(dist, 0.01)
            magnitude = np.minimum(cfg.repulsion / dist, cfg.max_force)
            force = (delta / dist[:, :, None] * magnitude[:, :, None]).sum(axis=1)

            if len(pairs):
                src, dst = pairs[:, 0], pairs[:, 1]
                spring = pos[dst] - pos[src]
                length = np.maximum(np.linalg.norm(spring, axis=1), 0.01)
                pull = np.minimum(cfg.attraction * length**2, cfg.max_force)
                vec = spring / length[:, None] * pull[:, None]
                np.add.at(force, src, vec)
                np.add.at(force, dst, -vec)

            pos += force * damping
            pos[:, 0] = np.clip(pos[:, 0], -half_width, half_width)
            pos[:, 1] = np.clip(pos[:, 1], -half_height, half_height)

        return {node_id: (float(pos[n, 0]), float(pos[n, 1]), 0.0) for n, node_id in enumerate(ids)}
