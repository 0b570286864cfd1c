"""Density-based clustering (DBSCAN) over laid-out node coordinates."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np

from memorymesh.config import get_config

logger = logging.getLogger(__name__)


@dataclass
class Cluster:
    """A dense group of mesh nodes."""

    id: str
    node_ids: list[str]
    centroid: tuple[float, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "node_ids": list(self.node_ids),
            "size": len(self.node_ids),
            "centroid": {"x": round(self.centroid[0], 3), "y": round(self.centroid[1], 3)},
        }


class ClusterDetector:
    """DBSCAN on the x/y plane.

    A node is a core point when at least ``min_points`` other nodes lie
    within ``epsilon`` of it.  Clusters grow from core points through their
    neighbours; nodes reached by no core point stay unclustered.
    """

    def __init__(self, epsilon: float | None = None, min_points: int | None = None) -> None:
        cfg = get_config().clustering
        self.epsilon = cfg.epsilon if epsilon is None else epsilon
        self.min_points = cfg.min_points if min_points is None else min_points

    def detect(self, positions: Mapping[str, Sequence[float]]) -> list[Cluster]:
        ids = sorted(positions)
        if not ids:
            return []
        points = np.asarray([positions[i][:2] for i in ids], dtype=np.float64)
        dist = np.linalg.norm(points[:, None, :] - points[None, :, :], axis=2)
        within = dist <= self.epsilon
        np.fill_diagonal(within, False)
        neighbours = [np.flatnonzero(row).tolist() for row in within]

        labels: dict[int, int] = {}
        visited: set[int] = set()
        members: list[list[int]] = []

        for seed in range(len(ids)):
            if seed in visited:
                continue
            visited.add(seed)
            if len(neighbours[seed]) < self.min_points:
                continue

            label = len(members)
            group = [seed]
            labels[seed] = label
            queue = deque(neighbours[seed])
            while queue:
                node = queue.popleft()
                if node not in labels:
                    labels[node] = label
                    group.append(node)
                if node in visited:
                    continue
                visited.add(node)
                if len(neighbours[node]) >= self.min_points:
                    queue.extend(neighbours[node])
            members.append(group)

        clusters: list[Cluster] = []
        for label, group in enumerate(members):
            group.sort()
            centre = points[group].mean(axis=0)
            clusters.append(
                Cluster(
                    id=f"cluster-{label}",
                    node_ids=[ids[n] for n in group],
                    centroid=(float(centre[0]), float(centre[1])),
                )
            )
        logger.debug("Detected %d clusters over %d nodes", len(clusters), len(ids))
        return clusters
