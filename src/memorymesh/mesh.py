"""Mesh assembly: nodes, edges and clusters for one owner.

:meth:`MeshAssembler.assemble` builds the response of ``get_mesh``:

1. Load the owner's most recent memories (bounded by ``limit``).
2. Take the stored relations among them, or, when there are none,
   recompute proximity edges from the projected embedding coordinates with
   small contextual boosts.
3. Deduplicate both directions of every pair, prune with
   :class:`~memorymesh.graph.GraphPostProcessor`, then backfill nodes left
   below the minimum degree.  Proximity edges also feed the backfill when
   stored relations are used, so memories not yet processed still connect.
4. Lay the nodes out and detect density clusters.

The result is a plain dict, ready for JSON.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from memorymesh.clustering import ClusterDetector
from memorymesh.config import get_config
from memorymesh.graph import GraphPostProcessor, MeshEdge, dedupe_edges, degrees
from memorymesh.index import SimilarityIndex
from memorymesh.layout import Point, SpatialLayoutEngine
from memorymesh.memories import Memory, MemoryStore
from memorymesh.relations import RelationStore
from memorymesh.storage import format_timestamp

logger = logging.getLogger(__name__)


@dataclass
class MeshNode:
    """One memory placed in the mesh."""

    id: str
    label: str
    source_type: str
    position: Point
    has_embedding: bool
    cluster_id: str | None = None
    url: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        x, y, z = self.position
        return {
            "id": self.id,
            "label": self.label,
            "source_type": self.source_type,
            "position": {"x": round(x, 3), "y": round(y, 3), "z": round(z, 3)},
            "has_embedding": self.has_embedding,
            "cluster_id": self.cluster_id,
            "url": self.url,
            "created_at": self.created_at,
        }


class MeshAssembler:
    """Orchestrates pruning, layout and clustering per request.

    Parameters
    ----------
    memories, index, relations:
        Data sources for nodes, vectors and stored edges.
    """

    def __init__(
        self,
        memories: MemoryStore,
        index: SimilarityIndex,
        relations: RelationStore,
        post: GraphPostProcessor | None = None,
        layout: SpatialLayoutEngine | None = None,
        clusters: ClusterDetector | None = None,
    ) -> None:
        self._memories = memories
        self._index = index
        self._relations = relations
        self._post = post or GraphPostProcessor()
        self._layout = layout or SpatialLayoutEngine()
        self._clusters = clusters or ClusterDetector()
        self._cfg = get_config().mesh

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._cfg.default_limit
        return max(1, min(self._cfg.max_nodes, int(limit)))

    async def assemble(
        self,
        owner_id: str,
        limit: int | None = None,
        similarity_threshold: float | None = None,
    ) -> dict[str, Any]:
        """Build ``{nodes, edges, clusters, metadata}`` for *owner_id*."""
        limit = self.clamp_limit(limit)
        threshold = (
            self._cfg.similarity_threshold if similarity_threshold is None else similarity_threshold
        )

        memories = await self._memories.list_for_owner(owner_id, limit)
        ids = sorted(m.id for m in memories)
        by_id = {m.id: m for m in memories}
        vectors = await self._index.get_vectors(ids, "content")

        embedded = {i: vectors[i] for i in ids if vectors.get(i)}
        proximity: list[MeshEdge] = []
        if len(embedded) >= get_config().layout.min_embedded:
            proximity = self.proximity_edges(self._layout.project(embedded), by_id)

        stored = await self._relations.among(ids)
        if stored:
            edge_source = "relations"
            pool = dedupe_edges(
                MeshEdge(r.source_id, r.target_id, r.score, r.relation_type) for r in stored
            )
            # Unprocessed memories have no stored relations yet; projected
            # neighbours can still reconnect them.
            stored_keys = {e.key for e in pool}
            extra = [e for e in proximity if e.key not in stored_keys]
        elif proximity:
            edge_source = "proximity"
            pool = dedupe_edges(proximity)
            extra = []
        else:
            edge_source = "none"
            pool = []
            extra = []

        kept = self._post.prune(pool, threshold)
        edges = self._post.backfill(kept, pool + extra, ids)

        placed = self._layout.layout(ids, vectors, edges)
        clusters = self._clusters.detect(placed.positions)
        cluster_of = {node_id: c.id for c in clusters for node_id in c.node_ids}

        nodes = [
            MeshNode(
                id=node_id,
                label=by_id[node_id].label,
                source_type=by_id[node_id].source or "unknown",
                position=placed.positions[node_id],
                has_embedding=node_id in placed.embedded,
                cluster_id=cluster_of.get(node_id),
                url=by_id[node_id].url,
                created_at=format_timestamp(by_id[node_id].created_at),
            )
            for node_id in ids
        ]

        logger.info(
            "Mesh for %s: %d nodes, %d edges (%s), %d clusters, layout=%s",
            owner_id,
            len(nodes),
            len(edges),
            edge_source,
            len(clusters),
            placed.method,
        )
        return {
            "nodes": [n.to_dict() for n in nodes],
            "edges": [e.to_dict() for e in edges],
            "clusters": [c.to_dict() for c in clusters],
            "metadata": {
                "total_nodes": len(nodes),
                "total_edges": len(edges),
                "average_degree": round(2 * len(edges) / len(nodes), 3) if nodes else 0.0,
                "max_degree": max(degrees(edges).values(), default=0),
                "layout_method": placed.method,
                "edge_source": edge_source,
                "similarity_threshold": threshold,
                "embedded_nodes": len(placed.embedded),
                "cluster_count": len(clusters),
            },
        }

    def proximity_edges(
        self,
        positions: dict[str, Point],
        memories: dict[str, Memory],
    ) -> list[MeshEdge]:
        """Score each node's nearest projected neighbours.

        The base score is ``(1 - d / d_max) ** 2`` so that close pairs score
        disproportionately higher, plus the contextual boosts.
        """
        ids = sorted(positions)
        if len(ids) < 2:
            return []
        coords = np.asarray([positions[i] for i in ids], dtype=np.float64)
        dist = np.linalg.norm(coords[:, None, :] - coords[None, :, :], axis=2)
        max_dist = float(dist.max())
        if max_dist <= 0:
            return []

        edges: list[MeshEdge] = []
        for n, node_id in enumerate(ids):
            order = sorted((float(dist[n, m]), ids[m]) for m in range(len(ids)) if m != n)
            for d, other_id in order[: self._cfg.proximity_neighbors]:
                base = (1.0 - d / max_dist) ** 2
                score = base + self._context_boost(memories.get(node_id), memories.get(other_id))
                edges.append(MeshEdge(node_id, other_id, max(0.0, min(1.0, score)), "semantic"))
        return edges

    def _context_boost(self, a: Memory | None, b: Memory | None) -> float:
        if a is None or b is None:
            return 0.0
        boost = 0.0
        if a.source and a.source == b.source:
            boost += self._cfg.same_source_boost
        if a.host and a.host == b.host:
            boost += self._cfg.same_domain_boost
        hours = abs((a.created_at - b.created_at).total_seconds()) / 3600
        if hours <= self._cfg.close_in_time_hours:
            boost += self._cfg.close_in_time_boost
        return boost
