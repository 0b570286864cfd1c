"""Mesh edge pruning: mutual k-nearest neighbours with a degree cap.

The visualised mesh must stay sparse.  :class:`GraphPostProcessor` keeps an
undirected edge only when each endpoint ranks the other among its top
``mesh.mutual_k`` neighbours by weighted score, then walks the survivors
strongest first and skips edges whose endpoint already reached the degree
cap.  :meth:`GraphPostProcessor.backfill` later reconnects nodes left below
``mesh.min_degree`` without ever exceeding the same cap.

Everything here is pure and synchronous; ordering is fully deterministic.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

from memorymesh.config import get_config
from memorymesh.relations import SPECIFICITY

logger = logging.getLogger(__name__)


def canonical_key(a: str, b: str) -> tuple[str, str]:
    """Undirected key for the pair ``{a, b}``."""
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class MeshEdge:
    """An undirected, scored edge between two mesh nodes."""

    source: str
    target: str
    score: float
    relation_type: str = "semantic"

    @property
    def key(self) -> tuple[str, str]:
        return canonical_key(self.source, self.target)

    def other(self, node_id: str) -> str:
        return self.target if node_id == self.source else self.source

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "score": round(self.score, 4),
            "relation_type": self.relation_type,
        }


def dedupe_edges(edges: Iterable[MeshEdge]) -> list[MeshEdge]:
    """Collapse both directions of a pair into one canonical edge.

    The higher score wins; equal scores go to the more specific type.
    Self-loops are dropped.
    """
    best: dict[tuple[str, str], MeshEdge] = {}
    for edge in edges:
        if edge.source == edge.target:
            continue
        key = edge.key
        current = best.get(key)
        if (
            current is None
            or edge.score > current.score
            or (
                edge.score == current.score
                and SPECIFICITY.get(edge.relation_type, 0)
                > SPECIFICITY.get(current.relation_type, 0)
            )
        ):
            best[key] = MeshEdge(key[0], key[1], edge.score, edge.relation_type)
    return sorted(best.values(), key=lambda e: (-e.score, e.source, e.target))


def degree_cap(k: int, lower: int | None = None, upper: int | None = None) -> int:
    """Per-node degree cap: ``k + 1`` clamped into ``[lower, upper]``."""
    cfg = get_config().mesh
    lower = cfg.min_degree_cap if lower is None else lower
    upper = cfg.max_degree_cap if upper is None else upper
    return max(lower, min(upper, k + 1))


def degrees(edges: Iterable[MeshEdge]) -> Counter[str]:
    counts: Counter[str] = Counter()
    for edge in edges:
        counts[edge.source] += 1
        counts[edge.target] += 1
    return counts


class GraphPostProcessor:
    """Mutual k-NN pruning, degree capping and minimum-degree backfill.

    Parameters
    ----------
    k:
        Neighbours ranked per node.  Defaults to ``mesh.mutual_k``.
    """

    def __init__(self, k: int | None = None) -> None:
        self._cfg = get_config().mesh
        self.k = k if k is not None else self._cfg.mutual_k
        self.cap = degree_cap(self.k)
        self._bonus = {
            "semantic": self._cfg.semantic_bonus,
            "topical": self._cfg.topical_bonus,
            "temporal": self._cfg.temporal_bonus,
        }

    def weighted_score(self, edge: MeshEdge) -> float:
        return edge.score + self._bonus.get(edge.relation_type, 0.0)

    def top_k(self, edges: Iterable[MeshEdge]) -> dict[str, set[str]]:
        """Each node's ``k`` best neighbours by weighted score (ties by id)."""
        ranked: dict[str, list[tuple[float, str]]] = defaultdict(list)
        for edge in edges:
            weight = self.weighted_score(edge)
            ranked[edge.source].append((weight, edge.target))
            ranked[edge.target].append((weight, edge.source))
        return {
            node: {other for _, other in sorted(items, key=lambda t: (-t[0], t[1]))[: self.k]}
            for node, items in ranked.items()
        }

    def prune(self, edges: Iterable[MeshEdge], threshold: float | None = None) -> list[MeshEdge]:
        """Keep mutual top-k edges above *threshold*, subject to the cap.

        Returns
        -------
        list[MeshEdge]
            Surviving edges, strongest (weighted) first.
        """
        threshold = self._cfg.similarity_threshold if threshold is None else threshold
        candidates = [e for e in dedupe_edges(edges) if self.weighted_score(e) >= threshold]
        top = self.top_k(candidates)

        mutual = [
            e
            for e in candidates
            if e.target in top.get(e.source, ()) and e.source in top.get(e.target, ())
        ]
        mutual.sort(key=lambda e: (-self.weighted_score(e), e.source, e.target))

        degree: Counter[str] = Counter()
        kept: list[MeshEdge] = []
        for edge in mutual:
            if degree[edge.source] >= self.cap or degree[edge.target] >= self.cap:
                continue
            kept.append(edge)
            degree[edge.source] += 1
            degree[edge.target] += 1

        logger.debug(
            "Pruned %d candidate edges to %d (mutual=%d, cap=%d)",
            len(candidates),
            len(kept),
            len(mutual),
            self.cap,
        )
        return kept

    def backfill(
        self,
        kept: list[MeshEdge],
        pool: Iterable[MeshEdge],
        node_ids: Iterable[str],
        min_degree: int | None = None,
    ) -> list[MeshEdge]:
        """Reconnect nodes below *min_degree* from *pool*.

        Each under-connected node (in id order) takes its strongest pool
        edges not already kept, skipping any whose other endpoint is at the
        cap.  Added edges are appended after *kept*.
        """
        min_degree = self._cfg.min_degree if min_degree is None else min_degree
        present = {e.key for e in kept}
        degree = degrees(kept)
        ranked = sorted(
            dedupe_edges(pool),
            key=lambda e: (-self.weighted_score(e), e.source, e.target),
        )
        by_node: dict[str, list[MeshEdge]] = defaultdict(list)
        for edge in ranked:
            by_node[edge.source].append(edge)
            by_node[edge.target].append(edge)

        added: list[MeshEdge] = []
        for node in sorted(set(node_ids)):
            for edge in by_node.get(node, ()):
                if degree[node] >= min(min_degree, self.cap):
                    break
                if edge.key in present:
                    continue
                other = edge.other(node)
                if degree[other] >= self.cap:
                    continue
                added.append(edge)
                present.add(edge.key)
                degree[node] += 1
                degree[other] += 1

        if added:
            logger.debug("Backfilled %d edges for under-connected nodes", len(added))
        return kept + added
