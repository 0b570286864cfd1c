"""Tests for memorymesh.clustering."""

from __future__ import annotations

from memorymesh.clustering import ClusterDetector


def _group(prefix: str, cx: float, cy: float, n: int = 4) -> dict[str, tuple[float, float, float]]:
    return {f"{prefix}{i}": (cx + i, cy - i, 0.0) for i in range(n)}


class TestClusterDetector:
    def test_two_dense_groups_and_noise(self) -> None:
        positions = {**_group("a", -60, -60), **_group("b", 60, 40), "lonely": (0.0, 90.0, 0.0)}
        clusters = ClusterDetector(epsilon=10, min_points=3).detect(positions)

        assert [c.id for c in clusters] == ["cluster-0", "cluster-1"]
        assert clusters[0].node_ids == ["a0", "a1", "a2", "a3"]
        assert clusters[1].node_ids == ["b0", "b1", "b2", "b3"]
        assert all("lonely" not in c.node_ids for c in clusters)

    def test_centroid(self) -> None:
        clusters = ClusterDetector(epsilon=10, min_points=3).detect(_group("a", 0, 0))
        assert clusters[0].centroid == (1.5, -1.5)

    def test_border_point_joins_cluster(self) -> None:
        positions = {**_group("a", 0, 0), "edge": (12.0, -3.0, 0.0)}
        clusters = ClusterDetector(epsilon=10, min_points=3).detect(positions)
        assert "edge" in clusters[0].node_ids

    def test_too_sparse(self) -> None:
        positions = {"a": (0.0, 0.0, 0.0), "b": (50.0, 0.0, 0.0), "c": (0.0, 50.0, 0.0)}
        assert ClusterDetector().detect(positions) == []

    def test_empty(self) -> None:
        assert ClusterDetector().detect({}) == []

    def test_to_dict(self) -> None:
        cluster = ClusterDetector(epsilon=10, min_points=3).detect(_group("a", 0, 0))[0]
        data = cluster.to_dict()
        assert data["size"] == 4
        assert data["centroid"] == {"x": 1.5, "y": -1.5}
