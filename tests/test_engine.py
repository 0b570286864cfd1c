"""Integration tests for MeshEngine against a real temporary database."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from memorymesh.engine import MeshEngine
from memorymesh.errors import MemoryNotFoundError
from memorymesh.layout import FORCE, PROJECTION

from tests.conftest import BASE_TIME, count_relations, insert_embedding, insert_memory, insert_relation


async def _seed_pair(engine: MeshEngine) -> None:
    """Two memories related by embedding, metadata and capture time."""
    await insert_memory(engine.storage, "a", topics=["x", "y", "z"])
    await insert_memory(
        engine.storage, "b", topics=["x", "y"], created_at=BASE_TIME + timedelta(hours=1)
    )
    await insert_embedding(engine.storage, "a", [1.0, 0.0, 0.0])
    await insert_embedding(engine.storage, "b", [0.8, 0.6, 0.0])


async def _seed_ring(engine: MeshEngine, n: int = 4) -> list[str]:
    ids = [f"r{i}" for i in range(n)]
    for i, memory_id in enumerate(ids):
        await insert_memory(engine.storage, memory_id, created_at=BASE_TIME + timedelta(days=i))
    for i, memory_id in enumerate(ids):
        await insert_relation(engine.storage, memory_id, ids[(i + 1) % n], score=0.9 - i * 0.1)
    return ids


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_requires_initialize(self, tmp_path: Path) -> None:
        engine = MeshEngine(db_path=tmp_path / "x.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await engine.get_mesh("alice")

    async def test_initialize_idempotent(self, engine: MeshEngine) -> None:
        storage = engine.storage
        await engine.initialize()
        assert engine.storage is storage


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class TestProcessMemory:
    async def test_close_signals_stored_as_semantic(self, engine: MeshEngine) -> None:
        await _seed_pair(engine)

        result = await engine.process_memory("a", "alice")

        assert result["created"] == 1
        relation = await engine.relations.find_by_key("a", "b")
        assert relation is not None
        assert relation.relation_type == "semantic"
        assert relation.score == pytest.approx(0.8, abs=1e-4)

    async def test_reprocessing_creates_no_duplicates(self, engine: MeshEngine) -> None:
        await _seed_pair(engine)

        await engine.process_memory("a", "alice")
        second = await engine.process_memory("a", "alice")

        assert second["created"] == 0
        assert second["unchanged"] == 1
        assert await count_relations(engine.storage, source_id="a") == 1

    async def test_both_directions_stored(self, engine: MeshEngine) -> None:
        await _seed_pair(engine)
        await engine.process_memory("a", "alice")
        await engine.process_memory("b", "alice")
        assert await count_relations(engine.storage) == 2

    async def test_isolated_memory_has_no_relations(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "solo")
        result = await engine.process_memory("solo", "alice")
        assert result["candidates"] == 0
        assert result["accepted"] == []

    async def test_missing_memory(self, engine: MeshEngine) -> None:
        with pytest.raises(MemoryNotFoundError):
            await engine.process_memory("nope", "alice")

    async def test_other_owner_is_not_found(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "a", owner_id="bob")
        with pytest.raises(MemoryNotFoundError):
            await engine.process_memory("a", "alice")

    async def test_batch_reports_failures_separately(self, engine: MeshEngine) -> None:
        await _seed_pair(engine)

        result = await engine.process_memories(["a", "missing", "b", "a"], "alice")

        assert result["processed"] == 2
        assert result["failed"] == 1
        assert set(result["errors"]) == {"missing"}
        assert await count_relations(engine.storage) == 2


# ---------------------------------------------------------------------------
# Mesh
# ---------------------------------------------------------------------------


class TestGetMesh:
    async def test_empty_owner(self, engine: MeshEngine) -> None:
        mesh = await engine.get_mesh("nobody")
        assert mesh["nodes"] == []
        assert mesh["edges"] == []
        assert mesh["metadata"]["total_nodes"] == 0
        assert mesh["metadata"]["edge_source"] == "none"

    async def test_from_stored_relations(self, engine: MeshEngine) -> None:
        await _seed_ring(engine)

        mesh = await engine.get_mesh("alice")

        meta = mesh["metadata"]
        assert meta["edge_source"] == "relations"
        assert meta["total_nodes"] == 4
        assert meta["total_edges"] == 4
        assert meta["max_degree"] == 2
        assert meta["layout_method"] == FORCE
        assert {n["id"] for n in mesh["nodes"]} == {"r0", "r1", "r2", "r3"}

    async def test_deterministic(self, engine: MeshEngine) -> None:
        await _seed_ring(engine, n=6)
        assert await engine.get_mesh("alice") == await engine.get_mesh("alice")

    async def test_proximity_edges_without_relations(self, engine: MeshEngine) -> None:
        vectors = {
            "p0": [1.0, 0.0, 0.0],
            "p1": [0.9, 0.1, 0.0],
            "p2": [0.0, 1.0, 0.0],
            "p3": [0.0, 0.9, 0.2],
        }
        for memory_id, vector in vectors.items():
            await insert_memory(engine.storage, memory_id)
            await insert_embedding(engine.storage, memory_id, vector)

        mesh = await engine.get_mesh("alice", similarity_threshold=0.0)

        assert mesh["metadata"]["edge_source"] == "proximity"
        assert mesh["metadata"]["layout_method"] == PROJECTION
        assert mesh["metadata"]["embedded_nodes"] == 4
        assert mesh["edges"]
        assert all(n["has_embedding"] for n in mesh["nodes"])

    async def test_unrelated_embedded_memories_backfilled(self, engine: MeshEngine) -> None:
        vectors = {
            "a": [1.0, 0.0, 0.0],
            "b": [0.9, 0.1, 0.0],
            "c": [0.0, 1.0, 0.0],
            "d": [0.0, 0.9, 0.2],
        }
        for memory_id, vector in vectors.items():
            await insert_memory(engine.storage, memory_id)
            await insert_embedding(engine.storage, memory_id, vector)
        await insert_relation(engine.storage, "a", "b", relation_type="topical", score=0.8)

        mesh = await engine.get_mesh("alice")

        assert mesh["metadata"]["edge_source"] == "relations"
        degree = {node_id: 0 for node_id in vectors}
        for edge in mesh["edges"]:
            degree[edge["source"]] += 1
            degree[edge["target"]] += 1
        assert min(degree.values()) >= 1
        assert max(degree.values()) <= 4
        stored = [e for e in mesh["edges"] if {e["source"], e["target"]} == {"a", "b"}]
        assert stored == [{"source": "a", "target": "b", "score": 0.8, "relation_type": "topical"}]

    async def test_limit_clamped(self, engine: MeshEngine) -> None:
        for i in range(5):
            await insert_memory(engine.storage, f"m{i}", created_at=BASE_TIME + timedelta(hours=i))

        assert len((await engine.get_mesh("alice", limit=0))["nodes"]) == 1
        assert len((await engine.get_mesh("alice", limit=3))["nodes"]) == 3
        assert len((await engine.get_mesh("alice", limit=10_000))["nodes"]) == 5

    async def test_most_recent_memories_chosen(self, engine: MeshEngine) -> None:
        for i in range(5):
            await insert_memory(engine.storage, f"m{i}", created_at=BASE_TIME + timedelta(hours=i))
        mesh = await engine.get_mesh("alice", limit=2)
        assert {n["id"] for n in mesh["nodes"]} == {"m3", "m4"}

    async def test_node_shape(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "m", url="https://example.com/x", title="Example")
        node = (await engine.get_mesh("alice"))["nodes"][0]
        assert node["label"] == "Example"
        assert node["source_type"] == "extension"
        assert set(node["position"]) == {"x", "y", "z"}


# ---------------------------------------------------------------------------
# Cluster traversal
# ---------------------------------------------------------------------------


class TestGetCluster:
    async def test_cycle_terminates(self, engine: MeshEngine) -> None:
        await _seed_ring(engine, n=3)

        cluster = await engine.get_cluster("alice", "r0", depth=5)

        assert [(m["id"], m["depth"]) for m in cluster["memories"]] == [
            ("r0", 0),
            ("r1", 1),
            ("r2", 2),
        ]
        assert cluster["cluster_size"] == 3

    async def test_depth_limit(self, engine: MeshEngine) -> None:
        await _seed_ring(engine, n=4)
        cluster = await engine.get_cluster("alice", "r0", depth=1)
        assert [m["id"] for m in cluster["memories"]] == ["r0", "r1"]
        assert cluster["max_depth"] == 1

    async def test_depth_zero_is_center_only(self, engine: MeshEngine) -> None:
        await _seed_ring(engine)
        cluster = await engine.get_cluster("alice", "r0", depth=0)
        assert [m["id"] for m in cluster["memories"]] == ["r0"]
        assert cluster["memories"][0]["relation_count"] == 1

    async def test_weak_relations_not_followed(self, engine: MeshEngine) -> None:
        for memory_id in ("a", "b", "c"):
            await insert_memory(engine.storage, memory_id)
        await insert_relation(engine.storage, "a", "b", score=0.3)
        await insert_relation(engine.storage, "a", "c", score=0.31)

        cluster = await engine.get_cluster("alice", "a")

        assert [m["id"] for m in cluster["memories"]] == ["a", "c"]
        assert cluster["memories"][0]["relation_count"] == 2

    async def test_fanout_limited(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "hub")
        for i in range(7):
            await insert_memory(engine.storage, f"s{i}")
            await insert_relation(engine.storage, "hub", f"s{i}", score=0.9 - i * 0.05)

        cluster = await engine.get_cluster("alice", "hub", depth=1)

        assert cluster["cluster_size"] == 6
        assert "s6" not in {m["id"] for m in cluster["memories"]}

    async def test_missing_center(self, engine: MeshEngine) -> None:
        with pytest.raises(MemoryNotFoundError):
            await engine.get_cluster("alice", "ghost")


# ---------------------------------------------------------------------------
# Other reads
# ---------------------------------------------------------------------------


class TestReads:
    async def test_memory_with_relations(self, engine: MeshEngine) -> None:
        await _seed_ring(engine, n=3)
        await insert_embedding(engine.storage, "r1", [0.1, 0.2])

        detail = await engine.get_memory_with_relations("r1", "alice")

        assert detail["id"] == "r1"
        assert [r["target_id"] for r in detail["outgoing"]] == ["r2"]
        assert [r["source_id"] for r in detail["incoming"]] == ["r0"]
        assert detail["outgoing"][0]["memory"]["id"] == "r2"
        assert detail["relation_stats"] == {
            "outgoing_relations": 1,
            "incoming_relations": 1,
            "total_relations": 2,
            "has_embeddings": True,
        }

    async def test_find_related(self, engine: MeshEngine) -> None:
        await _seed_pair(engine)
        await insert_memory(engine.storage, "c")
        await insert_embedding(engine.storage, "c", [0.0, 0.0, 1.0])

        related = await engine.find_related_memories("a", "alice")

        assert [m["id"] for m in related] == ["b"]
        assert related[0]["similarity"] == pytest.approx(0.8, abs=1e-4)

    async def test_find_related_without_embedding(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "plain")
        assert await engine.find_related_memories("plain", "alice") == []

    async def test_relation_stats(self, engine: MeshEngine) -> None:
        await _seed_ring(engine, n=3)
        global_stats = await engine.relation_stats()
        owner_stats = await engine.relation_stats("alice")
        assert global_stats["total"] == 3
        assert global_stats["tables"]["memories"] == 3
        assert "tables" not in owner_stats

    async def test_health(self, engine: MeshEngine) -> None:
        status = await engine.health()
        assert status["arbitration_available"] is True
        assert status["cache_backend"] == "memory"
        assert status["db_path"].endswith("engine.db")


class TestMaintenance:
    async def test_run_and_history(self, engine: MeshEngine) -> None:
        await insert_memory(engine.storage, "a")
        await insert_memory(engine.storage, "b")
        await insert_relation(engine.storage, "a", "b", score=0.1)

        result = await engine.run_maintenance()
        history = await engine.maintenance_history()

        assert result.pruned_weak == 1
        assert len(history) == 1
