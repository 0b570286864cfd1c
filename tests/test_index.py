"""Tests for the similarity index and the memory store write path."""

from __future__ import annotations

import pytest

from memorymesh.index import SimilarityIndex
from memorymesh.memories import MemoryStore
from memorymesh.storage import Storage

from tests.conftest import make_memory


@pytest.fixture
async def index(storage: Storage) -> SimilarityIndex:
    memories = MemoryStore(storage)
    for memory_id in ("a", "b", "c"):
        await memories.save(make_memory(memory_id))
    await memories.save(make_memory("z", owner_id="bob"))
    return SimilarityIndex(storage, dims=3)


class TestAdd:
    async def test_stores_vector(self, index: SimilarityIndex) -> None:
        await index.add("a", "alice", "content", [1.0, 0.0, 0.0])
        assert await index.get_vector("a") == pytest.approx([1.0, 0.0, 0.0])

    async def test_replaces_existing(self, index: SimilarityIndex) -> None:
        await index.add("a", "alice", "content", [1.0, 0.0, 0.0])
        await index.add("a", "alice", "content", [0.0, 1.0, 0.0])
        assert await index.get_vector("a") == pytest.approx([0.0, 1.0, 0.0])

    async def test_wrong_width_rejected(self, index: SimilarityIndex) -> None:
        with pytest.raises(ValueError, match="3-dimensional"):
            await index.add("a", "alice", "content", [1.0, 0.0])
        assert await index.get_vector("a") is None

    async def test_width_from_config(self, storage: Storage) -> None:
        index = SimilarityIndex(storage)
        with pytest.raises(ValueError, match="768-dimensional"):
            await index.add("a", "alice", "content", [1.0, 0.0, 0.0])

    async def test_empty_rejected(self, index: SimilarityIndex) -> None:
        with pytest.raises(ValueError, match="empty"):
            await index.add("a", "alice", "content", [])

    async def test_invalid_facet(self, index: SimilarityIndex) -> None:
        with pytest.raises(ValueError, match="Invalid facet"):
            await index.add("a", "alice", "body", [1.0, 0.0, 0.0])


class TestSearch:
    async def test_ranked_and_scoped(self, index: SimilarityIndex) -> None:
        await index.add("a", "alice", "content", [1.0, 0.0, 0.0])
        await index.add("b", "alice", "content", [0.8, 0.6, 0.0])
        await index.add("c", "alice", "content", [0.0, 1.0, 0.0])
        await index.add("z", "bob", "content", [1.0, 0.0, 0.0])

        hits = await index.search([1.0, 0.0, 0.0], owner_id="alice", exclude_id="a")

        assert [h.memory_id for h in hits] == ["b", "c"]
        assert hits[0].score == pytest.approx(0.8, abs=1e-5)
        assert hits[1].score == pytest.approx(0.0, abs=1e-5)

    async def test_k_limits_results(self, index: SimilarityIndex) -> None:
        await index.add("a", "alice", "content", [1.0, 0.0, 0.0])
        await index.add("b", "alice", "content", [0.8, 0.6, 0.0])
        hits = await index.search([1.0, 0.0, 0.0], owner_id="alice", k=1)
        assert [h.memory_id for h in hits] == ["a"]

    async def test_get_vectors_skips_missing(self, index: SimilarityIndex) -> None:
        await index.add("a", "alice", "content", [1.0, 0.0, 0.0])
        assert set(await index.get_vectors(["a", "b"])) == {"a"}


class TestMemoryStore:
    async def test_save_and_get(self, storage: Storage) -> None:
        memories = MemoryStore(storage)
        await memories.save(make_memory("m", topics=["Redis", "cache"], url="https://Example.com/x"))

        loaded = await memories.get("m", "alice")

        assert loaded is not None
        assert loaded.metadata.topics == frozenset({"redis", "cache"})
        assert loaded.title == "Memory m"

    async def test_save_overwrites(self, storage: Storage) -> None:
        memories = MemoryStore(storage)
        await memories.save(make_memory("m", title="Old"))
        await memories.save(make_memory("m", title="New"))
        assert (await memories.get("m")).title == "New"

    async def test_other_owner_hidden(self, storage: Storage) -> None:
        memories = MemoryStore(storage)
        await memories.save(make_memory("m", owner_id="bob"))
        assert await memories.get("m", "alice") is None
