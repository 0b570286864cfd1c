"""Tests for memorymesh.candidates: the three generators and the merger."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from memorymesh.candidates import (
    Candidate,
    RelationCandidateGenerator,
    ScoreRule,
    ScoreRules,
    load_score_rules,
    merge_candidates,
    overlap_ratio,
    temporal_score,
)
from memorymesh.index import SimilarityIndex
from memorymesh.memories import MemoryStore
from memorymesh.storage import Storage

from tests.conftest import BASE_TIME, insert_embedding, insert_memory, make_memory


@pytest.fixture
def generator(storage: Storage) -> RelationCandidateGenerator:
    return RelationCandidateGenerator(MemoryStore(storage), SimilarityIndex(storage))


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


class TestTemporalScore:
    @pytest.mark.parametrize(
        ("diff", "expected"),
        [
            (timedelta(0), 1.0),
            (timedelta(minutes=30), 0.95),
            (timedelta(hours=1), 0.7 + 0.2 * (23 / 24)),
            (timedelta(days=2), 0.4 + 0.3 * (5 / 7)),
            (timedelta(days=10), 0.3),
            (timedelta(days=31), 0.0),
        ],
    )
    def test_tiers(self, diff: timedelta, expected: float) -> None:
        assert temporal_score(diff) == pytest.approx(expected)

    def test_symmetric(self) -> None:
        assert temporal_score(timedelta(hours=-5)) == temporal_score(timedelta(hours=5))

    def test_decreases_with_distance(self) -> None:
        scores = [temporal_score(timedelta(hours=h)) for h in (0, 1, 12, 24, 72, 200, 600)]
        assert scores == sorted(scores, reverse=True)


class TestOverlapRatio:
    def test_partial(self) -> None:
        assert overlap_ratio({"x", "y", "z"}, {"x", "y"}) == pytest.approx(2 / 3)

    def test_disjoint(self) -> None:
        assert overlap_ratio({"x"}, {"y"}) == 0.0

    def test_both_empty(self) -> None:
        assert overlap_ratio(set(), set()) == 0.0


class TestScoreRules:
    def test_incompatible_domains_penalised_both_ways(self) -> None:
        rules = ScoreRules()
        code = make_memory("a", url="https://github.com/org/repo")
        video = make_memory("b", url="https://www.youtube.com/watch?v=1")
        assert rules.adjust(code, video, 0.8) == pytest.approx(0.4)
        assert rules.adjust(video, code, 0.8) == pytest.approx(0.4)

    def test_rare_topic_boost_needs_same_category(self) -> None:
        rules = ScoreRules()
        paper = make_memory("a", url="https://arxiv.org/abs/1", topics=["cryptography"])
        other = make_memory("b", url="https://arxiv.org/abs/2", topics=["cryptography"])
        blog = make_memory("c", url="https://example.com/post", topics=["cryptography"])
        assert rules.adjust(paper, other, 0.5) == pytest.approx(0.7)
        assert rules.adjust(paper, blog, 0.5) == pytest.approx(0.5)

    def test_clamped(self) -> None:
        rules = ScoreRules(rules=(ScoreRule(name="big", delta=0.9, same_category=True),))
        a = make_memory("a", url="https://arxiv.org/abs/1")
        b = make_memory("b", url="https://arxiv.org/abs/2")
        assert rules.adjust(a, b, 0.5) == 1.0

    def test_subdomain_matches_category(self) -> None:
        assert ScoreRules().category_of("gist.github.com") == "code"
        assert ScoreRules().category_of("notgithub.com") is None

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "domain_categories": {"news": ["bbc.co.uk"]},
                    "rules": [{"name": "news-pair", "delta": 0.1, "same_category": True}],
                }
            )
        )
        rules = load_score_rules(path)
        assert [r.name for r in rules.rules] == ["news-pair"]
        assert rules.category_of("bbc.co.uk") == "news"

    def test_load_defaults_without_path(self) -> None:
        assert load_score_rules().rules == ScoreRules().rules

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        with pytest.raises(ValueError, match="not valid JSON"):
            load_score_rules(path)

    def test_invalid_rule_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": [{"delta": 0.1}]}))
        with pytest.raises(ValueError, match="Invalid score rule"):
            load_score_rules(path)


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


class TestSemantic:
    async def test_neighbours_above_threshold(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        for memory_id, vector in (
            ("a", [1.0, 0.0, 0.0]),
            ("b", [0.8, 0.6, 0.0]),
            ("c", [0.0, 1.0, 0.0]),
        ):
            await insert_memory(storage, memory_id)
            await insert_embedding(storage, memory_id, vector)

        source = await MemoryStore(storage).get("a")
        assert source is not None
        found = await generator.semantic(source)

        assert [c.memory_id for c in found] == ["b"]
        assert found[0].score == pytest.approx(0.8, abs=1e-5)
        assert found[0].relation_type == "semantic"

    async def test_rule_penalty_can_drop_candidate(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "a", url="https://github.com/o/r")
        await insert_memory(storage, "b", url="https://youtube.com/watch")
        await insert_embedding(storage, "a", [1.0, 0.0])
        await insert_embedding(storage, "b", [0.6, 0.8])

        source = await MemoryStore(storage).get("a")
        assert source is not None
        assert await generator.semantic(source) == []

    async def test_other_owners_ignored(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "a")
        await insert_memory(storage, "b", owner_id="bob")
        await insert_embedding(storage, "a", [1.0, 0.0])
        await insert_embedding(storage, "b", [1.0, 0.0], owner_id="bob")

        source = await MemoryStore(storage).get("a")
        assert source is not None
        assert await generator.semantic(source) == []

    async def test_without_embedding_is_empty(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "a")
        source = await MemoryStore(storage).get("a")
        assert source is not None
        assert await generator.semantic(source) == []

    async def test_index_failure_is_soft(self, storage: Storage) -> None:
        index = MagicMock(spec=SimilarityIndex)
        index.get_vector = AsyncMock(side_effect=RuntimeError("index down"))
        gen = RelationCandidateGenerator(MemoryStore(storage), index)
        assert await gen.semantic(make_memory("a")) == []


class TestTopical:
    async def test_overlap_scored(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "a", topics=["x", "y", "z"])
        await insert_memory(storage, "b", topics=["x", "y"])
        await insert_memory(storage, "c", topics=["q"])

        source = await MemoryStore(storage).get("a")
        assert source is not None
        found = await generator.topical(source)

        assert [c.memory_id for c in found] == ["b"]
        assert found[0].score == pytest.approx(0.4 * 2 / 3)

    def test_same_host_boost(self, generator: RelationCandidateGenerator) -> None:
        a = make_memory("a", url="https://www.docs.rs/x", topics=["rust"])
        b = make_memory("b", url="https://docs.rs/y", topics=["rust"])
        assert generator.topical_score(a, b) == pytest.approx(0.4 + 0.1)

    async def test_no_topics_or_categories_is_empty(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "b", key_points=["shared"])
        source = make_memory("a", key_points=["shared"])
        assert await generator.topical(source) == []

    async def test_store_failure_is_soft(self, storage: Storage) -> None:
        memories = MagicMock(spec=MemoryStore)
        memories.list_for_owner = AsyncMock(side_effect=RuntimeError("db locked"))
        gen = RelationCandidateGenerator(memories, SimilarityIndex(storage))
        assert await gen.topical(make_memory("a", topics=["x"])) == []


class TestTemporal:
    async def test_window(self, storage: Storage, generator: RelationCandidateGenerator) -> None:
        await insert_memory(storage, "a")
        await insert_memory(storage, "b", created_at=BASE_TIME + timedelta(minutes=30))
        await insert_memory(storage, "c", created_at=BASE_TIME - timedelta(days=2))
        await insert_memory(storage, "d", created_at=BASE_TIME + timedelta(days=40))

        source = await MemoryStore(storage).get("a")
        assert source is not None
        found = await generator.temporal(source)

        assert [c.memory_id for c in found] == ["b", "c"]
        assert all(c.relation_type == "temporal" for c in found)

    async def test_limit(self, storage: Storage, generator: RelationCandidateGenerator) -> None:
        await insert_memory(storage, "a")
        for i in range(8):
            await insert_memory(storage, f"n{i}", created_at=BASE_TIME + timedelta(minutes=i + 1))
        source = await MemoryStore(storage).get("a")
        assert source is not None
        assert len(await generator.temporal(source)) == 5


class TestGenerate:
    async def test_returns_all_three_types(
        self, storage: Storage, generator: RelationCandidateGenerator
    ) -> None:
        await insert_memory(storage, "a", topics=["x", "y", "z"])
        await insert_memory(
            storage, "b", topics=["x", "y"], created_at=BASE_TIME + timedelta(hours=1)
        )
        await insert_embedding(storage, "a", [1.0, 0.0, 0.0])
        await insert_embedding(storage, "b", [0.8, 0.6, 0.0])

        source = await MemoryStore(storage).get("a")
        assert source is not None
        groups = await generator.generate(source)

        assert set(groups) == {"semantic", "topical", "temporal"}
        assert all(len(v) == 1 for v in groups.values())


# ---------------------------------------------------------------------------
# Merger
# ---------------------------------------------------------------------------


class TestMerge:
    def test_close_scores_prefer_more_specific_type(self) -> None:
        b = make_memory("b")
        merged = merge_candidates(
            {
                "semantic": [Candidate(b, 0.8, "semantic")],
                "topical": [Candidate(b, 0.2667, "topical")],
                "temporal": [Candidate(b, temporal_score(timedelta(hours=1)), "temporal")],
            }
        )
        assert len(merged) == 1
        assert merged[0].relation_type == "semantic"
        assert merged[0].score == pytest.approx(0.8)

    def test_clear_winner_keeps_its_type(self) -> None:
        b = make_memory("b")
        merged = merge_candidates(
            [[Candidate(b, 0.4, "semantic")], [Candidate(b, 0.95, "temporal")]]
        )
        assert merged[0].relation_type == "temporal"
        assert merged[0].score == pytest.approx(0.95)

    def test_zero_margin_is_max_score(self) -> None:
        b = make_memory("b")
        merged = merge_candidates(
            [[Candidate(b, 0.8, "semantic")], [Candidate(b, 0.81, "temporal")]],
            tie_margin=0.0,
        )
        assert merged[0].relation_type == "temporal"

    def test_one_per_target_sorted(self) -> None:
        b, c, d = make_memory("b"), make_memory("c"), make_memory("d")
        merged = merge_candidates(
            [
                [Candidate(b, 0.5, "semantic"), Candidate(c, 0.9, "semantic")],
                [Candidate(d, 0.7, "topical"), Candidate(b, 0.3, "topical")],
            ]
        )
        assert [c.memory_id for c in merged] == ["c", "d", "b"]

    def test_empty(self) -> None:
        assert merge_candidates({}) == []
