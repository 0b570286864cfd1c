"""Relation candidates: three independent signals and their merger.

For a source memory the :class:`RelationCandidateGenerator` produces up to
three ranked lists of :class:`Candidate` objects:

1. **Semantic** -- nearest neighbours of the memory's content embedding in
   the :class:`~memorymesh.index.SimilarityIndex`, adjusted by the pairwise
   :class:`ScoreRule` set.
2. **Topical** -- weighted Jaccard overlap of the four metadata facets, with
   a small boost for memories captured from the same host.
3. **Temporal** -- proximity of capture times, scored in four decaying
   tiers (hour, day, week, month).

Every generator fails soft: missing embeddings or metadata, or a failing
collaborator, yield an empty list and a log line, never an exception.

:func:`merge_candidates` then collapses the lists into one ranking with at
most one candidate per target memory.

Usage::

    generator = RelationCandidateGenerator(memories, index)
    merged = merge_candidates(await generator.generate(memory))
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

from memorymesh.config import get_config
from memorymesh.index import SimilarityIndex
from memorymesh.memories import Memory, MemoryStore
from memorymesh.relations import SPECIFICITY

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Temporal tiers: (upper bound in seconds, tier floor, tier span).
# A difference d inside a tier scores floor + span * (1 - d / upper).
# ---------------------------------------------------------------------------

_HOUR = 3600.0
_DAY = 24 * _HOUR

TEMPORAL_TIERS: tuple[tuple[float, float, float], ...] = (
    (_HOUR, 0.9, 0.1),
    (_DAY, 0.7, 0.2),
    (7 * _DAY, 0.4, 0.3),
    (30 * _DAY, 0.1, 0.3),
)

TEMPORAL_WINDOW = timedelta(seconds=TEMPORAL_TIERS[-1][0])
"""Memories further apart than this are never temporal candidates."""


def temporal_score(diff: timedelta) -> float:
    """Time-proximity score for two capture times *diff* apart."""
    seconds = abs(diff.total_seconds())
    for upper, floor, span in TEMPORAL_TIERS:
        if seconds < upper:
            return floor + span * (1.0 - seconds / upper)
    return 0.0


def overlap_ratio(a: Iterable[str], b: Iterable[str]) -> float:
    """Intersection size over union size; two empty sets score 0."""
    left, right = set(a), set(b)
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# ---------------------------------------------------------------------------
# Candidate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    """A scored, typed proposal to relate the source memory to *memory*."""

    memory: Memory
    score: float
    relation_type: str

    @property
    def memory_id(self) -> str:
        return self.memory.id

    def with_score(self, score: float, relation_type: str | None = None) -> Candidate:
        return Candidate(
            memory=self.memory,
            score=_clamp(score),
            relation_type=relation_type or self.relation_type,
        )


def _ranked(candidates: Iterable[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda c: (-c.score, c.memory_id))


# ---------------------------------------------------------------------------
# Pairwise score rules
# ---------------------------------------------------------------------------

DEFAULT_DOMAIN_CATEGORIES: dict[str, tuple[str, ...]] = {
    "code": ("github.com", "gitlab.com", "stackoverflow.com"),
    "entertainment": ("youtube.com", "netflix.com", "twitch.tv"),
    "research": ("arxiv.org", "scholar.google.com", "semanticscholar.org"),
}


@dataclass(frozen=True)
class ScoreRule:
    """One pairwise adjustment applied to semantic scores.

    A rule matches a (source, candidate) pair by the domain categories of
    their URLs and, optionally, by shared topics.  Matching rules add
    :attr:`delta` to the score, which is then clamped into ``[0, 1]``.

    Parameters
    ----------
    name:
        Identifier used in debug logs.
    delta:
        Signed score adjustment.
    source_categories, candidate_categories:
        Domain categories the source and candidate must fall into.  With
        :attr:`symmetric` the roles may also be swapped.
    same_category:
        Instead of the two sets above, require both URLs to fall into the
        same (known) category.
    topics:
        When non-empty, the pair must share at least one of these topics.
    """

    name: str
    delta: float
    source_categories: frozenset[str] = frozenset()
    candidate_categories: frozenset[str] = frozenset()
    symmetric: bool = True
    same_category: bool = False
    topics: frozenset[str] = frozenset()

    def matches(
        self,
        source_category: str | None,
        candidate_category: str | None,
        shared_topics: frozenset[str],
    ) -> bool:
        if self.topics and not (self.topics & shared_topics):
            return False
        if self.same_category:
            return source_category is not None and source_category == candidate_category
        if source_category is None or candidate_category is None:
            return False
        if source_category in self.source_categories and candidate_category in self.candidate_categories:
            return True
        return self.symmetric and (
            candidate_category in self.source_categories
            and source_category in self.candidate_categories
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoreRule:
        try:
            return cls(
                name=str(data["name"]),
                delta=float(data["delta"]),
                source_categories=frozenset(data.get("source_categories", ())),
                candidate_categories=frozenset(data.get("candidate_categories", ())),
                symmetric=bool(data.get("symmetric", True)),
                same_category=bool(data.get("same_category", False)),
                topics=frozenset(t.lower() for t in data.get("topics", ())),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid score rule {data!r}: {exc}") from exc


DEFAULT_SCORE_RULES: tuple[ScoreRule, ...] = (
    ScoreRule(
        name="incompatible-domains",
        delta=-0.4,
        source_categories=frozenset({"code"}),
        candidate_categories=frozenset({"entertainment"}),
    ),
    ScoreRule(
        name="shared-rare-topic",
        delta=0.2,
        same_category=True,
        topics=frozenset({"blockchain", "zero-knowledge", "cryptography"}),
    ),
)


@dataclass(frozen=True)
class ScoreRules:
    """An ordered rule set plus the host-to-category mapping it relies on."""

    rules: tuple[ScoreRule, ...] = DEFAULT_SCORE_RULES
    domain_categories: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DOMAIN_CATEGORIES)
    )

    def category_of(self, host: str | None) -> str | None:
        """Return the first category whose host suffixes match *host*."""
        if not host:
            return None
        for category, suffixes in self.domain_categories.items():
            for suffix in suffixes:
                if host == suffix or host.endswith("." + suffix):
                    return category
        return None

    def adjust(self, source: Memory, candidate: Memory, score: float) -> float:
        """Apply every matching rule in order, clamping after each."""
        source_category = self.category_of(source.host)
        candidate_category = self.category_of(candidate.host)
        shared = source.metadata.topics & candidate.metadata.topics
        for rule in self.rules:
            if rule.matches(source_category, candidate_category, shared):
                logger.debug(
                    "Rule %s adjusts %s -> %s by %+.2f",
                    rule.name,
                    source.id,
                    candidate.id,
                    rule.delta,
                )
                score = _clamp(score + rule.delta)
        return score

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoreRules:
        categories = data.get("domain_categories", DEFAULT_DOMAIN_CATEGORIES)
        if not isinstance(categories, dict):
            raise ValueError("domain_categories must be an object")
        rules = data.get("rules")
        return cls(
            rules=DEFAULT_SCORE_RULES
            if rules is None
            else tuple(ScoreRule.from_dict(r) for r in rules),
            domain_categories={
                str(name): tuple(str(h).lower() for h in hosts)
                for name, hosts in categories.items()
            },
        )


def load_score_rules(path: Path | None = None) -> ScoreRules:
    """Load rules from *path* (or the configured file), else the defaults.

    Raises
    ------
    ValueError
        If the file is not valid JSON or describes an invalid rule.
    """
    path = path or get_config().candidates.score_rules_path
    if path is None:
        return ScoreRules()
    path = Path(path).expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Score rules file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Score rules file {path} must contain an object")
    rules = ScoreRules.from_dict(data)
    logger.info("Loaded %d score rules from %s", len(rules.rules), path)
    return rules


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class RelationCandidateGenerator:
    """Produce semantic, topical and temporal candidates for one memory.

    Parameters
    ----------
    memories:
        Read access to stored memories.
    index:
        Nearest-neighbour search over content embeddings.
    rules:
        Pairwise semantic adjustments.  Defaults to :func:`load_score_rules`.
    """

    def __init__(
        self,
        memories: MemoryStore,
        index: SimilarityIndex,
        rules: ScoreRules | None = None,
    ) -> None:
        self._memories = memories
        self._index = index
        self._rules = rules or load_score_rules()
        self._cfg = get_config().candidates

    async def generate(self, memory: Memory) -> dict[str, list[Candidate]]:
        """Run the three generators concurrently.

        Returns
        -------
        dict[str, list[Candidate]]
            Ranked candidates keyed by relation type, most specific first.
        """
        semantic, topical, temporal = await asyncio.gather(
            self.semantic(memory),
            self.topical(memory),
            self.temporal(memory),
        )
        logger.debug(
            "Candidates for %s: semantic=%d topical=%d temporal=%d",
            memory.id,
            len(semantic),
            len(topical),
            len(temporal),
        )
        return {"semantic": semantic, "topical": topical, "temporal": temporal}

    async def semantic(self, memory: Memory) -> list[Candidate]:
        """Embedding neighbours of *memory*, rule-adjusted."""
        try:
            vector = await self._index.get_vector(memory.id, "content")
            if vector is None:
                logger.debug("No content embedding for %s; skipping semantic", memory.id)
                return []

            hits = await self._index.search(
                vector,
                owner_id=memory.owner_id,
                facet="content",
                k=self._cfg.semantic_limit * 2,
                exclude_id=memory.id,
            )
            hits = [h for h in hits if h.score >= self._cfg.semantic_threshold]
            others = await self._memories.get_batch(h.memory_id for h in hits)

            found: list[Candidate] = []
            for hit in hits:
                other = others.get(hit.memory_id)
                if other is None or other.owner_id != memory.owner_id:
                    continue
                score = self._rules.adjust(memory, other, hit.score)
                if score >= self._cfg.semantic_threshold:
                    found.append(Candidate(other, score, "semantic"))
            return _ranked(found)[: self._cfg.semantic_limit]
        except Exception as exc:
            logger.warning("Semantic candidates failed for %s: %s", memory.id, exc)
            return []

    async def topical(self, memory: Memory) -> list[Candidate]:
        """Memories sharing topics, categories, key points or terms."""
        meta = memory.metadata
        if not meta.topics and not meta.categories:
            logger.debug("No topics or categories for %s; skipping topical", memory.id)
            return []
        try:
            pool = await self._memories.list_for_owner(
                memory.owner_id, self._cfg.candidate_pool
            )
            host = memory.host

            found: list[Candidate] = []
            for other in pool:
                if other.id == memory.id or other.metadata.is_empty:
                    continue
                score = self.topical_score(memory, other, host)
                if score >= self._cfg.topical_threshold:
                    found.append(Candidate(other, score, "topical"))
            return _ranked(found)[: self._cfg.topical_limit]
        except Exception as exc:
            logger.warning("Topical candidates failed for %s: %s", memory.id, exc)
            return []

    def topical_score(self, source: Memory, other: Memory, host: str | None = None) -> float:
        """Weighted facet overlap of two memories, plus the same-host boost."""
        a, b = source.metadata, other.metadata
        score = (
            overlap_ratio(a.topics, b.topics) * self._cfg.topic_weight
            + overlap_ratio(a.categories, b.categories) * self._cfg.category_weight
            + overlap_ratio(a.key_points, b.key_points) * self._cfg.key_point_weight
            + overlap_ratio(a.searchable_terms, b.searchable_terms)
            * self._cfg.searchable_term_weight
        )
        host = host if host is not None else source.host
        if host and host == other.host:
            score += self._cfg.same_domain_boost
        return _clamp(score)

    async def temporal(self, memory: Memory) -> list[Candidate]:
        """Memories captured close in time to *memory*."""
        try:
            neighbours = await self._memories.list_in_window(
                memory.owner_id,
                memory.created_at - TEMPORAL_WINDOW,
                memory.created_at + TEMPORAL_WINDOW,
                exclude_id=memory.id,
            )
            found: list[Candidate] = []
            for other in neighbours:
                score = temporal_score(other.created_at - memory.created_at)
                if score >= self._cfg.temporal_threshold:
                    found.append(Candidate(other, score, "temporal"))
            return _ranked(found)[: self._cfg.temporal_limit]
        except Exception as exc:
            logger.warning("Temporal candidates failed for %s: %s", memory.id, exc)
            return []


# ---------------------------------------------------------------------------
# Merger
# ---------------------------------------------------------------------------


def _prefer(new: Candidate, current: Candidate, tie_margin: float) -> bool:
    """Whether *new* should replace *current* for the same target."""
    if abs(new.score - current.score) <= tie_margin:
        new_rank = SPECIFICITY.get(new.relation_type, 0)
        current_rank = SPECIFICITY.get(current.relation_type, 0)
        if new_rank != current_rank:
            return new_rank > current_rank
    return new.score > current.score


def merge_candidates(
    groups: dict[str, list[Candidate]] | Iterable[list[Candidate]],
    tie_margin: float | None = None,
) -> list[Candidate]:
    """Deduplicate candidates by target memory.

    The higher score wins, except that scores within *tie_margin* of each
    other are a tie, and a tie goes to the more specific relation type
    (semantic, then topical, then temporal) with that type's own score.

    Returns
    -------
    list[Candidate]
        One candidate per target, by descending score.
    """
    if tie_margin is None:
        tie_margin = get_config().candidates.merge_tie_margin
    lists = groups.values() if isinstance(groups, dict) else groups

    best: dict[str, Candidate] = {}
    for group in lists:
        for candidate in group:
            current = best.get(candidate.memory_id)
            if current is None or _prefer(candidate, current, tie_margin):
                best[candidate.memory_id] = candidate

    return sorted(
        best.values(),
        key=lambda c: (-c.score, -SPECIFICITY.get(c.relation_type, 0), c.memory_id),
    )
