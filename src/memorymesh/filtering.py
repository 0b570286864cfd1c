"""Confidence-tiered acceptance of merged relation candidates.

Candidates fall into tiers by score:

* **auto** (``>= filter.auto_accept``) -- accepted as is.
* **heuristic** (``>= filter.heuristic_floor``) -- accepted when a cheap
  metadata heuristic agrees.
* **arbitrated** (``>= filter.arbitration_floor``) -- for well-described,
  close-in-time pairs only, sent to the :class:`~memorymesh.arbitration.Arbitrator`
  in one batched call, through the verdict cache.
* everything else is dropped.

An arbitration failure or timeout never fails the filter: the affected
candidates get a non-relevant verdict and fall back to the heuristic check.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from memorymesh.arbitration import (
    NOT_RELEVANT,
    ArbitrationCache,
    ArbitrationError,
    ArbitrationVerdict,
    Arbitrator,
    InMemoryArbitrationCache,
    cache_key,
)
from memorymesh.candidates import Candidate, overlap_ratio
from memorymesh.config import get_config
from memorymesh.memories import Memory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptedRelation:
    """A candidate that passed the filter, ready for the relation store."""

    target_id: str
    relation_type: str
    score: float
    tier: str
    """``auto``, ``heuristic``, ``arbitrated`` or ``fallback``."""


class ConfidenceTieredFilter:
    """Decide which candidates become relations.

    Parameters
    ----------
    arbitrator:
        Collaborator for the lowest tier.  ``None`` disables arbitration;
        those candidates are then judged by the heuristic alone.
    cache:
        Verdict cache consulted before calling *arbitrator*.
    timeout_seconds:
        Bound on one batched arbitration call.
    """

    def __init__(
        self,
        arbitrator: Arbitrator | None = None,
        cache: ArbitrationCache | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._arbitrator = arbitrator
        self._cache = cache if cache is not None else InMemoryArbitrationCache()
        self._cfg = get_config().filter
        self._timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else get_config().arbitration.timeout_seconds
        )

    async def filter(self, source: Memory, candidates: list[Candidate]) -> list[AcceptedRelation]:
        """Run every tier over *candidates* (merged, best first).

        Returns
        -------
        list[AcceptedRelation]
            At most ``filter.max_relations`` relations, best first.
        """
        cfg = self._cfg
        accepted: list[AcceptedRelation] = []
        arbitrable: list[Candidate] = []

        for candidate in candidates:
            if candidate.score >= cfg.auto_accept:
                accepted.append(_accept(candidate, "auto"))
            elif candidate.score >= cfg.heuristic_floor:
                if self.heuristic_score(source, candidate.memory) >= cfg.heuristic_accept:
                    accepted.append(_accept(candidate, "heuristic"))
                else:
                    logger.debug("Heuristic rejected %s -> %s", source.id, candidate.memory_id)
            elif candidate.score >= cfg.arbitration_floor:
                if self.is_arbitrable(source, candidate.memory):
                    arbitrable.append(candidate)
                else:
                    logger.debug("Not arbitrable: %s -> %s", source.id, candidate.memory_id)

        if arbitrable:
            accepted.extend(await self._arbitrate(source, arbitrable[: cfg.max_arbitrations]))

        if not accepted:
            accepted = [
                _accept(c, "fallback", relation_type="semantic")
                for c in candidates
                if c.score >= cfg.fallback_min_score
            ][: cfg.fallback_count]
            if accepted:
                logger.debug("Fallback kept %d candidates for %s", len(accepted), source.id)

        accepted.sort(key=lambda r: (-r.score, r.target_id))
        return accepted[: cfg.max_relations]

    def heuristic_score(self, source: Memory, other: Memory) -> float:
        """Topic and category overlap, plus a boost for the same host."""
        score = (
            overlap_ratio(source.metadata.topics, other.metadata.topics)
            * self._cfg.heuristic_topic_weight
            + overlap_ratio(source.metadata.categories, other.metadata.categories)
            * self._cfg.heuristic_category_weight
        )
        if source.host and source.host == other.host:
            score += self._cfg.heuristic_domain_boost
        return min(1.0, score)

    def is_arbitrable(self, source: Memory, other: Memory) -> bool:
        """Both memories are well described and close enough in time."""
        min_topics = self._cfg.arbitration_min_topics
        if len(source.metadata.topics) < min_topics or len(other.metadata.topics) < min_topics:
            return False
        age = abs((source.created_at - other.created_at).total_seconds())
        return age <= self._cfg.arbitration_max_age_days * 86_400

    async def _arbitrate(self, source: Memory, batch: list[Candidate]) -> list[AcceptedRelation]:
        verdicts: dict[str, ArbitrationVerdict] = {}
        misses: list[tuple[str, Candidate]] = []
        for candidate in batch:
            key = cache_key(source, candidate.memory)
            cached = await self._cache.get(key)
            if cached is None:
                misses.append((key, candidate))
            else:
                logger.debug("Arbitration cache hit for %s -> %s", source.id, candidate.memory_id)
                verdicts[candidate.memory_id] = cached

        degraded: set[str] = set()
        if misses:
            fresh = await self._call_arbitrator(source, [c.memory for _, c in misses])
            if fresh is None:
                for _, candidate in misses:
                    verdicts[candidate.memory_id] = NOT_RELEVANT
                    degraded.add(candidate.memory_id)
            else:
                for (key, candidate), verdict in zip(misses, fresh):
                    await self._cache.put(key, verdict)
                    verdicts[candidate.memory_id] = verdict

        accepted: list[AcceptedRelation] = []
        for candidate in batch:
            verdict = verdicts[candidate.memory_id]
            if verdict.is_relevant and verdict.relevance_score >= self._cfg.arbitration_accept:
                relation_type = (
                    verdict.relationship_type
                    if verdict.relationship_type != "none"
                    else candidate.relation_type
                )
                accepted.append(
                    _accept(
                        candidate,
                        "arbitrated",
                        relation_type=relation_type,
                        score=candidate.score * verdict.relevance_score,
                    )
                )
            elif candidate.memory_id in degraded:
                if self.heuristic_score(source, candidate.memory) >= self._cfg.heuristic_accept:
                    accepted.append(_accept(candidate, "heuristic"))
        return accepted

    async def _call_arbitrator(
        self,
        source: Memory,
        memories: list[Memory],
    ) -> list[ArbitrationVerdict] | None:
        """One batched call, or ``None`` when arbitration is unavailable."""
        if self._arbitrator is None:
            return None
        try:
            verdicts = await asyncio.wait_for(
                self._arbitrator.evaluate_batch(source, memories),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Arbitration for %s timed out after %.1fs; using heuristic",
                source.id,
                self._timeout,
            )
            return None
        except ArbitrationError as exc:
            logger.warning("Arbitration for %s unusable: %s", source.id, exc)
            return None
        except Exception as exc:
            logger.warning("Arbitration for %s failed: %s", source.id, exc)
            return None

        if len(verdicts) != len(memories):
            logger.warning(
                "Arbitration for %s returned %d verdicts for %d candidates",
                source.id,
                len(verdicts),
                len(memories),
            )
            return None
        return verdicts


def _accept(
    candidate: Candidate,
    tier: str,
    relation_type: str | None = None,
    score: float | None = None,
) -> AcceptedRelation:
    return AcceptedRelation(
        target_id=candidate.memory_id,
        relation_type=relation_type or candidate.relation_type,
        score=max(0.0, min(1.0, candidate.score if score is None else score)),
        tier=tier,
    )
