"""LLM arbitration of borderline relation candidates, and its verdict cache.

The lowest-confidence tier of the relation filter asks a local model whether
a candidate is really related to the source memory.  This module provides:

* :class:`ArbitrationVerdict` -- the per-candidate answer.
* :class:`OllamaArbitrator` -- one batched ``generate`` call per source
  memory against a local Ollama daemon, asking for JSON output.
* :class:`InMemoryArbitrationCache` and :class:`StorageArbitrationCache` --
  TTL-bound verdict caches keyed by :func:`cache_key`, both safe to share
  between concurrent jobs because every entry is independent.
* :func:`sweep_forever` -- the background loop that drops expired entries.

Usage::

    arbitrator = OllamaArbitrator()
    verdicts = await arbitrator.evaluate_batch(source, [candidate_a, candidate_b])
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import httpx

from memorymesh.config import get_config
from memorymesh.errors import ArbitrationError
from memorymesh.memories import Memory
from memorymesh.storage import Storage

logger = logging.getLogger(__name__)

VERDICT_TYPES: tuple[str, ...] = ("semantic", "topical", "temporal", "none")


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArbitrationVerdict:
    """The arbitrator's answer for one candidate."""

    is_relevant: bool
    relevance_score: float
    relationship_type: str = "none"
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRelevant": self.is_relevant,
            "relevanceScore": self.relevance_score,
            "relationshipType": self.relationship_type,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ArbitrationVerdict:
        """Validate one verdict object from model output.

        Raises
        ------
        ArbitrationError
            If a required field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ArbitrationError(f"Verdict is not an object: {data!r}")
        relevant = data.get("isRelevant", data.get("is_relevant"))
        score = data.get("relevanceScore", data.get("relevance_score"))
        if not isinstance(relevant, bool):
            raise ArbitrationError(f"Verdict lacks a boolean isRelevant: {data!r}")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ArbitrationError(f"Verdict lacks a numeric relevanceScore: {data!r}")
        rel_type = str(data.get("relationshipType", data.get("relationship_type", "none"))).lower()
        if rel_type not in VERDICT_TYPES:
            rel_type = "none"
        return cls(
            is_relevant=relevant,
            relevance_score=max(0.0, min(1.0, float(score))),
            relationship_type=rel_type,
            reasoning=str(data.get("reasoning", "")),
        )


NOT_RELEVANT = ArbitrationVerdict(
    is_relevant=False,
    relevance_score=0.0,
    relationship_type="none",
    reasoning="arbitration unavailable",
)


def parse_verdicts(text: str, expected: int) -> list[ArbitrationVerdict]:
    """Parse the model's JSON answer into exactly *expected* verdicts.

    Accepts either a bare array or an object with a ``results`` array.  When
    entries carry an ``index`` field they are placed by it, otherwise in
    order.

    Raises
    ------
    ArbitrationError
        If the text is not JSON or does not describe *expected* verdicts.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ArbitrationError(f"Arbitration output is not JSON: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("results")
    if not isinstance(data, list) or len(data) != expected:
        raise ArbitrationError(
            f"Expected {expected} verdicts, got {len(data) if isinstance(data, list) else 'none'}"
        )

    if all(isinstance(d, dict) and isinstance(d.get("index"), int) for d in data):
        indexed = {d["index"]: d for d in data}
        if sorted(indexed) != list(range(expected)):
            raise ArbitrationError(f"Verdict indexes do not cover 0..{expected - 1}")
        data = [indexed[i] for i in range(expected)]

    return [ArbitrationVerdict.from_dict(d) for d in data]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def cache_key(source: Memory, candidate: Memory) -> str:
    """Stable key for a (source, candidate) pair and both topic sets."""
    parts = [
        source.id,
        candidate.id,
        ",".join(sorted(source.metadata.topics)),
        ",".join(sorted(candidate.metadata.topics)),
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


class ArbitrationCache(Protocol):
    """Key to verdict store with a time-to-live."""

    async def get(self, key: str) -> ArbitrationVerdict | None: ...

    async def put(self, key: str, verdict: ArbitrationVerdict) -> None: ...

    async def sweep(self) -> int: ...


class InMemoryArbitrationCache:
    """Per-process verdict cache.

    Parameters
    ----------
    ttl_seconds:
        Entry lifetime.  Defaults to ``arbitration.cache_ttl_seconds``.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else get_config().arbitration.cache_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[ArbitrationVerdict, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> ArbitrationVerdict | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        verdict, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            self._entries.pop(key, None)
            return None
        return verdict

    async def put(self, key: str, verdict: ArbitrationVerdict) -> None:
        self._entries[key] = (verdict, self._clock())

    async def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at >= self._ttl]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)


class StorageArbitrationCache:
    """Verdict cache in the ``arbitration_cache`` table, shared across processes."""

    def __init__(
        self,
        storage: Storage,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._ttl = ttl_seconds if ttl_seconds is not None else get_config().arbitration.cache_ttl_seconds
        self._clock = clock

    async def get(self, key: str) -> ArbitrationVerdict | None:
        rows = await self._storage.execute(
            "SELECT verdict FROM arbitration_cache WHERE cache_key = ? AND stored_at > ?",
            (key, self._clock() - self._ttl),
        )
        if not rows:
            return None
        try:
            return ArbitrationVerdict.from_dict(json.loads(rows[0]["verdict"]))
        except (json.JSONDecodeError, ArbitrationError):
            logger.debug("Discarding unreadable cache entry %s", key)
            return None

    async def put(self, key: str, verdict: ArbitrationVerdict) -> None:
        await self._storage.execute_write(
            """
            INSERT INTO arbitration_cache (cache_key, verdict, stored_at)
            VALUES (?, ?, ?)
            ON CONFLICT(cache_key) DO UPDATE SET
                verdict = excluded.verdict,
                stored_at = excluded.stored_at
            """,
            (key, json.dumps(verdict.to_dict()), self._clock()),
        )

    async def sweep(self) -> int:
        return await self._storage.execute_write(
            "DELETE FROM arbitration_cache WHERE stored_at <= ?",
            (self._clock() - self._ttl,),
        )


def make_cache(storage: Storage, backend: str | None = None) -> ArbitrationCache:
    """Build the cache selected by ``arbitration.cache_backend``."""
    backend = backend or get_config().arbitration.cache_backend
    if backend == "memory":
        return InMemoryArbitrationCache()
    if backend == "sqlite":
        return StorageArbitrationCache(storage)
    raise ValueError(f"Unknown arbitration cache backend {backend!r} (use 'memory' or 'sqlite')")


async def sweep_forever(cache: ArbitrationCache, interval_seconds: float | None = None) -> None:
    """Sweep *cache* every *interval_seconds* until cancelled."""
    interval = interval_seconds or get_config().arbitration.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await cache.sweep()
            if removed:
                logger.debug("Swept %d expired arbitration verdicts", removed)
        except Exception as exc:
            logger.warning("Arbitration cache sweep failed: %s", exc)


# ---------------------------------------------------------------------------
# Arbitrators
# ---------------------------------------------------------------------------


class Arbitrator(Protocol):
    """Judges candidate relevance for a source memory."""

    async def evaluate_batch(
        self,
        source: Memory,
        candidates: Sequence[Memory],
    ) -> list[ArbitrationVerdict]: ...


_PROMPT = """\
You decide whether saved web memories are meaningfully related.

Source memory:
{source}

Candidates:
{candidates}

For each candidate answer with an object:
{{"index": <candidate number>, "isRelevant": true|false,
  "relevanceScore": <0.0-1.0>,
  "relationshipType": "semantic"|"topical"|"temporal"|"none",
  "reasoning": "<one sentence>"}}

Respond with JSON only: {{"results": [ ... ]}} containing exactly {count} objects.
"""


class OllamaArbitrator:
    """Arbitrator backed by a local Ollama model.

    Parameters
    ----------
    base_url:
        Ollama API address.  Defaults to ``arbitration.ollama_url``.
    model:
        Generation model.  Defaults to ``arbitration.model``.
    """

    def __init__(self, base_url: str | None = None, model: str | None = None) -> None:
        cfg = get_config().arbitration
        self.base_url = base_url or cfg.ollama_url
        self.model = model or cfg.model
        self._client = None  # lazily created in evaluate_batch()

    async def evaluate_batch(
        self,
        source: Memory,
        candidates: Sequence[Memory],
    ) -> list[ArbitrationVerdict]:
        """Ask the model about every candidate in one call.

        Raises
        ------
        ArbitrationError
            If the daemon call fails or the answer cannot be parsed.
        """
        if not candidates:
            return []
        if self._client is None:
            import ollama

            self._client = ollama.AsyncClient(host=self.base_url)

        prompt = _PROMPT.format(
            source=source.brief(),
            candidates="\n\n".join(
                f"[{i}] {candidate.brief()}" for i, candidate in enumerate(candidates)
            ),
            count=len(candidates),
        )
        try:
            response = await self._client.generate(
                model=self.model,
                prompt=prompt,
                format="json",
            )
        except Exception as exc:
            raise ArbitrationError(f"Ollama generate failed: {exc}") from exc

        return parse_verdicts(response.response, len(candidates))

    async def health_check(self) -> bool:
        """Whether the daemon answers and the model is pulled."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                if resp.status_code != 200:
                    return False
                models = [m["name"] for m in resp.json().get("models", [])]
                return any(self.model in m for m in models)
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.debug("Ollama health check failed: %s", exc)
            return False
