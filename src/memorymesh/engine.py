"""Central orchestrator for the memory-mesh engine.

The :class:`MeshEngine` wires storage, the similarity index, candidate
generation, tiered filtering, relation persistence, maintenance and mesh
assembly into the API surface the MCP server and CLI call.

All public methods return plain dicts because their output is
JSON-serialised for tool responses.

Usage::

    from memorymesh.engine import MeshEngine

    engine = MeshEngine()
    await engine.initialize()

    await engine.process_memory("m-42", owner_id="alice")
    mesh = await engine.get_mesh("alice", limit=50)
    await engine.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import deque
from pathlib import Path
from typing import Any, Iterable

from memorymesh.arbitration import (
    ArbitrationCache,
    Arbitrator,
    OllamaArbitrator,
    make_cache,
    sweep_forever,
)
from memorymesh.candidates import RelationCandidateGenerator, ScoreRules, merge_candidates
from memorymesh.config import get_config
from memorymesh.errors import MemoryNotFoundError
from memorymesh.filtering import ConfidenceTieredFilter
from memorymesh.index import SimilarityIndex
from memorymesh.maintenance import MaintenanceEngine, MaintenanceResult
from memorymesh.memories import MemoryStore
from memorymesh.mesh import MeshAssembler
from memorymesh.relations import RelationStore, UpsertOutcome
from memorymesh.storage import Storage

logger = logging.getLogger(__name__)


class MeshEngine:
    """The engine facade.  One engine per process.

    Parameters
    ----------
    db_path:
        Override for ``db_path``.
    arbitrator:
        Collaborator for tier 3 of the filter.  Defaults to an
        :class:`~memorymesh.arbitration.OllamaArbitrator`.
    cache:
        Verdict cache.  Defaults to the configured backend.
    rules:
        Pairwise semantic score rules.  Defaults to the configured file or
        the built-in rules.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        arbitrator: Arbitrator | None = None,
        cache: ArbitrationCache | None = None,
        rules: ScoreRules | None = None,
    ) -> None:
        self._config = get_config()
        self._db_path_override = db_path
        self._arbitrator = arbitrator
        self._cache = cache
        self._rules = rules
        self._storage: Storage | None = None
        self._memories: MemoryStore | None = None
        self._index: SimilarityIndex | None = None
        self._relations: RelationStore | None = None
        self._generator: RelationCandidateGenerator | None = None
        self._filter: ConfidenceTieredFilter | None = None
        self._maintenance: MaintenanceEngine | None = None
        self._assembler: MeshAssembler | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create storage and every component.  Idempotent."""
        if self._initialized:
            return

        self._storage = Storage(self._db_path_override or self._config.db_path)
        await self._storage.initialize()

        self._memories = MemoryStore(self._storage)
        self._index = SimilarityIndex(self._storage)
        self._relations = RelationStore(self._storage)
        if self._cache is None:
            self._cache = make_cache(self._storage)
        if self._arbitrator is None:
            self._arbitrator = OllamaArbitrator()

        self._generator = RelationCandidateGenerator(self._memories, self._index, self._rules)
        self._filter = ConfidenceTieredFilter(self._arbitrator, self._cache)
        self._maintenance = MaintenanceEngine(self._storage, self._relations, self._cache)
        self._assembler = MeshAssembler(self._memories, self._index, self._relations)

        self._initialized = True
        logger.info("Mesh engine initialized. DB: %s", self._storage.db_path)

    async def shutdown(self) -> None:
        if self._storage is not None:
            await self._storage.close()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Mesh engine not initialized. Call await engine.initialize() first."
            )

    @property
    def storage(self) -> Storage:
        self._ensure_initialized()
        assert self._storage is not None
        return self._storage

    @property
    def memories(self) -> MemoryStore:
        self._ensure_initialized()
        assert self._memories is not None
        return self._memories

    @property
    def index(self) -> SimilarityIndex:
        self._ensure_initialized()
        assert self._index is not None
        return self._index

    @property
    def relations(self) -> RelationStore:
        self._ensure_initialized()
        assert self._relations is not None
        return self._relations

    # ------------------------------------------------------------------
    # Relation computation
    # ------------------------------------------------------------------

    async def process_memory(self, memory_id: str, owner_id: str) -> dict[str, Any]:
        """Generate, filter and persist the relations of one memory.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* does not belong to *owner_id*.

        Returns
        -------
        dict
            Counts per upsert outcome plus the accepted relations.
        """
        self._ensure_initialized()
        assert self._generator is not None and self._filter is not None

        memory = await self.memories.get(memory_id, owner_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id, owner_id)

        groups = await self._generator.generate(memory)
        merged = merge_candidates(groups)
        accepted = await self._filter.filter(memory, merged)

        outcomes = {outcome.value: 0 for outcome in UpsertOutcome}
        failed = 0
        for relation in accepted:
            try:
                outcome = await self.relations.upsert(
                    memory.id,
                    relation.target_id,
                    relation.relation_type,
                    relation.score,
                )
            except (sqlite3.Error, ValueError) as exc:
                logger.warning(
                    "Could not store relation %s -> %s: %s",
                    memory.id,
                    relation.target_id,
                    exc,
                )
                failed += 1
                continue
            outcomes[outcome.value] += 1

        logger.info(
            "Processed %s: %d candidates, %d accepted, created=%d updated=%d",
            memory.id,
            len(merged),
            len(accepted),
            outcomes["created"],
            outcomes["updated"],
        )
        return {
            "memory_id": memory.id,
            "candidates": len(merged),
            "accepted": [
                {
                    "target_id": r.target_id,
                    "relation_type": r.relation_type,
                    "score": round(r.score, 4),
                    "tier": r.tier,
                }
                for r in accepted
            ],
            **outcomes,
            "failed": failed,
        }

    async def process_memories(self, memory_ids: Iterable[str], owner_id: str) -> dict[str, Any]:
        """Run :meth:`process_memory` for many memories concurrently.

        At most ``concurrent_jobs`` run at once.  A failure for one memory
        is logged and reported without affecting the others.
        """
        self._ensure_initialized()
        ids = list(dict.fromkeys(memory_ids))
        semaphore = asyncio.Semaphore(max(1, self._config.concurrent_jobs))
        errors: dict[str, str] = {}

        async def _one(memory_id: str) -> dict[str, Any] | None:
            async with semaphore:
                try:
                    return await self.process_memory(memory_id, owner_id)
                except Exception as exc:
                    logger.warning("Processing %s failed: %s", memory_id, exc)
                    errors[memory_id] = f"{type(exc).__name__}: {exc}"
                    return None

        results = await asyncio.gather(*(_one(m) for m in ids))
        done = [r for r in results if r is not None]
        return {
            "processed": len(done),
            "failed": len(errors),
            "created": sum(r["created"] for r in done),
            "updated": sum(r["updated"] for r in done),
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_mesh(
        self,
        owner_id: str,
        limit: int | None = None,
        similarity_threshold: float | None = None,
    ) -> dict[str, Any]:
        """Nodes, edges, clusters and metadata for the owner's recent memories."""
        self._ensure_initialized()
        assert self._assembler is not None
        return await self._assembler.assemble(owner_id, limit, similarity_threshold)

    async def get_cluster(
        self,
        owner_id: str,
        center_memory_id: str,
        depth: int = 2,
    ) -> dict[str, Any]:
        """Breadth-first expansion from a memory along strong relations.

        Takes the ``relations.cluster_fanout`` strongest outgoing relations of
        each memory and follows those scoring above
        ``relations.cluster_min_score``.  A member's ``relation_count`` is the
        size of that strongest list, weak entries included.  Every memory is
        visited once, so cycles terminate.

        Raises
        ------
        MemoryNotFoundError
            If the centre memory does not belong to *owner_id*.
        """
        self._ensure_initialized()
        cfg = self._config.relations
        depth = max(0, depth)

        center = await self.memories.get(center_memory_id, owner_id)
        if center is None:
            raise MemoryNotFoundError(center_memory_id, owner_id)

        depth_of: dict[str, int] = {center.id: 0}
        relation_count: dict[str, int] = {}
        queue: deque[str] = deque([center.id])
        while queue:
            node = queue.popleft()
            strongest = await self.relations.outgoing(node, limit=cfg.cluster_fanout)
            relation_count[node] = len(strongest)
            followed = [r for r in strongest if r.score > cfg.cluster_min_score]
            if depth_of[node] >= depth:
                continue
            targets = await self.memories.get_batch(
                r.target_id for r in followed if r.target_id not in depth_of
            )
            for relation in followed:
                target = targets.get(relation.target_id)
                if target is None or target.owner_id != owner_id or target.id in depth_of:
                    continue
                depth_of[target.id] = depth_of[node] + 1
                queue.append(target.id)

        found = await self.memories.get_batch(depth_of)
        members = [
            {
                **found[memory_id].to_dict(),
                "depth": depth_of[memory_id],
                "relation_count": relation_count.get(memory_id, 0),
            }
            for memory_id in sorted(depth_of, key=lambda m: (depth_of[m], m))
            if memory_id in found
        ]
        return {
            "center_memory_id": center.id,
            "cluster_size": len(members),
            "max_depth": depth,
            "memories": members,
        }

    async def get_memory_with_relations(self, memory_id: str, owner_id: str) -> dict[str, Any]:
        """A memory with its outgoing and incoming relations.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* does not belong to *owner_id*.
        """
        self._ensure_initialized()
        memory = await self.memories.get(memory_id, owner_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id, owner_id)

        outgoing = await self.relations.outgoing(memory.id)
        incoming = await self.relations.incoming(memory.id)
        related = await self.memories.get_batch(
            [r.target_id for r in outgoing] + [r.source_id for r in incoming]
        )
        has_embedding = await self.index.get_vector(memory.id, "content") is not None

        def _describe(other_id: str) -> dict[str, Any] | None:
            other = related.get(other_id)
            if other is None:
                return None
            return {"id": other.id, "title": other.title, "url": other.url, "summary": other.summary}

        return {
            **memory.to_dict(),
            "outgoing": [
                {**r.to_dict(), "memory": _describe(r.target_id)} for r in outgoing
            ],
            "incoming": [
                {**r.to_dict(), "memory": _describe(r.source_id)} for r in incoming
            ],
            "relation_stats": {
                "outgoing_relations": len(outgoing),
                "incoming_relations": len(incoming),
                "total_relations": len(outgoing) + len(incoming),
                "has_embeddings": has_embedding,
            },
        }

    async def find_related_memories(
        self,
        memory_id: str,
        owner_id: str,
        limit: int = 5,
    ) -> list[dict[str, Any]]:
        """Nearest embedding neighbours of a memory, above the semantic threshold.

        A memory without a content embedding has no neighbours.
        """
        self._ensure_initialized()
        memory = await self.memories.get(memory_id, owner_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id, owner_id)
        vector = await self.index.get_vector(memory.id, "content")
        if vector is None:
            return []

        hits = await self.index.search(
            vector, owner_id=owner_id, facet="content", k=max(1, limit), exclude_id=memory.id
        )
        threshold = self._config.candidates.semantic_threshold
        hits = [h for h in hits if h.score >= threshold]
        found = await self.memories.get_batch(h.memory_id for h in hits)
        return [
            {**found[h.memory_id].to_dict(), "similarity": round(h.score, 4)}
            for h in hits
            if h.memory_id in found
        ]

    async def relation_stats(self, owner_id: str | None = None) -> dict[str, Any]:
        """Relation counts per type and average score."""
        self._ensure_initialized()
        stats = await self.relations.stats(owner_id)
        if owner_id is None:
            stats["tables"] = await self.storage.table_counts()
        return stats

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self, dry_run: bool = False) -> MaintenanceResult:
        self._ensure_initialized()
        assert self._maintenance is not None
        return await self._maintenance.run(dry_run=dry_run)

    async def maintenance_history(self, limit: int = 20) -> list[dict[str, Any]]:
        self._ensure_initialized()
        assert self._maintenance is not None
        return await self._maintenance.get_history(limit)

    async def run_background(self) -> None:
        """Sweep the verdict cache and maintain relations until cancelled."""
        self._ensure_initialized()
        assert self._cache is not None and self._maintenance is not None
        await asyncio.gather(
            sweep_forever(self._cache),
            self._maintenance.run_forever(),
        )

    async def health(self) -> dict[str, Any]:
        """Storage and arbitration status."""
        self._ensure_initialized()
        arbitration_ok = False
        if isinstance(self._arbitrator, OllamaArbitrator):
            arbitration_ok = await self._arbitrator.health_check()
        elif self._arbitrator is not None:
            arbitration_ok = True
        return {
            "db_path": str(self.storage.db_path),
            "vec_available": self.storage.vec_available,
            "arbitration_available": arbitration_ok,
            "cache_backend": self._config.arbitration.cache_backend,
            "tables": await self.storage.table_counts(),
        }
