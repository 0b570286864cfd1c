"""Periodic relation maintenance.

:meth:`MaintenanceEngine.run` keeps the relation table small and useful.
It runs independently of relation computation, in order:

1. **Prune weak** -- delete relations scoring below ``relations.prune_below``.
2. **Cap per source** -- keep only the ``relations.max_per_source``
   strongest relations of each source memory.
3. **Prune stale** -- delete relations older than
   ``relations.stale_after_days`` that score below ``relations.stale_below``.
4. **Sweep cache** -- drop expired arbitration verdicts.
5. **Log** -- write a summary row to ``maintenance_log``.

Each step runs on its own; a failing step is logged and the remaining
steps still run, so the next scheduled run simply retries.  Only one
process maintains at a time (advisory lock ``relation-maintenance``).

Usage::

    engine = MaintenanceEngine(storage, relations, cache)
    result = await engine.run(dry_run=True)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from memorymesh.arbitration import ArbitrationCache
from memorymesh.config import get_config
from memorymesh.relations import RelationStore, stale_cutoff
from memorymesh.storage import Storage, utcnow

logger = logging.getLogger(__name__)

_LOCK_NAME = "relation-maintenance"


@dataclass
class MaintenanceResult:
    """Summary of a single maintenance run.

    Attributes
    ----------
    pruned_weak:
        Relations removed for scoring below the prune threshold.
    evicted:
        Relations removed by the per-source cap.
    pruned_stale:
        Old, weak relations removed.
    cache_swept:
        Expired arbitration verdicts removed.
    errors:
        Names of steps that failed.
    skipped:
        Another process held the maintenance lock.
    dry_run:
        Whether this was a preview run (counts only, no deletes).
    """

    pruned_weak: int = 0
    evicted: int = 0
    pruned_stale: int = 0
    cache_swept: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    dry_run: bool = False

    @property
    def total_removed(self) -> int:
        return self.pruned_weak + self.evicted + self.pruned_stale

    def to_dict(self) -> dict[str, Any]:
        return {
            "pruned_weak": self.pruned_weak,
            "evicted": self.evicted,
            "pruned_stale": self.pruned_stale,
            "cache_swept": self.cache_swept,
            "total_removed": self.total_removed,
            "errors": list(self.errors),
            "skipped": self.skipped,
            "dry_run": self.dry_run,
        }


class MaintenanceEngine:
    """Runs relation cleanup under an advisory lock.

    Parameters
    ----------
    storage:
        An initialised :class:`~memorymesh.storage.Storage` instance.
    relations:
        The :class:`~memorymesh.relations.RelationStore` to clean.
    cache:
        Optional arbitration cache swept as the fourth step.
    """

    def __init__(
        self,
        storage: Storage,
        relations: RelationStore,
        cache: ArbitrationCache | None = None,
    ) -> None:
        self._storage = storage
        self._relations = relations
        self._cache = cache
        self._cfg = get_config().relations

    async def run(self, dry_run: bool = False) -> MaintenanceResult:
        """Run every maintenance step once.

        Parameters
        ----------
        dry_run:
            Count what would be removed without deleting anything.
        """
        result = MaintenanceResult(dry_run=dry_run)
        holder = uuid.uuid4().hex

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        if not await self._storage.execute_transaction(_try_lock):
            logger.warning("Relation maintenance already in progress; skipping")
            result.skipped = True
            return result

        try:
            await self._step("prune_weak", result, self._prune_weak)
            await self._step("evict_excess", result, self._evict_excess)
            await self._step("prune_stale", result, self._prune_stale)
            await self._step("sweep_cache", result, self._sweep_cache)
            if not dry_run:
                await self._step("log", result, self._log)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release)

        logger.info(
            "Relation maintenance %scomplete: weak=%d evicted=%d stale=%d cache=%d errors=%d",
            "(dry-run) " if dry_run else "",
            result.pruned_weak,
            result.evicted,
            result.pruned_stale,
            result.cache_swept,
            len(result.errors),
        )
        return result

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        """Run maintenance every *interval_seconds* until cancelled."""
        interval = interval_seconds or self._cfg.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run()
            except sqlite3.Error as exc:
                logger.warning("Relation maintenance could not run: %s", exc)

    async def get_history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent ``maintenance_log`` entries, newest first."""
        rows = await self._storage.execute(
            "SELECT id, action, details, created_at FROM maintenance_log "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        entries: list[dict[str, Any]] = []
        for row in rows:
            try:
                details = json.loads(row["details"]) if row["details"] else None
            except (json.JSONDecodeError, TypeError):
                details = row["details"]
            entries.append(
                {
                    "id": row["id"],
                    "action": row["action"],
                    "details": details,
                    "created_at": row["created_at"],
                }
            )
        return entries

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _step(self, name: str, result: MaintenanceResult, fn) -> None:
        try:
            await fn(result)
        except Exception as exc:
            logger.warning("Maintenance step %s failed: %s", name, exc, exc_info=True)
            result.errors.append(name)

    async def _prune_weak(self, result: MaintenanceResult) -> None:
        if result.dry_run:
            result.pruned_weak = await self._relations.count_where(
                score_below=self._cfg.prune_below
            )
        else:
            result.pruned_weak = await self._relations.delete_where(
                score_below=self._cfg.prune_below
            )

    async def _evict_excess(self, result: MaintenanceResult) -> None:
        if result.dry_run:
            result.evicted = await self._relations.count_excess(self._cfg.max_per_source)
        else:
            result.evicted = await self._relations.evict_excess(self._cfg.max_per_source)

    async def _prune_stale(self, result: MaintenanceResult) -> None:
        cutoff = stale_cutoff(self._cfg.stale_after_days)
        if result.dry_run:
            result.pruned_stale = await self._relations.count_where(
                score_below=self._cfg.stale_below, older_than=cutoff
            )
        else:
            result.pruned_stale = await self._relations.delete_where(
                score_below=self._cfg.stale_below, older_than=cutoff
            )

    async def _sweep_cache(self, result: MaintenanceResult) -> None:
        if self._cache is None or result.dry_run:
            return
        result.cache_swept = await self._cache.sweep()

    async def _log(self, result: MaintenanceResult) -> None:
        await self._storage.execute_write(
            "INSERT INTO maintenance_log (action, details, created_at) VALUES (?, ?, ?)",
            ("maintenance", json.dumps(result.to_dict()), utcnow()),
        )
