"""Core storage layer for the memory-mesh engine.

Manages a SQLite database holding captured memories, their embeddings, the
relation graph and the arbitration verdict cache.  The sqlite-vec extension
is used for cosine ranking when it loads.  All public methods are
async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections: each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from memorymesh.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    await store.execute_write("INSERT INTO relations ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from memorymesh.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats.

    Returns
    -------
    bytes
        Packed float32 values suitable for sqlite-vec functions.
    """
    return struct.pack(f"{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"{count}f", data))


def format_timestamp(moment: datetime) -> str:
    """Render *moment* as a fixed-width UTC ISO-8601 string.

    Every timestamp the engine writes goes through this function so that
    lexicographic comparison in SQL matches chronological order.  Naive
    datetimes are taken to be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime."""
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utcnow() -> str:
    """Current time via :func:`format_timestamp`."""
    return format_timestamp(datetime.now(tz=timezone.utc))


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Captured content records, written by the ingestion pipeline.
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT,
    summary TEXT,
    content TEXT,
    url TEXT,
    source TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

-- One vector per memory and facet (content / summary / title).
CREATE TABLE IF NOT EXISTS embeddings (
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    facet TEXT NOT NULL CHECK(facet IN ('content','summary','title')),
    owner_id TEXT NOT NULL,
    dims INTEGER NOT NULL,
    vector BLOB NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (memory_id, facet)
);

-- Directed, typed relations between memories.  At most one row per
-- ordered pair.
CREATE TABLE IF NOT EXISTS relations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    target_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    relation_type TEXT NOT NULL CHECK(relation_type IN ('semantic','topical','temporal')),
    score REAL NOT NULL CHECK(score >= 0.0 AND score <= 1.0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(source_id, target_id)
);

-- Shared arbitration verdicts (used by the sqlite cache backend).
CREATE TABLE IF NOT EXISTS arbitration_cache (
    cache_key TEXT PRIMARY KEY,
    verdict TEXT NOT NULL,
    stored_at REAL NOT NULL
);

-- Audit log for maintenance runs
CREATE TABLE IF NOT EXISTS maintenance_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_owner_created
    ON memories(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_embeddings_owner_facet
    ON embeddings(owner_id, facet);
CREATE INDEX IF NOT EXISTS idx_relations_source_score
    ON relations(source_id, score DESC);
CREATE INDEX IF NOT EXISTS idx_relations_target_score
    ON relations(target_id, score DESC);
CREATE INDEX IF NOT EXISTS idx_relations_created
    ON relations(created_at);
CREATE INDEX IF NOT EXISTS idx_arbitration_cache_stored
    ON arbitration_cache(stored_at);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the memory-mesh engine.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory and backup directory.
        2. Opens a connection with WAL mode and sqlite-vec loaded (if available).
        3. Creates all tables and indexes.
        4. Runs an automatic backup (pruning old backups).
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        # Probe for sqlite-vec support once at init time.
        self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.execute("ANALYZE")
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment.

        Returns ``True`` if the extension loaded and its distance functions
        answer, ``False`` otherwise.  The check runs once during
        :meth:`initialize` and is cached for the lifetime of the instance.
        """
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "similarity ranking will run in-process"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            conn.execute("SELECT vec_version()").fetchone()
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "similarity ranking will run in-process",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with:

        - WAL journal mode for concurrent reads.
        - Foreign key enforcement.
        - sqlite-vec extension loaded (when available).
        - Row factory set to :class:`sqlite3.Row` for dict-like access.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA cache_size=-64000")  # ~64 MB
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The number of rows changed by the statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  The framework handles commit
        on success and rollback on exception.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are automatically cleaned up
        before the acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute(
                "DELETE FROM locks WHERE name = ?",
                (name,),
            )

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        """Synchronous backup implementation."""
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"mesh_{timestamp}.db"

        # Use SQLite's online backup API for a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("mesh_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'          AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'embeddings',                COUNT(*)        FROM embeddings
            UNION ALL
            SELECT 'relations',                 COUNT(*)        FROM relations
            UNION ALL
            SELECT 'arbitration_cache',         COUNT(*)        FROM arbitration_cache
            UNION ALL
            SELECT 'maintenance_log',           COUNT(*)        FROM maintenance_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
