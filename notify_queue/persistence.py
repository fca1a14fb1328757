"""SQLite backed persistence used by the notification queue."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

JOB_COLUMNS = (
    "id",
    "queue",
    "kind",
    "user_id",
    "payload",
    "priority",
    "respect_quiet_hours",
    "requested_delay_ms",
    "effective_dispatch_at",
    "attempt",
    "max_attempts",
    "state",
    "created_at",
    "last_attempt_at",
    "terminal_at",
    "error",
    "error_code",
    "batch_id",
)

_UPDATABLE = frozenset(JOB_COLUMNS) - {"id", "kind", "created_at"}


class JobStore:
    """Helper class responsible for reading and writing queue state.

    Every method opens its own connection, so the store can be shared by all
    worker tasks. State changes are compare-and-swap updates guarded by the
    state the caller expects the job to be in.
    """

    def __init__(self, db_path: str = "/data/notify_queue.db"):
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    queue TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    user_id TEXT,
                    payload TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    respect_quiet_hours INTEGER NOT NULL DEFAULT 1,
                    requested_delay_ms INTEGER NOT NULL DEFAULT 0,
                    effective_dispatch_at INTEGER,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    state TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    last_attempt_at INTEGER,
                    terminal_at INTEGER,
                    error TEXT,
                    error_code TEXT,
                    batch_id TEXT,
                    reported_at INTEGER
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_poll ON jobs(queue, state, effective_dispatch_at)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS transitions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    from_state TEXT,
                    to_state TEXT NOT NULL,
                    at INTEGER NOT NULL,
                    metadata TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_transitions_job ON transitions(job_id)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS batches (
                    id TEXT PRIMARY KEY,
                    total_recipients INTEGER NOT NULL,
                    chunks INTEGER NOT NULL,
                    failures TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    async def insert_job(self, record: Dict[str, Any]) -> None:
        """Insert a new job row built by :meth:`JobEnvelope.to_record`."""
        placeholders = ",".join("?" for _ in JOB_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                tuple(record.get(col) for col in JOB_COLUMNS),
            )
            await db.commit()

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {', '.join(JOB_COLUMNS)}, reported_at FROM jobs WHERE id=?",
                (job_id,),
            ) as cur:
                row = await cur.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def update_job(self, job_id: str, expected_state: str, changes: Dict[str, Any]) -> bool:
        """Apply ``changes`` only if the job is still in ``expected_state``.

        Returns ``True`` when the row was updated.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job columns: {', '.join(sorted(unknown))}")
        if not changes:
            return False
        assignments = ", ".join(f"{col}=?" for col in changes)
        params: Tuple[Any, ...] = (*changes.values(), job_id, expected_state)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE jobs SET {assignments} WHERE id=? AND state=?",
                params,
            )
            await db.commit()
            return cursor.rowcount > 0

    async def claim_next(self, queue: str, now: int) -> Optional[Dict[str, Any]]:
        """Atomically move the best eligible job of ``queue`` to ``dispatching``.

        Candidates are scheduled jobs already due, ordered by priority
        (highest first), then dispatch time, then insertion order. The
        selection and the state swap run inside one ``BEGIN IMMEDIATE``
        transaction so concurrent claimers never obtain the same job.
        The returned row reflects the claimed state with ``attempt`` already
        incremented.
        """
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    f"""
                    SELECT {', '.join(JOB_COLUMNS)}
                    FROM jobs
                    WHERE queue=? AND state='scheduled' AND effective_dispatch_at <= ?
                      AND attempt < max_attempts
                    ORDER BY priority DESC, effective_dispatch_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    (queue, now),
                ) as cur:
                    row = await cur.fetchone()
                    cols = [c[0] for c in cur.description]
                if row is None:
                    await db.execute("COMMIT")
                    return None
                job = dict(zip(cols, row))
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET state='dispatching', attempt=attempt + 1, last_attempt_at=?
                    WHERE id=? AND state='scheduled' AND attempt < max_attempts
                    """,
                    (now, job["id"]),
                )
                if cursor.rowcount != 1:
                    await db.execute("ROLLBACK")
                    return None
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        job["state"] = "dispatching"
        job["attempt"] = int(job["attempt"]) + 1
        job["last_attempt_at"] = now
        return job

    async def next_dispatch_at(self, queue: str) -> Optional[int]:
        """Return the earliest ``effective_dispatch_at`` among scheduled jobs."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT MIN(effective_dispatch_at) FROM jobs WHERE queue=? AND state='scheduled'",
                (queue,),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row and row[0] is not None else None

    async def list_jobs(
        self,
        *,
        queue: Optional[str] = None,
        state: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return jobs for inspection purposes, newest first."""
        query = f"SELECT {', '.join(JOB_COLUMNS)}, reported_at FROM jobs"
        clauses: List[str] = []
        params: List[Any] = []
        if queue:
            clauses.append("queue=?")
            params.append(queue)
        if state:
            clauses.append("state=?")
            params.append(state)
        if batch_id:
            clauses.append("batch_id=?")
            params.append(batch_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def count_by_state(self, *, batch_id: Optional[str] = None) -> Dict[str, int]:
        query = "SELECT state, COUNT(*) FROM jobs"
        params: Tuple[Any, ...] = ()
        if batch_id:
            query += " WHERE batch_id=?"
            params = (batch_id,)
        query += " GROUP BY state"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    async def queue_stats(self, queue: str, now: int) -> Dict[str, int]:
        """Count the jobs of ``queue`` per admin bucket.

        Each job falls into exactly one bucket: waiting (due, not claimed),
        delayed (not yet due), active (being delivered) or one of the
        terminal buckets.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT
                    SUM(CASE WHEN state IN ('queued', 'scheduled')
                              AND COALESCE(effective_dispatch_at, 0) <= ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN state IN ('queued', 'scheduled')
                              AND COALESCE(effective_dispatch_at, 0) > ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN state='dispatching' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN state='sent' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN state='failed' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN state='cancelled' THEN 1 ELSE 0 END)
                FROM jobs
                WHERE queue=?
                """,
                (now, now, queue),
            ) as cur:
                row = await cur.fetchone()
        keys = ("waiting", "delayed", "active", "sent", "failed", "cancelled")
        if row is None:
            return dict.fromkeys(keys, 0)
        return {key: int(value or 0) for key, value in zip(keys, row)}

    async def count_pending(self) -> Dict[str, int]:
        """Return the number of non-terminal jobs per queue."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT queue, COUNT(*) FROM jobs
                WHERE state IN ('queued', 'scheduled', 'dispatching')
                GROUP BY queue
                """
            ) as cur:
                rows = await cur.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    # Transitions --------------------------------------------------------------
    async def insert_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        at: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO transitions (job_id, from_state, to_state, at, metadata) VALUES (?, ?, ?, ?, ?)",
                (job_id, from_state, to_state, at, json.dumps(metadata) if metadata else None),
            )
            await db.commit()

    async def list_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT from_state, to_state, at, metadata
                FROM transitions
                WHERE job_id=?
                ORDER BY seq ASC
                """,
                (job_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = []
        for row in rows:
            item = dict(zip(cols, row))
            item["metadata"] = json.loads(item["metadata"]) if item["metadata"] else {}
            result.append(item)
        return result

    # Batches ------------------------------------------------------------------
    async def insert_batch(
        self,
        batch_id: str,
        total_recipients: int,
        chunks: int,
        failures: List[Dict[str, Any]],
        created_at: int,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO batches (id, total_recipients, chunks, failures, created_at) VALUES (?, ?, ?, ?, ?)",
                (batch_id, total_recipients, chunks, json.dumps(failures, default=str), created_at),
            )
            await db.commit()

    async def get_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, total_recipients, chunks, failures, created_at FROM batches WHERE id=?",
                (batch_id,),
            ) as cur:
                row = await cur.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cur.description]
        batch = dict(zip(cols, row))
        batch["failures"] = json.loads(batch["failures"])
        return batch

    # Reporting / retention ----------------------------------------------------
    async def fetch_reports(self, limit: int) -> List[Dict[str, Any]]:
        """Return terminal jobs that were not reported to monitoring yet."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {', '.join(JOB_COLUMNS)}
                FROM jobs
                WHERE reported_at IS NULL
                  AND state IN ('sent', 'failed', 'cancelled')
                ORDER BY terminal_at ASC, rowid ASC
                LIMIT ?
                """,
                (limit,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def mark_reported(self, job_ids: Iterable[str], reported_at: int) -> None:
        ids = [jid for jid in job_ids if jid]
        if not ids:
            return
        placeholders = ",".join("?" for _ in ids)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE jobs SET reported_at=? WHERE id IN ({placeholders})",
                (reported_at, *ids),
            )
            await db.commit()

    async def remove_terminal_before(self, threshold: int, *, reported_only: bool = False) -> int:
        """Delete terminal jobs finished before ``threshold`` with their transitions."""
        condition = "state IN ('sent', 'failed', 'cancelled') AND terminal_at IS NOT NULL AND terminal_at < ?"
        if reported_only:
            condition += " AND reported_at IS NOT NULL"
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"DELETE FROM transitions WHERE job_id IN (SELECT id FROM jobs WHERE {condition})",
                (threshold,),
            )
            cursor = await db.execute(f"DELETE FROM jobs WHERE {condition}", (threshold,))
            await db.commit()
            return cursor.rowcount
