"""Database-polling job backends.

Two dialects share one table layout (``jobs`` and ``job_workers``):

- SQLite via the standard library ``sqlite3`` (run in a thread). Claims are
  serialized with ``BEGIN IMMEDIATE`` and a conditional ``UPDATE``.
- PostgreSQL via ``asyncpg``. Claims use ``FOR UPDATE SKIP LOCKED`` so
  concurrent workers never block on the same row.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager, closing
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List, Mapping, Optional, TypeVar
from urllib.parse import urlparse

from finjobs.core.errors import (
    BackendError,
    ClaimError,
    ConfigurationError,
    DuplicateJobError,
    JobNotFoundError,
)
from finjobs.core.job_queue.core import (
    Job,
    JobBackend,
    JobStatus,
    QueueStats,
    WorkerInfo,
    WorkerStatus,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLAIMABLE = "('PENDING', 'RETRYING')"
_ACTIVE = "('CLAIMED', 'RUNNING')"


def _loads(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def row_to_job(row: Mapping[str, Any]) -> Job:
    return Job(
        id=row["id"],
        job_type=row["job_type"],
        payload=_loads(row["payload"]) or {},
        status=JobStatus(row["status"]),
        priority=int(row["priority"]),
        attempt_count=int(row["attempt_count"]),
        max_attempts=int(row["max_attempts"]),
        assigned_worker_id=row["assigned_worker_id"],
        created_at=parse_timestamp(row["created_at"]) or utcnow(),
        available_at=parse_timestamp(row["available_at"]),
        claimed_at=parse_timestamp(row["claimed_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        result=_loads(row["result"]) if row["result"] is not None else None,
        error_message=row["error_message"],
    )


def row_to_worker(row: Mapping[str, Any]) -> WorkerInfo:
    return WorkerInfo(
        worker_id=row["worker_id"],
        hostname=row["hostname"],
        pid=int(row["pid"]),
        job_types=list(_loads(row["job_types"]) or []),
        max_concurrent_jobs=int(row["max_concurrent_jobs"]),
        status=WorkerStatus(row["status"]),
        started_at=parse_timestamp(row["started_at"]) or utcnow(),
        last_heartbeat_at=parse_timestamp(row["last_heartbeat_at"]) or utcnow(),
    )


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    assigned_worker_id TEXT,
    created_at REAL NOT NULL,
    available_at REAL,
    claimed_at REAL,
    completed_at REAL,
    result TEXT,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs (status, job_type, priority, created_at);
CREATE TABLE IF NOT EXISTS job_workers (
    worker_id TEXT PRIMARY KEY,
    hostname TEXT NOT NULL,
    pid INTEGER NOT NULL,
    job_types TEXT NOT NULL,
    max_concurrent_jobs INTEGER NOT NULL,
    status TEXT NOT NULL,
    started_at REAL NOT NULL,
    last_heartbeat_at REAL NOT NULL
);
"""


def _epoch(value: Any) -> Optional[float]:
    return value.timestamp() if value is not None else None


class SQLiteJobBackend(JobBackend):
    """Polling backend on a local SQLite file shared by worker processes."""

    name = "database"

    def __init__(self, db_path: str, busy_timeout: float = 30.0, **kwargs: Any):
        super().__init__(**kwargs)
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with closing(self._connect()) as conn:
                return func(conn)

        try:
            return await asyncio.to_thread(call)
        except sqlite3.Error as e:
            raise BackendError(f"SQLite error: {e}") from e

    @staticmethod
    def _transaction(conn: sqlite3.Connection, func: Callable[[], T]) -> T:
        conn.execute("BEGIN IMMEDIATE")
        try:
            value = func()
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        return value

    async def connect(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        def init(conn: sqlite3.Connection) -> None:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SQLITE_SCHEMA)

        await self._run(init)
        logger.info(f"SQLite job backend ready at {self.db_path}")

    async def enqueue(self, job: Job) -> Job:
        job = self.apply_defaults(job)
        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO jobs (id, job_type, payload, status, priority, attempt_count,"
                " max_attempts, created_at, available_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.job_type,
                    json.dumps(job.payload),
                    job.status.value,
                    job.priority,
                    job.attempt_count,
                    job.max_attempts,
                    _epoch(job.created_at),
                    _epoch(job.available_at),
                ),
            )

        try:
            await self._run(insert)
        except BackendError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise DuplicateJobError(f"Duplicate job id: {job.id}") from e
            raise
        logger.debug(f"Enqueued job {job.id} ({job.job_type})")
        return job

    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        def upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO job_workers (worker_id, hostname, pid, job_types,"
                " max_concurrent_jobs, status, started_at, last_heartbeat_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                " ON CONFLICT(worker_id) DO UPDATE SET hostname=excluded.hostname,"
                " pid=excluded.pid, job_types=excluded.job_types,"
                " max_concurrent_jobs=excluded.max_concurrent_jobs, status=excluded.status,"
                " last_heartbeat_at=excluded.last_heartbeat_at",
                (
                    worker_id,
                    info.hostname,
                    info.pid,
                    json.dumps(list(info.job_types)),
                    info.max_concurrent_jobs,
                    info.status.value,
                    _epoch(info.started_at),
                    _epoch(info.last_heartbeat_at),
                ),
            )

        await self._run(upsert)

    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        now = utcnow().timestamp()
        updated = await self._run(
            lambda conn: conn.execute(
                "UPDATE job_workers SET last_heartbeat_at = ? WHERE worker_id = ?",
                (now, worker_id),
            ).rowcount
        )
        if not updated:
            logger.warning(f"Heartbeat from unknown worker {worker_id}")
        return bool(updated)

    async def unregister_worker(self, worker_id: str) -> None:
        await self._run(
            lambda conn: conn.execute(
                "DELETE FROM job_workers WHERE worker_id = ?", (worker_id,)
            )
        )

    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        now = utcnow().timestamp()
        placeholders = ", ".join("?" for _ in job_types)

        def claim(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            def body() -> Optional[sqlite3.Row]:
                row = conn.execute(
                    f"SELECT id FROM jobs WHERE status IN {_CLAIMABLE}"
                    f" AND job_type IN ({placeholders})"
                    " AND (available_at IS NULL OR available_at <= ?)"
                    " ORDER BY priority DESC, created_at ASC LIMIT 1",
                    (*job_types, now),
                ).fetchone()
                if row is None:
                    return None
                updated = conn.execute(
                    "UPDATE jobs SET status = 'CLAIMED', assigned_worker_id = ?,"
                    " claimed_at = ?, attempt_count = attempt_count + 1"
                    f" WHERE id = ? AND status IN {_CLAIMABLE}",
                    (worker_id, now, row["id"]),
                ).rowcount
                if updated != 1:
                    return None
                return conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()

            return self._transaction(conn, body)

        row = await self._run(claim)
        return row_to_job(row) if row else None

    @staticmethod
    def _owned_row(conn: sqlite3.Connection, job_id: str, worker_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if row["assigned_worker_id"] != worker_id or row["status"] not in ("CLAIMED", "RUNNING"):
            raise ClaimError(
                f"Worker {worker_id} does not hold the claim on job {job_id}",
                details={"holder": row["assigned_worker_id"], "status": row["status"]},
            )
        return row

    async def start_job(self, job_id: str, worker_id: str) -> None:
        def start(conn: sqlite3.Connection) -> None:
            def body() -> None:
                self._owned_row(conn, job_id, worker_id)
                conn.execute("UPDATE jobs SET status = 'RUNNING' WHERE id = ?", (job_id,))

            self._transaction(conn, body)

        await self._run(start)

    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        now = utcnow().timestamp()
        encoded = json.dumps(result, default=str)

        def complete(conn: sqlite3.Connection) -> None:
            def body() -> None:
                self._owned_row(conn, job_id, worker_id)
                conn.execute(
                    "UPDATE jobs SET status = 'COMPLETED', result = ?, error_message = NULL,"
                    " assigned_worker_id = NULL, completed_at = ? WHERE id = ?",
                    (encoded, now, job_id),
                )

            self._transaction(conn, body)

        await self._run(complete)

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        now = utcnow()

        def fail(conn: sqlite3.Connection) -> JobStatus:
            def body() -> JobStatus:
                job = row_to_job(self._owned_row(conn, job_id, worker_id))
                status = self.retry_policy.next_status(job, retryable)
                if status == JobStatus.RETRYING:
                    retry_at = now + timedelta(seconds=self.retry_policy.next_delay(job.attempt_count))
                    conn.execute(
                        "UPDATE jobs SET status = 'RETRYING', assigned_worker_id = NULL,"
                        " error_message = ?, available_at = ? WHERE id = ?",
                        (error_message, retry_at.timestamp(), job_id),
                    )
                else:
                    conn.execute(
                        "UPDATE jobs SET status = 'FAILED', assigned_worker_id = NULL,"
                        " error_message = ?, completed_at = ? WHERE id = ?",
                        (error_message, now.timestamp(), job_id),
                    )
                return status

            return self._transaction(conn, body)

        return await self._run(fail)

    async def get_job(self, job_id: str) -> Optional[Job]:
        row = await self._run(
            lambda conn: conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        )
        return row_to_job(row) if row else None

    async def list_workers(self) -> List[WorkerInfo]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT * FROM job_workers ORDER BY started_at"
            ).fetchall()
        )
        return [row_to_worker(row) for row in rows]

    async def get_stats(self) -> QueueStats:
        cutoff = utcnow().timestamp() - self.stale_after

        def stats(conn: sqlite3.Connection) -> QueueStats:
            by_status = {
                row[0]: row[1]
                for row in conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
            }
            by_type = {
                row[0]: row[1]
                for row in conn.execute("SELECT job_type, COUNT(*) FROM jobs GROUP BY job_type")
            }
            counts = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(last_heartbeat_at < ?), 0) FROM job_workers",
                (cutoff,),
            ).fetchone()
            return QueueStats(
                by_status=by_status,
                by_type=by_type,
                workers=int(counts[0]),
                stale_workers=int(counts[1]),
            )

        return await self._run(stats)

    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        threshold = self.stale_after if stale_after is None else stale_after
        now = utcnow().timestamp()

        def sweep(conn: sqlite3.Connection) -> List[str]:
            def body() -> List[str]:
                conn.execute(
                    "DELETE FROM job_workers WHERE last_heartbeat_at < ?", (now - threshold,)
                )
                rows = conn.execute(
                    f"SELECT id FROM jobs WHERE status IN {_ACTIVE} AND (assigned_worker_id IS NULL"
                    " OR assigned_worker_id NOT IN (SELECT worker_id FROM job_workers))"
                ).fetchall()
                ids = [row["id"] for row in rows]
                for job_id in ids:
                    conn.execute(
                        "UPDATE jobs SET assigned_worker_id = NULL, error_message = 'worker lost',"
                        " status = CASE WHEN attempt_count < max_attempts THEN 'RETRYING' ELSE 'FAILED' END,"
                        " available_at = CASE WHEN attempt_count < max_attempts THEN ? ELSE available_at END,"
                        " completed_at = CASE WHEN attempt_count < max_attempts THEN completed_at ELSE ? END"
                        " WHERE id = ?",
                        (now, now, job_id),
                    )
                return ids

            return self._transaction(conn, body)

        return await self._run(sweep)

    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        cutoff = (utcnow() - timedelta(days=older_than_days)).timestamp()
        return await self._run(
            lambda conn: conn.execute(
                "DELETE FROM jobs WHERE status IN ('COMPLETED', 'FAILED') AND completed_at < ?",
                (cutoff,),
            ).rowcount
        )


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    assigned_worker_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    available_at TIMESTAMPTZ,
    claimed_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    result JSONB,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs (status, job_type, priority DESC, created_at);
CREATE TABLE IF NOT EXISTS job_workers (
    worker_id TEXT PRIMARY KEY,
    hostname TEXT NOT NULL,
    pid INTEGER NOT NULL,
    job_types JSONB NOT NULL,
    max_concurrent_jobs INTEGER NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    last_heartbeat_at TIMESTAMPTZ NOT NULL
);
"""


class PostgresJobBackend(JobBackend):
    """Polling backend on PostgreSQL using an asyncpg pool."""

    name = "database"

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 5,
        pool: Any = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Any = pool
        self._owns_pool = pool is None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            import asyncpg
        except ImportError as e:
            raise ConfigurationError("asyncpg package not installed") from e
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_size, max_size=self.max_size
            )
            async with self._pool.acquire() as conn:
                await conn.execute(POSTGRES_SCHEMA)
        except (OSError, asyncpg.PostgresError) as e:
            raise BackendError(f"PostgreSQL connection failed: {e}") from e
        logger.info("PostgreSQL job backend connected")

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> Any:
        if self._pool is None:
            raise BackendError("PostgreSQL backend is not connected")
        return self._pool

    @asynccontextmanager
    async def _errors(self, job_id: Optional[str] = None) -> AsyncIterator[None]:
        """Re-raise driver errors as queue errors."""
        import asyncpg

        try:
            yield
        except asyncpg.UniqueViolationError as e:
            raise DuplicateJobError(f"Duplicate job id: {job_id}") from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise BackendError(f"PostgreSQL error: {e}") from e

    async def enqueue(self, job: Job) -> Job:
        job = self.apply_defaults(job)
        async with self._errors(job.id):
            await self._require_pool().execute(
                "INSERT INTO jobs (id, job_type, payload, status, priority, attempt_count,"
                " max_attempts, created_at, available_at)"
                " VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8, $9)",
                job.id,
                job.job_type,
                json.dumps(job.payload),
                job.status.value,
                job.priority,
                job.attempt_count,
                job.max_attempts,
                job.created_at,
                job.available_at,
            )
        logger.debug(f"Enqueued job {job.id} ({job.job_type})")
        return job

    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        async with self._errors():
            await self._require_pool().execute(
                "INSERT INTO job_workers (worker_id, hostname, pid, job_types, max_concurrent_jobs,"
                " status, started_at, last_heartbeat_at) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)"
                " ON CONFLICT (worker_id) DO UPDATE SET hostname = EXCLUDED.hostname,"
                " pid = EXCLUDED.pid, job_types = EXCLUDED.job_types,"
                " max_concurrent_jobs = EXCLUDED.max_concurrent_jobs, status = EXCLUDED.status,"
                " last_heartbeat_at = EXCLUDED.last_heartbeat_at",
                worker_id,
                info.hostname,
                info.pid,
                json.dumps(list(info.job_types)),
                info.max_concurrent_jobs,
                info.status.value,
                info.started_at,
                info.last_heartbeat_at,
            )

    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        async with self._errors():
            status = await self._require_pool().execute(
                "UPDATE job_workers SET last_heartbeat_at = now() WHERE worker_id = $1", worker_id
            )
        updated = status.endswith(" 1")
        if not updated:
            logger.warning(f"Heartbeat from unknown worker {worker_id}")
        return updated

    async def unregister_worker(self, worker_id: str) -> None:
        async with self._errors():
            await self._require_pool().execute(
                "DELETE FROM job_workers WHERE worker_id = $1", worker_id
            )

    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        async with self._errors():
            row = await self._require_pool().fetchrow(
                "UPDATE jobs SET status = 'CLAIMED', assigned_worker_id = $1, claimed_at = now(),"
                " attempt_count = attempt_count + 1"
                " WHERE id = ("
                f"   SELECT id FROM jobs WHERE status IN {_CLAIMABLE} AND job_type = ANY($2::text[])"
                "   AND (available_at IS NULL OR available_at <= now())"
                "   ORDER BY priority DESC, created_at ASC LIMIT 1 FOR UPDATE SKIP LOCKED"
                " ) RETURNING *",
                worker_id,
                job_types,
            )
        return row_to_job(row) if row else None

    async def _owned(self, conn: Any, job_id: str, worker_id: str) -> Job:
        row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id)
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        job = row_to_job(row)
        if job.assigned_worker_id != worker_id or job.status not in (JobStatus.CLAIMED, JobStatus.RUNNING):
            raise ClaimError(
                f"Worker {worker_id} does not hold the claim on job {job_id}",
                details={"holder": job.assigned_worker_id, "status": job.status.value},
            )
        return job

    async def start_job(self, job_id: str, worker_id: str) -> None:
        async with self._errors(), self._require_pool().acquire() as conn:
            async with conn.transaction():
                await self._owned(conn, job_id, worker_id)
                await conn.execute("UPDATE jobs SET status = 'RUNNING' WHERE id = $1", job_id)

    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        async with self._errors(), self._require_pool().acquire() as conn:
            async with conn.transaction():
                await self._owned(conn, job_id, worker_id)
                await conn.execute(
                    "UPDATE jobs SET status = 'COMPLETED', result = $2::jsonb, error_message = NULL,"
                    " assigned_worker_id = NULL, completed_at = now() WHERE id = $1",
                    job_id,
                    json.dumps(result, default=str),
                )

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        async with self._errors(), self._require_pool().acquire() as conn:
            async with conn.transaction():
                job = await self._owned(conn, job_id, worker_id)
                status = self.retry_policy.next_status(job, retryable)
                if status == JobStatus.RETRYING:
                    await conn.execute(
                        "UPDATE jobs SET status = 'RETRYING', assigned_worker_id = NULL,"
                        " error_message = $2, available_at = now() + make_interval(secs => $3)"
                        " WHERE id = $1",
                        job_id,
                        error_message,
                        self.retry_policy.next_delay(job.attempt_count),
                    )
                else:
                    await conn.execute(
                        "UPDATE jobs SET status = 'FAILED', assigned_worker_id = NULL,"
                        " error_message = $2, completed_at = now() WHERE id = $1",
                        job_id,
                        error_message,
                    )
                return status

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._errors():
            row = await self._require_pool().fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
        return row_to_job(row) if row else None

    async def list_workers(self) -> List[WorkerInfo]:
        async with self._errors():
            rows = await self._require_pool().fetch("SELECT * FROM job_workers ORDER BY started_at")
        return [row_to_worker(row) for row in rows]

    async def get_stats(self) -> QueueStats:
        pool = self._require_pool()
        async with self._errors():
            by_status = await pool.fetch("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
            by_type = await pool.fetch("SELECT job_type, COUNT(*) AS n FROM jobs GROUP BY job_type")
            workers = await pool.fetchrow(
                "SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE last_heartbeat_at <"
                " now() - make_interval(secs => $1)) AS stale FROM job_workers",
                float(self.stale_after),
            )
        return QueueStats(
            by_status={r["status"]: r["n"] for r in by_status},
            by_type={r["job_type"]: r["n"] for r in by_type},
            workers=workers["total"],
            stale_workers=workers["stale"],
        )

    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        threshold = float(self.stale_after if stale_after is None else stale_after)
        async with self._errors(), self._require_pool().acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM job_workers WHERE last_heartbeat_at < now() - make_interval(secs => $1)",
                    threshold,
                )
                rows = await conn.fetch(
                    "UPDATE jobs SET assigned_worker_id = NULL, error_message = 'worker lost',"
                    " status = CASE WHEN attempt_count < max_attempts THEN 'RETRYING' ELSE 'FAILED' END,"
                    " available_at = CASE WHEN attempt_count < max_attempts THEN now() ELSE available_at END,"
                    " completed_at = CASE WHEN attempt_count < max_attempts THEN completed_at ELSE now() END"
                    f" WHERE status IN {_ACTIVE} AND (assigned_worker_id IS NULL"
                    " OR assigned_worker_id NOT IN (SELECT worker_id FROM job_workers))"
                    " RETURNING id"
                )
        return [row["id"] for row in rows]

    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        async with self._errors():
            status = await self._require_pool().execute(
                "DELETE FROM jobs WHERE status IN ('COMPLETED', 'FAILED')"
                " AND completed_at < now() - make_interval(days => $1)",
                int(older_than_days),
            )
        return int(status.split()[-1])


def sqlite_path_from_url(url: str) -> str:
    """``sqlite:///relative.db`` -> ``relative.db``; ``sqlite:////abs.db`` -> ``/abs.db``."""
    path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url[len("sqlite://"):]
    if not path or path == ":memory:":
        raise ConfigurationError("SQLite backend needs a file path shared by all workers")
    return path


def create_database_backend(url: str, **kwargs: Any) -> JobBackend:
    scheme = urlparse(url).scheme
    if scheme == "sqlite":
        busy_timeout = kwargs.pop("busy_timeout", 30.0)
        kwargs.pop("min_size", None)
        kwargs.pop("max_size", None)
        return SQLiteJobBackend(sqlite_path_from_url(url), busy_timeout=busy_timeout, **kwargs)
    if scheme in ("postgres", "postgresql"):
        kwargs.pop("busy_timeout", None)
        return PostgresJobBackend(url, **kwargs)
    raise ConfigurationError(f"Unsupported database URL scheme: {scheme or url}")
