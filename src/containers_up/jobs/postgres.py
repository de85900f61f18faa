"""PostgreSQL storage for jobs, logs and host configuration.

Follows the asyncpg.Pool pattern: construct, ``await initialize(pool)``,
then use the async methods. The ``host`` table is only read here; hosts are
managed elsewhere.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from containers_up.logging import get_logger
from containers_up.models import BotType, HostConfig, Job, JobStatus, LogEntry

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("containers_up.jobs.postgres")

# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS host (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    ssh_host TEXT NOT NULL,
    repo TEXT,
    webhook_secret TEXT,
    working_folder TEXT NOT NULL,
    exclude_folders TEXT,
    bot_type TEXT NOT NULL DEFAULT 'dependabot',
    squash_updates BOOLEAN NOT NULL DEFAULT FALSE,
    created TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS job (
    id SERIAL PRIMARY KEY,
    host_id INTEGER NOT NULL,
    repo_pr TEXT,
    folder TEXT,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    created TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (host_id, title)
);

CREATE TABLE IF NOT EXISTS log (
    id SERIAL PRIMARY KEY,
    job_id INTEGER,
    host_id INTEGER NOT NULL,
    level INTEGER NOT NULL,
    time TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    event TEXT NOT NULL,
    msg TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_host_status ON job (host_id, status);
CREATE INDEX IF NOT EXISTS idx_log_job ON log (job_id, time DESC);
CREATE INDEX IF NOT EXISTS idx_log_host ON log (host_id, time DESC);
"""

_UPSERT_JOB = """
INSERT INTO job (host_id, repo_pr, folder, title, status)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (host_id, title) DO UPDATE SET
    repo_pr = COALESCE(EXCLUDED.repo_pr, job.repo_pr),
    folder = EXCLUDED.folder,
    status = EXCLUDED.status,
    updated = NOW()
RETURNING id
"""


def _row_to_job(row: Any) -> Job:
    return Job(
        id=row["id"],
        host_id=row["host_id"],
        repo_pr=row["repo_pr"],
        folder=row["folder"],
        title=row["title"],
        status=JobStatus(row["status"]),
        created_at=row["created"],
        updated_at=row["updated"],
    )


def _row_to_host(row: Any) -> HostConfig:
    return HostConfig(
        id=row["id"],
        name=row["name"],
        ssh_host=row["ssh_host"],
        working_folder=row["working_folder"],
        repo=row["repo"],
        exclude_folders=row["exclude_folders"],
        bot_type=BotType(row["bot_type"]),
        squash_updates=row["squash_updates"],
        webhook_secret=row["webhook_secret"],
    )


class PostgresStore:
    """PostgreSQL implementation of JobStore, LogStore and HostProvider."""

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("job_storage_initialized")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresStore.initialize() has not been called")
        return self._pool

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def upsert(self, job: Job) -> int:
        async with self.pool.acquire() as conn:
            job_id = await conn.fetchval(
                _UPSERT_JOB,
                job.host_id,
                job.repo_pr,
                job.folder,
                job.title,
                job.status.value,
            )
        return int(job_id)

    async def get(self, job_id: int) -> Job | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM job WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def get_by_title(self, host_id: int, title: str) -> Job | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM job WHERE host_id = $1 AND title = $2", host_id, title
            )
        return _row_to_job(row) if row else None

    async def get_running_jobs(self, host_id: int) -> list[Job]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job WHERE host_id = $1 AND status = $2",
                host_id,
                JobStatus.RUNNING.value,
            )
        return [_row_to_job(r) for r in rows]

    async def get_incomplete_jobs_with_pr(self, host_id: int) -> list[Job]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM job
                WHERE host_id = $1 AND repo_pr IS NOT NULL AND repo_pr <> ''
                  AND status = ANY($2::text[])
                ORDER BY updated DESC
                """,
                host_id,
                [JobStatus.OPEN.value, JobStatus.QUEUED.value, JobStatus.RUNNING.value],
            )
        return [_row_to_job(r) for r in rows]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def create(self, entry: LogEntry) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO log (job_id, host_id, level, time, event, msg)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                entry.job_id,
                entry.host_id,
                entry.level,
                entry.time,
                entry.event,
                entry.msg,
            )

    # ------------------------------------------------------------------
    # Hosts (read-only)
    # ------------------------------------------------------------------

    async def get_host(self, host_id: int) -> HostConfig | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM host WHERE id = $1", host_id)
        return _row_to_host(row) if row else None

    async def get_host_by_name(self, name: str) -> HostConfig | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM host WHERE name = $1", name)
        return _row_to_host(row) if row else None

    async def list_hosts(self) -> list[HostConfig]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM host ORDER BY name")
        return [_row_to_host(r) for r in rows]
