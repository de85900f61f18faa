"""Storage interfaces for jobs, logs and host configuration.

The pipeline only depends on the protocols below. ``MemoryStore`` is the
single-process implementation used by tests and by deployments without a
database; ``containers_up.jobs.postgres.PostgresStore`` is the durable one.
"""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import UTC, datetime
from typing import Protocol

from containers_up.models import HostConfig, Job, JobStatus, LogEntry

INCOMPLETE_STATUSES = (JobStatus.OPEN, JobStatus.QUEUED, JobStatus.RUNNING)


class JobStore(Protocol):
    async def upsert(self, job: Job) -> int: ...

    async def get(self, job_id: int) -> Job | None: ...

    async def get_by_title(self, host_id: int, title: str) -> Job | None: ...

    async def get_running_jobs(self, host_id: int) -> list[Job]: ...

    async def get_incomplete_jobs_with_pr(self, host_id: int) -> list[Job]: ...


class LogStore(Protocol):
    async def create(self, entry: LogEntry) -> None: ...


class HostProvider(Protocol):
    async def get_host(self, host_id: int) -> HostConfig | None: ...

    async def get_host_by_name(self, name: str) -> HostConfig | None: ...

    async def list_hosts(self) -> list[HostConfig]: ...


class MemoryStore:
    """In-process job, log and host store."""

    def __init__(self, hosts: list[HostConfig] | None = None) -> None:
        self._jobs: dict[int, Job] = {}
        self._logs: list[LogEntry] = []
        self._hosts: dict[int, HostConfig] = {host.id: host for host in hosts or []}
        self._job_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def upsert(self, job: Job) -> int:
        """Insert or update the job identified by (host_id, title)."""
        now = datetime.now(UTC)
        existing = await self.get_by_title(job.host_id, job.title)
        if existing is None:
            job_id = next(self._job_ids)
            self._jobs[job_id] = replace(job, id=job_id, created_at=now, updated_at=now)
            return job_id

        assert existing.id is not None
        self._jobs[existing.id] = replace(
            existing,
            status=job.status,
            folder=job.folder,
            repo_pr=job.repo_pr or existing.repo_pr,
            updated_at=now,
        )
        return existing.id

    async def get(self, job_id: int) -> Job | None:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def get_by_title(self, host_id: int, title: str) -> Job | None:
        for job in self._jobs.values():
            if job.host_id == host_id and job.title == title:
                return replace(job)
        return None

    async def get_running_jobs(self, host_id: int) -> list[Job]:
        return [
            replace(job)
            for job in self._jobs.values()
            if job.host_id == host_id and job.status == JobStatus.RUNNING
        ]

    async def get_incomplete_jobs_with_pr(self, host_id: int) -> list[Job]:
        return [
            replace(job)
            for job in self._jobs.values()
            if job.host_id == host_id and job.repo_pr and job.status in INCOMPLETE_STATUSES
        ]

    async def list_jobs(self, host_id: int | None = None) -> list[Job]:
        return [
            replace(job)
            for job in self._jobs.values()
            if host_id is None or job.host_id == host_id
        ]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def create(self, entry: LogEntry) -> None:
        self._logs.append(replace(entry, id=next(self._log_ids)))

    async def list_logs(
        self, host_id: int | None = None, job_id: int | None = None
    ) -> list[LogEntry]:
        return [
            entry
            for entry in self._logs
            if (host_id is None or entry.host_id == host_id)
            and (job_id is None or entry.job_id == job_id)
        ]

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    def add_host(self, host: HostConfig) -> None:
        self._hosts[host.id] = host

    async def get_host(self, host_id: int) -> HostConfig | None:
        return self._hosts.get(host_id)

    async def get_host_by_name(self, name: str) -> HostConfig | None:
        for host in self._hosts.values():
            if host.name == name:
                return host
        return None

    async def list_hosts(self) -> list[HostConfig]:
        return list(self._hosts.values())


async def save_logs(store: LogStore, entries: list[LogEntry]) -> None:
    """Write captured log lines in order."""
    for entry in entries:
        await store.create(entry)
