"""Detect newer image digests for the compose services running on a host.

A scan compares each running service's local repo digest with the digest
its tag resolves to in the registry and opens one job per out-of-date
image and compose unit. Registry failures are logged and read as "no
update" for that image; the scan carries on with the rest.
"""

from __future__ import annotations

import asyncio
import contextlib
import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from containers_up.errors import RegistryError
from containers_up.jobs.state import JobAction, can_apply
from containers_up.jobs.store import save_logs
from containers_up.logging import EventLogger, get_logger
from containers_up.models import Job, JobStatus, UpdateCandidate
from containers_up.notifications import Notification
from containers_up.utils import gather_limited, timed_operation

if TYPE_CHECKING:
    from containers_up.config import Settings
    from containers_up.hosts import HostRegistry
    from containers_up.jobs.store import HostProvider, JobStore, LogStore
    from containers_up.models import HostConfig
    from containers_up.notifications import NotificationSink
    from containers_up.remote.docker import DockerClient, Platform
    from containers_up.updates.registry import RegistryClient, RemoteDigest

log = get_logger("containers_up.updates.scanner")

SCAN_EVENT = "update-check"


@dataclass
class _ImageUsage:
    """One distinct image on the host and the compose files running it."""

    image: str
    local_digest: str
    compose_files: list[str] = field(default_factory=list)


class UpdateScanner:
    """Compares running images with their registry tags."""

    def __init__(
        self,
        docker: DockerClient,
        registry: RegistryClient,
        jobs: JobStore,
        logs: LogStore,
        hosts: HostRegistry,
        notifier: NotificationSink,
        settings: Settings,
    ) -> None:
        self._docker = docker
        self._registry = registry
        self._jobs = jobs
        self._logs = logs
        self._hosts = hosts
        self._notifier = notifier
        self._concurrency = settings.registry_concurrency

    async def scan(
        self, host: HostConfig, only_image: str | None = None
    ) -> list[UpdateCandidate] | None:
        """Scan *host*; return the candidates found, or None if the scan did not run."""
        events = EventLogger(SCAN_EVENT, host=host.name)

        if not self._hosts.try_begin_scan(host.id):
            events.info("update_check_already_running")
            await save_logs(self._logs, events.drain(host.id))
            return None

        try:
            async with timed_operation("update_check_finished", log=events):
                return await self._scan(host, only_image, events)
        except Exception:
            events.exception("update_check_failed")
            return None
        finally:
            self._hosts.end_scan(host.id)
            await save_logs(self._logs, events.drain(host.id))

    async def _scan(
        self, host: HostConfig, only_image: str | None, events: EventLogger
    ) -> list[UpdateCandidate]:
        usages = await self._collect_images(host, only_image, events)
        if not usages:
            events.info("no_images_to_check", only_image=only_image)
            return []

        platform = await self._docker.server_platform(host, events)
        events.info("checking_images", count=len(usages), platform=str(platform))

        async def _lookup(usage: _ImageUsage) -> tuple[_ImageUsage, RemoteDigest | None]:
            return usage, await self._remote_digest(usage.image, platform, events)

        resolved = await gather_limited(usages.values(), self._concurrency, _lookup)

        candidates: list[UpdateCandidate] = []
        for usage, remote in resolved:
            if remote is None or remote.matches(usage.local_digest):
                continue
            candidate = UpdateCandidate(
                image_name=usage.image,
                local_digest=usage.local_digest,
                remote_digest=remote.digest,
            )
            events.info(
                "update_available",
                image=usage.image,
                local=candidate.short_local,
                remote=candidate.short_remote,
            )
            candidates.append(candidate)
            await self._open_jobs(host, candidate, usage.compose_files, events)
        return candidates

    async def _collect_images(
        self, host: HostConfig, only_image: str | None, events: EventLogger
    ) -> dict[str, _ImageUsage]:
        services = await self._docker.composed_services(host)
        usages: dict[str, _ImageUsage] = {}
        missing: set[str] = set()

        for compose_file, composed in services.items():
            for service in composed:
                if only_image and service.image != only_image:
                    continue
                if service.image in missing:
                    continue

                usage = usages.get(service.image)
                if usage is None:
                    digest = await self._docker.local_image_digest(
                        host, service.image_id, events
                    )
                    if not digest:
                        events.warning("image_without_digest", image=service.image)
                        missing.add(service.image)
                        continue
                    usage = usages[service.image] = _ImageUsage(service.image, digest)

                if compose_file not in usage.compose_files:
                    usage.compose_files.append(compose_file)
        return usages

    async def _remote_digest(
        self, image: str, platform: Platform, events: EventLogger
    ) -> RemoteDigest | None:
        try:
            return await self._registry.digest(image, platform)
        except RegistryError as exc:
            events.error("remote_digest_failed", image=image, error=str(exc))
        except Exception:
            events.exception("remote_digest_failed", image=image)
        return None

    async def _open_jobs(
        self,
        host: HostConfig,
        candidate: UpdateCandidate,
        compose_files: list[str],
        events: EventLogger,
    ) -> None:
        for compose_file in compose_files:
            folder = "/" + posixpath.dirname(compose_file)
            title = candidate.title(folder)

            existing = await self._jobs.get_by_title(host.id, title)
            current = existing.status if existing is not None else None
            if not can_apply(current, JobAction.OPEN):
                events.info("update_job_busy", title=title, status=current)
                continue

            job_id = await self._jobs.upsert(
                Job(host_id=host.id, title=title, status=JobStatus.OPEN, folder=folder)
            )
            events.info("update_job_opened", job_id=job_id, title=title)

        await self._notifier.send(
            Notification(
                host_name=host.name,
                subject=f"Update available for {candidate.image_name} on {host.name}",
                message=(
                    f"{candidate.image_name}: `{candidate.short_local}` -> "
                    f"`{candidate.short_remote}`"
                ),
            )
        )


class ScanScheduler:
    """Periodically scans every host."""

    def __init__(
        self, scanner: UpdateScanner, hosts: HostProvider, interval_minutes: float
    ) -> None:
        self._scanner = scanner
        self._hosts = hosts
        self._interval = interval_minutes * 60
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0:
            log.info("periodic_update_check_disabled")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="update-check")
        log.info("periodic_update_check_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.scan_all()

    async def scan_all(self) -> None:
        """Scan every configured host; hosts are independent."""
        hosts = await self._hosts.list_hosts()
        await asyncio.gather(*(self._scanner.scan(host) for host in hosts))
