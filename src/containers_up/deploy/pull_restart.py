"""Pull the host's repository and restart the compose units a merge touched.

Lifecycle of one run:
1. ``git pull --prune`` in the working folder
2. Use the folder named by the PR title when its compose file exists
3. Otherwise diff HEAD~1..HEAD for changed compose files
4. Restart every affected unit not matched by the host's exclusion regex
5. Schedule a debounced squash of bot commits when enabled for the host

Any failing remote command aborts the run and propagates to the caller.
"""

from __future__ import annotations

import posixpath
import re
import shlex
from typing import TYPE_CHECKING

from containers_up.remote.docker import file_excluded, is_compose_filename

if TYPE_CHECKING:
    from containers_up.config import Settings
    from containers_up.deploy.squash import SquashScheduler
    from containers_up.jobs.store import JobStore
    from containers_up.logging import EventLogger
    from containers_up.models import HostConfig
    from containers_up.remote.docker import DockerClient
    from containers_up.remote.exec import RemoteExecutor

_FOLDER_RE = re.compile(r" in (.*)")


def folder_from_title(title: str) -> str | None:
    """Extract the folder a dependabot PR title targets.

    ``"Bump foo from 1 to 2 in /apps/foo"`` -> ``"/apps/foo"``; titles
    without ``" in "`` apply repo-wide and yield None.
    """
    match = _FOLDER_RE.search(title)
    return match.group(1) if match else None


def affected_compose_files(changed_files: list[str]) -> list[str]:
    """Compose files among *changed_files*, one per parent directory."""
    seen: set[str] = set()
    compose_files: list[str] = []
    for path in changed_files:
        if not is_compose_filename(path):
            continue
        parent = posixpath.dirname(path)
        if parent in seen:
            continue
        seen.add(parent)
        compose_files.append(path)
    return compose_files


class PullRestartExecutor:
    """Runs the pull-and-restart sequence for one merged update."""

    def __init__(
        self,
        executor: RemoteExecutor,
        docker: DockerClient,
        jobs: JobStore,
        settings: Settings,
        squash_scheduler: SquashScheduler | None = None,
    ) -> None:
        self._exec = executor
        self._docker = docker
        self._jobs = jobs
        self._settings = settings
        self._squash = squash_scheduler

    async def run(self, folder: str | None, host: HostConfig, events: EventLogger) -> list[str]:
        """Pull and restart; return the compose files that were restarted."""
        working_folder = host.working_folder
        await self._exec.ssh_run(
            host, f"cd {shlex.quote(working_folder)} && git pull --prune", events=events
        )

        units = await self._units_for_folder(folder, host, events)
        if units is None:
            units = await self._units_from_diff(host, events)

        restarted: list[str] = []
        for relative in units:
            if file_excluded(relative, host.exclude_folders):
                events.info("compose_file_excluded", compose_file=relative)
                continue
            await self._docker.restart_compose(
                host,
                relative,
                events,
                pull_first=self._settings.pull_before_restart,
                detach_marker=self._settings.self_compose_marker,
            )
            restarted.append(relative)

        await self._maybe_schedule_squash(host, events)
        return restarted

    async def _units_for_folder(
        self, folder: str | None, host: HostConfig, events: EventLogger
    ) -> list[str] | None:
        """The compose file in the PR's folder, or None when there is none."""
        if not folder:
            return None

        relative = posixpath.join(folder.strip("/"), self._settings.compose_filename)
        absolute = posixpath.join(host.working_folder, relative)
        if not await self._exec.path_exists(host, absolute, events=events):
            events.info("compose_file_missing", compose_file=absolute)
            return None
        return [relative]

    async def _units_from_diff(self, host: HostConfig, events: EventLogger) -> list[str]:
        result = await self._exec.ssh_run(
            host,
            f"cd {shlex.quote(host.working_folder)} && git diff --name-only HEAD~1 HEAD",
            events=events,
        )
        changed = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        units = affected_compose_files(changed)
        if not units:
            events.info("no_compose_files_changed", changed=len(changed))
        return units

    async def _maybe_schedule_squash(self, host: HostConfig, events: EventLogger) -> None:
        if not host.squash_updates or self._squash is None:
            return

        # The job being finished is still running here, so one means "only us"
        pending = await self._jobs.get_incomplete_jobs_with_pr(host.id)
        if len(pending) > 1:
            events.info("squash_deferred", pending_prs=len(pending))
            return

        self._squash.schedule(host)
        events.info("squash_scheduled", delay_minutes=self._settings.squash_delay_minutes)
