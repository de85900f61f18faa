"""Webhook admission: eligibility, the per-host queue gate and job transitions.

One ``handle()`` call processes one pull-request event for one host:

* ``opened``            -> job ``open`` and a notification
* ``closed`` unmerged   -> job ``closed``
* ``closed`` merged     -> queue gate -> ``running`` -> pull and restart
                           -> ``completed`` (or ``failed`` on any error)

At most one job per host is ``running``: the running check and the
transition to ``running`` happen under the host's admission lock. Every
line logged while handling the event is written to the Log Store when
the call returns, whichever way it returns.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from containers_up.deploy.pull_restart import folder_from_title
from containers_up.errors import InvalidTransitionError, QueueTimeoutError
from containers_up.jobs.state import JobAction, next_status
from containers_up.jobs.store import save_logs
from containers_up.logging import EventLogger
from containers_up.models import BotType, Job, JobStatus
from containers_up.notifications import Notification

if TYPE_CHECKING:
    from containers_up.config import Settings
    from containers_up.deploy.pull_restart import PullRestartExecutor
    from containers_up.hosts import HostRegistry
    from containers_up.jobs.store import JobStore, LogStore
    from containers_up.models import HostConfig, WebhookEvent
    from containers_up.notifications import NotificationSink
    from containers_up.remote.docker import DockerClient


@dataclass
class _Admission:
    """Bookkeeping for one event being handled."""

    host: HostConfig
    event: WebhookEvent
    folder: str | None
    events: EventLogger
    job_id: int | None = None

    @property
    def repo_pr(self) -> str | None:
        repo = self.event.repo or self.host.repo
        if not repo or self.event.number is None:
            return None
        return f"{repo}#{self.event.number}"


class AdmissionController:
    """Drives update jobs from pull-request events."""

    def __init__(
        self,
        jobs: JobStore,
        logs: LogStore,
        executor: PullRestartExecutor,
        registry: HostRegistry,
        notifier: NotificationSink,
        settings: Settings,
        docker: DockerClient | None = None,
    ) -> None:
        self._jobs = jobs
        self._logs = logs
        self._executor = executor
        self._registry = registry
        self._notifier = notifier
        self._docker = docker
        self._max_wait = settings.max_queue_time_mins * 60
        self._poll_interval = settings.queue_poll_seconds
        self._cleanup = settings.cleanup_after_restart

    async def handle(
        self,
        event: WebhookEvent,
        host: HostConfig,
        *,
        event_name: str = "github-webhook",
        derive_folder: bool = True,
        manual: bool = False,
        folder: str | None = None,
    ) -> JobStatus | None:
        """Process *event* for *host*; return the job's final status, if any.

        A given *folder* wins over the one parsed from a dependabot title.
        """
        if folder is None and derive_folder and host.bot_type == BotType.DEPENDABOT:
            folder = folder_from_title(event.title)

        events = EventLogger(f"{event_name} {host.name} {folder or 'auto'}", host=host.name)
        run = _Admission(host=host, event=event, folder=folder, events=events)
        events.info(
            "webhook_received",
            action=event.action,
            merged=event.merged,
            title=event.title,
            manual=manual,
        )

        try:
            if not await self._eligible(run, manual):
                return None
            return await self._dispatch(run)
        except InvalidTransitionError as exc:
            events.warning("event_dropped", reason=str(exc))
            return None
        finally:
            await save_logs(self._logs, events.drain(host.id, run.job_id))

    # ------------------------------------------------------------------
    # Gate and dispatch
    # ------------------------------------------------------------------

    async def _eligible(self, run: _Admission, manual: bool) -> bool:
        if manual:
            return True

        keyword = run.host.bot_keyword
        if keyword in (run.event.body or "").lower():
            return True

        # Closing a PR the bot opened earlier carries no bot text in the body
        if run.event.action == "closed":
            existing = await self._jobs.get_by_title(run.host.id, run.event.title)
            if existing is not None:
                return True

        run.events.info(
            "no_action_required",
            working_folder=run.host.working_folder,
            action=run.event.action,
            merged=run.event.merged,
            bot=keyword,
        )
        return False

    async def _dispatch(self, run: _Admission) -> JobStatus | None:
        action = run.event.action
        if action == "opened":
            status = await self._transition(run, JobAction.OPEN)
            await self._notify_opened(run)
            return status

        if action == "closed":
            if not run.event.merged:
                return await self._transition(run, JobAction.CLOSE)
            return await self._restart(run)

        run.events.info("action_ignored", action=action)
        return None

    async def _restart(self, run: _Admission) -> JobStatus:
        try:
            await self._wait_for_host(run)
        except QueueTimeoutError as exc:
            # Fails the row only while it is still queued
            status = await self._transition(run, JobAction.TIMEOUT)
            run.events.error("job_cancelled", reason=str(exc))
            return status

        try:
            await self._executor.run(run.folder, run.host, run.events)
        except Exception:
            run.events.exception("restart_failed")
            return await self._transition(run, JobAction.FAIL)

        if self._cleanup and self._docker is not None:
            await self._cleanup_host(run)
        return await self._transition(run, JobAction.COMPLETE)

    async def _cleanup_host(self, run: _Admission) -> None:
        assert self._docker is not None
        try:
            await self._docker.cleanup(run.host, run.events)
        except Exception:
            run.events.exception("cleanup_failed")

    # ------------------------------------------------------------------
    # Queue gate
    # ------------------------------------------------------------------

    async def _try_start(self, run: _Admission) -> bool:
        """Move the job to running if nothing else runs on the host."""
        lock = self._registry.state(run.host.id).admission_lock
        async with lock:
            running = await self._jobs.get_running_jobs(run.host.id)
            if running:
                return False
            await self._transition(run, JobAction.START)
            return True

    async def _wait_for_host(self, run: _Admission) -> None:
        """Start the job, queueing it while another job runs on the host.

        Raises ``QueueTimeoutError`` when the host stays busy for longer
        than the configured queue time.
        """
        if await self._try_start(run):
            return

        await self._transition(run, JobAction.QUEUE)
        run.events.info("waiting_for_running_jobs", max_wait_seconds=self._max_wait)

        started = time.monotonic()
        deadline = started + self._max_wait
        while time.monotonic() < deadline:
            await asyncio.sleep(self._poll_interval)
            if await self._try_start(run):
                run.events.info(
                    "running_jobs_completed", waited_seconds=round(time.monotonic() - started, 1)
                )
                return

        raise QueueTimeoutError(
            f"Waited {self._max_wait / 60:g} minutes for running jobs on {run.host.name}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(self, run: _Admission, action: JobAction) -> JobStatus:
        existing = await self._jobs.get_by_title(run.host.id, run.event.title)
        current = existing.status if existing is not None else None
        status = next_status(current, action)

        run.job_id = await self._jobs.upsert(
            Job(
                host_id=run.host.id,
                title=run.event.title,
                status=status,
                folder=run.folder,
                repo_pr=run.repo_pr,
            )
        )
        run.events.info("job_status", job_id=run.job_id, status=status.value)
        return status

    async def _notify_opened(self, run: _Admission) -> None:
        message = run.event.body or ""
        if run.event.url:
            message = f"{message}\n\n{run.event.url}"
        await self._notifier.send(
            Notification(
                host_name=run.host.name,
                subject=f"{run.event.title} on {run.host.name}",
                message=message,
            )
        )
