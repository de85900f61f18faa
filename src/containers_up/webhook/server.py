"""HTTP boundary: forge webhooks, manual restarts and update checks.

Endpoints:
    POST /api/webhook/github/host/{host}   GitHub pull-request events
    POST /api/webhook/forgejo/host/{host}  Forgejo pull-request events
    POST /api/host/{host}/update-check     Scan a host for image updates
    POST /api/jobs/{job_id}/restart        Replay a merge for an existing job
    GET  /health                           Liveness probe

Requests are validated synchronously; the pipeline work runs as a
background task so the forge gets its response straight away.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from aiohttp import web

from containers_up import __version__
from containers_up.errors import AuthError, ValidationError
from containers_up.logging import get_logger
from containers_up.models import BotType, LogEntry, WebhookEvent
from containers_up.webhook.payload import COMPOSE_LABEL, parse_payload
from containers_up.webhook.signature import SIGNATURE_HEADER, verify_signature

if TYPE_CHECKING:
    from containers_up.jobs.admission import AdmissionController
    from containers_up.jobs.store import HostProvider, JobStore, LogStore
    from containers_up.models import HostConfig
    from containers_up.updates.scanner import UpdateScanner

log = get_logger("containers_up.webhook.server")

FORGES = {
    "github": ("GitHub", "github-webhook", True),
    "forgejo": ("Forgejo", "forgejo-webhook", False),
}


class WebhookServer:
    """aiohttp application serving the webhook and job endpoints."""

    def __init__(
        self,
        controller: AdmissionController,
        scanner: UpdateScanner,
        jobs: JobStore,
        logs: LogStore,
        hosts: HostProvider,
        *,
        require_compose_label: bool = True,
        host: str = "0.0.0.0",  # nosec B104
        port: int = 3001,
        shutdown_grace_seconds: float = 30,
    ) -> None:
        self._controller = controller
        self._scanner = scanner
        self._jobs = jobs
        self._logs = logs
        self._hosts = hosts
        self._require_compose_label = require_compose_label
        self._host = host
        self._port = port
        self._grace = shutdown_grace_seconds
        self._runner: web.AppRunner | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/api/webhook/{forge}/host/{host}", self.handle_webhook)
        app.router.add_post("/api/host/{host}/update-check", self.handle_update_check)
        app.router.add_post("/api/jobs/{job_id}/restart", self.handle_restart)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("webhook_server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop accepting requests and give background work time to finish."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self._grace)
        for task in still_running:
            task.cancel()
        if still_running:
            log.warning("background_tasks_cancelled", count=len(still_running))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(
                "background_task_failed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "version": __version__})

    async def handle_webhook(self, request: web.Request) -> web.Response:
        forge = FORGES.get(request.match_info["forge"])
        if forge is None:
            return web.json_response({"message": "Unknown webhook source"}, status=404)
        label, event_name, derive_folder = forge

        host = await self._hosts.get_host_by_name(request.match_info["host"])
        if host is None:
            return web.json_response({"message": "Host not found"}, status=404)

        body = await request.read()
        try:
            verify_signature(host.webhook_secret, body, request.headers.get(SIGNATURE_HEADER))
            payload = parse_payload(body)
        except (AuthError, ValidationError) as exc:
            log.warning("webhook_rejected", host=host.name, source=label, reason=str(exc))
            return web.json_response({"message": str(exc)}, status=exc.status)

        if payload is None:
            await self._record_ping(host, label)
            return web.json_response({"message": "webhook ping received"})

        if (
            self._require_compose_label
            and host.bot_type == BotType.DEPENDABOT
            and COMPOSE_LABEL not in payload.label_names
        ):
            return web.json_response({"message": "Not a Docker Compose PR"}, status=400)

        event = payload.to_event()
        self._spawn(
            self._controller.handle(
                event, host, event_name=event_name, derive_folder=derive_folder
            ),
            name=f"{event_name}-{host.name}-{event.number}",
        )
        return web.json_response({"message": "webhook received"})

    async def handle_update_check(self, request: web.Request) -> web.Response:
        host = await self._hosts.get_host_by_name(request.match_info["host"])
        if host is None:
            return web.json_response({"message": "Host not found"}, status=404)

        only_image: str | None = None
        if request.can_read_body:
            try:
                data = await request.json()
            except ValueError:
                return web.json_response({"message": "Invalid JSON payload"}, status=400)
            if isinstance(data, dict) and data.get("image"):
                only_image = str(data["image"])

        self._spawn(self._scanner.scan(host, only_image), name=f"update-check-{host.name}")
        return web.json_response({"message": "update check started", "image": only_image})

    async def handle_restart(self, request: web.Request) -> web.Response:
        try:
            job_id = int(request.match_info["job_id"])
        except ValueError:
            return web.json_response({"message": "Invalid job id"}, status=400)

        job = await self._jobs.get(job_id)
        if job is None:
            return web.json_response({"message": "Job not found"}, status=404)
        host = await self._hosts.get_host(job.host_id)
        if host is None:
            return web.json_response({"message": "Host not found"}, status=404)

        event = WebhookEvent(
            action="closed",
            title=job.title,
            number=job.pr_number,
            merged=True,
        )
        self._spawn(
            self._controller.handle(
                event, host, event_name="job-restart", manual=True, folder=job.folder
            ),
            name=f"job-restart-{job_id}",
        )
        return web.json_response({"message": "restart started", "job": job.to_dict()})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record_ping(self, host: HostConfig, label: str) -> None:
        msg = f"{label} webhook ping received for host: {host.name}"
        log.info("webhook_ping", host=host.name, source=label)
        await self._logs.create(
            LogEntry(
                host_id=host.id,
                level=logging.INFO,
                time=datetime.now(UTC),
                event=f"{label} webhook ping",
                msg=msg,
            )
        )
