"""Application wiring and the server main loop."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from containers_up.config import Settings, get_settings
from containers_up.deploy.pull_restart import PullRestartExecutor
from containers_up.deploy.squash import SquashScheduler
from containers_up.hosts import HostRegistry
from containers_up.jobs.admission import AdmissionController
from containers_up.jobs.postgres import PostgresStore
from containers_up.jobs.store import MemoryStore
from containers_up.logging import get_logger, setup_logging
from containers_up.models import BotType, HostConfig
from containers_up.notifications import create_notifier
from containers_up.remote.docker import DockerClient
from containers_up.remote.exec import RemoteExecutor
from containers_up.updates.registry import RegistryClient
from containers_up.updates.scanner import ScanScheduler, UpdateScanner
from containers_up.webhook.server import WebhookServer

log = get_logger("containers_up.main")


def load_hosts(path: str) -> list[HostConfig]:
    """Read host snapshots from a JSON list."""
    raw: list[dict[str, Any]] = json.loads(Path(path).read_text(encoding="utf-8"))
    return [
        HostConfig(
            id=int(item["id"]),
            name=item["name"],
            ssh_host=item["ssh_host"],
            working_folder=item["working_folder"],
            repo=item.get("repo"),
            exclude_folders=item.get("exclude_folders"),
            bot_type=BotType(item.get("bot_type", BotType.DEPENDABOT)),
            squash_updates=bool(item.get("squash_updates", False)),
            webhook_secret=item.get("webhook_secret"),
        )
        for item in raw
    ]


@dataclass
class Components:
    """Everything the running service is made of."""

    store: MemoryStore | PostgresStore
    registry: HostRegistry
    squash: SquashScheduler
    registry_client: RegistryClient
    scans: ScanScheduler
    server: WebhookServer


def build_components(settings: Settings, store: MemoryStore | PostgresStore) -> Components:
    executor = RemoteExecutor(
        ssh_key_dir=settings.ssh_key_dir, timeout=settings.command_timeout_seconds
    )
    docker = DockerClient(executor)
    registry = HostRegistry()
    notifier = create_notifier(settings.notify_url, settings.app_url)

    squash = SquashScheduler(executor, store, registry, settings)
    pull_restart = PullRestartExecutor(executor, docker, store, settings, squash)
    controller = AdmissionController(
        store, store, pull_restart, registry, notifier, settings, docker=docker
    )

    registry_client = RegistryClient(settings)
    scanner = UpdateScanner(docker, registry_client, store, store, registry, notifier, settings)
    scans = ScanScheduler(scanner, store, settings.update_check_interval_minutes)

    server = WebhookServer(
        controller,
        scanner,
        store,
        store,
        store,
        require_compose_label=settings.require_compose_label,
        host=settings.webhook_host,
        port=settings.webhook_port,
    )
    return Components(
        store=store,
        registry=registry,
        squash=squash,
        registry_client=registry_client,
        scans=scans,
        server=server,
    )


async def open_store(settings: Settings) -> tuple[MemoryStore | PostgresStore, Any]:
    """Return the configured store and its pool (None for in-memory)."""
    if settings.database_url is None:
        hosts = load_hosts(settings.hosts_file) if settings.hosts_file else []
        log.info("memory_store_selected", hosts=len(hosts))
        return MemoryStore(hosts), None

    dsn = settings.database_url.get_secret_value()
    try:
        pool = await asyncpg.create_pool(dsn=dsn)
        log.info("postgres_pool_created", dsn=dsn.split("@")[-1])
    except (asyncpg.PostgresError, OSError) as exc:
        log.error("postgres_pool_creation_failed", error=str(exc))
        raise

    store = PostgresStore()
    await store.initialize(pool)
    return store, pool


async def run_server(settings: Settings | None = None) -> None:
    """Run the webhook server until cancelled."""
    settings = settings or get_settings()
    log.info(
        "starting_containers_up",
        environment=settings.environment,
        port=settings.webhook_port,
    )

    store, pool = await open_store(settings)
    components = build_components(settings, store)

    await components.server.start()
    components.scans.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        log.info("shutdown_requested")
    finally:
        await components.scans.stop()
        await components.server.stop()
        await components.registry.close()
        await components.squash.drain()
        await components.registry_client.aclose()
        if pool is not None:
            await pool.close()
        log.info("containers_up_stopped")


def main() -> None:
    """Configure logging and run the server."""
    setup_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        log.info("interrupted")
