"""Shared fixtures for the Containers Up test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from containers_up.config import Settings
from containers_up.hosts import HostRegistry
from containers_up.jobs.store import MemoryStore
from containers_up.models import BotType, HostConfig


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings isolated from any .env file."""

    def _make(**overrides: Any) -> Settings:
        return Settings(_env_file=None, **overrides)  # type: ignore[call-arg]

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings(queue_poll_seconds=0.01, squash_delay_minutes=0)


@pytest.fixture
def host() -> HostConfig:
    return HostConfig(
        id=1,
        name="prod",
        ssh_host="deploy@prod.example.com",
        working_folder="/srv/stack",
        repo="acme/stack",
        exclude_folders="(manual|test)",
        bot_type=BotType.DEPENDABOT,
        squash_updates=False,
        webhook_secret="s3cret",
    )


@pytest.fixture
def store(host: HostConfig) -> MemoryStore:
    return MemoryStore([host])


@pytest.fixture
async def registry() -> HostRegistry:
    reg = HostRegistry()
    yield reg
    await reg.close()
