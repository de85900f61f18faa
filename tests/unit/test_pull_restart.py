"""Unit tests for the pull-and-restart executor."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from containers_up.deploy.pull_restart import (
    PullRestartExecutor,
    affected_compose_files,
    folder_from_title,
)
from containers_up.errors import RemoteCommandError
from containers_up.logging import EventLogger
from containers_up.models import CommandResult, Job, JobStatus
from containers_up.remote.docker import file_excluded


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0)


def _make_exec(folder_exists: bool = False, diff: str = "") -> MagicMock:
    """RemoteExecutor mock answering the commands the executor issues."""

    async def _ssh_run(host, command, *, check=True, events=None):
        if "git diff --name-only" in command:
            return _ok(diff)
        return _ok()

    executor = MagicMock()
    executor.ssh_run = AsyncMock(side_effect=_ssh_run)
    executor.path_exists = AsyncMock(return_value=folder_exists)
    return executor


def _commands(executor: MagicMock) -> list[str]:
    return [call.args[1] for call in executor.ssh_run.call_args_list]


@pytest.fixture
def docker():
    d = MagicMock()
    d.restart_compose = AsyncMock()
    return d


@pytest.fixture
def squash():
    s = MagicMock()
    s.schedule = MagicMock()
    return s


@pytest.fixture
def events():
    return EventLogger("test")


class TestFolderFromTitle:
    """Tests for folder_from_title()."""

    def test_extracts_folder(self):
        assert folder_from_title("Bump foo from 1 to 2 in /apps/foo") == "/apps/foo"

    def test_no_folder(self):
        assert folder_from_title("Bump foo from 1 to 2") is None

    def test_takes_everything_after_first_in(self):
        assert folder_from_title("Bump a in b from 1 to 2 in /x") == "b from 1 to 2 in /x"


class TestFileExcluded:
    """Tests for the exclusion regex check."""

    def test_matching_path_is_excluded(self):
        assert file_excluded("/apps/test", "(manual|test)") is True

    def test_non_matching_path_is_kept(self):
        assert file_excluded("/apps/prod", "(manual|test)") is False

    @pytest.mark.parametrize("pattern", [None, "", "null"])
    def test_empty_patterns_never_exclude(self, pattern):
        assert file_excluded("/apps/test", pattern) is False


class TestAffectedComposeFiles:
    """Tests for affected_compose_files()."""

    def test_keeps_compose_files_only(self):
        changed = ["README.md", "web/compose.yml", "db/docker-compose.yaml", "web/.env"]
        assert affected_compose_files(changed) == ["web/compose.yml", "db/docker-compose.yaml"]

    def test_dedupes_by_parent_directory(self):
        changed = ["web/compose.yml", "web/docker-compose.yml", "api/compose.yaml"]
        assert affected_compose_files(changed) == ["web/compose.yml", "api/compose.yaml"]

    def test_rejects_lookalikes(self):
        assert affected_compose_files(["web/mycompose.yml", "compose.yml.bak"]) == []


class TestPullRestartExecutor:
    """Tests for PullRestartExecutor.run()."""

    async def test_pulls_then_restarts_folder_unit(self, host, store, settings, docker, events):
        executor = _make_exec(folder_exists=True)
        runner = PullRestartExecutor(executor, docker, store, settings)

        restarted = await runner.run("/apps/web", host, events)

        commands = _commands(executor)
        assert commands[0] == "cd /srv/stack && git pull --prune"
        executor.path_exists.assert_awaited_once_with(
            host, "/srv/stack/apps/web/compose.yml", events=events
        )
        assert not any("git diff" in c for c in commands)
        assert restarted == ["apps/web/compose.yml"]
        docker.restart_compose.assert_awaited_once()
        args, kwargs = docker.restart_compose.call_args
        assert args[1] == "apps/web/compose.yml"
        assert kwargs["pull_first"] is True
        assert kwargs["detach_marker"] == "containers-up"

    async def test_falls_back_to_diff_when_folder_missing(
        self, host, store, settings, docker, events
    ):
        executor = _make_exec(folder_exists=False, diff="web/compose.yml\nweb/compose.yaml\n")
        runner = PullRestartExecutor(executor, docker, store, settings)

        restarted = await runner.run("/apps/gone", host, events)

        assert any("git diff --name-only HEAD~1 HEAD" in c for c in _commands(executor))
        assert restarted == ["web/compose.yml"]

    async def test_no_folder_uses_diff(self, host, store, settings, docker, events):
        executor = _make_exec(diff="api/docker-compose.yml")
        runner = PullRestartExecutor(executor, docker, store, settings)

        restarted = await runner.run(None, host, events)

        executor.path_exists.assert_not_awaited()
        assert restarted == ["api/docker-compose.yml"]

    async def test_excluded_units_are_skipped(self, host, store, settings, docker, events):
        executor = _make_exec(diff="apps/test/compose.yml\napps/prod/compose.yml")
        runner = PullRestartExecutor(executor, docker, store, settings)

        restarted = await runner.run(None, host, events)

        assert restarted == ["apps/prod/compose.yml"]
        assert docker.restart_compose.await_count == 1
        assert any("compose_file_excluded" in line[2] for line in events._entries)

    async def test_pull_failure_aborts(self, host, store, settings, docker, events):
        executor = MagicMock()
        executor.ssh_run = AsyncMock(
            side_effect=RemoteCommandError(
                "git pull", CommandResult(stdout="", stderr="conflict", exit_code=1)
            )
        )
        runner = PullRestartExecutor(executor, docker, store, settings)

        with pytest.raises(RemoteCommandError):
            await runner.run("/apps/web", host, events)
        docker.restart_compose.assert_not_awaited()

    async def test_restart_failure_stops_remaining_units(
        self, host, store, settings, docker, events
    ):
        executor = _make_exec(diff="a/compose.yml\nb/compose.yml")
        docker.restart_compose.side_effect = RemoteCommandError(
            "docker compose", CommandResult(stdout="", stderr="", exit_code=1)
        )
        runner = PullRestartExecutor(executor, docker, store, settings)

        with pytest.raises(RemoteCommandError):
            await runner.run(None, host, events)
        assert docker.restart_compose.await_count == 1

    async def test_pull_before_restart_is_configurable(
        self, host, store, make_settings, docker, events
    ):
        executor = _make_exec(folder_exists=True)
        runner = PullRestartExecutor(
            executor, docker, store, make_settings(pull_before_restart=False)
        )

        await runner.run("/a", host, events)

        assert docker.restart_compose.call_args.kwargs["pull_first"] is False


class TestSquashTrigger:
    """Post-restart squash scheduling."""

    async def test_schedules_when_enabled_and_alone(
        self, host, store, settings, docker, squash, events
    ):
        squashing = replace(host, squash_updates=True)
        await store.upsert(
            Job(host_id=host.id, title="t", status=JobStatus.RUNNING, repo_pr="acme/stack#1")
        )
        runner = PullRestartExecutor(_make_exec(), docker, store, settings, squash)

        await runner.run(None, squashing, events)

        squash.schedule.assert_called_once_with(squashing)

    async def test_deferred_while_other_prs_pending(
        self, host, store, settings, docker, squash, events
    ):
        squashing = replace(host, squash_updates=True)
        for number, status in ((1, JobStatus.RUNNING), (2, JobStatus.OPEN)):
            await store.upsert(
                Job(
                    host_id=host.id,
                    title=f"t{number}",
                    status=status,
                    repo_pr=f"acme/stack#{number}",
                )
            )
        runner = PullRestartExecutor(_make_exec(), docker, store, settings, squash)

        await runner.run(None, squashing, events)

        squash.schedule.assert_not_called()

    async def test_not_scheduled_when_disabled(
        self, host, store, settings, docker, squash, events
    ):
        runner = PullRestartExecutor(_make_exec(), docker, store, settings, squash)

        await runner.run(None, host, events)

        squash.schedule.assert_not_called()

    async def test_jobs_without_pr_do_not_count(
        self, host, store, settings, docker, squash, events
    ):
        squashing = replace(host, squash_updates=True)
        await store.upsert(Job(host_id=host.id, title="scan", status=JobStatus.OPEN))
        await store.upsert(
            Job(host_id=host.id, title="t", status=JobStatus.RUNNING, repo_pr="acme/stack#1")
        )
        runner = PullRestartExecutor(_make_exec(), docker, store, settings, squash)

        await runner.run(None, squashing, events)

        squash.schedule.assert_called_once()
