"""Squash consecutive dependency-bot commits on a host's remote branch.

The engine works purely through git plumbing on the host (see
``containers_up.remote.git``) and runs in three phases before a
``--force-with-lease`` push:

A. Collapse HEAD into HEAD~1 while HEAD~1 was authored by a bot.
B. Normalize HEAD's message when the previous commit is old or is not an
   update commit (no history rewrite, only an amend).
C. Keep at most ``max_update_commits`` consecutive update commits by merging
   the two oldest of the newest ``max + 1`` and replaying the rest with their
   original trees and author dates.

The engine assumes nobody else pushes to the branch while it runs.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import TYPE_CHECKING, Protocol

from containers_up.jobs.store import save_logs
from containers_up.logging import EventLogger, get_logger
from containers_up.remote.git import RemoteGit

if TYPE_CHECKING:
    from containers_up.config import Settings
    from containers_up.hosts import HostRegistry
    from containers_up.jobs.store import LogStore
    from containers_up.models import CommitMetadata, HostConfig
    from containers_up.remote.exec import RemoteExecutor

log = get_logger("containers_up.deploy.squash")

BOT_AUTHOR_RE = re.compile(r"dependabot|renovate", re.IGNORECASE)
MAX_SQUASH_LOOPS = 50
_DAY_MS = 24 * 60 * 60 * 1000


class GitPlumbing(Protocol):
    """The subset of ``RemoteGit`` the engine needs."""

    async def status_porcelain(self) -> str: ...

    async def commit_metadata(self, rev: str = "HEAD", skip: int = 0) -> CommitMetadata | None: ...

    async def log_subjects(self, count: int) -> list[str]: ...

    async def current_branch(self) -> str: ...

    async def branch_remote(self, branch: str) -> str: ...

    async def reset_soft(self, count: int) -> None: ...

    async def reset_hard(self, ref: str) -> None: ...

    async def commit(
        self, message: str, *, amend: bool = False, author_date: str | None = None
    ) -> None: ...

    async def commit_tree(
        self, tree: str, message: str, author_date: str, parent: str = "HEAD"
    ) -> str: ...

    async def push_force_with_lease(self, remote: str, branch: str) -> None: ...


def build_message(marker: str, *parts: str) -> str:
    """Prefix *marker* to the lines of *parts* that do not already carry it."""
    lines = [
        line
        for part in parts
        if part
        for line in part.splitlines()
        if line.strip() and marker not in line
    ]
    return f"{marker}\n\n" + "\n".join(lines) if lines else marker


def plain_message(subject: str, body: str) -> str:
    return f"{subject}\n\n{body}" if body else subject


class CommitSquasher:
    """Rewrites a host's branch history to bound bot update commits."""

    def __init__(
        self,
        marker: str = "Update dependencies",
        days_ago: int = 5,
        max_update_commits: int = 5,
        max_loops: int = MAX_SQUASH_LOOPS,
    ) -> None:
        self.marker = marker
        self.days_ago = days_ago
        self.max_update_commits = max_update_commits
        self.max_loops = max_loops

    async def squash(self, git: GitPlumbing, events: EventLogger) -> bool:
        """Run all phases and push; False when skipped for a dirty worktree."""
        events.info("squash_started")

        if await git.status_porcelain():
            events.info("squash_skipped_uncommitted_changes")
            return False

        loops = await self.collapse_bot_pairs(git, events)
        if loops >= self.max_loops:
            events.warning("squash_loop_limit_reached", limit=self.max_loops)

        await self.touch_up_head(git, events)
        await self.compact_window(git, events)
        await self.push(git, events)

        events.info("squash_finished")
        return True

    # ------------------------------------------------------------------
    # Phase A
    # ------------------------------------------------------------------

    async def collapse_bot_pairs(self, git: GitPlumbing, events: EventLogger) -> int:
        """Squash HEAD into HEAD~1 while HEAD~1 is a bot commit; return squash count."""
        squashed = 0
        while squashed < self.max_loops:
            head = await git.commit_metadata("HEAD")
            previous = await git.commit_metadata("HEAD", skip=1)
            if head is None or previous is None:
                break
            if not BOT_AUTHOR_RE.search(previous.author_name):
                break

            events.info("squashing_last_two_commits", previous_author=previous.author_name)
            message = build_message(self.marker, head.subject, head.body, previous.body)
            await git.reset_soft(2)
            await git.commit(message, author_date=previous.author_date)
            squashed += 1
        return squashed

    # ------------------------------------------------------------------
    # Phase B
    # ------------------------------------------------------------------

    async def touch_up_head(self, git: GitPlumbing, events: EventLogger) -> bool:
        """Amend HEAD's message when the previous commit is old or not an update."""
        head = await git.commit_metadata("HEAD")
        if head is None:
            return False
        previous = await git.commit_metadata("HEAD", skip=1)

        cutoff_ms = int(time.time() * 1000) - self.days_ago * _DAY_MS
        if previous is not None and previous.timestamp_ms >= cutoff_ms and (
            self.marker in previous.subject
        ):
            return False

        events.info("updating_current_commit_message")
        await git.commit(build_message(self.marker, head.subject, head.body), amend=True)
        return True

    # ------------------------------------------------------------------
    # Phase C
    # ------------------------------------------------------------------

    async def compact_window(self, git: GitPlumbing, events: EventLogger) -> bool:
        """Merge the two oldest of the newest ``max + 1`` update commits."""
        window = self.max_update_commits + 1
        subjects = await git.log_subjects(window)
        if len(subjects) < window or not all(self.marker in s for s in subjects):
            return False

        events.info(
            "squashing_oldest_update_commits",
            window=window,
            max_update_commits=self.max_update_commits,
        )

        # Capture everything before rewriting; index 0 is the oldest
        commits: list[CommitMetadata] = []
        for offset in range(window - 1, -1, -1):
            commit = await git.commit_metadata(f"HEAD~{offset}")
            if commit is None:
                events.warning("squash_window_commit_missing", offset=offset)
                return False
            commits.append(commit)

        oldest, second = commits[0], commits[1]
        merged_message = build_message(
            self.marker, oldest.subject, oldest.body, second.subject, second.body
        )

        await git.reset_hard(f"HEAD~{window}")
        new_hash = await git.commit_tree(second.tree_hash, merged_message, oldest.author_date)
        await git.reset_hard(new_hash)

        for commit in commits[2:]:
            new_hash = await git.commit_tree(
                commit.tree_hash, plain_message(commit.subject, commit.body), commit.author_date
            )
            await git.reset_hard(new_hash)
        return True

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(self, git: GitPlumbing, events: EventLogger) -> None:
        branch = await git.current_branch()
        remote = await git.branch_remote(branch)
        events.info("pushing_branch", branch=branch, remote=remote)
        await git.push_force_with_lease(remote, branch)


class SquashScheduler:
    """Debounced per-host squash runs.

    A new ``schedule()`` for a host cancels that host's pending timer. Once a
    timer fires, the squash is no longer pending and runs to completion.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        logs: LogStore,
        registry: HostRegistry,
        settings: Settings,
        squasher: CommitSquasher | None = None,
    ) -> None:
        self._exec = executor
        self._logs = logs
        self._registry = registry
        self._delay = settings.squash_delay_minutes * 60
        self._squasher = squasher or CommitSquasher(
            marker=settings.squash_update_message,
            days_ago=settings.squash_days_ago,
            max_update_commits=settings.squash_max_update_commits,
        )
        self._running: set[asyncio.Task[None]] = set()

    @property
    def delay_seconds(self) -> float:
        return self._delay

    def schedule(self, host: HostConfig, delay: float | None = None) -> asyncio.Task[None] | None:
        """(Re)start the squash timer for *host*."""
        if self._registry.closed:
            log.info("squash_not_scheduled_shutting_down", host=host.name)
            return None

        wait = self._delay if delay is None else delay
        task = asyncio.create_task(self._delayed(host, wait), name=f"squash-{host.name}")
        if self._registry.replace_squash_task(host.id, task):
            log.info("squash_timer_replaced", host=host.name)
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _delayed(self, host: HostConfig, wait: float) -> None:
        await asyncio.sleep(wait)
        current = asyncio.current_task()
        if current is not None:
            self._registry.clear_squash_task(host.id, current)
        await self.run(host)

    async def run(self, host: HostConfig) -> bool:
        """Squash *host* now; failures are logged and never raised."""
        events = EventLogger(f"squash {host.name}", host=host.name)
        try:
            git = RemoteGit(self._exec, host, events)
            return await self._squasher.squash(git, events)
        except Exception:
            events.exception("squash_failed")
            return False
        finally:
            await save_logs(self._logs, events.drain(host.id))

    async def drain(self) -> None:
        """Wait for squashes already past their delay to finish."""
        active = [task for task in self._running if not task.done()]
        if active:
            await asyncio.gather(*active, return_exceptions=True)
