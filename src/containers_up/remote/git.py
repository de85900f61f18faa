"""Git plumbing on a host's working folder over SSH.

There is no local checkout: each method is one serialized command in the
remote repository. Commit messages travel base64-encoded so no shell
quoting is ever applied to message text.
"""

from __future__ import annotations

import base64
import shlex
from typing import TYPE_CHECKING

from containers_up.models import CommitMetadata

if TYPE_CHECKING:
    from containers_up.logging import EventLogger
    from containers_up.models import HostConfig
    from containers_up.remote.exec import RemoteExecutor

_FIELD_SEP = "\x1f"
_METADATA_FORMAT = "%x1f".join(["%s", "%b", "%an", "%aI", "%at", "%T"])


def _piped_message(message: str) -> str:
    encoded = base64.b64encode(message.encode("utf-8")).decode("ascii")
    return f"echo {shlex.quote(encoded)} | base64 -d"


class RemoteGit:
    """Plumbing commands against one host's repository."""

    def __init__(self, executor: RemoteExecutor, host: HostConfig, events: EventLogger) -> None:
        self._exec = executor
        self._host = host
        self._events = events

    async def _git(self, command: str) -> str:
        result = await self._exec.ssh_run(
            self._host,
            f"cd {shlex.quote(self._host.working_folder)} && {command}",
            events=self._events,
        )
        return result.stdout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def status_porcelain(self) -> str:
        return (await self._git("git status --porcelain")).strip()

    async def commit_metadata(self, rev: str = "HEAD", skip: int = 0) -> CommitMetadata | None:
        """Read one commit's metadata; None when the commit does not exist."""
        skip_flag = f"--skip={skip} " if skip > 0 else ""
        output = await self._git(
            f"git log -1 {skip_flag}--format={shlex.quote(_METADATA_FORMAT)} {shlex.quote(rev)}"
        )
        if not output.strip():
            return None

        fields = output.split(_FIELD_SEP)
        if len(fields) != 6:
            raise ValueError(f"Unexpected git log output for {rev}: {output[:200]!r}")
        subject, body, author_name, author_date, timestamp, tree = (f.strip() for f in fields)
        return CommitMetadata(
            subject=subject,
            body=body,
            author_name=author_name,
            author_date=author_date,
            timestamp_ms=int(timestamp) * 1000,
            tree_hash=tree,
        )

    async def log_subjects(self, count: int) -> list[str]:
        output = await self._git(f"git log -{count} --format=%s")
        return [line for line in output.splitlines() if line.strip()]

    async def current_branch(self) -> str:
        return (await self._git("git branch --show-current")).strip()

    async def branch_remote(self, branch: str) -> str:
        key = shlex.quote(f"branch.{branch}.remote")
        remote = (await self._git(f"git config {key} || echo origin")).strip()
        return remote or "origin"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def reset_soft(self, count: int) -> None:
        await self._git(f"git reset --soft HEAD~{count}")

    async def reset_hard(self, ref: str) -> None:
        await self._git(f"git reset --hard {shlex.quote(ref)}")

    async def commit(
        self, message: str, *, amend: bool = False, author_date: str | None = None
    ) -> None:
        """Commit the index (or amend HEAD) with *message*."""
        flags = " --amend" if amend else ""
        if author_date:
            flags += f" --date={shlex.quote(author_date)}"
        await self._git(f"{_piped_message(message)} | git commit{flags} -F -")

    async def commit_tree(
        self, tree: str, message: str, author_date: str, parent: str = "HEAD"
    ) -> str:
        """Create a commit object for *tree* on top of *parent*; return its hash."""
        output = await self._git(
            f"{_piped_message(message)} | env GIT_AUTHOR_DATE={shlex.quote(author_date)} "
            f"git commit-tree {shlex.quote(tree)} -p {shlex.quote(parent)}"
        )
        return output.strip()

    async def push_force_with_lease(self, remote: str, branch: str) -> None:
        await self._git(
            f"git push --force-with-lease {shlex.quote(remote)} {shlex.quote(branch)}"
        )
