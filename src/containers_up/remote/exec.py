"""Shell command runner for the local machine and managed hosts over SSH.

Every subprocess call in the pipeline goes through ``RemoteExecutor``.
A non-zero exit raises ``RemoteCommandError`` unless the caller opts out
with ``check=False``.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from collections.abc import Callable
from typing import TYPE_CHECKING

from containers_up.errors import RemoteCommandError
from containers_up.logging import get_logger
from containers_up.models import CommandResult

if TYPE_CHECKING:
    from containers_up.logging import EventLogger
    from containers_up.models import HostConfig

log = get_logger("containers_up.remote.exec")

LineHandler = Callable[[str], None]

# docker compose progress output can produce very long lines
_STREAM_LINE_LIMIT = 1024 * 1024


class RemoteExecutor:
    """Runs shell commands locally or on a host through ``ssh``."""

    def __init__(self, ssh_key_dir: str = "~/.ssh", timeout: int = 900) -> None:
        self._ssh_key_dir = ssh_key_dir
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def ssh_command(self, host: HostConfig, command: str) -> str:
        """Wrap *command* so it runs on *host* with the host's own key."""
        key_path = os.path.join(os.path.expanduser(self._ssh_key_dir), f"id_ed25519-{host.name}")
        return (
            f"ssh -i {shlex.quote(key_path)} -o BatchMode=yes "
            f"-o StrictHostKeyChecking=accept-new {shlex.quote(host.ssh_host)} "
            f"{shlex.quote(command)}"
        )

    # ------------------------------------------------------------------
    # Buffered execution
    # ------------------------------------------------------------------

    async def run(
        self,
        command: str,
        *,
        check: bool = True,
        events: EventLogger | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a shell command and return its trimmed output."""
        limit = timeout or self._timeout
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            result = CommandResult(stdout="", stderr=f"timed out after {limit}s", exit_code=-1)
            log.warning("cmd_timeout", cmd=command, timeout=limit)
            raise RemoteCommandError(command, result) from None

        result = CommandResult(
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

        if not result.ok:
            if check:
                if events is not None:
                    events.error(
                        "command_failed",
                        cmd=command,
                        returncode=result.exit_code,
                        stderr=result.stderr[:500],
                    )
                raise RemoteCommandError(command, result)
            return result

        if result.stderr and events is not None:
            # Plenty of tools (git, docker compose) report progress on stderr
            events.info("command_stderr", output=result.stderr[:500])
        return result

    async def ssh_run(
        self,
        host: HostConfig,
        command: str,
        *,
        check: bool = True,
        events: EventLogger | None = None,
    ) -> CommandResult:
        """Run *command* on *host* over SSH."""
        return await self.run(self.ssh_command(host, command), check=check, events=events)

    async def path_exists(
        self, host: HostConfig, path: str, *, events: EventLogger | None = None
    ) -> bool:
        """Return True if *path* exists on *host*."""
        result = await self.ssh_run(
            host, f"test -e {shlex.quote(path)}", check=False, events=events
        )
        return result.ok

    # ------------------------------------------------------------------
    # Streamed execution
    # ------------------------------------------------------------------

    async def stream(
        self,
        command: str,
        on_stdout: LineHandler | None = None,
        on_stderr: LineHandler | None = None,
    ) -> CommandResult:
        """Run a long command, handing each output line to the handlers as it arrives."""
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LINE_LIMIT,
        )

        async def _pump(reader: asyncio.StreamReader | None, handler: LineHandler | None) -> str:
            if reader is None:
                return ""
            lines: list[str] = []
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip("\r\n")
                lines.append(line)
                if handler is not None:
                    handler(line)
            return "\n".join(lines)

        stdout, stderr = await asyncio.gather(
            _pump(proc.stdout, on_stdout),
            _pump(proc.stderr, on_stderr),
        )
        returncode = await proc.wait()
        return CommandResult(stdout=stdout.strip(), stderr=stderr.strip(), exit_code=returncode)

    async def ssh_stream(
        self,
        host: HostConfig,
        command: str,
        on_stdout: LineHandler | None = None,
        on_stderr: LineHandler | None = None,
        *,
        check: bool = True,
    ) -> CommandResult:
        """Stream *command* on *host*; raise on a non-zero exit when *check* is set."""
        wrapped = self.ssh_command(host, command)
        result = await self.stream(wrapped, on_stdout, on_stderr)
        if check and not result.ok:
            raise RemoteCommandError(command, result)
        return result
