"""Docker and docker compose operations against managed hosts.

Read-only queries (inspect, image digests, server platform) go through the
host's docker context; compose restarts run over SSH inside the host's
working folder so relative paths in compose files resolve.
"""

from __future__ import annotations

import json
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from containers_up.logging import get_logger

if TYPE_CHECKING:
    from containers_up.logging import EventLogger
    from containers_up.models import HostConfig
    from containers_up.remote.exec import RemoteExecutor

log = get_logger("containers_up.remote.docker")

COMPOSE_CONFIG_LABEL = "com.docker.compose.project.config_files"

_COMPOSE_FILE_RE = re.compile(r"(^|/)(docker-)?compose\.ya?ml$")

# ANSI colour/control sequences emitted by docker compose progress output
_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def is_compose_filename(path: str) -> bool:
    """Return True if *path* names a compose file."""
    return bool(_COMPOSE_FILE_RE.search(path))


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def docker_cmd(context: str) -> str:
    return f"docker --context {shlex.quote(context)}"


def file_excluded(path: str, exclude_folders: str | None) -> bool:
    """Return True if *path* matches the host's exclusion regex."""
    if not exclude_folders or exclude_folders == "null":
        return False
    return re.search(exclude_folders, path) is not None


@dataclass(frozen=True)
class Platform:
    """Target OS/architecture of a host's docker engine."""

    os: str = "linux"
    arch: str = "amd64"

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"


@dataclass(frozen=True)
class ComposedService:
    """A running container that belongs to a compose unit."""

    name: str
    image: str  # declared image reference, e.g. "nginx:1.27"
    image_id: str  # local image id, e.g. "sha256:..."
    compose_file: str  # relative to the host's working folder


class DockerClient:
    """Docker helpers built on a ``RemoteExecutor``."""

    def __init__(self, executor: RemoteExecutor) -> None:
        self._exec = executor

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def list_containers(self, host: HostConfig) -> list[dict[str, Any]]:
        """Return ``docker inspect`` output for every container on *host*."""
        ids = await self._exec.run(f"{docker_cmd(host.name)} ps -aq --no-trunc")
        container_ids = [line for line in ids.stdout.splitlines() if line.strip()]
        if not container_ids:
            return []

        result = await self._exec.run(
            f"{docker_cmd(host.name)} inspect --format '{{{{json .}}}}' "
            + " ".join(shlex.quote(cid) for cid in container_ids)
        )
        return parse_json_lines(result.stdout)

    async def composed_services(self, host: HostConfig) -> dict[str, list[ComposedService]]:
        """Group running compose-managed containers by compose file.

        Only compose files under the host's working folder that are not
        excluded are returned; keys are relative to the working folder.
        """
        working_folder = posixpath.join(host.working_folder, "")
        grouped: dict[str, list[ComposedService]] = {}

        for container in await self.list_containers(host):
            config = container.get("Config") or {}
            labels = config.get("Labels") or {}
            compose_file = labels.get(COMPOSE_CONFIG_LABEL)
            if not compose_file or not compose_file.startswith(working_folder):
                continue

            relative = compose_file[len(working_folder) :]
            if file_excluded(relative, host.exclude_folders):
                continue

            grouped.setdefault(relative, []).append(
                ComposedService(
                    name=str(container.get("Name", "")).lstrip("/"),
                    image=str(config.get("Image", "")),
                    image_id=str(container.get("Image", "")),
                    compose_file=relative,
                )
            )
        return grouped

    async def local_image_digest(
        self, host: HostConfig, image: str, events: EventLogger | None = None
    ) -> str:
        """Return the manifest digest (``sha256:...``) of a local image, or ''."""
        result = await self._exec.run(
            f"{docker_cmd(host.name)} image inspect "
            f"--format '{{{{index .RepoDigests 0}}}}' {shlex.quote(image)}",
            check=False,
        )
        if not result.ok:
            if events is not None:
                events.error("local_digest_failed", image=image, returncode=result.exit_code)
            return ""

        # Local format: registry.com/repo@sha256:abc... ; remote format: sha256:abc...
        digest = result.stdout.strip()
        return digest.split("@", 1)[1] if "@" in digest else digest

    async def server_platform(
        self, host: HostConfig, events: EventLogger | None = None
    ) -> Platform:
        """Return the docker engine's OS/arch, defaulting to linux/amd64."""
        result = await self._exec.run(
            f"{docker_cmd(host.name)} version --format '{{{{json .Server}}}}'",
            check=False,
        )
        if not result.ok:
            if events is not None:
                events.warning("platform_lookup_failed", host=host.name)
            return Platform()

        try:
            server = json.loads(result.stdout.strip())
        except json.JSONDecodeError:
            if events is not None:
                events.warning("platform_parse_failed", output=result.stdout[:200])
            return Platform()

        if not isinstance(server, dict):
            return Platform()
        os_name = server.get("Os") or server.get("os")
        arch = server.get("Arch") or server.get("arch")
        if not os_name or not arch:
            if events is not None:
                events.warning("platform_unexpected_json", server=server)
            return Platform()
        return Platform(os=os_name, arch=arch)

    # ------------------------------------------------------------------
    # Compose lifecycle
    # ------------------------------------------------------------------

    def restart_command(
        self, compose_file: str, pull_first: bool = True, detach_marker: str | None = None
    ) -> str:
        """Build the stop-then-start command for one compose file."""
        quoted = shlex.quote(compose_file)
        steps = []
        if pull_first:
            steps.append(f"docker compose -f {quoted} pull")
        steps.append(f"docker compose -f {quoted} down")
        steps.append(f"docker compose -f {quoted} up -d")
        command = " && ".join(steps)

        # Restarting our own unit would kill this process mid-command
        if detach_marker and detach_marker in compose_file:
            command = f"nohup bash -c {shlex.quote(command)} >> /tmp/containers-up.log 2>&1 &"
        return command

    async def restart_compose(
        self,
        host: HostConfig,
        compose_file: str,
        events: EventLogger,
        *,
        pull_first: bool = True,
        detach_marker: str | None = None,
    ) -> None:
        """Stop and start one compose unit on *host*, waiting for completion."""
        command = self.restart_command(compose_file, pull_first, detach_marker)
        events.info("compose_restarting", compose_file=compose_file)

        def _on_line(line: str) -> None:
            cleaned = strip_ansi(line).strip()
            if cleaned:
                events.debug("compose_output", line=cleaned)

        await self._exec.ssh_stream(
            host,
            f"cd {shlex.quote(host.working_folder)} && {command}",
            on_stdout=_on_line,
            on_stderr=_on_line,
        )
        events.info("compose_restarted", compose_file=compose_file)

    async def cleanup(self, host: HostConfig, events: EventLogger) -> None:
        """Prune unused data and remove superseded images on *host*."""
        prune = await self._exec.run(f"{docker_cmd(host.name)} system prune -f", events=events)
        if "\n" in prune.stdout or "0B" not in prune.stdout:
            events.info("system_pruned", output=prune.stdout[:500])

        images = await self._exec.run(
            f"{docker_cmd(host.name)} images --format '{{{{.Repository}}}}:{{{{.Tag}}}}'"
        )
        seen: set[str] = set()
        # docker lists newest first, so any later image of a repository is older
        for image in filter(None, images.stdout.splitlines()):
            repository = image.rsplit(":", 1)[0]
            if repository in seen and repository != "<none>":
                events.info("image_removing", image=image)
                await self._exec.run(
                    f"{docker_cmd(host.name)} rmi -f {shlex.quote(image)}", events=events
                )
            else:
                seen.add(repository)


def parse_json_lines(stdout: str) -> list[dict[str, Any]]:
    """Parse docker's one-JSON-object-per-line output."""
    parsed: list[dict[str, Any]] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError:
            log.error("docker_output_parse_failed", line=line[:200])
            raise
    return parsed
