"""Local and SSH command execution against managed hosts."""

from containers_up.remote.docker import ComposedService, DockerClient, Platform
from containers_up.remote.exec import RemoteExecutor
from containers_up.remote.git import RemoteGit

__all__ = [
    "ComposedService",
    "DockerClient",
    "Platform",
    "RemoteExecutor",
    "RemoteGit",
]
