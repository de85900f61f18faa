"""Exception types raised across the update pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from containers_up.models import CommandResult


class ContainersUpError(Exception):
    """Base class for all Containers Up errors."""


class AuthError(ContainersUpError):
    """Missing or invalid webhook signature."""

    status = 401


class ValidationError(ContainersUpError):
    """Malformed webhook payload or missing compose target."""

    status = 400


class RemoteCommandError(ContainersUpError):
    """A local or SSH command exited with a non-zero code."""

    def __init__(self, command: str, result: CommandResult) -> None:
        self.command = command
        self.result = result
        detail = (result.stderr or result.stdout).strip()[:500]
        super().__init__(f"Command failed (rc={result.exit_code}): {command}: {detail}")

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class RegistryError(ContainersUpError):
    """Registry authentication or manifest lookup failed."""


class QueueTimeoutError(ContainersUpError, TimeoutError):
    """A queued job waited too long for the running job on its host."""


class InvalidTransitionError(ContainersUpError):
    """A job status change not permitted by the job state machine."""
