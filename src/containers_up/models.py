"""Data models shared by the update pipeline.

All models are plain dataclasses; jobs serialise with to_dict for the API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

# ------------------------------------------------------------------
# Enums
# ------------------------------------------------------------------


class JobStatus(StrEnum):
    """Lifecycle states of an update job."""

    RUNNING = "running"
    QUEUED = "queued"
    FAILED = "failed"
    OPEN = "open"
    COMPLETED = "completed"
    CLOSED = "closed"


class BotType(StrEnum):
    """Dependency bots whose pull requests a host accepts."""

    DEPENDABOT = "dependabot"
    RENOVATE = "renovate"


# ------------------------------------------------------------------
# Persistent records
# ------------------------------------------------------------------


@dataclass(frozen=True)
class HostConfig:
    """Read-only snapshot of a host's configuration."""

    id: int
    name: str
    ssh_host: str
    working_folder: str
    repo: str | None = None
    exclude_folders: str | None = None
    bot_type: BotType = BotType.DEPENDABOT
    squash_updates: bool = False
    webhook_secret: str | None = field(default=None, repr=False)

    @property
    def bot_keyword(self) -> str:
        return self.bot_type.value


@dataclass
class Job:
    """An update job, unique per (host_id, title)."""

    host_id: int
    title: str
    status: JobStatus
    folder: str | None = None
    repo_pr: str | None = None  # "owner/repo#number"
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def pr_number(self) -> int | None:
        if not self.repo_pr or "#" not in self.repo_pr:
            return None
        try:
            return int(self.repo_pr.rsplit("#", 1)[1])
        except ValueError:
            return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "host_id": self.host_id,
            "repo_pr": self.repo_pr,
            "folder": self.folder,
            "title": self.title,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class LogEntry:
    """An append-only log line, attached to a job when one exists."""

    host_id: int
    level: int
    time: datetime
    event: str
    msg: str
    job_id: int | None = None
    id: int | None = None


# ------------------------------------------------------------------
# Ephemeral values
# ------------------------------------------------------------------


@dataclass
class WebhookEvent:
    """A pull-request event normalised from a forge webhook payload."""

    action: str
    title: str
    number: int | None = None
    merged: bool = False
    body: str | None = None
    labels: list[str] = field(default_factory=list)
    url: str | None = None
    repo: str | None = None
    sender: str | None = None


def short_hash(digest: str) -> str:
    """Return the 7-character short form of a ``sha256:...`` digest."""
    _, _, hex_part = digest.rpartition(":")
    return hex_part[:7]


@dataclass
class UpdateCandidate:
    """An image whose registry digest differs from the running one."""

    image_name: str
    local_digest: str
    remote_digest: str

    @property
    def short_local(self) -> str:
        return short_hash(self.local_digest)

    @property
    def short_remote(self) -> str:
        return short_hash(self.remote_digest)

    def title(self, folder: str) -> str:
        return (
            f"Bump {self.image_name} from `{self.short_local}` "
            f"to `{self.short_remote}` in {folder}"
        )


@dataclass
class CommitMetadata:
    """Fields of one remote commit read during squashing."""

    subject: str
    body: str
    author_name: str
    author_date: str  # ISO-8601
    timestamp_ms: int
    tree_hash: str


@dataclass
class CommandResult:
    """Outcome of a local or SSH command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
