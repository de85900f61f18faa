"""Pull-request webhook payloads from GitHub and Forgejo."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from containers_up.errors import ValidationError
from containers_up.models import WebhookEvent

COMPOSE_LABEL = "docker_compose"

# Form-encoded GitHub pings are not JSON; their zen line is url-encoded
_FORM_PING_MARKER = "Speak+like+a+human"


class Label(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class PullRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: int
    title: str
    merged: bool = False
    body: str | None = None
    labels: list[Label] = Field(default_factory=list)
    html_url: str | None = None


class Repository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str


class Sender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: str | None = None


class PullRequestPayload(BaseModel):
    """The fields of a ``pull_request`` event the pipeline uses."""

    model_config = ConfigDict(extra="ignore")

    action: str
    pull_request: PullRequest
    repository: Repository | None = None
    sender: Sender | None = None

    @property
    def label_names(self) -> list[str]:
        return [label.name for label in self.pull_request.labels]

    def to_event(self) -> WebhookEvent:
        pr = self.pull_request
        return WebhookEvent(
            action=self.action,
            title=pr.title,
            number=pr.number,
            merged=pr.merged,
            body=pr.body,
            labels=self.label_names,
            url=pr.html_url,
            repo=self.repository.full_name if self.repository else None,
            sender=self.sender.login if self.sender else None,
        )


def is_ping(raw: str, data: Any = None) -> bool:
    """True for GitHub's ``ping`` delivery sent when a webhook is created."""
    if data is not None:
        return isinstance(data, dict) and "zen" in data and "pull_request" not in data
    return _FORM_PING_MARKER in raw


def parse_payload(body: bytes) -> PullRequestPayload | None:
    """Parse a webhook body; None for a ping.

    Raises:
        ValidationError: If the body is empty, not JSON, or not a
            pull-request event.
    """
    raw = body.decode("utf-8", errors="replace")
    if not raw.strip():
        raise ValidationError("JSON payload is empty")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        if is_ping(raw):
            return None
        raise ValidationError("Invalid JSON payload") from None

    if is_ping(raw, data):
        return None

    try:
        return PullRequestPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid pull request payload: {exc.error_count()} errors") from exc
