"""Inbound HTTP: forge webhooks and job endpoints."""

from containers_up.webhook.payload import PullRequestPayload, parse_payload
from containers_up.webhook.server import WebhookServer
from containers_up.webhook.signature import sign, verify_signature

__all__ = [
    "PullRequestPayload",
    "WebhookServer",
    "parse_payload",
    "sign",
    "verify_signature",
]
