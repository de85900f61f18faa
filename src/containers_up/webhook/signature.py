"""Webhook payload signatures (``x-hub-signature-256``)."""

from __future__ import annotations

import hashlib
import hmac

from containers_up.errors import AuthError

SIGNATURE_HEADER = "x-hub-signature-256"


def sign(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` signature of *body* under *secret*."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str | None, body: bytes, signature: str | None) -> None:
    """Check *signature* against the raw request *body*.

    Raises:
        AuthError: If the signature is missing, the host has no secret,
            or the signature does not match.
    """
    if not signature:
        raise AuthError("Unauthorized (no signature)")
    if not secret:
        raise AuthError("Unauthorized (host has no webhook secret)")
    expected = sign(secret, body)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Unauthorized (bad signature)")
