"""Keyed-hash verification of inbound accounting webhooks.

The provider signs the exact request body with HMAC-SHA256 and sends the
base64 digest in a header.  Verification must run over the raw bytes as
received; parsing and re-serialising the JSON body changes whitespace and key
order and breaks the signature.
"""

from __future__ import annotations

import base64
import hashlib
import hmac


class WebhookConfigurationError(RuntimeError):
    """The webhook signing secret is not configured."""


def compute_signature(payload: bytes, secret: str) -> str:
    """Return the base64-encoded HMAC-SHA256 digest of *payload*."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(payload: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Validate a base64 HMAC-SHA256 webhook signature.

    Parameters
    ----------
    payload:
        The raw request body bytes.
    signature_header:
        The signature header value as sent by the provider.
    secret:
        The shared webhook signing key.

    Returns
    -------
    bool
        ``True`` if the signature matches.  Malformed or missing headers
        yield ``False``.

    Raises
    ------
    WebhookConfigurationError
        If *secret* is empty.
    """
    if not secret:
        raise WebhookConfigurationError("Webhook signing key is not configured")

    if not signature_header:
        return False

    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().encode("utf-8"))
