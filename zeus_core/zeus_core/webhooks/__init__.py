"""Inbound webhook verification and deduplication."""

from zeus_core.webhooks.dedup import FingerprintCache, fingerprint
from zeus_core.webhooks.signature import (
    WebhookConfigurationError,
    compute_signature,
    verify_signature,
)

__all__ = [
    "FingerprintCache",
    "WebhookConfigurationError",
    "compute_signature",
    "fingerprint",
    "verify_signature",
]
