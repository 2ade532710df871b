"""Webhook handler interface and shared handler dependencies."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from zeus_core.webhooks.dedup import FingerprintCache

from api.config import APISettings
from api.services.invoice_processor import InvoiceEventProcessor


class WebhookProvider(str, Enum):
    """External systems that push webhooks to this service."""

    XERO = "xero"
    STRIPE = "stripe"


@dataclass
class WebhookDeps:
    """Collaborators a handler needs, resolved once per request."""

    settings: APISettings
    session_factory: async_sessionmaker[AsyncSession]
    fingerprints: FingerprintCache
    payment_events: FingerprintCache
    processor_factory: Callable[[AsyncSession], InvoiceEventProcessor]


class WebhookHandler(Protocol):
    provider: WebhookProvider

    async def handle(self, body: bytes, headers: Mapping[str, str], deps: WebhookDeps) -> dict[str, Any]:
        """Verify and process one webhook delivery."""
