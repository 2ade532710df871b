"""Webhook handler registry."""

from __future__ import annotations

from api.services.webhooks.accounting import XeroWebhookHandler
from api.services.webhooks.base import WebhookHandler, WebhookProvider
from api.services.webhooks.payments import StripeWebhookHandler

_HANDLERS: dict[WebhookProvider, WebhookHandler] = {
    WebhookProvider.XERO: XeroWebhookHandler(),
    WebhookProvider.STRIPE: StripeWebhookHandler(),
}


def get_handler(name: str) -> WebhookHandler:
    try:
        return _HANDLERS[WebhookProvider(name.lower())]
    except (ValueError, KeyError):
        raise KeyError(f"Unknown webhook handler: {name}") from None
