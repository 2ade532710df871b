"""Stripe payment webhook handler."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import stripe
from fastapi import HTTPException

from api.services.payment_service import PaymentService
from api.services.webhooks.base import WebhookDeps, WebhookProvider

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


class StripeWebhookHandler:
    """Credits balances from verified Stripe checkout completions.

    Stripe signs with its own scheme and secret, verified by the Stripe
    library before any metadata is trusted.  Event ids are remembered so a
    redelivered event does not credit twice within the dedup window.
    """

    provider = WebhookProvider.STRIPE

    async def handle(self, body: bytes, headers: Mapping[str, str], deps: WebhookDeps) -> dict[str, Any]:
        sig_header = headers.get(SIGNATURE_HEADER, "")
        if not sig_header:
            raise HTTPException(status_code=400, detail="Missing Stripe signature")

        secret = deps.settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            logger.error("Stripe webhook received but API_STRIPE_WEBHOOK_SECRET is not configured")
            raise HTTPException(status_code=500, detail="Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=secret)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise HTTPException(status_code=400, detail="Signature verification failed")

        event = json.loads(body)
        event_id = event.get("id")
        if event_id and not deps.payment_events.check_and_record(event_id):
            logger.info("Duplicate Stripe event ignored: %s", event_id)
            return {"received": True}

        try:
            async with deps.session_factory() as session:
                result = await PaymentService(session, deps.settings).handle_webhook_event(event)
                await session.commit()
        except LookupError as exc:
            # Retrying cannot resolve an unknown account.
            logger.warning("Stripe event %s references an unknown account: %s", event_id, exc)
            return {"received": True}
        except Exception:
            if event_id:
                deps.payment_events.discard(event_id)
            raise

        logger.info("Stripe event %s type=%s: %s", event_id, event.get("type"), result["status"])
        return {"received": True}
