"""Xero accounting webhook handler."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from fastapi import HTTPException
from zeus_core.webhooks.dedup import fingerprint
from zeus_core.webhooks.signature import WebhookConfigurationError, verify_signature

from api.services.invoice_processor import EventResult
from api.services.webhooks.base import WebhookDeps, WebhookProvider

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-xero-signature"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class XeroWebhookHandler:
    """Verifies, deduplicates and processes Xero invoice notifications.

    The provider only needs to learn that delivery succeeded, so every
    verified delivery is acknowledged with 200; per-event outcomes are
    visible through the outcome records, not the response.
    """

    provider = WebhookProvider.XERO

    async def handle(self, body: bytes, headers: Mapping[str, str], deps: WebhookDeps) -> dict[str, Any]:
        started = time.perf_counter()

        try:
            valid = verify_signature(
                body,
                headers.get(SIGNATURE_HEADER),
                deps.settings.xero_webhook_key.get_secret_value(),
            )
        except WebhookConfigurationError:
            logger.error("Xero webhook received but API_XERO_WEBHOOK_KEY is not configured")
            raise HTTPException(status_code=500, detail="Webhook signing key not configured")
        if not valid:
            logger.warning("Xero webhook rejected: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        events = payload.get("events") if isinstance(payload, dict) else None

        if not events:
            logger.info("Xero intent-to-receive handshake acknowledged")
            return {
                "message": "Intent to receive acknowledged",
                "eventsProcessed": 0,
                "processingTimeMs": _elapsed_ms(started),
            }

        key = fingerprint(body)
        if not deps.fingerprints.check_and_record(key):
            logger.info("Duplicate Xero webhook ignored: fingerprint=%s", key[:16])
            return {"message": "Duplicate webhook ignored"}

        results: list[EventResult] = []
        failed = 0
        for event in events:
            if not isinstance(event, dict):
                continue
            try:
                async with deps.session_factory() as session:
                    processor = deps.processor_factory(session)
                    results.append(await processor.process_event(event))
                    await session.commit()
            except Exception as exc:
                failed += 1
                logger.error(
                    "Xero event processing failed resource=%s tenant=%s: %s",
                    event.get("resourceId"),
                    event.get("tenantId"),
                    exc,
                    exc_info=True,
                )

        if failed:
            # Let a redelivery retry; the durable sent check still guards double sends.
            deps.fingerprints.discard(key)

        elapsed_ms = _elapsed_ms(started)
        if elapsed_ms > deps.settings.webhook_time_budget_seconds * 1000:
            logger.warning(
                "Xero webhook exceeded time budget: %dms > %.0fms (events=%d)",
                elapsed_ms,
                deps.settings.webhook_time_budget_seconds * 1000,
                len(events),
            )

        logger.info(
            "Xero webhook processed events=%d recorded=%d failed=%d in %dms",
            len(results),
            sum(1 for r in results if r.outcome is not None),
            failed,
            elapsed_ms,
        )
        return {
            "message": "Webhook processed",
            "eventsProcessed": len(results),
            "processingTimeMs": elapsed_ms,
        }
