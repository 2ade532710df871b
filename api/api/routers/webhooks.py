"""Inbound webhook endpoints: accounting invoice events and payment events.

A single route serves every provider; the provider path segment selects a
handler from :mod:`api.services.webhooks.registry`.  The raw body is read
before any JSON parsing because signatures are computed over the exact
bytes received.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from api.dependencies import WebhookDepsDep
from api.services.webhooks.registry import get_handler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    deps: WebhookDepsDep,
) -> dict[str, Any]:
    """Verify and process a provider webhook delivery.

    Responses:

    * ``200`` -- handshake, duplicate, or processed delivery.
    * ``400`` -- malformed payload or (payments) failed signature check.
    * ``401`` -- invalid accounting-provider signature.
    * ``404`` -- unknown provider.
    * ``500`` -- signing secret not configured.
    """
    try:
        handler = get_handler(provider)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown webhook provider '{provider}'")

    body = await request.body()
    return await handler.handle(body, request.headers, deps)
