"""HTTP client for the Cellcast SMS gateway.

Failures are raised as :class:`SmsGatewayError` carrying a
:class:`SmsFailureReason`, which the invoice processor maps onto a terminal
outcome status.  Nothing here retries: a review request is a one-shot side
effect and a blind retry risks a double send.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class SmsFailureReason(str, Enum):
    """Why the gateway refused or failed a send."""

    INSUFFICIENT_CREDIT = "insufficient_credit"
    AUTH_FAILED = "auth_failed"
    MESSAGE_TOO_LONG = "message_too_long"
    INVALID_RECIPIENT = "invalid_recipient"
    RATE_LIMITED = "rate_limited"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


class SmsGatewayError(Exception):
    """A send attempt was rejected by, or could not reach, the gateway."""

    def __init__(self, reason: SmsFailureReason, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class SmsReceipt:
    """Gateway acknowledgement of an accepted message."""

    message_id: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _classify_rejection(status_code: int, body: dict[str, Any]) -> SmsGatewayError:
    """Translate an error response into a :class:`SmsGatewayError`."""
    meta = body.get("meta") or {}
    meta_status = str(meta.get("status") or "")
    msg = str(body.get("msg") or "")
    lowered = msg.lower()

    if status_code in (401, 403) or meta_status.startswith("AUTH_FAILED"):
        return SmsGatewayError(
            SmsFailureReason.AUTH_FAILED, "Cellcast API key is invalid or missing", status_code=status_code
        )
    if "credit" in lowered or "balance" in lowered:
        return SmsGatewayError(
            SmsFailureReason.INSUFFICIENT_CREDIT, "Insufficient Cellcast credits", status_code=status_code
        )
    if meta_status == "RECIPIENTS_ERROR" or "recipient" in lowered or "number" in lowered:
        return SmsGatewayError(
            SmsFailureReason.INVALID_RECIPIENT, f"Invalid recipient: {msg or meta_status}", status_code=status_code
        )
    if "too long" in lowered or "length" in lowered or "characters" in lowered:
        return SmsGatewayError(
            SmsFailureReason.MESSAGE_TOO_LONG, f"Message rejected as too long: {msg}", status_code=status_code
        )
    if status_code == 429:
        return SmsGatewayError(SmsFailureReason.RATE_LIMITED, "Cellcast rate limit exceeded", status_code=status_code)
    return SmsGatewayError(
        SmsFailureReason.UNKNOWN,
        f"Cellcast error {status_code}: {msg or meta_status or 'no detail'}",
        status_code=status_code,
    )


class CellcastClient:
    """Thin async wrapper around the Cellcast v3 REST API.

    Parameters
    ----------
    api_key:
        Cellcast application key, sent in the ``APPKEY`` header.
    base_url:
        Root URL of the API (e.g. ``https://cellcast.com.au/api/v3``).
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created when not provided.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://cellcast.com.au/api/v3",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _headers(self) -> dict[str, str]:
        return {
            "APPKEY": self._api_key,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _post_send(self, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(f"{self._base_url}/send-sms", json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise SmsGatewayError(SmsFailureReason.TRANSPORT, f"Cellcast request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SmsGatewayError(SmsFailureReason.TRANSPORT, f"Cellcast request failed: {exc}") from exc

    async def send(self, phone: str, message: str) -> SmsReceipt:
        """Send *message* to the E.164 number *phone*.

        Returns
        -------
        SmsReceipt
            The gateway's message identifier.

        Raises
        ------
        SmsGatewayError
            On any rejection, malformed response or transport failure.
        """
        if not self._api_key:
            raise SmsGatewayError(SmsFailureReason.AUTH_FAILED, "Cellcast API key is not configured")

        response = await self._post_send({"sms_text": message, "numbers": [phone]})
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            error = _classify_rejection(response.status_code, body)
            logger.warning(
                "Cellcast rejected send: status=%d reason=%s detail=%s",
                response.status_code,
                error.reason.value,
                body.get("msg"),
            )
            raise error

        meta = body.get("meta") or {}
        if meta.get("code") != 200:
            raise _classify_rejection(int(meta.get("code") or response.status_code), body)

        try:
            message_id = str(body["data"]["messages"][0]["message_id"])
        except (KeyError, IndexError, TypeError) as exc:
            raise SmsGatewayError(
                SmsFailureReason.UNKNOWN, "Cellcast response did not include a message id"
            ) from exc

        logger.info("SMS accepted by Cellcast: message_id=%s", message_id)
        return SmsReceipt(message_id=message_id, raw=body)

    async def verify_credentials(self) -> bool:
        """Check that the API key is accepted without sending a message.

        Posts an empty recipient list: an authenticated key yields a
        ``RECIPIENTS_ERROR`` rejection, an invalid key yields 401.
        """
        if not self._api_key:
            return False
        try:
            response = await self._post_send({"sms_text": "verify", "numbers": []})
        except SmsGatewayError as exc:
            logger.warning("Cellcast credential check failed: %s", exc)
            return False

        if response.status_code in (401, 403):
            return False
        if response.status_code < 400:
            return True
        try:
            body = response.json()
        except ValueError:
            return False
        meta = body.get("meta") if isinstance(body, dict) else None
        return isinstance(meta, dict) and meta.get("status") == "RECIPIENTS_ERROR"

    async def close(self) -> None:
        """Close the underlying HTTP pool."""
        await self._client.aclose()
