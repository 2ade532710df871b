"""HTTP client for the Xero accounting API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class AccountingApiError(Exception):
    """The accounting provider could not return the requested resource."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class XeroClient:
    """Read-only access to invoices in a connected Xero organisation.

    Parameters
    ----------
    base_url:
        Root URL of the Xero API (``https://api.xero.com``).
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        base_url: str = "https://api.xero.com",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def fetch_invoice(self, access_token: str, tenant_id: str, invoice_id: str) -> dict[str, Any]:
        """Return the full invoice record for *invoice_id*.

        Raises
        ------
        AccountingApiError
            On transport failure, a non-2xx response, or a body that does
            not contain the invoice.
        """
        url = f"{self._base_url}/api.xro/2.0/Invoices/{invoice_id}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise AccountingApiError(f"Invoice fetch failed for {invoice_id}: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "Xero invoice fetch rejected: invoice=%s tenant=%s status=%d",
                invoice_id,
                tenant_id,
                response.status_code,
            )
            raise AccountingApiError(
                f"Xero returned {response.status_code} for invoice {invoice_id}",
                status_code=response.status_code,
            )

        try:
            invoices = response.json().get("Invoices") or []
        except (ValueError, AttributeError) as exc:
            raise AccountingApiError(f"Malformed invoice response for {invoice_id}") from exc
        if not invoices or not isinstance(invoices[0], dict):
            raise AccountingApiError(f"Invoice {invoice_id} not present in response", status_code=response.status_code)
        return invoices[0]

    async def close(self) -> None:
        await self._client.aclose()
