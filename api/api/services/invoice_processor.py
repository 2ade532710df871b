"""Turns a paid-invoice notification into at most one review-request SMS.

Per event the processor walks these stages, stopping at the first skip::

    relevant? -> routed to an active connection -> invoice fetched
      -> fully paid? -> not already sent -> phone resolved -> cost computed
      -> balance checked -> sent | paywalled | provider error -> recorded

Every attempt that gets past the "fully paid" check leaves an
:class:`~zeus_core.state.tables.OutcomeRecordTable` row, whatever happens
afterwards, so support staff can always answer "did we try".
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from zeus_core.messaging import calculate_cost, render_template, select_template
from zeus_core.phone import normalize_phone
from zeus_core.state.repository import (
    AccountRepository,
    OutcomeRecordRepository,
    ProviderConnectionRepository,
)
from zeus_core.state.tables import AccountTable, OutcomeStatus

from api.config import APISettings
from api.services.balance_ledger import BalanceLedger
from api.services.keyed_lock import KeyedLock
from api.services.sms_gateway import CellcastClient, SmsFailureReason, SmsGatewayError
from api.services.token_refresher import (
    CredentialRefresher,
    ReauthenticationRequired,
    TokenRefreshError,
)
from api.services.xero_client import AccountingApiError, XeroClient

logger = logging.getLogger(__name__)

# Shared by every processor in the process; one event per account at a time.
ACCOUNT_LOCKS = KeyedLock()

_RELEVANT_CATEGORY = "INVOICE"
_RELEVANT_TYPES = frozenset({"UPDATE", "CREATE"})

_FAILURE_STATUSES: dict[SmsFailureReason, OutcomeStatus] = {
    SmsFailureReason.INSUFFICIENT_CREDIT: OutcomeStatus.PROVIDER_INSUFFICIENT_CREDIT,
    SmsFailureReason.AUTH_FAILED: OutcomeStatus.PROVIDER_AUTH_FAILED,
    SmsFailureReason.MESSAGE_TOO_LONG: OutcomeStatus.MESSAGE_TOO_LONG,
    SmsFailureReason.INVALID_RECIPIENT: OutcomeStatus.INVALID_RECIPIENT,
}


class EventDisposition(str, Enum):
    """Where processing of one webhook event stopped."""

    IGNORED = "ignored"
    NO_CONNECTION = "no_connection"
    ACCOUNT_INACTIVE = "account_inactive"
    FETCH_FAILED = "fetch_failed"
    NOT_PAID = "not_paid"
    ALREADY_SENT = "already_sent"
    RECORDED = "recorded"


@dataclass(frozen=True)
class EventResult:
    disposition: EventDisposition
    invoice_id: str | None = None
    outcome: OutcomeStatus | None = None
    detail: str | None = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def is_relevant_event(event: Mapping[str, Any]) -> bool:
    """Only invoice create/update events can trigger a review request."""
    category = str(event.get("eventCategory") or "").upper()
    event_type = str(event.get("eventType") or "").upper()
    return category == _RELEVANT_CATEGORY and event_type in _RELEVANT_TYPES


def is_fully_paid(invoice: Mapping[str, Any]) -> bool:
    """``Status`` is PAID and nothing remains due."""
    if str(invoice.get("Status") or "").upper() != "PAID":
        return False
    try:
        return Decimal(str(invoice.get("AmountDue"))) == 0
    except (InvalidOperation, ValueError):
        return False


def resolve_contact_phone(contact: Mapping[str, Any], default_country_code: str) -> str | None:
    """Find the first usable phone number on an accounting contact.

    Looks at the structured phone list (fax entries excluded), then the
    direct phone field, the mobile field, and finally address phones.
    """
    for entry in contact.get("Phones") or []:
        if not isinstance(entry, Mapping):
            continue
        if str(entry.get("PhoneType") or "").upper() == "FAX":
            continue
        phone = normalize_phone(entry, default_country_code)
        if phone:
            return phone

    for field in ("Phone", "MobilePhone"):
        phone = normalize_phone(contact.get(field), default_country_code)
        if phone:
            return phone

    for address in contact.get("Addresses") or []:
        if isinstance(address, Mapping):
            phone = normalize_phone(address.get("Phone"), default_country_code)
            if phone:
                return phone
    return None


def contact_display_name(contact: Mapping[str, Any]) -> str | None:
    name = str(contact.get("Name") or "").strip()
    if name:
        return name
    parts = [str(contact.get(key) or "").strip() for key in ("FirstName", "LastName")]
    joined = " ".join(part for part in parts if part)
    return joined or None


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class InvoiceEventProcessor:
    """Processes accounting webhook events within one database session.

    The caller commits, except for the balance stage: check, send, debit
    and record run under the per-account lock and are committed before the
    lock is released.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    settings:
        API settings (country code, unit price).
    xero_client:
        Client used to fetch invoice details.
    sms_client:
        SMS gateway client.
    refresher:
        Supplies valid access tokens for provider connections.
    account_locks:
        Per-account lock registry; defaults to the process-wide one.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        xero_client: XeroClient,
        sms_client: CellcastClient,
        refresher: CredentialRefresher,
        account_locks: KeyedLock | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._xero = xero_client
        self._sms = sms_client
        self._refresher = refresher
        self._account_locks = account_locks if account_locks is not None else ACCOUNT_LOCKS
        self._accounts = AccountRepository(session)
        self._connections = ProviderConnectionRepository(session)
        self._outcomes = OutcomeRecordRepository(session)
        self._ledger = BalanceLedger(session)

    async def process_event(self, event: Mapping[str, Any]) -> EventResult:
        """Run one webhook event through the pipeline."""
        resource_id = str(event.get("resourceId") or "") or None
        tenant_id = str(event.get("tenantId") or "") or None

        if not is_relevant_event(event) or resource_id is None or tenant_id is None:
            logger.debug(
                "Ignoring event category=%s type=%s",
                event.get("eventCategory"),
                event.get("eventType"),
            )
            return EventResult(EventDisposition.IGNORED, invoice_id=resource_id)

        connection = await self._connections.get_active_by_tenant(tenant_id)
        if connection is None:
            logger.warning("No active connection for tenant=%s; invoice=%s skipped", tenant_id, resource_id)
            return EventResult(EventDisposition.NO_CONNECTION, invoice_id=resource_id)

        account = await self._accounts.get(connection.account_id)
        if account is None or not account.is_active:
            logger.warning("Account %s inactive; invoice=%s skipped", connection.account_id, resource_id)
            return EventResult(EventDisposition.ACCOUNT_INACTIVE, invoice_id=resource_id)

        try:
            access_token = await self._refresher.ensure_valid(connection)
        except ReauthenticationRequired as exc:
            logger.warning("Connection %s needs re-authentication: %s", connection.id, exc.reason)
            return await self._record(
                account.id,
                resource_id,
                OutcomeStatus.REAUTH_REQUIRED,
                error_message=str(exc),
            )
        except TokenRefreshError as exc:
            logger.warning("Token refresh failed for connection %s: %s", connection.id, exc)
            return EventResult(EventDisposition.FETCH_FAILED, invoice_id=resource_id, detail=str(exc))

        try:
            invoice = await self._xero.fetch_invoice(access_token, tenant_id, resource_id)
        except AccountingApiError as exc:
            logger.warning("Invoice fetch failed invoice=%s tenant=%s: %s", resource_id, tenant_id, exc)
            return EventResult(EventDisposition.FETCH_FAILED, invoice_id=resource_id, detail=str(exc))

        if not is_fully_paid(invoice):
            logger.debug(
                "Invoice %s not fully paid (status=%s due=%s)",
                resource_id,
                invoice.get("Status"),
                invoice.get("AmountDue"),
            )
            return EventResult(EventDisposition.NOT_PAID, invoice_id=resource_id)

        invoice_id = str(invoice.get("InvoiceID") or resource_id)
        if await self._outcomes.has_sent(account.id, invoice_id):
            logger.info("Review request already sent for invoice=%s account=%s", invoice_id, account.id)
            return EventResult(EventDisposition.ALREADY_SENT, invoice_id=invoice_id)

        return await self._send_review_request(account, invoice_id, invoice)

    async def _send_review_request(
        self,
        account: AccountTable,
        invoice_id: str,
        invoice: Mapping[str, Any],
    ) -> EventResult:
        contact = invoice.get("Contact") or {}
        customer = {
            "invoice_number": invoice.get("InvoiceNumber"),
            "customer_name": contact_display_name(contact),
            "customer_email": contact.get("EmailAddress") or None,
        }

        phone = resolve_contact_phone(contact, self._settings.default_country_code)
        if phone is None:
            logger.info("No usable phone on invoice=%s account=%s", invoice_id, account.id)
            return await self._record(account.id, invoice_id, OutcomeStatus.NO_PHONE, **customer)
        customer["customer_phone"] = phone

        template = select_template(account.sms_template, account.sms_template_enabled)
        message = render_template(
            template,
            customer_name=customer["customer_name"],
            business_name=account.business_name,
            review_url=account.review_url,
        )
        cost = calculate_cost(message, self._settings.sms_unit_price)
        priced = {"units": cost.units, "cost": cost.cost}

        if not cost.stats.is_valid:
            return await self._record(
                account.id,
                invoice_id,
                OutcomeStatus.MESSAGE_TOO_LONG,
                error_message=f"Rendered message is {cost.stats.char_count} characters "
                f"(limit {cost.stats.max_length})",
                **customer,
                **priced,
            )

        async with self._account_locks.hold(account.id):
            result = await self._charge_and_send(account.id, invoice_id, phone, message, cost.cost, customer, priced)
            await self._session.commit()
        return result

    async def _charge_and_send(
        self,
        account_id: str,
        invoice_id: str,
        phone: str,
        message: str,
        cost: Decimal,
        customer: dict[str, Any],
        priced: dict[str, Any],
    ) -> EventResult:
        """Balance check, send, debit and record for one account at a time.

        Runs under the account lock with the account row held, so a second
        event for the same account only sees the balance after this debit.
        """
        await self._accounts.lock_for_update(account_id)

        if await self._outcomes.has_sent(account_id, invoice_id):
            logger.info("Review request already sent for invoice=%s account=%s", invoice_id, account_id)
            return EventResult(EventDisposition.ALREADY_SENT, invoice_id=invoice_id)

        if not await self._ledger.can_afford(account_id, cost):
            logger.info("Insufficient balance account=%s cost=%s invoice=%s", account_id, cost, invoice_id)
            return await self._record(account_id, invoice_id, OutcomeStatus.INSUFFICIENT_BALANCE, **customer, **priced)

        try:
            receipt = await self._sms.send(phone, message)
        except SmsGatewayError as exc:
            status = _FAILURE_STATUSES.get(exc.reason, OutcomeStatus.FAILED)
            logger.warning(
                "SMS send failed account=%s invoice=%s reason=%s: %s",
                account_id,
                invoice_id,
                exc.reason.value,
                exc,
            )
            return await self._record(account_id, invoice_id, status, error_message=str(exc), **customer, **priced)

        new_balance = await self._ledger.debit(account_id, cost)
        if new_balance is None:
            # Only reachable when a writer outside this process bypassed the row lock.
            logger.error(
                "Message sent but debit refused: account=%s invoice=%s cost=%s message_id=%s",
                account_id,
                invoice_id,
                cost,
                receipt.message_id,
            )

        return await self._record(
            account_id,
            invoice_id,
            OutcomeStatus.SENT,
            external_message_id=receipt.message_id,
            **customer,
            **priced,
        )

    async def _record(self, account_id: str, invoice_id: str, status: OutcomeStatus, **fields: Any) -> EventResult:
        row = await self._outcomes.record(
            account_id=account_id,
            external_invoice_id=invoice_id,
            status=status,
            **fields,
        )
        if row is None:
            return EventResult(EventDisposition.ALREADY_SENT, invoice_id=invoice_id, outcome=status)
        logger.info("Outcome recorded account=%s invoice=%s status=%s", account_id, invoice_id, status.value)
        return EventResult(EventDisposition.RECORDED, invoice_id=invoice_id, outcome=status)
