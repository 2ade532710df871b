"""Repository classes providing CRUD access to the Zeus state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from zeus_core.state.tables import (
    AccountTable,
    GoogleCredentialTable,
    OutcomeRecordTable,
    OutcomeStatus,
    ProviderConnectionTable,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# AccountRepository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Account settings and the prepaid balance ledger.

    Balance changes are single conditional ``UPDATE`` statements so that
    concurrent debits against the same account can never drive the balance
    below zero.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        business_name: str | None = None,
        review_url: str | None = None,
        email: str | None = None,
        balance: Decimal = Decimal("0.00"),
        account_id: str | None = None,
    ) -> AccountTable:
        row = AccountTable(
            business_name=business_name,
            review_url=review_url,
            email=email,
            balance=balance,
            lifetime_funded=balance,
        )
        if account_id is not None:
            row.id = account_id
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, account_id: str) -> AccountTable | None:
        result = await self._session.execute(select(AccountTable).where(AccountTable.id == account_id))
        return result.scalar_one_or_none()

    async def lock_for_update(self, account_id: str) -> AccountTable | None:
        """Re-read the account row and hold it until the transaction ends.

        Emits ``SELECT ... FOR UPDATE`` on PostgreSQL; SQLite has no row
        locks and the clause is omitted there.
        """
        stmt = (
            select(AccountTable)
            .where(AccountTable.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance(self, account_id: str) -> Decimal | None:
        """Return the committed balance straight from the database."""
        result = await self._session.execute(select(AccountTable.balance).where(AccountTable.id == account_id))
        return result.scalar_one_or_none()

    async def debit_if_sufficient(self, account_id: str, amount: Decimal) -> Decimal | None:
        """Atomically subtract *amount* if the balance covers it.

        Returns
        -------
        Decimal | None
            The new balance, or ``None`` when the balance was insufficient
            (or the account does not exist).  A refused debit leaves the
            balance unchanged.
        """
        if amount < 0:
            raise ValueError("Debit amount must not be negative")
        stmt = (
            update(AccountTable)
            .where(AccountTable.id == account_id, AccountTable.balance >= amount)
            .values(balance=AccountTable.balance - amount, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return None
        return await self.get_balance(account_id)

    async def credit(self, account_id: str, amount: Decimal) -> Decimal | None:
        """Atomically add *amount* to the balance and lifetime-funded total.

        Returns the new balance, or ``None`` if the account does not exist.
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        stmt = (
            update(AccountTable)
            .where(AccountTable.id == account_id)
            .values(
                balance=AccountTable.balance + amount,
                lifetime_funded=AccountTable.lifetime_funded + amount,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return None
        return await self.get_balance(account_id)

    async def update_template(self, account_id: str, template: str | None, enabled: bool) -> AccountTable | None:
        row = await self.get(account_id)
        if row is None:
            return None
        row.sms_template = template
        row.sms_template_enabled = enabled
        row.sms_template_updated_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def deactivate(self, account_id: str, reason: str) -> AccountTable | None:
        """Soft-delete an account.  Returns ``None`` if it does not exist."""
        row = await self.get(account_id)
        if row is None:
            return None
        row.is_active = False
        row.deactivated_at = datetime.now(UTC)
        row.deactivation_reason = reason
        await self._session.flush()
        return row

    async def reactivate(self, account_id: str) -> AccountTable | None:
        row = await self.get(account_id)
        if row is None:
            return None
        row.is_active = True
        row.deactivated_at = None
        row.deactivation_reason = None
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Credential repositories
# ---------------------------------------------------------------------------


class ProviderConnectionRepository:
    """Accounting-provider OAuth connections.

    Shares the ``get`` / ``update_tokens`` / ``deactivate`` /
    ``list_expiring`` surface with :class:`GoogleCredentialRepository` so the
    token refresher can drive either.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        account_id: str,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        tenant_name: str | None = None,
        provider: str = "xero",
    ) -> ProviderConnectionTable:
        """Store a new active connection, retiring any previous active one
        for the same ``(account_id, tenant_id)``.
        """
        await self._session.execute(
            update(ProviderConnectionTable)
            .where(
                ProviderConnectionTable.account_id == account_id,
                ProviderConnectionTable.tenant_id == tenant_id,
                ProviderConnectionTable.is_active.is_(True),
            )
            .values(
                is_active=False,
                deactivated_at=datetime.now(UTC),
                deactivation_reason="superseded by reconnect",
            )
            .execution_options(synchronize_session=False)
        )
        row = ProviderConnectionTable(
            account_id=account_id,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            is_active=True,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, connection_id: int) -> ProviderConnectionTable | None:
        result = await self._session.execute(
            select(ProviderConnectionTable)
            .where(ProviderConnectionTable.id == connection_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_active_by_tenant(self, tenant_id: str) -> ProviderConnectionTable | None:
        """Return the most recently updated active connection for *tenant_id*."""
        stmt = (
            select(ProviderConnectionTable)
            .where(
                ProviderConnectionTable.tenant_id == tenant_id,
                ProviderConnectionTable.is_active.is_(True),
            )
            .order_by(ProviderConnectionTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_for_account(self, account_id: str) -> ProviderConnectionTable | None:
        stmt = (
            select(ProviderConnectionTable)
            .where(
                ProviderConnectionTable.account_id == account_id,
                ProviderConnectionTable.is_active.is_(True),
            )
            .order_by(ProviderConnectionTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_tokens(
        self,
        connection_id: int,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> bool:
        """Replace the token pair in one statement.

        Returns ``False`` if the connection is missing or no longer active.
        """
        stmt = (
            update(ProviderConnectionTable)
            .where(
                ProviderConnectionTable.id == connection_id,
                ProviderConnectionTable.is_active.is_(True),
            )
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def deactivate(self, connection_id: int, reason: str) -> bool:
        """Mark the connection inactive and clear its token material."""
        stmt = (
            update(ProviderConnectionTable)
            .where(ProviderConnectionTable.id == connection_id)
            .values(
                is_active=False,
                access_token=None,
                refresh_token=None,
                deactivated_at=datetime.now(UTC),
                deactivation_reason=reason,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_expiring(self, before: datetime) -> list[ProviderConnectionTable]:
        """Return active connections whose access token expires before *before*."""
        stmt = (
            select(ProviderConnectionTable)
            .where(
                ProviderConnectionTable.is_active.is_(True),
                ProviderConnectionTable.expires_at.is_not(None),
                ProviderConnectionTable.expires_at <= before,
            )
            .order_by(ProviderConnectionTable.expires_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class GoogleCredentialRepository:
    """Google OAuth credentials, one row per account."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(
        self,
        *,
        account_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> GoogleCredentialTable:
        row = await self.get_for_account(account_id)
        if row is None:
            row = GoogleCredentialTable(account_id=account_id)
            self._session.add(row)
        row.access_token = access_token
        row.refresh_token = refresh_token
        row.expires_at = expires_at
        row.is_active = True
        row.deactivated_at = None
        row.deactivation_reason = None
        await self._session.flush()
        return row

    async def get(self, credential_id: int) -> GoogleCredentialTable | None:
        result = await self._session.execute(
            select(GoogleCredentialTable)
            .where(GoogleCredentialTable.id == credential_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_account(self, account_id: str) -> GoogleCredentialTable | None:
        result = await self._session.execute(
            select(GoogleCredentialTable)
            .where(GoogleCredentialTable.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_tokens(
        self,
        credential_id: int,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> bool:
        stmt = (
            update(GoogleCredentialTable)
            .where(
                GoogleCredentialTable.id == credential_id,
                GoogleCredentialTable.is_active.is_(True),
            )
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def deactivate(self, credential_id: int, reason: str) -> bool:
        stmt = (
            update(GoogleCredentialTable)
            .where(GoogleCredentialTable.id == credential_id)
            .values(
                is_active=False,
                access_token=None,
                refresh_token=None,
                deactivated_at=datetime.now(UTC),
                deactivation_reason=reason,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_expiring(self, before: datetime) -> list[GoogleCredentialTable]:
        stmt = (
            select(GoogleCredentialTable)
            .where(
                GoogleCredentialTable.is_active.is_(True),
                GoogleCredentialTable.expires_at.is_not(None),
                GoogleCredentialTable.expires_at <= before,
            )
            .order_by(GoogleCredentialTable.expires_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# OutcomeRecordRepository
# ---------------------------------------------------------------------------


class OutcomeRecordRepository:
    """Append-mostly log of review-request attempts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def has_sent(self, account_id: str, external_invoice_id: str) -> bool:
        """Return ``True`` if a ``sent`` record exists for this invoice."""
        stmt = select(func.count()).where(
            OutcomeRecordTable.account_id == account_id,
            OutcomeRecordTable.external_invoice_id == external_invoice_id,
            OutcomeRecordTable.status == OutcomeStatus.SENT.value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def record(
        self,
        *,
        account_id: str,
        external_invoice_id: str,
        status: OutcomeStatus,
        invoice_number: str | None = None,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        customer_email: str | None = None,
        external_message_id: str | None = None,
        units: int | None = None,
        cost: Decimal | None = None,
        error_message: str | None = None,
    ) -> OutcomeRecordTable | None:
        """Insert an outcome row.

        The insert runs inside a savepoint.  Returns ``None`` when a second
        ``sent`` row for the same invoice is rejected by the unique index;
        the surrounding transaction stays usable.
        """
        row = OutcomeRecordTable(
            account_id=account_id,
            external_invoice_id=external_invoice_id,
            invoice_number=invoice_number,
            customer_name=customer_name,
            customer_phone=customer_phone,
            customer_email=customer_email,
            status=status.value,
            external_message_id=external_message_id,
            units=units,
            cost=cost,
            error_message=error_message,
            sent_at=datetime.now(UTC) if status == OutcomeStatus.SENT else None,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
        except IntegrityError:
            logger.warning(
                "Duplicate sent outcome rejected: account=%s invoice=%s",
                account_id,
                external_invoice_id,
            )
            return None
        return row

    async def list_for_account(self, account_id: str, *, limit: int = 50) -> list[OutcomeRecordTable]:
        stmt = (
            select(OutcomeRecordTable)
            .where(OutcomeRecordTable.account_id == account_id)
            .order_by(OutcomeRecordTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self, account_id: str, status: OutcomeStatus) -> int:
        stmt = select(func.count()).where(
            OutcomeRecordTable.account_id == account_id,
            OutcomeRecordTable.status == status.value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()
