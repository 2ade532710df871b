"""SQLAlchemy 2.0 ORM table definitions for the Zeus state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for schema creation and the repository
layer.

Money columns are ``Numeric(12, 2)`` and surface as :class:`~decimal.Decimal`.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class OutcomeStatus(str, Enum):
    """Delivery status of a review-request attempt.

    Everything other than ``PENDING`` and ``SENT`` is terminal: the attempt
    is not retried automatically.
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    NO_PHONE = "no_phone"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PROVIDER_INSUFFICIENT_CREDIT = "provider_insufficient_credit"
    PROVIDER_AUTH_FAILED = "provider_auth_failed"
    MESSAGE_TOO_LONG = "message_too_long"
    INVALID_RECIPIENT = "invalid_recipient"
    REAUTH_REQUIRED = "reauth_required"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Zeus tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountTable(Base):
    """A business tenant with its review settings and prepaid SMS balance.

    Accounts are never deleted; ``is_active`` is the soft-delete flag.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    business_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    review_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    sms_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    sms_template_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_template_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    lifetime_funded: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("lifetime_funded >= 0", name="ck_accounts_lifetime_funded_non_negative"),
        Index("ix_accounts_email", "email"),
    )


# ---------------------------------------------------------------------------
# Accounting provider connections
# ---------------------------------------------------------------------------


class ProviderConnectionTable(Base):
    """OAuth connection to one external accounting organisation.

    Rows are mutated in place on every token refresh and marked inactive
    (never deleted) on refresh failure or disconnect, preserving history.
    At most one active row exists per ``(account_id, tenant_id)``.
    """

    __tablename__ = "provider_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="xero")
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_provider_connections_tenant_active", "tenant_id", "is_active"),
        Index("ix_provider_connections_account", "account_id"),
        Index(
            "ux_provider_connections_account_tenant_active",
            "account_id",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


# ---------------------------------------------------------------------------
# Google credentials
# ---------------------------------------------------------------------------


class GoogleCredentialTable(Base):
    """Google OAuth tokens for an account (optional, one per account)."""

    __tablename__ = "google_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_google_credentials_expiry", "is_active", "expires_at"),)


# ---------------------------------------------------------------------------
# Review-request outcomes
# ---------------------------------------------------------------------------


class OutcomeRecordTable(Base):
    """One row per review-request attempt triggered by an invoice event.

    Immutable after creation except for ``status``, ``external_message_id``
    and ``sent_at``.  For a given ``(account_id, external_invoice_id)`` at
    most one row may reach status ``sent``; the partial unique index backs
    the pre-send existence check.
    """

    __tablename__ = "outcome_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    external_invoice_id: Mapped[str] = mapped_column(String(128), nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(48), nullable=False, default=OutcomeStatus.PENDING.value)
    external_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_outcome_records_account_invoice", "account_id", "external_invoice_id"),
        Index("ix_outcome_records_account_created", "account_id", "created_at"),
        Index(
            "ux_outcome_records_sent_once",
            "account_id",
            "external_invoice_id",
            unique=True,
            postgresql_where=text("status = 'sent'"),
            sqlite_where=text("status = 'sent'"),
        ),
    )
