"""Shared fixtures for Zeus API tests.

Provides test settings, a file-backed SQLite session factory with a seeded
account and accounting connection, mock provider clients, webhook handler
dependencies, and an ``AsyncClient`` wired to the FastAPI app.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from zeus_core.state.repository import AccountRepository, ProviderConnectionRepository
from zeus_core.state.tables import Base
from zeus_core.webhooks import FingerprintCache, compute_signature

from api.config import APISettings
from api.dependencies import get_db_session, get_settings, get_sms_client, get_webhook_deps
from api.main import create_app
from api.services.invoice_processor import InvoiceEventProcessor
from api.services.sms_gateway import CellcastClient, SmsReceipt
from api.services.token_refresher import XeroTokenRefresher
from api.services.webhooks.base import WebhookDeps
from api.services.xero_client import XeroClient

TENANT_ID = "tenant-1"
XERO_WEBHOOK_KEY = "test-xero-webhook-key"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        platform_env="dev",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        xero_webhook_key=XERO_WEBHOOK_KEY,
        xero_client_id="xero-client",
        xero_client_secret="xero-secret",
        cellcast_api_key="cellcast-key",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        token_refresh_enabled=False,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(test_settings: APISettings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file with every table created."""
    engine = create_async_engine(test_settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture()
def seed_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Return a coroutine that creates an account plus an active connection."""

    async def _seed(
        balance: str = "1.00",
        *,
        tenant_id: str = TENANT_ID,
        business_name: str = "Acme Plumbing",
        review_url: str = "https://g.page/r/acme",
    ) -> str:
        async with session_factory() as session:
            account = await AccountRepository(session).create(
                business_name=business_name,
                review_url=review_url,
                email="owner@acme.test",
                balance=Decimal(balance),
            )
            await ProviderConnectionRepository(session).create(
                account_id=account.id,
                tenant_id=tenant_id,
                tenant_name="Acme Pty Ltd",
                access_token="access-token",
                refresh_token="refresh-token",
                expires_at=datetime.now(UTC) + timedelta(minutes=30),
            )
            await session.commit()
            return account.id

    return _seed


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_invoice() -> Callable[..., dict[str, Any]]:
    """Return a factory for accounting invoice records."""

    def _make(
        invoice_id: str = "inv-1",
        *,
        status: str = "PAID",
        amount_due: str | float = 0,
        phones: list[dict[str, str]] | None = None,
        name: str = "Jane Citizen",
    ) -> dict[str, Any]:
        if phones is None:
            phones = [
                {"PhoneType": "MOBILE", "PhoneCountryCode": "", "PhoneAreaCode": "", "PhoneNumber": "0400 803 880"}
            ]
        return {
            "InvoiceID": invoice_id,
            "InvoiceNumber": "INV-0001",
            "Status": status,
            "AmountDue": amount_due,
            "Contact": {"Name": name, "EmailAddress": "jane@example.test", "Phones": phones},
        }

    return _make


@pytest.fixture()
def make_event() -> Callable[..., dict[str, Any]]:
    """Return a factory for accounting webhook events."""

    def _make(invoice_id: str = "inv-1", tenant_id: str = TENANT_ID, **overrides: Any) -> dict[str, Any]:
        event = {
            "resourceUrl": f"https://api.xero.com/api.xro/2.0/Invoices/{invoice_id}",
            "resourceId": invoice_id,
            "eventDateUtc": "2026-10-18T02:00:00.000",
            "eventType": "UPDATE",
            "eventCategory": "INVOICE",
            "tenantId": tenant_id,
            "tenantType": "ORGANISATION",
        }
        event.update(overrides)
        return event

    return _make


@pytest.fixture()
def signed_xero_delivery() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Return a factory producing a signed accounting webhook body and headers."""

    def _build(events: list[dict[str, Any]], sequence: int = 1) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(
            {
                "events": events,
                "firstEventSequence": sequence,
                "lastEventSequence": sequence + max(len(events) - 1, 0),
                "entropy": "SOMERANDOMENTROPY",
            }
        ).encode()
        headers = {
            "x-xero-signature": compute_signature(body, XERO_WEBHOOK_KEY),
            "content-type": "application/json",
        }
        return body, headers

    return _build


# ---------------------------------------------------------------------------
# Mock provider clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_xero_client(make_invoice: Callable[..., dict[str, Any]]) -> AsyncMock:
    """Accounting client returning a fully paid invoice by default."""
    client = AsyncMock(spec=XeroClient)
    client.fetch_invoice.return_value = make_invoice()
    return client


@pytest.fixture()
def mock_sms_client() -> AsyncMock:
    """SMS client that accepts every message."""
    client = AsyncMock(spec=CellcastClient)
    client.send.return_value = SmsReceipt(message_id="msg-001")
    client.verify_credentials.return_value = True
    return client


@pytest.fixture()
def mock_refresher() -> AsyncMock:
    """Token refresher that always hands back a valid access token."""
    refresher = AsyncMock(spec=XeroTokenRefresher)
    refresher.provider = "xero"
    refresher.ensure_valid.return_value = "access-token"
    return refresher


# ---------------------------------------------------------------------------
# Webhook dependencies and app
# ---------------------------------------------------------------------------


@pytest.fixture()
def webhook_deps(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_xero_client: AsyncMock,
    mock_sms_client: AsyncMock,
    mock_refresher: AsyncMock,
) -> WebhookDeps:
    """Handler dependencies backed by SQLite and the mock clients."""

    def _build_processor(session: AsyncSession) -> InvoiceEventProcessor:
        return InvoiceEventProcessor(
            session,
            test_settings,
            xero_client=mock_xero_client,
            sms_client=mock_sms_client,
            refresher=mock_refresher,
        )

    return WebhookDeps(
        settings=test_settings,
        session_factory=session_factory,
        fingerprints=FingerprintCache(),
        payment_events=FingerprintCache(),
        processor_factory=_build_processor,
    )


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    webhook_deps: WebhookDeps,
    mock_sms_client: AsyncMock,
):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_webhook_deps] = lambda: webhook_deps
    application.dependency_overrides[get_sms_client] = lambda: mock_sms_client
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
