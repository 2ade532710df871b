"""FastAPI dependency injection for settings, database sessions and outbound clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from zeus_core.state.database import get_engine, get_session
from zeus_core.state.database import get_session_factory as session_factory_for
from zeus_core.webhooks.dedup import FingerprintCache

from api.config import APISettings, load_api_settings
from api.services.invoice_processor import InvoiceEventProcessor
from api.services.sms_gateway import CellcastClient
from api.services.token_refresher import GoogleTokenRefresher, XeroTokenRefresher
from api.services.webhooks.base import WebhookDeps
from api.services.xero_client import XeroClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_ENGINE_NOT_INITIALISED = (
    "Database engine has not been initialised. Ensure init_engine() is called during application startup."
)


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = session_factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that manage their own transaction boundaries
    (webhook handlers, the token refresher, the background scheduler).
    """
    if _session_factory is None:
        raise RuntimeError(_ENGINE_NOT_INITIALISED)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    if _engine is None:
        raise RuntimeError(_ENGINE_NOT_INITIALISED)
    async with get_session(_engine) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Outbound clients
# ---------------------------------------------------------------------------

_xero_client: XeroClient | None = None
_sms_client: CellcastClient | None = None
_xero_refresher: XeroTokenRefresher | None = None
_google_refresher: GoogleTokenRefresher | None = None


def init_clients(settings: APISettings) -> None:
    """Create the provider clients and token refreshers.

    Requires :func:`init_engine` to have run; the refreshers persist
    tokens through the global session factory.
    """
    global _xero_client, _sms_client, _xero_refresher, _google_refresher  # noqa: PLW0603
    session_factory = get_session_factory()
    timeout = settings.http_timeout_seconds

    _xero_client = XeroClient(base_url=settings.xero_api_base_url, timeout=timeout)
    _sms_client = CellcastClient(
        api_key=settings.cellcast_api_key.get_secret_value(),
        base_url=settings.cellcast_base_url,
        timeout=timeout,
    )
    _xero_refresher = XeroTokenRefresher(
        session_factory,
        token_url=settings.xero_token_url,
        client_id=settings.xero_client_id,
        client_secret=settings.xero_client_secret.get_secret_value(),
        margin_seconds=settings.xero_refresh_margin_seconds,
        timeout=timeout,
    )
    _google_refresher = GoogleTokenRefresher(
        session_factory,
        token_url=settings.google_token_url,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret.get_secret_value(),
        margin_seconds=settings.google_refresh_margin_seconds,
        timeout=timeout,
    )


async def dispose_clients() -> None:
    """Close every client's underlying HTTP pool."""
    global _xero_client, _sms_client, _xero_refresher, _google_refresher  # noqa: PLW0603
    for client in (_xero_client, _sms_client, _xero_refresher, _google_refresher):
        if client is not None:
            await client.close()
    _xero_client = None
    _sms_client = None
    _xero_refresher = None
    _google_refresher = None


def _require(value: object, name: str) -> None:
    if value is None:
        raise RuntimeError(
            f"{name} has not been initialised. Ensure init_clients() is called during application startup."
        )


def get_xero_client() -> XeroClient:
    _require(_xero_client, "XeroClient")
    return _xero_client  # type: ignore[return-value]


def get_sms_client() -> CellcastClient:
    _require(_sms_client, "CellcastClient")
    return _sms_client  # type: ignore[return-value]


def get_xero_refresher() -> XeroTokenRefresher:
    _require(_xero_refresher, "XeroTokenRefresher")
    return _xero_refresher  # type: ignore[return-value]


def get_google_refresher() -> GoogleTokenRefresher:
    _require(_google_refresher, "GoogleTokenRefresher")
    return _google_refresher  # type: ignore[return-value]


SmsClientDep = Annotated[CellcastClient, Depends(get_sms_client)]

# ---------------------------------------------------------------------------
# Webhook deduplication
# ---------------------------------------------------------------------------

_fingerprints: FingerprintCache | None = None
_payment_events: FingerprintCache | None = None


def init_fingerprint_caches(settings: APISettings) -> None:
    """Create the process-local delivery fingerprint caches."""
    global _fingerprints, _payment_events  # noqa: PLW0603
    _fingerprints = FingerprintCache(settings.webhook_dedup_capacity, settings.webhook_dedup_retain)
    _payment_events = FingerprintCache(settings.webhook_dedup_capacity, settings.webhook_dedup_retain)


def get_fingerprint_cache() -> FingerprintCache:
    _require(_fingerprints, "FingerprintCache")
    return _fingerprints  # type: ignore[return-value]


def get_payment_event_cache() -> FingerprintCache:
    _require(_payment_events, "FingerprintCache")
    return _payment_events  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Webhook handler collaborators
# ---------------------------------------------------------------------------


def get_webhook_deps(settings: SettingsDep) -> WebhookDeps:
    """Bundle everything a webhook handler needs for one delivery."""
    xero_client = get_xero_client()
    sms_client = get_sms_client()
    refresher = get_xero_refresher()

    def _build_processor(session: AsyncSession) -> InvoiceEventProcessor:
        return InvoiceEventProcessor(
            session,
            settings,
            xero_client=xero_client,
            sms_client=sms_client,
            refresher=refresher,
        )

    return WebhookDeps(
        settings=settings,
        session_factory=get_session_factory(),
        fingerprints=get_fingerprint_cache(),
        payment_events=get_payment_event_cache(),
        processor_factory=_build_processor,
    )


WebhookDepsDep = Annotated[WebhookDeps, Depends(get_webhook_deps)]
