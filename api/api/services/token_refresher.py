"""OAuth access-token lifecycle for accounting and Google credentials.

One generic :class:`CredentialRefresher` holds the refresh rules; the Xero
and Google subclasses only supply the storage repository and the shape of
the refresh-grant request.

Rules
-----
* A token expiring more than ``margin_seconds`` from now is used as-is with
  no network call.
* Only an ``invalid_grant`` answer from the token endpoint is terminal: the
  credential is deactivated, its secrets cleared, and
  :class:`ReauthenticationRequired` raised.  Every other failure raises
  :class:`TokenRefreshError` and leaves the stored credential untouched.
* Refreshes are serialised per credential.  A caller that waited on the lock
  re-reads the row and reuses a token that a concurrent caller already
  refreshed, so a rotated refresh token is never presented twice.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from zeus_core.state.repository import GoogleCredentialRepository, ProviderConnectionRepository

from api.services.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """A refresh attempt failed transiently; stored tokens are unchanged."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReauthenticationRequired(Exception):
    """The credential can no longer be refreshed; the user must reconnect."""

    def __init__(self, provider: str, credential_id: int | None, reason: str) -> None:
        super().__init__(f"{provider} credential {credential_id} requires re-authentication: {reason}")
        self.provider = provider
        self.credential_id = credential_id
        self.reason = reason


@dataclass(frozen=True)
class TokenGrant:
    """Token material returned by a successful refresh grant."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime


@dataclass
class RefreshSweepResult:
    """Counters from one :meth:`CredentialRefresher.refresh_expiring` pass."""

    provider: str
    examined: int = 0
    refreshed: int = 0
    reused: int = 0
    failed: int = 0
    deactivated: int = 0


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as a timezone-aware UTC datetime.

    SQLite hands timestamps back naive; they are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        return str(error) if error else None
    return None


# ---------------------------------------------------------------------------
# Generic refresher
# ---------------------------------------------------------------------------


class CredentialRefresher:
    """Keeps one kind of stored OAuth credential usable.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions used to re-read and persist
        credentials.  Token writes are committed before the per-credential
        lock is released.
    token_url:
        The provider's OAuth token endpoint.
    client_id, client_secret:
        OAuth application credentials.
    margin_seconds:
        Tokens expiring within this window are refreshed before use.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    timeout:
        Per-request timeout in seconds for the default client.
    clock:
        Callable returning the current UTC time; injectable for tests.
    """

    provider = "generic"
    default_expires_in = 1800

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        margin_seconds: int,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._margin = timedelta(seconds=margin_seconds)
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._clock = clock or _utcnow
        self._locks = KeyedLock()

    # -- Provider hooks ------------------------------------------------------

    def _store(self, session: AsyncSession) -> Any:
        """Return the repository that persists this provider's credentials."""
        raise NotImplementedError

    def _grant_request(self, refresh_token: str) -> tuple[dict[str, str], dict[str, str]]:
        """Return the form body and headers of a refresh-token grant."""
        raise NotImplementedError

    # -- Public API ----------------------------------------------------------

    @property
    def margin(self) -> timedelta:
        return self._margin

    def is_fresh(self, credential: Any, window: timedelta | None = None) -> bool:
        """Whether *credential* stays valid beyond *window* (default: the margin)."""
        expires_at = as_utc(credential.expires_at)
        if expires_at is None or not credential.access_token:
            return False
        return expires_at > self._clock() + (window if window is not None else self._margin)

    async def ensure_valid(self, credential: Any) -> str:
        """Return a usable access token for *credential*, refreshing if needed.

        Raises
        ------
        ReauthenticationRequired
            The credential is inactive or its refresh token was rejected.
        TokenRefreshError
            The refresh failed transiently.
        """
        if not credential.is_active:
            raise ReauthenticationRequired(self.provider, credential.id, "credential is inactive")
        if self.is_fresh(credential):
            return credential.access_token
        token, _ = await self._refresh(credential.id, self._margin)
        return token

    async def refresh_expiring(self, lookahead_seconds: int | None = None) -> RefreshSweepResult:
        """Refresh every active credential expiring within the lookahead window.

        One credential's failure is counted and logged; the sweep continues.
        """
        window = timedelta(seconds=lookahead_seconds) if lookahead_seconds is not None else self._margin
        result = RefreshSweepResult(provider=self.provider)

        async with self._session_factory() as session:
            rows = await self._store(session).list_expiring(self._clock() + window)
            candidate_ids = [row.id for row in rows]
        result.examined = len(candidate_ids)

        for credential_id in candidate_ids:
            try:
                _, refreshed = await self._refresh(credential_id, window)
            except ReauthenticationRequired as exc:
                result.deactivated += 1
                logger.warning("Token sweep: %s", exc)
            except TokenRefreshError as exc:
                result.failed += 1
                logger.warning(
                    "Token sweep: transient refresh failure provider=%s credential=%s: %s",
                    self.provider,
                    credential_id,
                    exc,
                )
            except Exception as exc:
                result.failed += 1
                logger.error(
                    "Token sweep: unexpected error provider=%s credential=%s: %s",
                    self.provider,
                    credential_id,
                    exc,
                    exc_info=True,
                )
            else:
                if refreshed:
                    result.refreshed += 1
                else:
                    result.reused += 1

        if result.examined:
            logger.info(
                "Token sweep complete provider=%s examined=%d refreshed=%d reused=%d failed=%d deactivated=%d",
                result.provider,
                result.examined,
                result.refreshed,
                result.reused,
                result.failed,
                result.deactivated,
            )
        return result

    async def close(self) -> None:
        await self._client.aclose()

    # -- Internals -----------------------------------------------------------

    async def _refresh(self, credential_id: int, window: timedelta) -> tuple[str, bool]:
        """Refresh under the per-credential lock.

        Returns the access token and whether a network refresh happened
        (``False`` when a concurrent caller had already refreshed it).
        """
        async with self._locks.hold(credential_id):
            async with self._session_factory() as session:
                store = self._store(session)
                current = await store.get(credential_id)
                if current is None or not current.is_active:
                    raise ReauthenticationRequired(self.provider, credential_id, "credential is inactive")
                if self.is_fresh(current, window):
                    return current.access_token, False

                if not current.refresh_token:
                    await store.deactivate(credential_id, "no refresh token stored")
                    await session.commit()
                    raise ReauthenticationRequired(self.provider, credential_id, "no refresh token stored")

                try:
                    grant = await self._request_grant(credential_id, current.refresh_token)
                except ReauthenticationRequired:
                    await store.deactivate(credential_id, "refresh token rejected (invalid_grant)")
                    await session.commit()
                    raise

                stored = await store.update_tokens(
                    credential_id,
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token or current.refresh_token,
                    expires_at=grant.expires_at,
                )
                if not stored:
                    raise ReauthenticationRequired(
                        self.provider, credential_id, "credential deactivated during refresh"
                    )
                await session.commit()

        logger.info(
            "Refreshed %s token credential=%s expires_at=%s",
            self.provider,
            credential_id,
            grant.expires_at.isoformat(),
        )
        return grant.access_token, True

    async def _request_grant(self, credential_id: int, refresh_token: str) -> TokenGrant:
        data, headers = self._grant_request(refresh_token)
        try:
            response = await self._client.post(self._token_url, data=data, headers=headers)
        except httpx.TimeoutException as exc:
            raise TokenRefreshError(f"{self.provider} token endpoint timed out") from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"{self.provider} token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            error_code = _oauth_error_code(response)
            if error_code == "invalid_grant":
                raise ReauthenticationRequired(self.provider, credential_id, "invalid_grant")
            raise TokenRefreshError(
                f"{self.provider} token endpoint returned {response.status_code} ({error_code or 'no error code'})",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            access_token = str(body["access_token"])
            expires_in = int(body.get("expires_in") or self.default_expires_in)
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenRefreshError(f"{self.provider} token endpoint returned a malformed body") from exc

        return TokenGrant(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )


# ---------------------------------------------------------------------------
# Provider specialisations
# ---------------------------------------------------------------------------


class XeroTokenRefresher(CredentialRefresher):
    """Refreshes accounting-provider connections (HTTP Basic client auth)."""

    provider = "xero"
    default_expires_in = 1800

    def _store(self, session: AsyncSession) -> ProviderConnectionRepository:
        return ProviderConnectionRepository(session)

    def _grant_request(self, refresh_token: str) -> tuple[dict[str, str], dict[str, str]]:
        basic = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode()).decode("ascii")
        return (
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            {"Authorization": f"Basic {basic}", "Accept": "application/json"},
        )


class GoogleTokenRefresher(CredentialRefresher):
    """Refreshes Google credentials (client credentials in the form body).

    Google usually omits ``refresh_token`` from the response; the stored one
    is kept in that case.
    """

    provider = "google"
    default_expires_in = 3600

    def _store(self, session: AsyncSession) -> GoogleCredentialRepository:
        return GoogleCredentialRepository(session)

    def _grant_request(self, refresh_token: str) -> tuple[dict[str, str], dict[str, str]]:
        return (
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
            {"Accept": "application/json"},
        )


# ---------------------------------------------------------------------------
# Connection health
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CredentialHealth:
    """Point-in-time view of one credential."""

    connected: bool
    valid: bool = False
    needs_refresh: bool = False
    expires_at: datetime | None = None
    label: str | None = None


@dataclass(frozen=True)
class TokenStatus:
    account_id: str
    xero: CredentialHealth
    google: CredentialHealth


def _health(row: Any, margin: timedelta, now: datetime, label: str | None = None) -> CredentialHealth:
    if row is None or not row.is_active:
        return CredentialHealth(connected=False)
    expires_at = as_utc(row.expires_at)
    valid = bool(row.access_token) and expires_at is not None and expires_at > now
    return CredentialHealth(
        connected=True,
        valid=valid,
        needs_refresh=expires_at is None or expires_at <= now + margin,
        expires_at=expires_at,
        label=label,
    )


async def token_status(
    session: AsyncSession,
    account_id: str,
    *,
    xero_margin_seconds: int = 300,
    google_margin_seconds: int = 600,
    now: datetime | None = None,
) -> TokenStatus:
    """Report whether the account's Xero and Google credentials are usable."""
    now = now or _utcnow()
    connection = await ProviderConnectionRepository(session).get_active_for_account(account_id)
    google = await GoogleCredentialRepository(session).get_for_account(account_id)
    return TokenStatus(
        account_id=account_id,
        xero=_health(
            connection,
            timedelta(seconds=xero_margin_seconds),
            now,
            label=connection.tenant_name if connection is not None else None,
        ),
        google=_health(google, timedelta(seconds=google_margin_seconds), now),
    )
