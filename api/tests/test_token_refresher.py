"""Tests for OAuth token refresh.

Uses ``httpx.MockTransport`` for the token endpoint and a SQLite store for
the credentials.

Covers:
- Fresh tokens are returned without a network call
- Expiring tokens are refreshed and persisted (rotation and reuse of the
  stored refresh token)
- ``invalid_grant`` deactivates the credential and clears its tokens
- Transient failures leave stored tokens untouched
- Concurrent callers trigger a single refresh and leave no lock behind
- Background sweep counters
- Google grant shape
- Connection health report
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from zeus_core.state.repository import GoogleCredentialRepository, ProviderConnectionRepository

from api.services.token_refresher import (
    GoogleTokenRefresher,
    ReauthenticationRequired,
    TokenRefreshError,
    XeroTokenRefresher,
    token_status,
)

_TOKEN_URL = "https://identity.example.test/connect/token"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _TokenEndpoint:
    """Records token requests and answers with a configurable response."""

    def __init__(self, status_code: int = 200, body: dict[str, Any] | None = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 1800,
        }
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    def form(self, index: int = 0) -> dict[str, str]:
        parsed = parse_qs(self.requests[index].content.decode())
        return {key: values[0] for key, values in parsed.items()}


def _xero_refresher(session_factory, handler) -> XeroTokenRefresher:
    return XeroTokenRefresher(
        session_factory,
        token_url=_TOKEN_URL,
        client_id="client-id",
        client_secret="client-secret",
        margin_seconds=300,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def _connection(
    session_factory,
    account_id: str,
    *,
    expires_in: timedelta,
    tenant_id: str = "tenant-2",
    refresh_token: str | None = "old-refresh",
):
    async with session_factory() as session:
        row = await ProviderConnectionRepository(session).create(
            account_id=account_id,
            tenant_id=tenant_id,
            access_token="old-access",
            refresh_token=refresh_token or "",
            expires_at=datetime.now(UTC) + expires_in,
        )
        await session.commit()
        return row


async def _reload(session_factory, connection_id: int):
    async with session_factory() as session:
        return await ProviderConnectionRepository(session).get(connection_id)


# ---------------------------------------------------------------------------
# ensure_valid
# ---------------------------------------------------------------------------


class TestEnsureValid:
    """On-demand token validation and refresh."""

    @pytest.mark.asyncio
    async def test_fresh_token_makes_no_call(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(minutes=30))
        endpoint = _TokenEndpoint()
        refresher = _xero_refresher(session_factory, endpoint)

        assert await refresher.ensure_valid(conn) == "old-access"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed_and_stored(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(minutes=2))
        endpoint = _TokenEndpoint()
        refresher = _xero_refresher(session_factory, endpoint)

        assert await refresher.ensure_valid(conn) == "new-access"

        request = endpoint.requests[0]
        assert request.headers["Authorization"].startswith("Basic ")
        assert endpoint.form() == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
        stored = await _reload(session_factory, conn.id)
        assert stored.access_token == "new-access"
        assert stored.refresh_token == "new-refresh"
        assert refresher.is_fresh(stored)

    @pytest.mark.asyncio
    async def test_missing_refresh_token_in_response_keeps_stored(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10))
        endpoint = _TokenEndpoint(body={"access_token": "new-access", "expires_in": 1800})
        refresher = _xero_refresher(session_factory, endpoint)

        await refresher.ensure_valid(conn)

        stored = await _reload(session_factory, conn.id)
        assert stored.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_invalid_grant_deactivates(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10))
        endpoint = _TokenEndpoint(status_code=400, body={"error": "invalid_grant"})
        refresher = _xero_refresher(session_factory, endpoint)

        with pytest.raises(ReauthenticationRequired):
            await refresher.ensure_valid(conn)

        stored = await _reload(session_factory, conn.id)
        assert stored.is_active is False
        assert stored.access_token is None
        assert stored.refresh_token is None
        assert conn.id not in refresher._locks

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status_code", "body"),
        [
            (500, {"error": "server_error"}),
            (400, {"error": "invalid_client"}),
            (200, {"unexpected": "shape"}),
        ],
    )
    async def test_transient_failure_leaves_tokens(
        self, session_factory, seed_account, status_code: int, body: dict[str, Any]
    ) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10))
        refresher = _xero_refresher(session_factory, _TokenEndpoint(status_code=status_code, body=body))

        with pytest.raises(TokenRefreshError):
            await refresher.ensure_valid(conn)

        stored = await _reload(session_factory, conn.id)
        assert stored.is_active is True
        assert stored.access_token == "old-access"
        assert stored.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_network_error(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10))

        def _unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        refresher = _xero_refresher(session_factory, _unreachable)

        with pytest.raises(TokenRefreshError):
            await refresher.ensure_valid(conn)

    @pytest.mark.asyncio
    async def test_no_stored_refresh_token(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10), refresh_token=None)
        endpoint = _TokenEndpoint()
        refresher = _xero_refresher(session_factory, endpoint)

        with pytest.raises(ReauthenticationRequired):
            await refresher.ensure_valid(conn)
        assert endpoint.requests == []
        assert (await _reload(session_factory, conn.id)).is_active is False

    @pytest.mark.asyncio
    async def test_inactive_credential(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(minutes=30))
        async with session_factory() as session:
            await ProviderConnectionRepository(session).deactivate(conn.id, "disconnected")
            await session.commit()
        inactive = await _reload(session_factory, conn.id)

        with pytest.raises(ReauthenticationRequired):
            await _xero_refresher(session_factory, _TokenEndpoint()).ensure_valid(inactive)

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(seconds=-10))
        endpoint = _TokenEndpoint()
        refresher = _xero_refresher(session_factory, endpoint)

        tokens = await asyncio.gather(*(refresher.ensure_valid(conn) for _ in range(3)))

        assert tokens == ["new-access"] * 3
        assert len(endpoint.requests) == 1
        assert len(refresher._locks) == 0


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------


class TestRefreshExpiring:
    """Proactive refresh of credentials inside the lookahead window."""

    @pytest.mark.asyncio
    async def test_sweep_counts(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        good = await _connection(session_factory, account_id, expires_in=timedelta(minutes=5), tenant_id="t-good")
        await _connection(
            session_factory,
            account_id,
            expires_in=timedelta(minutes=5),
            tenant_id="t-revoked",
            refresh_token="revoked-refresh",
        )

        def _handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            if form["refresh_token"][0] == "revoked-refresh":
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "swept", "refresh_token": "r2", "expires_in": 1800})

        refresher = _xero_refresher(session_factory, _handler)

        # The seeded connection expires in 30 minutes, outside the 10-minute window.
        result = await refresher.refresh_expiring(lookahead_seconds=600)

        assert result.provider == "xero"
        assert result.examined == 2
        assert result.refreshed == 1
        assert result.deactivated == 1
        assert result.failed == 0
        assert (await _reload(session_factory, good.id)).access_token == "swept"

    @pytest.mark.asyncio
    async def test_sweep_counts_transient_failures(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        conn = await _connection(session_factory, account_id, expires_in=timedelta(minutes=5))
        refresher = _xero_refresher(session_factory, _TokenEndpoint(status_code=503, body={}))

        result = await refresher.refresh_expiring(lookahead_seconds=600)

        assert result.failed == 1
        assert (await _reload(session_factory, conn.id)).is_active is True

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, session_factory, seed_account) -> None:
        await seed_account()
        endpoint = _TokenEndpoint()

        result = await _xero_refresher(session_factory, endpoint).refresh_expiring(lookahead_seconds=60)

        assert result.examined == 0
        assert endpoint.requests == []


# ---------------------------------------------------------------------------
# Google credentials and health
# ---------------------------------------------------------------------------


class TestGoogleRefresher:
    """Client credentials travel in the form body."""

    @pytest.mark.asyncio
    async def test_grant_shape(self, session_factory, seed_account) -> None:
        account_id = await seed_account()
        async with session_factory() as session:
            cred = await GoogleCredentialRepository(session).upsert(
                account_id=account_id,
                access_token="g-old",
                refresh_token="g-refresh",
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
            )
            await session.commit()
        endpoint = _TokenEndpoint(body={"access_token": "g-new", "expires_in": 3599})
        refresher = GoogleTokenRefresher(
            session_factory,
            token_url=_TOKEN_URL,
            client_id="g-client",
            client_secret="g-secret",
            margin_seconds=600,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
        )

        assert await refresher.ensure_valid(cred) == "g-new"

        assert endpoint.form() == {
            "grant_type": "refresh_token",
            "refresh_token": "g-refresh",
            "client_id": "g-client",
            "client_secret": "g-secret",
        }
        assert "Authorization" not in endpoint.requests[0].headers
        async with session_factory() as session:
            stored = await GoogleCredentialRepository(session).get(cred.id)
        assert stored.refresh_token == "g-refresh"


class TestTokenStatus:
    """Connection health summary."""

    @pytest.mark.asyncio
    async def test_connected_and_missing(self, session_factory, seed_account) -> None:
        account_id = await seed_account()

        async with session_factory() as session:
            status = await token_status(session, account_id)

        assert status.xero.connected is True
        assert status.xero.valid is True
        assert status.xero.needs_refresh is False
        assert status.xero.label == "Acme Pty Ltd"
        assert status.google.connected is False

    @pytest.mark.asyncio
    async def test_expired_connection(self, session_factory, seed_account) -> None:
        account_id = await seed_account()

        async with session_factory() as session:
            status = await token_status(session, account_id, now=datetime.now(UTC) + timedelta(hours=1))

        assert status.xero.valid is False
        assert status.xero.needs_refresh is True
