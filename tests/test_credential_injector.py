"""Tests for CredentialInjector: bounded retry after an authorization failure."""

from __future__ import annotations

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from agent_connect.errors import (
    ConnectionUnavailable,
    InsufficientScopes,
    ReauthorizationRequired,
    TransientRefreshFailure,
)
from agent_connect.models import ConnectionStatus


def _recording_request(*responses: httpx.Response) -> AsyncMock:
    """request_fn stub returning *responses* in order and recording tokens."""
    return AsyncMock(side_effect=list(responses))


def _tokens(request_fn: AsyncMock) -> list[str]:
    return [call.args[0] for call in request_fn.await_args_list]


class TestCall:
    """Token injection and the single retry."""

    @pytest.mark.asyncio
    async def test_success_uses_stored_token(self, connection_service, provider, seed):
        await seed()
        request_fn = _recording_request(httpx.Response(200))

        resp = await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        assert resp.status_code == 200
        assert _tokens(request_fn) == ["stored-access"]
        assert provider.token_requests == []

    @pytest.mark.asyncio
    async def test_401_once_then_success(self, connection_service, provider, seed):
        key = await seed()
        request_fn = _recording_request(httpx.Response(401), httpx.Response(200))

        resp = await connection_service.injector.call("user-1", "acme", "default", ["read"], request_fn)

        assert resp.status_code == 200
        assert _tokens(request_fn) == ["stored-access", "access-1"]
        assert len(provider.refresh_requests) == 1
        assert (await connection_service.store.get(key)).status == ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_401_twice_marks_invalid(self, connection_service, provider, seed):
        key = await seed()
        request_fn = _recording_request(httpx.Response(401), httpx.Response(401))

        with pytest.raises(ReauthorizationRequired):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        assert request_fn.await_count == 2
        assert len(provider.refresh_requests) == 1
        assert (await connection_service.store.get(key)).status == ConnectionStatus.INVALID

    @pytest.mark.asyncio
    async def test_403_is_an_auth_failure(self, connection_service, provider, seed):
        await seed()
        request_fn = _recording_request(httpx.Response(403), httpx.Response(200))

        resp = await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)
        assert resp.status_code == 200
        assert len(provider.refresh_requests) == 1

    @pytest.mark.asyncio
    async def test_rejected_fresh_token_is_not_refreshed_again(self, connection_service, provider, seed):
        key = await seed(expires_in=timedelta(minutes=-1))
        request_fn = _recording_request(httpx.Response(401))

        with pytest.raises(ReauthorizationRequired):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        assert _tokens(request_fn) == ["access-1"]
        assert len(provider.refresh_requests) == 1
        assert (await connection_service.store.get(key)).status == ConnectionStatus.INVALID

    @pytest.mark.asyncio
    async def test_other_errors_are_returned_unchanged(self, connection_service, provider, seed):
        await seed()
        request_fn = _recording_request(httpx.Response(500))

        resp = await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)
        assert resp.status_code == 500
        assert provider.token_requests == []

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_propagates(self, connection_service, provider, seed):
        key = await seed()
        provider.token_responses.append(httpx.Response(503))
        request_fn = _recording_request(httpx.Response(401))

        with pytest.raises(TransientRefreshFailure):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)
        assert (await connection_service.store.get(key)).status == ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_disconnect_during_call_stays_revoked(self, connection_service, provider, seed):
        key = await seed(expires_in=timedelta(minutes=-1))

        async def request_fn(token: str) -> httpx.Response:
            await connection_service.disconnect("user-1", "acme")
            return httpx.Response(401)

        with pytest.raises(ReauthorizationRequired):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        assert (await connection_service.store.get(key)).status == ConnectionStatus.REVOKED

    @pytest.mark.asyncio
    async def test_disconnect_before_retry_stays_revoked(self, connection_service, provider, seed):
        key = await seed()
        calls: list[str] = []

        async def request_fn(token: str) -> httpx.Response:
            calls.append(token)
            if len(calls) == 1:
                await connection_service.disconnect("user-1", "acme")
            return httpx.Response(401)

        with pytest.raises(ConnectionUnavailable):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        assert calls == ["stored-access"]
        assert provider.refresh_requests == []
        assert (await connection_service.store.get(key)).status == ConnectionStatus.REVOKED


class TestPreconditions:
    """Failures raised before any network I/O."""

    @pytest.mark.asyncio
    async def test_revoked_connection_makes_no_calls(self, connection_service, provider, seed):
        key = await seed()
        await connection_service.store.set_status(key, ConnectionStatus.REVOKED)
        request_fn = AsyncMock()

        with pytest.raises(ConnectionUnavailable):
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        request_fn.assert_not_awaited()
        assert provider.token_requests == []

    @pytest.mark.asyncio
    async def test_missing_connection(self, connection_service):
        request_fn = AsyncMock()
        with pytest.raises(ConnectionUnavailable):
            await connection_service.injector.call("user-1", "acme", None, [], request_fn)
        request_fn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_scope_makes_no_calls(self, connection_service, provider, seed):
        await seed(expires_in=timedelta(minutes=-1))
        request_fn = AsyncMock()

        with pytest.raises(InsufficientScopes) as exc_info:
            await connection_service.injector.call("user-1", "acme", None, ["read", "write"], request_fn)

        assert exc_info.value.missing == frozenset({"write"})
        request_fn.assert_not_awaited()
        assert provider.token_requests == []


class TestNoSecretLeakage:
    @pytest.mark.asyncio
    async def test_tokens_never_logged(self, connection_service, provider, seed, caplog):
        caplog.set_level(logging.DEBUG, logger="agent_connect")
        await seed(access_token="secret-access", refresh_token="secret-refresh")
        provider.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        request_fn = _recording_request(httpx.Response(401))

        with pytest.raises(ReauthorizationRequired) as exc_info:
            await connection_service.injector.call("user-1", "acme", None, ["read"], request_fn)

        for secret in ("secret-access", "secret-refresh", "acme-secret"):
            assert secret not in caplog.text
            assert secret not in str(exc_info.value)
