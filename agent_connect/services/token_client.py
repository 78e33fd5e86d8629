"""Server-to-server calls against a provider's token endpoint.

Handles the authorization-code exchange, refresh-token grants and RFC 7009
revocation, and classifies failures:

- rejected grant (400/401, ``invalid_grant`` and friends) -> terminal
- timeout, transport error, 408, 429, 5xx                -> transient

Provider response bodies are never copied into exception messages; only
the status code and the OAuth ``error`` code are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import httpx

from agent_connect.config import ServiceConfig, Settings, get_settings
from agent_connect.errors import (
    CodeExchangeFailure,
    ReauthorizationRequired,
    TransientRefreshFailure,
)
from agent_connect.services.scope_validator import parse_scopes

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS: frozenset[int] = frozenset({408, 425, 429})
_TRANSIENT_ERRORS: frozenset[str] = frozenset({"temporarily_unavailable", "server_error", "slow_down"})


@dataclass(frozen=True)
class TokenResponse:
    """Parsed token endpoint response."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    scopes: frozenset[str] | None = None
    token_type: str = "bearer"

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


class TokenEndpointError(Exception):
    """Token endpoint answered with an error (internal, classified by callers)."""

    def __init__(self, status_code: int, error: str | None, retry_after: float | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.retry_after = retry_after
        super().__init__(f"Token endpoint error: {status_code} {error or ''}".strip())

    @property
    def is_transient(self) -> bool:
        return (
            self.status_code >= 500
            or self.status_code in _TRANSIENT_STATUS
            or self.error in _TRANSIENT_ERRORS
        )


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _expires_in(value: object) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        raise TokenEndpointError(400, "invalid_response") from None


def _error_code(payload: object) -> str | None:
    if isinstance(payload, dict):
        error = payload.get("error")
        return str(error) if error else None
    return None


class TokenClient:
    """Thin httpx wrapper around one provider's token endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.OAUTH_HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _post_token(self, config: ServiceConfig, data: dict[str, str]) -> TokenResponse:
        async with self._client() as client:
            resp = await client.post(
                config.token_endpoint,
                data=data,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not resp.is_success:
            raise TokenEndpointError(resp.status_code, _error_code(payload), _retry_after(resp))

        # Some providers (GitHub, Slack) report grant errors with a 200 status
        if not isinstance(payload, dict) or payload.get("ok") is False or payload.get("error"):
            raise TokenEndpointError(400, _error_code(payload) or "invalid_response")

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenEndpointError(400, "missing_access_token")

        expires_in = _expires_in(payload.get("expires_in"))
        scope = payload.get("scope")
        return TokenResponse(
            access_token=str(access_token),
            refresh_token=payload.get("refresh_token") or None,
            expires_in=expires_in,
            scopes=parse_scopes(scope) if scope is not None else None,
            token_type=str(payload.get("token_type") or "bearer"),
        )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        service: str,
        config: ServiceConfig,
        *,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            CodeExchangeFailure: On any non-success outcome, including timeouts.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            return await self._post_token(config, data)
        except TokenEndpointError as exc:
            logger.warning("Code exchange failed for %s: %s", service, exc)
            raise CodeExchangeFailure(
                f"Token exchange failed ({exc.status_code})", service, exc.status_code
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Code exchange for %s could not reach the provider: %s", service, type(exc).__name__)
            raise CodeExchangeFailure("Token endpoint unreachable", service) from exc

    async def refresh(self, service: str, config: ServiceConfig, refresh_token: str) -> TokenResponse:
        """Redeem a refresh token.

        Raises:
            ReauthorizationRequired: The provider rejected the refresh token.
            TransientRefreshFailure: Timeout, network failure or retryable status.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        try:
            return await self._post_token(config, data)
        except TokenEndpointError as exc:
            if exc.is_transient:
                logger.warning("Transient refresh failure for %s: %s", service, exc)
                raise TransientRefreshFailure(
                    f"Token refresh temporarily failed ({exc.status_code})",
                    service,
                    retry_after=exc.retry_after,
                ) from exc
            logger.warning("Refresh token rejected for %s: %s", service, exc)
            raise ReauthorizationRequired("Refresh token was rejected", service) from exc
        except httpx.TimeoutException as exc:
            logger.warning("Token refresh for %s timed out", service)
            raise TransientRefreshFailure("Token refresh timed out", service) from exc
        except httpx.HTTPError as exc:
            logger.warning("Token refresh for %s failed: %s", service, type(exc).__name__)
            raise TransientRefreshFailure("Token endpoint unreachable", service) from exc

    async def revoke(self, service: str, config: ServiceConfig, token: str, token_type_hint: str) -> bool:
        """Best-effort RFC 7009 revocation.  Returns True if the provider accepted it."""
        if not config.revocation_endpoint or not token:
            return False
        try:
            async with self._client() as client:
                resp = await client.post(
                    config.revocation_endpoint,
                    data={
                        "token": token,
                        "token_type_hint": token_type_hint,
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                    },
                )
        except httpx.HTTPError:
            logger.warning("Token revocation request for %s failed", service, exc_info=True)
            return False
        if not resp.is_success:
            logger.warning("Provider refused token revocation for %s (%d)", service, resp.status_code)
            return False
        return True
