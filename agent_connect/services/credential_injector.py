"""Wraps outbound provider calls with the connection's current access token.

Retry policy is bounded: one forced refresh and one retry at most.  A
second authorization failure means the provider is rejecting a freshly
minted credential, which no amount of retrying will fix.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable

import httpx

from agent_connect.errors import ConnectionUnavailable, ReauthorizationRequired
from agent_connect.models import DEFAULT_ACCOUNT_LABEL
from agent_connect.services.credential_store import ConnectionKey, CredentialStore
from agent_connect.services.refresh_coordinator import RefreshCoordinator
from agent_connect.services.scope_validator import ScopeValidator

logger = logging.getLogger(__name__)

# Status codes a provider API uses to say "this token is not accepted"
AUTH_FAILURE_STATUS: frozenset[int] = frozenset({401, 403})

RequestFn = Callable[[str], Awaitable[httpx.Response]]


def is_auth_failure(response: httpx.Response) -> bool:
    return response.status_code in AUTH_FAILURE_STATUS


class CredentialInjector:
    """Runs a request function with a valid token, retrying once after a forced refresh."""

    def __init__(
        self,
        store: CredentialStore,
        coordinator: RefreshCoordinator,
        validator: ScopeValidator | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._validator = validator or ScopeValidator()

    async def call(
        self,
        user_id: str,
        service: str,
        account_label: str | None,
        required_scopes: Iterable[str] | str | None,
        request_fn: RequestFn,
    ) -> httpx.Response:
        """Invoke *request_fn* with the connection's access token.

        Args:
            user_id: Local user owning the connection.
            service: Service name.
            account_label: Account on the service (``"default"`` when None).
            required_scopes: Scopes the action needs.
            request_fn: ``async (token) -> httpx.Response``.

        Returns:
            The provider response (any status other than an auth failure).

        Raises:
            ConnectionUnavailable: Missing, REVOKED or INVALID connection
                (raised before any network I/O).
            InsufficientScopes: The connection lacks required scopes.
            ReauthorizationRequired: The provider rejected the credential
                after the single permitted refresh.
            TransientRefreshFailure: Refresh failed for a retryable reason.
        """
        key = ConnectionKey(user_id, service, account_label or DEFAULT_ACCOUNT_LABEL)

        connection = await self._store.get(key)
        if connection is None or not connection.is_usable:
            state = connection.status.value if connection else "missing"
            raise ConnectionUnavailable(f"Connection for {service} is {state}", service)

        self._validator.ensure_scopes(connection, required_scopes)

        grant = await self._coordinator.acquire(key)
        response = await request_fn(grant.token)
        if not is_auth_failure(response):
            return response

        if grant.refreshed:
            # Token was minted moments ago; a second refresh will not help
            logger.warning("Provider rejected a freshly refreshed token for %s", key)
            await self._coordinator.mark_invalid(key)
            raise ReauthorizationRequired(f"{service} rejected the refreshed credential", service)

        logger.info("Provider answered %d for %s; forcing refresh", response.status_code, key)
        token = await self._coordinator.force_refresh(key, rejected_token=grant.token)
        response = await request_fn(token)
        if is_auth_failure(response):
            logger.warning("Provider rejected %s twice; marking invalid", key)
            await self._coordinator.mark_invalid(key)
            raise ReauthorizationRequired(f"{service} rejected the refreshed credential", service)
        return response
