"""Programmatic surface used by agents and the HTTP API.

``ConnectionService`` wires the credential store, authorization flow,
refresh coordinator, scope validator, credential injector and capability
registry together.  It must be a process-wide singleton: the per-connection
locks and the in-flight refresh table only serialize callers that share
the same instance (see :func:`get_connection_service`).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_connect.config import Settings, get_settings
from agent_connect.errors import ProviderUnavailable
from agent_connect.models import DEFAULT_ACCOUNT_LABEL, ConnectionStatus
from agent_connect.services.authorization_flow import AuthorizationFlowController, AuthorizationRequest
from agent_connect.services.capabilities import CapabilityRegistry
from agent_connect.services.connection_locks import ConnectionLocks
from agent_connect.services.credential_injector import CredentialInjector
from agent_connect.services.credential_store import ConnectionKey, CredentialStore, StoredConnection
from agent_connect.services.refresh_coordinator import RefreshCoordinator
from agent_connect.services.scope_validator import ScopeValidator, parse_scopes
from agent_connect.services.service_registry import ServiceRegistry
from agent_connect.services.token_client import TokenClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionSummary:
    """What callers may know about a connection (never its secrets)."""

    service: str
    account_label: str
    connected: bool
    status: str
    scopes: list[str] = field(default_factory=list)
    expires_at: datetime | None = None

    @classmethod
    def from_connection(cls, connection: StoredConnection) -> ConnectionSummary:
        status = connection.effective_status()
        return cls(
            service=connection.service,
            account_label=connection.key.account_label,
            connected=connection.is_usable,
            status=status.value,
            scopes=sorted(connection.scopes),
            expires_at=connection.expires_at,
        )


@dataclass(frozen=True)
class InvokeResult:
    """Outcome of a provider call that got past authorization."""

    ok: bool
    status_code: int
    data: Any = None


class ConnectionService:
    """Facade: connect, complete, status, disconnect, invoke."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.registry = ServiceRegistry(self._settings)
        self.store = CredentialStore(session_factory, self._settings)
        self.locks = ConnectionLocks()
        self.token_client = TokenClient(self._settings, transport=transport)
        self.flow = AuthorizationFlowController(self.store, self.registry, self.token_client, self.locks)
        self.coordinator = RefreshCoordinator(
            self.store, self.registry, self.token_client, self.locks, self._settings
        )
        self.validator = ScopeValidator()
        self.injector = CredentialInjector(self.store, self.coordinator, self.validator)
        self.capabilities = CapabilityRegistry(self.registry, self._settings)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(
        self,
        user_id: str,
        service: str,
        scopes: Iterable[str] | str | None = None,
        account_label: str = DEFAULT_ACCOUNT_LABEL,
    ) -> AuthorizationRequest:
        """Start (or extend) a connection.

        When the account is already connected, the new request asks for the
        union of the scopes already granted and *scopes*, so an incremental
        connect never loses permissions.
        """
        requested = parse_scopes(scopes)
        existing = await self.store.get(ConnectionKey(user_id, service, account_label))
        if existing is not None and existing.is_usable and requested:
            requested = self.validator.upgrade_scopes(existing, requested)
        return await self.flow.begin_authorization(user_id, service, requested, account_label)

    async def complete(
        self,
        service: str,
        state: str | None,
        code: str | None = None,
        error: str | None = None,
    ) -> ConnectionSummary:
        connection = await self.flow.complete_authorization(service, state, code=code, error=error)
        return ConnectionSummary.from_connection(connection)

    # ------------------------------------------------------------------
    # Status / Disconnect
    # ------------------------------------------------------------------

    async def status(
        self,
        user_id: str,
        service: str,
        account_label: str | None = None,
    ) -> list[ConnectionSummary]:
        """Connection status for one service (every account, or just *account_label*)."""
        self.registry.get(service)
        connections = await self.store.list_for_user(user_id, service)
        if account_label is not None:
            connections = [c for c in connections if c.key.account_label == account_label]
        return [ConnectionSummary.from_connection(c) for c in connections]

    async def list_connections(self, user_id: str) -> list[ConnectionSummary]:
        connections = await self.store.list_for_user(user_id)
        return [ConnectionSummary.from_connection(c) for c in connections]

    async def disconnect(
        self,
        user_id: str,
        service: str,
        account_label: str = DEFAULT_ACCOUNT_LABEL,
        *,
        purge: bool = False,
    ) -> bool:
        """Revoke the connection (terminal) and optionally delete its row.

        The provider is asked to revoke the token when it exposes a
        revocation endpoint; failure to do so is logged, not raised.

        Returns:
            True if a connection existed.
        """
        key = ConnectionKey(user_id, service, account_label)
        async with self.locks.get(key):
            before = await self.store.revoke(key)
            if purge:
                await self.store.delete(key)

        if before is None:
            return False

        config = self.registry.get(service)
        if before.status != ConnectionStatus.REVOKED and config.revocation_endpoint:
            if before.refresh_token:
                await self.token_client.revoke(service, config, before.refresh_token, "refresh_token")
            elif before.access_token:
                await self.token_client.revoke(service, config, before.access_token, "access_token")

        logger.info("Disconnected %s (purge=%s)", key, purge)
        return True

    # ------------------------------------------------------------------
    # Invoke
    # ------------------------------------------------------------------

    async def invoke(
        self,
        user_id: str,
        service: str,
        account_label: str | None,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> InvokeResult:
        """Run a registered capability with the connection's credentials.

        Raises:
            UnknownService, UnknownAction, InvalidActionParams,
            ConnectionUnavailable, InsufficientScopes, ReauthorizationRequired,
            TransientRefreshFailure, ProviderUnavailable: See :mod:`agent_connect.errors`.
        """
        self.registry.get(service)
        capability = self.capabilities.get(service, action)
        call_params = dict(params or {})

        async def _request(token: str) -> httpx.Response:
            return await capability.invoke(token, call_params)

        try:
            response = await self.injector.call(
                user_id, service, account_label, capability.required_scopes, _request
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "%s.%s for %s could not reach the provider: %s",
                service, action, user_id, type(exc).__name__,
            )
            raise ProviderUnavailable(f"{service} is unreachable", service) from exc

        if not response.is_success:
            logger.info(
                "%s.%s for %s returned %d", service, action, user_id, response.status_code
            )
            return InvokeResult(ok=False, status_code=response.status_code)

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return InvokeResult(ok=True, status_code=response.status_code, data=data)

    async def upgrade_authorization(
        self,
        user_id: str,
        service: str,
        account_label: str | None,
        missing: Iterable[str],
    ) -> AuthorizationRequest:
        """Begin an incremental authorization asking for granted + *missing* scopes."""
        label = account_label or DEFAULT_ACCOUNT_LABEL
        existing = await self.store.get(ConnectionKey(user_id, service, label))
        scopes = self.validator.upgrade_scopes(existing, missing)
        return await self.flow.begin_authorization(user_id, service, scopes, label)


@lru_cache
def get_connection_service() -> ConnectionService:
    """Process-wide :class:`ConnectionService` (FastAPI dependency)."""
    from agent_connect.database import async_session_factory

    return ConnectionService(async_session_factory)
