"""Keeps access tokens valid without user involvement.

Refresh happens proactively (the token expires within the lookahead
window) or reactively (a provider API answered 401 and the caller forces
one).  Either way refresh is a critical section per connection:

- overlapping requests for the same connection join a single in-flight
  refresh task and all observe its result, token or error;
- the task runs under the connection's lock and re-reads the row first,
  so a caller that arrives just after a rotation gets the new token
  without another round-trip;
- the task is shielded from caller cancellation: once the refresh request
  is on the wire it runs to completion or timeout.

Connections without a refresh token are never proactively refreshed; an
absent ``expires_at`` means the token is treated as non-expiring.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_connect.config import Settings, get_settings
from agent_connect.errors import ConnectionUnavailable, ReauthorizationRequired
from agent_connect.models import ConnectionStatus
from agent_connect.services.connection_locks import ConnectionLocks
from agent_connect.services.credential_store import ConnectionKey, CredentialStore, StoredConnection
from agent_connect.services.service_registry import ServiceRegistry
from agent_connect.services.token_client import TokenClient
from agent_connect.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessGrant:
    """A usable access token and whether it was minted by a refresh during this call."""

    token: str = field(repr=False)
    refreshed: bool = False


def next_expiry(previous: datetime | None, reported: datetime | None) -> datetime | None:
    """Keep ``expires_at`` strictly increasing across refreshes.

    ``None`` means non-expiring and always counts as later.
    """
    if reported is None or previous is None:
        return reported
    if reported <= previous:
        logger.warning("Provider reported an expiry that does not extend the current one")
        return previous + timedelta(seconds=1)
    return reported


class RefreshCoordinator:
    """Hands out valid access tokens, refreshing them at most once at a time per connection."""

    def __init__(
        self,
        store: CredentialStore,
        registry: ServiceRegistry,
        token_client: TokenClient,
        locks: ConnectionLocks,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._token_client = token_client
        self._locks = locks
        self._settings = settings or get_settings()
        self._inflight: dict[ConnectionKey, asyncio.Task[StoredConnection]] = {}

    @property
    def lookahead_seconds(self) -> int:
        return self._settings.OAUTH_REFRESH_LOOKAHEAD_SECONDS

    def _needs_refresh(self, connection: StoredConnection) -> bool:
        return connection.expires_within(self.lookahead_seconds)

    async def _load_usable(self, key: ConnectionKey) -> StoredConnection:
        connection = await self._store.get(key)
        if connection is None:
            raise ConnectionUnavailable(f"No connection for {key.service}", key.service)
        if not connection.is_usable:
            raise ConnectionUnavailable(
                f"Connection for {key.service} is {connection.status.value}", key.service
            )
        return connection

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_valid_access_token(self, key: ConnectionKey) -> str:
        """Return an access token that is valid for at least the lookahead window.

        Raises:
            ConnectionUnavailable: No connection, or it is REVOKED / INVALID.
            ReauthorizationRequired: The refresh token was rejected, or the
                token expired and cannot be refreshed.
            TransientRefreshFailure: Refresh failed for a retryable reason.
        """
        grant = await self.acquire(key)
        return grant.token

    async def acquire(self, key: ConnectionKey) -> AccessGrant:
        """Like :meth:`get_valid_access_token`, also reporting whether a refresh happened."""
        connection = await self._load_usable(key)
        if not self._needs_refresh(connection):
            return AccessGrant(connection.access_token)

        if not connection.can_refresh:
            if not connection.is_expired():
                # No way to refresh early; the token is still good for now.
                return AccessGrant(connection.access_token)
            await self._store.set_status(key, ConnectionStatus.EXPIRED)
            raise ReauthorizationRequired(f"Access token for {key.service} expired", key.service)

        refreshed = await self._join_refresh(key, force=False, rejected_token=None)
        return AccessGrant(refreshed.access_token, refreshed=True)

    async def force_refresh(self, key: ConnectionKey, rejected_token: str | None = None) -> str:
        """Refresh regardless of ``expires_at`` (after a downstream 401).

        If *rejected_token* is given and the stored token has already moved
        on (another caller refreshed), the newer token is returned without
        contacting the provider.

        Raises:
            ConnectionUnavailable: No connection, or it is REVOKED / INVALID.
            ReauthorizationRequired: No refresh token, or the provider rejected it.
            TransientRefreshFailure: Refresh failed for a retryable reason.
        """
        await self._load_usable(key)
        refreshed = await self._join_refresh(key, force=True, rejected_token=rejected_token)
        return refreshed.access_token

    async def mark_invalid(self, key: ConnectionKey) -> None:
        """Flag a connection whose credentials the provider keeps rejecting."""
        async with self._locks.get(key):
            changed = await self._store.set_status(key, ConnectionStatus.INVALID)
        if changed:
            logger.warning("Connection %s marked invalid", key)

    # ------------------------------------------------------------------
    # Single-flight refresh
    # ------------------------------------------------------------------

    async def _join_refresh(
        self,
        key: ConnectionKey,
        *,
        force: bool,
        rejected_token: str | None,
    ) -> StoredConnection:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_refresh(key, force=force, rejected_token=rejected_token))
            self._inflight[key] = task

            def _forget(done: asyncio.Task[StoredConnection], key: ConnectionKey = key) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]
                if not done.cancelled():
                    done.exception()  # mark retrieved when every waiter was cancelled

            task.add_done_callback(_forget)
        else:
            logger.debug("Joining in-flight refresh for %s", key)
        return await asyncio.shield(task)

    async def _run_refresh(
        self,
        key: ConnectionKey,
        *,
        force: bool,
        rejected_token: str | None,
    ) -> StoredConnection:
        async with self._locks.get(key):
            connection = await self._load_usable(key)

            # Double-check: someone may have rotated the token meanwhile
            if force and rejected_token is not None and connection.access_token != rejected_token:
                return connection
            if not force and not self._needs_refresh(connection):
                return connection

            if not connection.can_refresh:
                await self._store.set_status(key, ConnectionStatus.INVALID)
                raise ReauthorizationRequired(
                    f"Connection for {key.service} cannot be refreshed", key.service
                )

            return await self._refresh_locked(key, connection)

    async def _refresh_locked(self, key: ConnectionKey, connection: StoredConnection) -> StoredConnection:
        config = self._registry.get(key.service)
        previous_status = connection.status
        if previous_status == ConnectionStatus.REFRESHING:
            # Left over from an interrupted refresh
            previous_status = ConnectionStatus.ACTIVE
        await self._store.set_status(key, ConnectionStatus.REFRESHING)
        logger.info("Refreshing access token for %s", key)

        try:
            tokens = await self._token_client.refresh(key.service, config, connection.refresh_token or "")
        except ReauthorizationRequired:
            await self._store.set_status(key, ConnectionStatus.INVALID)
            logger.warning("Refresh token for %s rejected; reauthorization required", key)
            raise
        except Exception:
            # Transient failures leave the connection as it was
            await self._store.set_status(key, previous_status)
            raise

        now = utcnow()
        refreshed = await self._store.replace_tokens(
            key,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=next_expiry(connection.expires_at, tokens.expires_at(now)),
            scopes=tokens.scopes,
        )
        logger.info("Refreshed access token for %s", key)
        return refreshed
