"""Encrypted persistence for OAuth connections and pending authorizations.

Pure data layer: no network calls.  Each public method runs in its own
short transaction opened from the injected session factory, so a caller
never observes half-written token material.

Tokens are encrypted with Fernet before they reach the database.  The key
comes from ``OAUTH_ENCRYPTION_KEY`` (several comma-separated keys are
accepted; the first encrypts, all decrypt, which allows key rotation).
Unlike a plaintext fallback, a missing or malformed key is fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NamedTuple

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_connect.config import Settings, get_settings
from agent_connect.errors import ConnectionUnavailable, CredentialKeyError
from agent_connect.models import (
    DEFAULT_ACCOUNT_LABEL,
    ConnectionStatus,
    OAuthConnection,
    PendingAuthorization,
)
from agent_connect.services.scope_validator import join_scopes, parse_scopes
from agent_connect.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ConnectionKey(NamedTuple):
    """Identity of an :class:`OAuthConnection`."""

    user_id: str
    service: str
    account_label: str = DEFAULT_ACCOUNT_LABEL

    def __str__(self) -> str:
        return f"{self.user_id}/{self.service}/{self.account_label}"


@dataclass(frozen=True)
class StoredConnection:
    """Decrypted snapshot of one connection row.

    Secrets are excluded from ``repr`` so the object is safe to log.
    """

    key: ConnectionKey
    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    token_type: str
    scopes: frozenset[str]
    expires_at: datetime | None
    status: ConnectionStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_refreshed_at: datetime | None = None

    @property
    def service(self) -> str:
        return self.key.service

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    @property
    def is_usable(self) -> bool:
        """False for terminal states that require a new authorization."""
        return self.status not in (ConnectionStatus.REVOKED, ConnectionStatus.INVALID)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """True if the token expires within *seconds* (or already has)."""
        if self.expires_at is None:
            return False
        return self.expires_at - (now or utcnow()) <= timedelta(seconds=seconds)

    def effective_status(self, now: datetime | None = None) -> ConnectionStatus:
        """Stored status, with ACTIVE reported as EXPIRED once the token lapses."""
        if self.status == ConnectionStatus.ACTIVE and self.is_expired(now):
            return ConnectionStatus.EXPIRED
        return self.status


class CredentialStore:
    """Encrypted CRUD over ``oauth_connections`` and ``oauth_pending_authorizations``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._fernet = self._init_fernet()

    def _init_fernet(self) -> MultiFernet:
        raw = self._settings.OAUTH_ENCRYPTION_KEY
        keys = [k.strip() for k in (raw or "").split(",") if k.strip()]
        if not keys:
            raise CredentialKeyError("OAUTH_ENCRYPTION_KEY is not configured")
        try:
            return MultiFernet([Fernet(k.encode()) for k in keys])
        except (ValueError, TypeError) as exc:
            raise CredentialKeyError("OAUTH_ENCRYPTION_KEY is not a valid Fernet key") from exc

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string using Fernet."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token string using Fernet.

        Raises:
            CredentialKeyError: If the ciphertext was not produced by a configured key.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialKeyError(
                "Stored credential could not be decrypted; check OAUTH_ENCRYPTION_KEY"
            ) from exc

    def _snapshot(self, row: OAuthConnection) -> StoredConnection:
        return StoredConnection(
            key=ConnectionKey(row.user_id, row.service, row.account_label),
            access_token=self.decrypt(row.access_token_encrypted) if row.access_token_encrypted else "",
            refresh_token=self.decrypt(row.refresh_token_encrypted) if row.refresh_token_encrypted else None,
            token_type=row.token_type or "bearer",
            scopes=parse_scopes(row.granted_scopes),
            expires_at=ensure_utc(row.expires_at),
            status=ConnectionStatus(row.status),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            last_refreshed_at=ensure_utc(row.last_refreshed_at),
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(db: AsyncSession, key: ConnectionKey) -> OAuthConnection | None:
        stmt = select(OAuthConnection).where(
            OAuthConnection.user_id == key.user_id,
            OAuthConnection.service == key.service,
            OAuthConnection.account_label == key.account_label,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, key: ConnectionKey) -> StoredConnection | None:
        """Return the decrypted connection for *key*, or None."""
        async with self._session_factory() as db:
            row = await self._load(db, key)
            return self._snapshot(row) if row else None

    async def list_for_user(self, user_id: str, service: str | None = None) -> list[StoredConnection]:
        """All connections of *user_id*, optionally restricted to one service."""
        stmt = select(OAuthConnection).where(OAuthConnection.user_id == user_id)
        if service is not None:
            stmt = stmt.where(OAuthConnection.service == service)
        stmt = stmt.order_by(OAuthConnection.service, OAuthConnection.account_label)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [self._snapshot(row) for row in result.scalars().all()]

    async def upsert(
        self,
        key: ConnectionKey,
        *,
        access_token: str,
        refresh_token: str | None,
        scopes: frozenset[str],
        expires_at: datetime | None,
        token_type: str = "bearer",
    ) -> StoredConnection:
        """Create or replace the connection for *key* with status ACTIVE."""
        now = utcnow()
        async with self._session_factory() as db, db.begin():
            row = await self._load(db, key)
            if row is None:
                row = OAuthConnection(
                    user_id=key.user_id,
                    service=key.service,
                    account_label=key.account_label,
                    created_at=now,
                )
                db.add(row)
            row.access_token_encrypted = self.encrypt(access_token)
            row.refresh_token_encrypted = self.encrypt(refresh_token) if refresh_token else None
            row.token_type = token_type
            row.granted_scopes = join_scopes(scopes)
            row.expires_at = expires_at
            row.status = ConnectionStatus.ACTIVE.value
            row.last_refreshed_at = None
            row.updated_at = now
            await db.flush()
            snapshot = self._snapshot(row)

        logger.info("Stored OAuth connection %s", key)
        return snapshot

    async def replace_tokens(
        self,
        key: ConnectionKey,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scopes: frozenset[str] | None = None,
    ) -> StoredConnection:
        """Rotate tokens after a successful refresh and mark the connection ACTIVE.

        A ``None`` *refresh_token* keeps the stored one (the provider did not rotate).
        """
        now = utcnow()
        async with self._session_factory() as db, db.begin():
            row = await self._load(db, key)
            if row is None:
                raise LookupError(f"Connection {key} disappeared during refresh")
            if row.status == ConnectionStatus.REVOKED.value:
                raise ConnectionUnavailable(f"Connection for {key.service} was revoked", key.service)
            row.access_token_encrypted = self.encrypt(access_token)
            if refresh_token:
                row.refresh_token_encrypted = self.encrypt(refresh_token)
            if scopes:
                row.granted_scopes = join_scopes(scopes)
            row.expires_at = expires_at
            row.status = ConnectionStatus.ACTIVE.value
            row.last_refreshed_at = now
            row.updated_at = now
            await db.flush()
            return self._snapshot(row)

    async def set_status(self, key: ConnectionKey, status: ConnectionStatus) -> bool:
        """Update only the status column.

        REVOKED is terminal: a revoked row keeps its status and False is
        returned, as for a missing row.
        """
        async with self._session_factory() as db, db.begin():
            row = await self._load(db, key)
            if row is None:
                return False
            if row.status == ConnectionStatus.REVOKED.value and status != ConnectionStatus.REVOKED:
                logger.debug("Connection %s is revoked; ignoring status %s", key, status.value)
                return False
            row.status = status.value
            row.updated_at = utcnow()
        logger.debug("Connection %s status -> %s", key, status.value)
        return True

    async def revoke(self, key: ConnectionKey) -> StoredConnection | None:
        """Mark the connection REVOKED and wipe its secrets.

        Returns the snapshot taken *before* wiping (so callers can still
        revoke the token at the provider), or None if there was no row.
        """
        async with self._session_factory() as db, db.begin():
            row = await self._load(db, key)
            if row is None:
                return None
            before = self._snapshot(row)
            row.access_token_encrypted = ""
            row.refresh_token_encrypted = None
            row.status = ConnectionStatus.REVOKED.value
            row.updated_at = utcnow()
        logger.info("Revoked OAuth connection %s", key)
        return before

    async def delete(self, key: ConnectionKey) -> bool:
        """Remove the connection row.  Returns True if a row was deleted."""
        stmt = delete(OAuthConnection).where(
            OAuthConnection.user_id == key.user_id,
            OAuthConnection.service == key.service,
            OAuthConnection.account_label == key.account_label,
        )
        async with self._session_factory() as db, db.begin():
            result = await db.execute(stmt)
        deleted = bool(result.rowcount)
        if deleted:
            logger.info("Deleted OAuth connection %s", key)
        return deleted

    # ------------------------------------------------------------------
    # Pending authorizations
    # ------------------------------------------------------------------

    async def create_pending(
        self,
        *,
        state_token: str,
        user_id: str,
        service: str,
        account_label: str,
        requested_scopes: frozenset[str],
        code_verifier: str | None,
    ) -> PendingAuthorization:
        async with self._session_factory() as db, db.begin():
            pending = PendingAuthorization(
                state_token=state_token,
                user_id=user_id,
                service=service,
                account_label=account_label,
                requested_scopes=join_scopes(requested_scopes),
                code_verifier=code_verifier,
                created_at=utcnow(),
            )
            db.add(pending)
        return pending

    async def consume_pending(self, state_token: str) -> PendingAuthorization | None:
        """Atomically delete and return the pending row for *state_token*.

        Expired rows are deleted too but reported as None, as are unknown
        or already-consumed states.  Concurrent callbacks presenting the
        same state cannot both succeed: only one DELETE returns the row.
        """
        stmt = (
            delete(PendingAuthorization)
            .where(PendingAuthorization.state_token == state_token)
            .returning(PendingAuthorization)
        )
        async with self._session_factory() as db, db.begin():
            result = await db.execute(stmt)
            pending = result.scalar_one_or_none()

        if pending is None:
            return None
        if self._pending_expired(pending):
            logger.info("Pending authorization for %s/%s expired", pending.user_id, pending.service)
            return None
        return pending

    def _pending_expired(self, pending: PendingAuthorization) -> bool:
        created = ensure_utc(pending.created_at)
        ttl = timedelta(seconds=self._settings.OAUTH_PENDING_TTL_SECONDS)
        return created is None or created + ttl <= utcnow()

    async def purge_expired_pending(self) -> int:
        """Delete abandoned pending authorizations older than the TTL."""
        cutoff = utcnow() - timedelta(seconds=self._settings.OAUTH_PENDING_TTL_SECONDS)
        stmt = delete(PendingAuthorization).where(PendingAuthorization.created_at <= cutoff)
        async with self._session_factory() as db, db.begin():
            result = await db.execute(stmt)
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d abandoned pending authorizations", purged)
        return purged
