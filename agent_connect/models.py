"""ORM models for OAuth connections and in-flight authorizations."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from agent_connect.database import Base

DEFAULT_ACCOUNT_LABEL = "default"


class ConnectionStatus(str, enum.Enum):
    """Lifecycle states of an :class:`OAuthConnection`."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    INVALID = "invalid"
    REVOKED = "revoked"


class OAuthConnection(Base):
    """Authorization between one local user and one account on one service."""

    __tablename__ = "oauth_connections"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    account_label: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_ACCOUNT_LABEL
    )
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_type: Mapped[str] = mapped_column(String(50), default="bearer")
    granted_scopes: Mapped[str] = mapped_column(Text, default="")  # space-separated
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=ConnectionStatus.ACTIVE.value, server_default=ConnectionStatus.ACTIVE.value
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "service", "account_label", name="uq_oauth_connections_identity"
        ),
        Index("idx_oauth_connections_user_id", "user_id"),
        Index("idx_oauth_connections_service", "service"),
    )


class PendingAuthorization(Base):
    """One in-flight authorize redirect, consumed by its callback."""

    __tablename__ = "oauth_pending_authorizations"

    state_token: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    account_label: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_ACCOUNT_LABEL
    )
    requested_scopes: Mapped[str] = mapped_column(Text, default="")
    code_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_oauth_pending_created_at", "created_at"),)
