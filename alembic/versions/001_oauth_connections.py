"""Add oauth_connections and oauth_pending_authorizations tables.

Revision ID: 001_oauth_connections
Revises: None
Create Date: 2026-10-18 08:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_oauth_connections"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "oauth_connections",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("service", sa.String(50), nullable=False),
        sa.Column("account_label", sa.String(255), nullable=False, server_default="default"),
        sa.Column("access_token_encrypted", sa.Text, nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text, nullable=True),
        sa.Column("token_type", sa.String(50), nullable=False, server_default="bearer"),
        sa.Column("granted_scopes", sa.Text, nullable=False, server_default=""),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "service", "account_label", name="uq_oauth_connections_identity"
        ),
    )
    op.create_index("idx_oauth_connections_user_id", "oauth_connections", ["user_id"])
    op.create_index("idx_oauth_connections_service", "oauth_connections", ["service"])

    op.create_table(
        "oauth_pending_authorizations",
        sa.Column("state_token", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("service", sa.String(50), nullable=False),
        sa.Column("account_label", sa.String(255), nullable=False, server_default="default"),
        sa.Column("requested_scopes", sa.Text, nullable=False, server_default=""),
        sa.Column("code_verifier", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("state_token"),
    )
    op.create_index(
        "idx_oauth_pending_created_at", "oauth_pending_authorizations", ["created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_oauth_pending_created_at", table_name="oauth_pending_authorizations")
    op.drop_table("oauth_pending_authorizations")
    op.drop_index("idx_oauth_connections_service", table_name="oauth_connections")
    op.drop_index("idx_oauth_connections_user_id", table_name="oauth_connections")
    op.drop_table("oauth_connections")
