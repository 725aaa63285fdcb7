"""Tenant account and credential session tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_link_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "link_accounts",
        sa.Column("identity_token", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("phone_id", sa.Text(), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("is_connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index("idx_link_accounts_owner", "link_accounts", ["owner_id"])
    op.create_index(
        "idx_link_accounts_connected",
        "link_accounts",
        ["identity_token"],
        postgresql_where=sa.text("is_connected AND NOT is_pending"),
    )

    op.create_table(
        "link_sessions",
        sa.Column("identity_token", sa.Text(), primary_key=True),
        sa.Column("credential_blob", postgresql.JSONB(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )


def downgrade() -> None:
    op.drop_table("link_sessions")
    op.drop_index("idx_link_accounts_connected", table_name="link_accounts")
    op.drop_index("idx_link_accounts_owner", table_name="link_accounts")
    op.drop_table("link_accounts")
