"""Remember the permanent identity issued for a pending account."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_pending_promotion"
down_revision = "0001_link_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("link_accounts", sa.Column("promoted_to", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("link_accounts", "promoted_to")
