"""Create refresh_tokens table.

Stores issued refresh credentials by bind key. Unique constraints on
bind_key and secret_hash are what keep concurrent writers from ever
producing two records with the same key.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("bind_key", sa.String(64), nullable=False),
        sa.Column("secret_hash", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "is_revoked",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.UniqueConstraint("bind_key", name="uq_refresh_tokens_bind_key"),
        sa.UniqueConstraint("secret_hash", name="uq_refresh_tokens_secret_hash"),
    )
    op.create_index("ix_refresh_tokens_owner_id", "refresh_tokens", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_refresh_tokens_owner_id", table_name="refresh_tokens")
    op.drop_table("refresh_tokens")
