"""create imageguard tables

Revision ID: a1f0c2d3e4b5
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1f0c2d3e4b5"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "fingerprint_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("fingerprint", sa.String(length=128), nullable=False),
        sa.Column("community_id", sa.BigInteger(), nullable=False),
        sa.Column("source_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("source_message_id", sa.BigInteger(), nullable=False),
        sa.Column("source_author_id", sa.BigInteger(), nullable=True),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("fingerprint", "community_id", name="uq_fingerprint_community"),
    )
    op.create_index(
        "ix_fingerprint_records_message",
        "fingerprint_records",
        ["community_id", "source_message_id"],
    )

    op.create_table(
        "community_configs",
        sa.Column("community_id", sa.BigInteger(), primary_key=True),
        sa.Column("active_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("notification_channel_id", sa.BigInteger(), nullable=False),
        sa.Column("updated_by", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "penalty_grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("community_id", sa.BigInteger(), nullable=False),
        sa.Column("member_id", sa.BigInteger(), nullable=False),
        sa.Column("role_id", sa.BigInteger(), nullable=False),
        sa.Column("source_message_id", sa.BigInteger(), nullable=True),
        sa.Column("granted_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_penalty_grants_member", "penalty_grants", ["community_id", "member_id"])
    op.create_index("ix_penalty_grants_active_expires", "penalty_grants", ["is_active", "expires_at"])
    op.create_index(
        "uq_penalty_grants_active_member",
        "penalty_grants",
        ["community_id", "member_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "duplicate_violations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("community_id", sa.BigInteger(), nullable=False),
        sa.Column("member_id", sa.BigInteger(), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("fingerprint", sa.String(length=128), nullable=False),
        sa.Column("original_record_id", sa.Integer(), nullable=True),
        sa.Column("policy", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("community_id", "message_id", "fingerprint", name="uq_violation_message_fingerprint"),
    )
    op.create_index("ix_duplicate_violations_member", "duplicate_violations", ["community_id", "member_id"])


def downgrade() -> None:
    op.drop_index("ix_duplicate_violations_member", table_name="duplicate_violations")
    op.drop_table("duplicate_violations")
    op.drop_index("uq_penalty_grants_active_member", table_name="penalty_grants")
    op.drop_index("ix_penalty_grants_active_expires", table_name="penalty_grants")
    op.drop_index("ix_penalty_grants_member", table_name="penalty_grants")
    op.drop_table("penalty_grants")
    op.drop_table("community_configs")
    op.drop_index("ix_fingerprint_records_message", table_name="fingerprint_records")
    op.drop_table("fingerprint_records")
