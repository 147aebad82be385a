"""Broker store: keys with TTL, hash counters, lists and pub/sub log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "broker_keys",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default="string"),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_broker_keys_expires_at", "broker_keys", ["expires_at"])

    op.create_table(
        "broker_hash_fields",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("field", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["key"], ["broker_keys.key"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("key", "field"),
    )

    op.create_table(
        "broker_list_items",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["key"], ["broker_keys.key"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_broker_list_items_key_item", "broker_list_items", ["key", "item_id"])

    op.create_table(
        "broker_messages",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("published_at", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_broker_messages_channel_id",
        "broker_messages",
        ["channel", "message_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_broker_messages_channel_id", table_name="broker_messages")
    op.drop_table("broker_messages")
    op.drop_index("ix_broker_list_items_key_item", table_name="broker_list_items")
    op.drop_table("broker_list_items")
    op.drop_table("broker_hash_fields")
    op.drop_index("ix_broker_keys_expires_at", table_name="broker_keys")
    op.drop_table("broker_keys")
