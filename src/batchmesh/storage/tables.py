"""SQLModel ORM tables backing the shared broker."""

from __future__ import annotations

from sqlalchemy import Column, Float, ForeignKey, Index, Integer, String, Text
from sqlmodel import Field, SQLModel

KIND_STRING = "string"
KIND_HASH = "hash"
KIND_LIST = "list"


class BrokerKey(SQLModel, table=True):
    __tablename__ = "broker_keys"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_broker_keys_expires_at", "expires_at"),)

    key: str = Field(primary_key=True)
    kind: str = Field(default=KIND_STRING)
    value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    expires_at: float | None = Field(default=None, sa_column=Column(Float, nullable=True))


class BrokerHashField(SQLModel, table=True):
    __tablename__ = "broker_hash_fields"  # type: ignore[bad-override]

    key: str = Field(
        sa_column=Column(
            String,
            ForeignKey("broker_keys.key", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    field: str = Field(primary_key=True)
    value: int = Field(default=0, sa_column=Column(Integer, nullable=False))


class BrokerListItem(SQLModel, table=True):
    __tablename__ = "broker_list_items"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_broker_list_items_key_item", "key", "item_id"),)

    item_id: int | None = Field(default=None, primary_key=True)
    key: str = Field(
        sa_column=Column(
            String,
            ForeignKey("broker_keys.key", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    value: str = Field(sa_column=Column(Text, nullable=False))


class BrokerMessage(SQLModel, table=True):
    __tablename__ = "broker_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_broker_messages_channel_id", "channel", "message_id"),
        {"sqlite_autoincrement": True},
    )

    message_id: int | None = Field(default=None, primary_key=True)
    channel: str = Field()
    payload: str = Field(sa_column=Column(Text, nullable=False))
    published_at: float = Field(sa_column=Column(Float, nullable=False))
