"""Broadcast models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from navi.db.base import Base
from navi.db.enums import BroadcastStatus, BroadcastType, Channel
from navi.db.types import JSONType


class Broadcast(Base):
    """
    One-shot message to an audience, optionally A/B tested.

    Status only moves forward via compare-and-set:
    scheduled -> sending -> sent, or for A/B tests
    scheduled -> sending -> awaiting_winner -> sending -> sent.
    sending_started_at is the send lease; an expired one is resumed.
    """

    __tablename__ = "broadcasts"
    __table_args__ = (
        Index("idx_broadcasts_due", "status", "scheduled_at"),
        Index("idx_broadcasts_winner_due", "status", "winner_check_at"),
        Index("idx_broadcasts_sending", "status", "sending_started_at"),
        Index("idx_broadcasts_user", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    broadcast_type: Mapped[str] = mapped_column(
        String(30), default=BroadcastType.STANDARD.value, nullable=False
    )
    channel: Mapped[str] = mapped_column(String(10), default=Channel.EMAIL.value, nullable=False)
    audience_spec: Mapped[str] = mapped_column(Text, default="", nullable=False)

    # [{"variant": "A", "subject": ..., "body": ...}, ...]
    content_versions: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    ab_test_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=BroadcastStatus.DRAFT.value, nullable=False
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    winner_check_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sending_started_at: Mapped[datetime | None] = mapped_column(nullable=True)  # Send lease
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    total_recipients: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    sent_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    failed_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    open_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    click_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    recipients: Mapped[list["BroadcastRecipient"]] = relationship(
        back_populates="broadcast", cascade="all, delete-orphan"
    )


class BroadcastRecipient(Base):
    """
    Exposure record for one contact of a broadcast.

    The unique (broadcast_id, contact_id) pair makes the variant assignment
    immutable and keeps the remainder send from re-exposing test recipients.
    """

    __tablename__ = "broadcast_recipients"
    __table_args__ = (
        UniqueConstraint("broadcast_id", "contact_id", name="uq_broadcast_recipient"),
        Index("idx_broadcast_recipients_variant", "broadcast_id", "variant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    broadcast_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("broadcasts.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    variant: Mapped[str | None] = mapped_column(String(1), nullable=True)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    tracking_token: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    open_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    opened_at: Mapped[datetime | None] = mapped_column(nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0)
    clicked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    broadcast: Mapped[Broadcast] = relationship(back_populates="recipients")
