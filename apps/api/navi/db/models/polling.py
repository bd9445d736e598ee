"""Polled sources, their ingested records, and poll checkpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
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
from sqlalchemy.orm import Mapped, mapped_column

from navi.db.base import Base
from navi.db.enums import MessageDirection, ReviewStatus, SourceStatus
from navi.db.types import JSONType


class PollCheckpoint(Base):
    """Durable cursor for one polled source."""

    __tablename__ = "poll_checkpoints"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_poll_checkpoint_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    last_seen_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )


# =============================================================================
# Inbox
# =============================================================================


class SocialConnection(Base):
    """A connected social account whose inbox is polled."""

    __tablename__ = "social_connections"
    __table_args__ = (Index("idx_social_connections_active", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=text("true"), default=True, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SourceStatus.ACTIVE.value, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class SocialMessage(Base):
    """An inbox message (DM or comment) ingested from a social platform."""

    __tablename__ = "social_messages"
    __table_args__ = (
        UniqueConstraint("connection_id", "platform_message_id", name="uq_social_message"),
        Index("idx_social_messages_thread", "connection_id", "platform_conversation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("social_connections.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform_conversation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    sender_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direction: Mapped[str] = mapped_column(
        String(10), default=MessageDirection.INBOUND.value, nullable=False
    )
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_read: Mapped[bool] = mapped_column(
        Boolean, server_default=text("false"), default=False, nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


# =============================================================================
# Reviews
# =============================================================================


class ReviewSource(Base):
    """A connected review platform listing."""

    __tablename__ = "review_sources"
    __table_args__ = (Index("idx_review_sources_active", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=text("true"), default=True, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SourceStatus.ACTIVE.value, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class Review(Base):
    """
    A customer review ingested from a review source.

    suggested_response is the reply draft; once approved, the response
    publisher posts it and records a ReviewResponse. response_claimed_at is
    the publish lease.
    """

    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("source_id", "platform_review_id", name="uq_review_platform_id"),
        Index("idx_reviews_user_status", "user_id", "status"),
        Index("idx_reviews_response_queue", "status", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("review_sources.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_review_id: Mapped[str] = mapped_column(String(255), nullable=False)

    reviewer_name: Mapped[str] = mapped_column(String(255), default="Anonymous", nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    review_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=ReviewStatus.NEEDS_RESPONSE.value, nullable=False
    )
    suggested_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_retry_count: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    response_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ReviewResponse(Base):
    """A reply that was posted to the review platform."""

    __tablename__ = "review_responses"
    __table_args__ = (Index("idx_review_responses_review", "review_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    review_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    platform_response_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    responded_at: Mapped[datetime] = mapped_column(nullable=False)


# =============================================================================
# Keyword rankings
# =============================================================================


class TrackedKeyword(Base):
    """A keyword whose search rank is tracked daily for a tenant's domain."""

    __tablename__ = "tracked_keywords"
    __table_args__ = (
        UniqueConstraint("user_id", "keyword", "location", name="uq_tracked_keyword"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    competitors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=text("true"), default=True, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SourceStatus.ACTIVE.value, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class KeywordRankSnapshot(Base):
    """Rank of a tracked keyword on one UTC day."""

    __tablename__ = "keyword_rank_snapshots"
    __table_args__ = (
        UniqueConstraint("keyword_id", "snapshot_key", name="uq_keyword_snapshot_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    keyword_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tracked_keywords.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_key: Mapped[str] = mapped_column(String(20), nullable=False)  # YYYY-MM-DD
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = not in top 100
    competitor_ranks: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
