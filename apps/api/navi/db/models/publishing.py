"""Blog posts and the action command queue they publish through."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from navi.db.base import Base
from navi.db.enums import ActionCommandStatus, PostStatus
from navi.db.types import JSONType


class BlogPost(Base):
    """
    A generated blog post and its social repurposing.

    Approved posts are published once scheduled_at passes: the website
    builder and the social hub each get action commands, and the post moves
    to published in the same transaction.
    """

    __tablename__ = "blog_posts"
    __table_args__ = (
        Index("idx_blog_posts_due", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(500), nullable=False)
    content_markdown: Mapped[str] = mapped_column(Text, default="", nullable=False)
    seo_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    focus_keyword: Mapped[str | None] = mapped_column(String(255), nullable=True)
    branded_graphic_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # [{"platform": ..., "content": ..., "image_url": ...}]
    repurposed_assets: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(20), default=PostStatus.DRAFT.value, nullable=False
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ActionCommand(Base):
    """A command handed to another module (website builder, social hub)."""

    __tablename__ = "action_commands"
    __table_args__ = (
        Index("idx_action_commands_pending", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    command_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), default=ActionCommandStatus.PENDING.value, nullable=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
