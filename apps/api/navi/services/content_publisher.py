"""Content publisher - hands approved, due blog posts to the website and social hub.

Invoked by external cron about every 10 minutes. Publishing a post means
queueing action commands for the modules that own the website and social
accounts; those modules do the actual posting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.structured_logging import build_log_context
from navi.db.enums import ActionCommandStatus, ActionCommandType, PostStatus
from navi.db.models import ActionCommand, BlogPost
from navi.schemas.content import repurposed_assets_adapter

logger = logging.getLogger(__name__)


@dataclass
class ContentPublishResult:
    processed: int = 0
    published: int = 0
    commands_queued: int = 0
    failed: int = 0
    skipped: int = 0  # Published or unapproved by someone else meanwhile
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "published": self.published,
            "commands_queued": self.commands_queued,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def find_due_posts(db: Session, now: datetime, limit: int | None = None) -> list[BlogPost]:
    """Approved posts whose scheduled time has passed, oldest first."""
    return list(
        db.execute(
            select(BlogPost)
            .where(
                BlogPost.status == PostStatus.APPROVED.value,
                BlogPost.scheduled_at.is_not(None),
                BlogPost.scheduled_at <= now,
            )
            .order_by(BlogPost.scheduled_at)
            .limit(limit or settings.PUBLISH_BATCH_SIZE)
        ).scalars().all()
    )


def build_post_commands(post: BlogPost) -> list[ActionCommand]:
    """
    One website command plus one social draft per repurposed asset.

    Raises ValidationError if the stored assets are malformed.
    """
    assets = repurposed_assets_adapter.validate_python(post.repurposed_assets or [])
    commands = [
        ActionCommand(
            user_id=post.user_id,
            command_type=ActionCommandType.ADD_WEBSITE_BLOG_POST.value,
            status=ActionCommandStatus.PENDING.value,
            payload={
                "post_id": str(post.id),
                "title": post.title,
                "slug": post.slug,
                "content_markdown": post.content_markdown,
                "seo_metadata": post.seo_metadata or {},
                "branded_graphic_url": post.branded_graphic_url,
                "focus_keyword": post.focus_keyword,
            },
        )
    ]
    scheduled_for = post.scheduled_at.isoformat() if post.scheduled_at else None
    for asset in assets:
        commands.append(
            ActionCommand(
                user_id=post.user_id,
                command_type=ActionCommandType.CREATE_SOCIAL_POST_DRAFT.value,
                status=ActionCommandStatus.PENDING.value,
                payload={
                    "post_id": str(post.id),
                    "platform": asset.platform,
                    "content": asset.content,
                    "image_url": asset.image_url or post.branded_graphic_url,
                    "scheduled_for": scheduled_for,
                },
            )
        )
    return commands


def publish_post(db: Session, post: BlogPost, now: datetime) -> int | None:
    """
    Move an approved post to published and queue its commands, atomically.

    Returns the number of commands queued, or None if the post was no longer
    approved (another run published it, or it was pulled back).
    """
    commands = build_post_commands(post)
    result = db.execute(
        update(BlogPost)
        .where(
            BlogPost.id == post.id,
            BlogPost.status == PostStatus.APPROVED.value,
        )
        .values(status=PostStatus.PUBLISHED.value, published_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return None
    db.add_all(commands)
    db.commit()
    return len(commands)


def fail_post(db: Session, post_id: UUID, error: str) -> bool:
    """Take an approved post out of the queue with the reason it cannot publish."""
    result = db.execute(
        update(BlogPost)
        .where(BlogPost.id == post_id, BlogPost.status == PostStatus.APPROVED.value)
        .values(status=PostStatus.FAILED.value, last_error=error[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def run_content_publisher(
    db: Session, now: datetime | None = None, limit: int | None = None
) -> ContentPublishResult:
    """Publish every approved post that is due. One bad post never stops the run."""
    now = now or datetime.now(timezone.utc)
    result = ContentPublishResult()

    posts = find_due_posts(db, now, limit)
    logger.info("Content publisher: %s due posts", len(posts))

    for post in posts:
        result.processed += 1
        post_id = post.id
        log_extra = build_log_context(job_name="content_publish", post_id=str(post_id))
        try:
            queued = publish_post(db, post, now)
        except ValidationError as exc:
            db.rollback()
            if fail_post(db, post_id, f"invalid repurposed assets: {exc}"):
                result.failed += 1
            logger.warning("Post has malformed repurposed assets", extra=log_extra)
            continue
        except Exception as exc:
            db.rollback()
            logger.exception("Content publisher failed for post", extra=log_extra)
            result.errors.append(f"{post_id}: {exc.__class__.__name__}: {exc}")
            continue

        if queued is None:
            result.skipped += 1
            continue
        result.published += 1
        result.commands_queued += queued
        logger.info("Post published with %s commands", queued, extra=log_extra)

    return result
