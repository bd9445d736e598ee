"""Review response publisher - posts approved reply drafts to Google and Facebook.

Invoked by external cron about every 5 minutes. A review is claimed with a
conditional update before its reply goes out, so overlapping runs never post
the same reply twice. A claim that outlives its lease is failed, not retried,
because the platform may already have the reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.exceptions import ReplyPublishError, SourceAuthError
from navi.core.structured_logging import build_log_context
from navi.db.enums import JobName, ReviewPlatform, ReviewStatus, SourceStatus
from navi.db.models import Review, ReviewResponse, ReviewSource
from navi.services.http_service import AUTH_FAILURE_STATUSES, request_with_retries
from navi.services.pollers.reviews import GOOGLE_REVIEWS_URL, GRAPH_BASE_URL, google_location_path

logger = logging.getLogger(__name__)

JOB_NAME = JobName.REVIEW_RESPONSE_PUBLISH.value


@dataclass
class ResponsePublishResult:
    processed: int = 0
    published: int = 0
    retried: int = 0
    failed: int = 0
    expired: int = 0  # Publishing claims that outlived their lease
    sources_deactivated: int = 0
    skipped: int = 0  # Lost claims
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "published": self.published,
            "retried": self.retried,
            "failed": self.failed,
            "expired": self.expired,
            "sources_deactivated": self.sources_deactivated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


# =============================================================================
# Queue state
# =============================================================================


def approve_response(db: Session, review_id: UUID, content: str | None = None) -> bool:
    """Queue a review's reply for publishing, optionally replacing the draft."""
    values: dict = {
        "status": ReviewStatus.RESPONSE_APPROVED.value,
        "response_retry_count": 0,
        "response_error_message": None,
    }
    if content is not None:
        values["suggested_response"] = content
    result = db.execute(
        update(Review)
        .where(
            Review.id == review_id,
            Review.status.in_(
                [ReviewStatus.NEEDS_RESPONSE.value, ReviewStatus.RESPONSE_FAILED.value]
            ),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def find_approved_reviews(db: Session, limit: int | None = None) -> list[Review]:
    """Approved replies with attempts left, oldest approval first."""
    return list(
        db.execute(
            select(Review)
            .where(
                Review.status == ReviewStatus.RESPONSE_APPROVED.value,
                Review.response_retry_count < settings.REVIEW_RESPONSE_MAX_ATTEMPTS,
            )
            .order_by(Review.updated_at)
            .limit(limit or settings.PUBLISH_BATCH_SIZE)
        ).scalars().all()
    )


def claim_review(db: Session, review_id: UUID, now: datetime) -> bool:
    result = db.execute(
        update(Review)
        .where(
            Review.id == review_id,
            Review.status == ReviewStatus.RESPONSE_APPROVED.value,
            Review.response_retry_count < settings.REVIEW_RESPONSE_MAX_ATTEMPTS,
        )
        .values(status=ReviewStatus.RESPONSE_PUBLISHING.value, response_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_review(db: Session, review_id: UUID, status: ReviewStatus, **values) -> bool:
    """Move a claimed review out of publishing."""
    result = db.execute(
        update(Review)
        .where(
            Review.id == review_id,
            Review.status == ReviewStatus.RESPONSE_PUBLISHING.value,
        )
        .values(status=status.value, response_claimed_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def expire_stale_claims(db: Session, now: datetime) -> int:
    """Fail replies stuck in publishing past the lease."""
    cutoff = now - timedelta(minutes=settings.REVIEW_RESPONSE_LEASE_MINUTES)
    result = db.execute(
        update(Review)
        .where(
            Review.status == ReviewStatus.RESPONSE_PUBLISHING.value,
            Review.response_claimed_at < cutoff,
        )
        .values(
            status=ReviewStatus.RESPONSE_FAILED.value,
            response_claimed_at=None,
            response_error_message="Publish interrupted; check the platform before approving again",
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def unpublishable_reason(review: Review, source: ReviewSource | None) -> str | None:
    """Why this reply can never be posted through the platform API, if it can't."""
    if not (review.suggested_response or "").strip():
        return "No suggested response content available"
    if review.platform == ReviewPlatform.YELP.value:
        return "Replies to Yelp are not supported via API and must be posted manually."
    if review.platform == ReviewPlatform.FACEBOOK.value and not review.content.strip():
        return "Cannot reply to a textless rating."
    if source is None:
        return "Review source not found"
    if not source.is_active:
        return "Review source is disconnected"
    return None


def check_reply_response(response: httpx.Response, platform: str) -> None:
    """401/403 rejects the token, 404 means the review is gone, the rest may clear up."""
    if response.status_code in AUTH_FAILURE_STATUSES:
        raise SourceAuthError(
            f"{platform} rejected the reply: token expired or permission missing",
            status_code=response.status_code,
        )
    if response.status_code == 404:
        raise ReplyPublishError(f"{platform} review no longer exists", permanent=True)
    if response.status_code >= 400:
        raise ReplyPublishError(f"{platform} API error: {response.status_code}")


# =============================================================================
# Publisher
# =============================================================================


class ReviewResponsePublisher:
    """Posts approved replies; one bad review never stops the run."""

    def __init__(self, client_factory: Callable[[], httpx.AsyncClient] | None = None):
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=20.0))

    async def run(
        self, db: Session, now: datetime | None = None, limit: int | None = None
    ) -> ResponsePublishResult:
        now = now or datetime.now(timezone.utc)
        result = ResponsePublishResult()

        result.expired = expire_stale_claims(db, now)
        if result.expired:
            logger.warning("%s review replies expired while publishing", result.expired)

        reviews = find_approved_reviews(db, limit)
        review_ids = [r.id for r in reviews]
        logger.info("Response publisher: %s approved replies", len(review_ids))

        for review_id in review_ids:
            result.processed += 1
            try:
                await self._publish(db, review_id, now, result)
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "Response publisher failed for review",
                    extra=build_log_context(job_name=JOB_NAME, review_id=str(review_id)),
                )
                result.errors.append(f"{review_id}: {exc.__class__.__name__}: {exc}")

        return result

    async def _publish(
        self, db: Session, review_id: UUID, now: datetime, result: ResponsePublishResult
    ) -> None:
        log_extra = build_log_context(job_name=JOB_NAME, review_id=str(review_id))
        if not claim_review(db, review_id, now):
            result.skipped += 1
            return

        try:
            review = db.get(Review, review_id)
            source = db.get(ReviewSource, review.source_id)
            reason = unpublishable_reason(review, source)
            if reason:
                release_review(
                    db, review_id, ReviewStatus.RESPONSE_FAILED, response_error_message=reason
                )
                result.failed += 1
                logger.info("Reply cannot be published: %s", reason, extra=log_extra)
                return

            await self._post_and_record(db, review, source, now, result, log_extra)
        except Exception as exc:
            # The reply may or may not have gone out; never retry it blindly
            db.rollback()
            release_review(
                db, review_id, ReviewStatus.RESPONSE_FAILED,
                response_error_message=f"Publish interrupted: {exc.__class__.__name__}: {exc}"[:1000],
            )
            result.failed += 1
            raise

    async def _post_and_record(
        self,
        db: Session,
        review: Review,
        source: ReviewSource,
        now: datetime,
        result: ResponsePublishResult,
        log_extra: dict,
    ) -> None:
        review_id = review.id
        content = review.suggested_response.strip()
        previous_attempts = review.response_retry_count

        try:
            platform_response_id = await self.post_reply(source, review, content)
        except SourceAuthError as exc:
            logger.warning("Reply rejected, deactivating source: %s", exc, extra=log_extra)
            release_review(
                db, review_id, ReviewStatus.RESPONSE_FAILED,
                response_error_message=f"Permanent Error: {exc}",
            )
            source.is_active = False
            source.status = SourceStatus.INACTIVE.value
            source.last_error = str(exc)[:1000]
            db.commit()
            result.failed += 1
            result.sources_deactivated += 1
            return
        except (ReplyPublishError, httpx.HTTPError) as exc:
            permanent = isinstance(exc, ReplyPublishError) and exc.permanent
            attempts = previous_attempts + 1
            if permanent or attempts >= settings.REVIEW_RESPONSE_MAX_ATTEMPTS:
                error = (
                    f"Permanent Error: {exc}" if permanent
                    else f"Failed after {attempts} attempts: {exc}"
                )
                release_review(
                    db, review_id, ReviewStatus.RESPONSE_FAILED,
                    response_retry_count=attempts, response_error_message=error[:1000],
                )
                result.failed += 1
            else:
                release_review(
                    db, review_id, ReviewStatus.RESPONSE_APPROVED,
                    response_retry_count=attempts, response_error_message=str(exc)[:1000],
                )
                result.retried += 1
            logger.warning(
                "Reply publish failed (attempt %s): %s", attempts, exc, extra=log_extra
            )
            return

        db.add(
            ReviewResponse(
                review_id=review_id,
                content=content,
                platform_response_id=platform_response_id,
                responded_at=now,
            )
        )
        if release_review(
            db, review_id, ReviewStatus.RESPONDED,
            response_retry_count=0, response_error_message=None,
        ):
            result.published += 1
            logger.info("Reply published on %s", review.platform, extra=log_extra)
        else:
            logger.warning("Reply posted after the claim expired", extra=log_extra)

    async def post_reply(self, source: ReviewSource, review: Review, content: str) -> str | None:
        """Post the reply; returns the platform's id for it when one is given."""
        async with self.client_factory() as client:
            if review.platform == ReviewPlatform.GOOGLE.value:
                return await self._reply_google(client, source, review, content)
            if review.platform == ReviewPlatform.FACEBOOK.value:
                return await self._reply_facebook(client, source, review, content)
        raise ReplyPublishError(f"Unsupported platform: {review.platform}", permanent=True)

    async def _reply_google(
        self, client: httpx.AsyncClient, source: ReviewSource, review: Review, content: str
    ) -> str | None:
        url = (
            GOOGLE_REVIEWS_URL.format(location=google_location_path(source.platform_account_id))
            + f"/{review.platform_review_id}/reply"
        )
        # PUT replaces the reply, so a retried request cannot post twice
        response = await request_with_retries(
            lambda: client.put(
                url,
                json={"comment": content},
                headers={"Authorization": f"Bearer {source.access_token or ''}"},
            )
        )
        check_reply_response(response, "Google")
        return None

    async def _reply_facebook(
        self, client: httpx.AsyncClient, source: ReviewSource, review: Review, content: str
    ) -> str | None:
        url = f"{GRAPH_BASE_URL}/{settings.META_GRAPH_API_VERSION}/{review.platform_review_id}/comments"
        # Comment creation is not idempotent; sent once
        response = await client.post(
            url, json={"message": content, "access_token": source.access_token or ""}
        )
        check_reply_response(response, "Facebook")
        return response.json().get("id")
