"""Review poller - pulls new reviews from Google and Facebook (every 4 hours)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.exceptions import ContentGenerationError
from navi.db.enums import JobName, PollSourceType, ReviewPlatform, ReviewStatus
from navi.db.models import PollCheckpoint, Review, ReviewSource
from navi.services.content_generation import ContentGenerator, ContentSpec
from navi.services.http_service import request_with_retries
from navi.services.polling_service import (
    PollingDispatcher,
    check_source_response,
    latest_timestamp_cursor,
    parse_platform_time,
)

logger = logging.getLogger(__name__)

GOOGLE_REVIEWS_URL = "https://mybusiness.googleapis.com/v4/{location}/reviews"
GRAPH_BASE_URL = "https://graph.facebook.com"
PAGE_SIZE = 50

GOOGLE_STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

REPLY_INSTRUCTIONS = (
    "You write short, warm replies from a small business owner to customer "
    "reviews. Thank the reviewer by first name, address specific points, and "
    "keep it under 80 words. Do not offer discounts."
)


@dataclass(frozen=True)
class ReviewItem:
    review_id: str
    reviewer_name: str
    rating: int
    content: str
    review_url: str | None
    reviewed_at: datetime | None


def google_location_path(platform_account_id: str) -> str:
    """Accept either 'accounts/x/locations/y' or a bare location id."""
    if "/" in platform_account_id:
        return platform_account_id
    return f"locations/{platform_account_id}"


class ReviewPoller(PollingDispatcher[ReviewSource]):
    source_type = PollSourceType.REVIEWS
    job_name = JobName.REVIEW_FETCH.value

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        generator: ContentGenerator | None = None,
    ):
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=20.0))
        self.generator = generator

    def list_sources(self, db: Session) -> list[ReviewSource]:
        return list(
            db.execute(
                select(ReviewSource)
                .where(ReviewSource.is_active.is_(True))
                .order_by(ReviewSource.created_at)
            ).scalars().all()
        )

    async def fetch_items(
        self, source: ReviewSource, checkpoint: PollCheckpoint, now: datetime
    ) -> list[ReviewItem]:
        async with self.client_factory() as client:
            if source.platform == ReviewPlatform.GOOGLE.value:
                items = await self._fetch_google(client, source)
            elif source.platform == ReviewPlatform.FACEBOOK.value:
                items = await self._fetch_facebook(client, source)
            else:
                # Yelp Fusion returns at most three excerpts per business, not a full feed
                logger.debug("Review polling not supported for %s", source.platform)
                return []

        since = parse_platform_time(checkpoint.last_seen_external_id)
        if since:
            items = [i for i in items if i.reviewed_at is None or i.reviewed_at >= since]
        items.sort(key=lambda item: item.reviewed_at or now)
        return items

    async def _fetch_google(self, client: httpx.AsyncClient, source: ReviewSource) -> list[ReviewItem]:
        url = GOOGLE_REVIEWS_URL.format(location=google_location_path(source.platform_account_id))
        response = await request_with_retries(
            lambda: client.get(
                url,
                params={"pageSize": PAGE_SIZE, "orderBy": "updateTime desc"},
                headers={"Authorization": f"Bearer {source.access_token or ''}"},
            )
        )
        check_source_response(response, "Google")

        items = []
        for review in response.json().get("reviews", []):
            created = review.get("createTime")
            items.append(
                ReviewItem(
                    review_id=review.get("reviewId") or f"google_{created}",
                    reviewer_name=(review.get("reviewer") or {}).get("displayName") or "Anonymous",
                    rating=GOOGLE_STAR_RATINGS.get(review.get("starRating"), 0),
                    content=review.get("comment") or "",
                    review_url=None,
                    reviewed_at=parse_platform_time(created),
                )
            )
        return items

    async def _fetch_facebook(self, client: httpx.AsyncClient, source: ReviewSource) -> list[ReviewItem]:
        url = f"{GRAPH_BASE_URL}/{settings.META_GRAPH_API_VERSION}/{source.platform_account_id}/ratings"
        response = await request_with_retries(
            lambda: client.get(
                url,
                params={
                    "access_token": source.access_token or "",
                    "fields": "reviewer,rating,recommendation_type,review_text,created_time,open_graph_story",
                    "limit": PAGE_SIZE,
                },
            )
        )
        check_source_response(response, "Facebook")

        items = []
        for rating in response.json().get("data", []):
            created = rating.get("created_time")
            reviewer = rating.get("reviewer") or {}
            story = rating.get("open_graph_story") or {}
            review_id = story.get("id") or f"facebook_{reviewer.get('id', 'anon')}_{created}"
            stars = rating.get("rating")
            if stars is None:
                # Recommendations replaced star ratings on Pages
                stars = 5 if rating.get("recommendation_type") == "positive" else 1
            items.append(
                ReviewItem(
                    review_id=review_id,
                    reviewer_name=reviewer.get("name") or "Anonymous",
                    rating=int(stars),
                    content=rating.get("review_text") or "",
                    review_url=None,
                    reviewed_at=parse_platform_time(created),
                )
            )
        return items

    def external_id(self, item: ReviewItem) -> str:
        return item.review_id

    def exists(self, db: Session, source: ReviewSource, external_id: str) -> bool:
        return db.execute(
            select(Review.id).where(
                Review.source_id == source.id,
                Review.platform_review_id == external_id,
            )
        ).first() is not None

    def persist(self, db: Session, source: ReviewSource, item: ReviewItem, now: datetime) -> None:
        db.add(
            Review(
                user_id=source.user_id,
                source_id=source.id,
                platform=source.platform,
                platform_review_id=item.review_id,
                reviewer_name=item.reviewer_name,
                rating=item.rating,
                content=item.content,
                review_url=item.review_url,
                reviewed_at=item.reviewed_at or now,
                status=ReviewStatus.NEEDS_RESPONSE.value,
            )
        )

    def cursor_after(self, items: list[ReviewItem], current: str | None) -> str | None:
        return latest_timestamp_cursor([item.reviewed_at for item in items], current)

    async def after_ingest(self, db: Session, source: ReviewSource, ingested: list[ReviewItem]) -> None:
        """Draft a suggested reply for each new review when a generator is configured."""
        if self.generator is None:
            return

        for item in ingested:
            review = db.execute(
                select(Review).where(
                    Review.source_id == source.id,
                    Review.platform_review_id == item.review_id,
                )
            ).scalar_one_or_none()
            if review is None or review.suggested_response:
                continue
            spec = ContentSpec(
                instructions=REPLY_INSTRUCTIONS,
                context={
                    "Reviewer": item.reviewer_name,
                    "Rating": f"{item.rating}/5",
                    "Review": item.content,
                },
            )
            try:
                review.suggested_response = await self.generator.generate(spec)
            except ContentGenerationError as exc:
                # The review is stored either way; a draft can be requested later
                logger.warning("Reply draft failed for review %s: %s", review.id, exc)
                continue
            db.commit()
