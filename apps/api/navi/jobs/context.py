"""Collaborators handed to every scheduled job."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from navi.core.config import Settings, settings as app_settings
from navi.services.audience_service import ContactResolver, DbContactResolver
from navi.services.content_generation import ContentGenerator, build_content_generator
from navi.services.dispatch_service import MessageDispatcher, build_dispatcher
from navi.services.pollers.inbox import InboxPoller
from navi.services.pollers.rankings import RankTracker, build_rank_provider
from navi.services.pollers.reviews import ReviewPoller
from navi.services.review_response_publisher import ReviewResponsePublisher


@dataclass
class JobContext:
    dispatcher: MessageDispatcher
    resolver: ContactResolver
    inbox_poller: InboxPoller
    review_poller: ReviewPoller
    rank_tracker: RankTracker
    generator: ContentGenerator | None = None
    response_publisher: ReviewResponsePublisher = field(default_factory=ReviewResponsePublisher)
    now: datetime | None = None  # None means wall clock


def build_job_context(db: Session, settings: Settings | None = None) -> JobContext:
    """Production collaborators built from settings."""
    settings = settings or app_settings
    generator = build_content_generator(settings)
    return JobContext(
        dispatcher=build_dispatcher(settings),
        resolver=DbContactResolver(db),
        inbox_poller=InboxPoller(),
        review_poller=ReviewPoller(generator=generator),
        rank_tracker=RankTracker(build_rank_provider(settings)),
        response_publisher=ReviewResponsePublisher(),
        generator=generator,
    )
