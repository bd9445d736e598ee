"""
Tests for the publishing jobs.

Covers the blog post publisher (action command queueing, compare-and-set
status) and the review response publisher (claims, platform replies,
permanent vs transient failures). Platform APIs are httpx.MockTransport
handlers.
"""

import json
from datetime import timedelta

import httpx
import pytest

from conftest import T0
from navi.db.enums import ActionCommandType, PostStatus, ReviewStatus, SourceStatus
from navi.db.models import ActionCommand, BlogPost, Review, ReviewResponse, ReviewSource
from navi.services import content_publisher, review_response_publisher
from navi.services.review_response_publisher import ReviewResponsePublisher


def client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


# =============================================================================
# Blog posts
# =============================================================================

def _post(db, user_id, **overrides) -> BlogPost:
    data = {
        "user_id": user_id,
        "title": "Five spring lawn tips",
        "slug": "five-spring-lawn-tips",
        "content_markdown": "# Tips",
        "seo_metadata": {"description": "Lawn care"},
        "focus_keyword": "lawn care",
        "branded_graphic_url": "https://cdn.test/lawn.png",
        "repurposed_assets": [
            {"platform": "facebook", "content": "Spring is here!"},
            {"platform": "linkedin", "content": "Lawn tips", "image_url": "https://cdn.test/li.png"},
        ],
        "status": PostStatus.APPROVED.value,
        "scheduled_at": T0 - timedelta(minutes=1),
    }
    data.update(overrides)
    post = BlogPost(**data)
    db.add(post)
    db.commit()
    return post


def _reload_post(db, post_id) -> BlogPost:
    db.expire_all()
    return db.get(BlogPost, post_id)


def test_due_post_is_published_with_commands(db, user_id):
    post = _post(db, user_id)

    result = content_publisher.run_content_publisher(db, now=T0)

    assert result.published == 1
    assert result.commands_queued == 3
    refreshed = _reload_post(db, post.id)
    assert refreshed.status == PostStatus.PUBLISHED.value
    assert refreshed.published_at == T0

    commands = db.query(ActionCommand).order_by(ActionCommand.command_type).all()
    assert [c.command_type for c in commands] == [
        ActionCommandType.ADD_WEBSITE_BLOG_POST.value,
        ActionCommandType.CREATE_SOCIAL_POST_DRAFT.value,
        ActionCommandType.CREATE_SOCIAL_POST_DRAFT.value,
    ]
    website = commands[0].payload
    assert website["slug"] == "five-spring-lawn-tips"
    assert website["post_id"] == str(post.id)
    images = {c.payload["platform"]: c.payload["image_url"] for c in commands[1:]}
    assert images == {
        "facebook": "https://cdn.test/lawn.png",
        "linkedin": "https://cdn.test/li.png",
    }
    assert all(c.status == "pending" and c.user_id == user_id for c in commands)


def test_not_due_and_unapproved_posts_are_left_alone(db, user_id):
    later = _post(db, user_id, scheduled_at=T0 + timedelta(minutes=10))
    draft = _post(db, user_id, slug="draft", status=PostStatus.DRAFT.value)
    unscheduled = _post(db, user_id, slug="unscheduled", scheduled_at=None)

    result = content_publisher.run_content_publisher(db, now=T0)

    assert result.processed == 0
    assert db.query(ActionCommand).count() == 0
    for post in (later, draft, unscheduled):
        assert _reload_post(db, post.id).status != PostStatus.PUBLISHED.value


def test_second_run_does_not_republish(db, user_id):
    _post(db, user_id)

    content_publisher.run_content_publisher(db, now=T0)
    again = content_publisher.run_content_publisher(db, now=T0 + timedelta(minutes=10))

    assert again.processed == 0
    assert db.query(ActionCommand).count() == 3


def test_post_pulled_back_after_selection_is_not_published(db, user_id):
    post = _post(db, user_id)
    selected = content_publisher.find_due_posts(db, T0)[0]
    db.query(BlogPost).filter_by(id=post.id).update({"status": PostStatus.DRAFT.value})
    db.commit()

    assert content_publisher.publish_post(db, selected, T0) is None
    assert db.query(ActionCommand).count() == 0
    assert _reload_post(db, post.id).status == PostStatus.DRAFT.value


def test_malformed_assets_fail_the_post_without_commands(db, user_id):
    bad = _post(db, user_id, repurposed_assets=[{"platform": "facebook"}])
    good = _post(db, user_id, slug="good")

    result = content_publisher.run_content_publisher(db, now=T0)

    assert result.failed == 1
    assert result.published == 1
    refreshed = _reload_post(db, bad.id)
    assert refreshed.status == PostStatus.FAILED.value
    assert refreshed.last_error.startswith("invalid repurposed assets")
    posts_with_commands = {c.payload["post_id"] for c in db.query(ActionCommand).all()}
    assert posts_with_commands == {str(good.id)}


# =============================================================================
# Review replies
# =============================================================================

@pytest.fixture
def google_source(db, user_id) -> ReviewSource:
    source = ReviewSource(
        user_id=user_id, platform="google", platform_account_id="loc-1", access_token="g-token"
    )
    db.add(source)
    db.commit()
    return source


@pytest.fixture
def facebook_source(db, user_id) -> ReviewSource:
    source = ReviewSource(
        user_id=user_id, platform="facebook", platform_account_id="page-9", access_token="fb-token"
    )
    db.add(source)
    db.commit()
    return source


def _review(db, source, review_id="r1", **overrides) -> Review:
    data = {
        "user_id": source.user_id,
        "source_id": source.id,
        "platform": source.platform,
        "platform_review_id": review_id,
        "reviewer_name": "Sam",
        "rating": 5,
        "content": "Great service",
        "status": ReviewStatus.RESPONSE_APPROVED.value,
        "suggested_response": "  Thanks Sam!  ",
    }
    data.update(overrides)
    review = Review(**data)
    db.add(review)
    db.commit()
    return review


def _reload_review(db, review_id) -> Review:
    db.expire_all()
    return db.get(Review, review_id)


class RecordingHandler:
    """Answers every request with one response and keeps the requests."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


@pytest.mark.asyncio
async def test_google_reply_is_published_and_recorded(db, google_source):
    review = _review(db, google_source)
    handler = RecordingHandler(body={"comment": "Thanks Sam!"})
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    result = await publisher.run(db, now=T0)

    assert result.published == 1
    request = handler.requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/v4/locations/loc-1/reviews/r1/reply"
    assert request.headers["Authorization"] == "Bearer g-token"
    assert json.loads(request.content) == {"comment": "Thanks Sam!"}

    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONDED.value
    assert refreshed.response_claimed_at is None
    response = db.query(ReviewResponse).one()
    assert response.review_id == review.id
    assert response.content == "Thanks Sam!"
    assert response.responded_at == T0
    assert response.platform_response_id is None


@pytest.mark.asyncio
async def test_facebook_reply_keeps_platform_id(db, facebook_source):
    review = _review(db, facebook_source, review_id="story-7")
    handler = RecordingHandler(body={"id": "comment-42"})
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    await publisher.run(db, now=T0)

    request = handler.requests[0]
    assert request.method == "POST"
    assert request.url.path.endswith("/story-7/comments")
    assert json.loads(request.content) == {"message": "Thanks Sam!", "access_token": "fb-token"}
    assert db.query(ReviewResponse).one().platform_response_id == "comment-42"
    assert _reload_review(db, review.id).status == ReviewStatus.RESPONDED.value


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "platform,overrides,reason",
    [
        ("yelp", {}, "Replies to Yelp are not supported"),
        ("facebook", {"content": ""}, "Cannot reply to a textless rating."),
        ("google", {"suggested_response": "   "}, "No suggested response content available"),
    ],
)
async def test_unpublishable_replies_fail_without_a_request(
    db, user_id, platform, overrides, reason
):
    source = ReviewSource(
        user_id=user_id, platform=platform, platform_account_id="acct", access_token="t"
    )
    db.add(source)
    db.commit()
    review = _review(db, source, **overrides)
    handler = RecordingHandler()
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    result = await publisher.run(db, now=T0)

    assert result.failed == 1
    assert handler.requests == []
    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_FAILED.value
    assert refreshed.response_error_message.startswith(reason)


@pytest.mark.asyncio
async def test_transient_errors_retry_then_fail(db, facebook_source):
    review = _review(db, facebook_source)
    handler = RecordingHandler(status_code=500, body={"error": {"message": "try later"}})
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    first = await publisher.run(db, now=T0)

    assert first.retried == 1
    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_APPROVED.value
    assert refreshed.response_retry_count == 1
    assert "500" in refreshed.response_error_message

    await publisher.run(db, now=T0 + timedelta(minutes=5))
    third = await publisher.run(db, now=T0 + timedelta(minutes=10))

    assert third.failed == 1
    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_FAILED.value
    assert refreshed.response_retry_count == 3
    assert refreshed.response_error_message.startswith("Failed after 3 attempts")
    assert len(handler.requests) == 3

    after = await publisher.run(db, now=T0 + timedelta(minutes=15))
    assert after.processed == 0


@pytest.mark.asyncio
async def test_missing_review_is_a_permanent_failure(db, google_source):
    review = _review(db, google_source)
    handler = RecordingHandler(status_code=404)
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    result = await publisher.run(db, now=T0)

    assert result.failed == 1
    assert result.retried == 0
    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_FAILED.value
    assert refreshed.response_error_message.startswith("Permanent Error")


@pytest.mark.asyncio
async def test_rejected_token_deactivates_source(db, facebook_source):
    first = _review(db, facebook_source, review_id="story-1")
    second = _review(db, facebook_source, review_id="story-2")
    handler = RecordingHandler(status_code=401)
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    result = await publisher.run(db, now=T0)

    assert result.sources_deactivated == 1
    assert result.failed == 2
    assert len(handler.requests) == 1
    db.expire_all()
    source = db.get(ReviewSource, facebook_source.id)
    assert source.is_active is False
    assert source.status == SourceStatus.INACTIVE.value
    statuses = {_reload_review(db, r.id).response_error_message for r in (first, second)}
    assert any(s.startswith("Permanent Error") for s in statuses)
    assert "Review source is disconnected" in statuses


@pytest.mark.asyncio
async def test_unexpected_reply_body_fails_without_retry(db, facebook_source):
    review = _review(db, facebook_source)

    def not_json(request):
        return httpx.Response(200, text="<html>ok</html>")

    publisher = ReviewResponsePublisher(client_factory=client_factory(not_json))

    result = await publisher.run(db, now=T0)

    assert len(result.errors) == 1
    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_FAILED.value
    assert refreshed.response_error_message.startswith("Publish interrupted")
    assert refreshed.response_claimed_at is None


@pytest.mark.asyncio
async def test_stale_publishing_claim_is_failed_not_retried(db, google_source):
    stale = _review(
        db, google_source, review_id="r1",
        status=ReviewStatus.RESPONSE_PUBLISHING.value,
        response_claimed_at=T0 - timedelta(hours=1),
    )
    live = _review(
        db, google_source, review_id="r2",
        status=ReviewStatus.RESPONSE_PUBLISHING.value,
        response_claimed_at=T0 - timedelta(minutes=2),
    )
    handler = RecordingHandler()
    publisher = ReviewResponsePublisher(client_factory=client_factory(handler))

    result = await publisher.run(db, now=T0)

    assert result.expired == 1
    assert handler.requests == []
    assert _reload_review(db, stale.id).status == ReviewStatus.RESPONSE_FAILED.value
    assert _reload_review(db, live.id).status == ReviewStatus.RESPONSE_PUBLISHING.value


def test_review_is_claimed_once(db, google_source):
    review = _review(db, google_source)

    assert review_response_publisher.claim_review(db, review.id, T0)
    assert not review_response_publisher.claim_review(db, review.id, T0)


def test_approve_response_queues_reply_once(db, google_source):
    review = _review(db, google_source, status=ReviewStatus.NEEDS_RESPONSE.value)

    assert review_response_publisher.approve_response(db, review.id, "Thank you!")
    assert not review_response_publisher.approve_response(db, review.id)

    refreshed = _reload_review(db, review.id)
    assert refreshed.status == ReviewStatus.RESPONSE_APPROVED.value
    assert refreshed.suggested_response == "Thank you!"
