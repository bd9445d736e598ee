"""
Tests for the polling dispatcher and its inbox, review and rank pollers.

Platform APIs are served by httpx.MockTransport handlers.
"""

from datetime import timedelta

import httpx
import pytest

from conftest import T0, FakeRankProvider
from navi.core.exceptions import ContentGenerationError, SourceFetchError
from navi.db.enums import MessageDirection, PollSourceType, SourceStatus
from navi.db.models import (
    KeywordRankSnapshot,
    PollCheckpoint,
    Review,
    ReviewSource,
    SocialConnection,
    SocialMessage,
    TrackedKeyword,
)
from navi.services import polling_service
from navi.services.content_generation import ContentGenerator, ContentSpec, OpenAIContentGenerator
from navi.services.pollers.inbox import InboxPoller
from navi.services.pollers.rankings import RankTracker, SerpApiRankProvider
from navi.services.pollers.reviews import ReviewPoller


def client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def graph_inbox_handler(messages_by_page: dict[str, list[dict]], failing: dict[str, int] | None = None):
    """Serve /{page}/conversations and /{conversation}/messages from a dict."""
    failing = failing or {}

    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        node, edge = parts[-2], parts[-1]
        if node in failing:
            return httpx.Response(failing[node], json={"error": {"message": "nope"}})
        if edge == "conversations":
            return httpx.Response(
                200,
                json={"data": [{"id": f"{node}-conv", "updated_time": "2026-03-02T08:00:00+0000"}]},
            )
        page = node.removesuffix("-conv")
        return httpx.Response(200, json={"data": messages_by_page.get(page, [])})

    return handler


def _message(message_id: str, created: str, sender_id: str = "user-1") -> dict:
    return {
        "id": message_id,
        "from": {"id": sender_id, "name": "Pat Customer"},
        "message": f"Message {message_id}",
        "created_time": created,
    }


@pytest.fixture
def connection(db, user_id) -> SocialConnection:
    conn = SocialConnection(
        user_id=user_id,
        platform="facebook",
        platform_account_id="page-1",
        access_token="token-1",
    )
    db.add(conn)
    db.commit()
    return conn


def _checkpoint(db, source_type, source_id) -> PollCheckpoint | None:
    db.expire_all()
    return db.query(PollCheckpoint).filter_by(
        source_type=source_type.value, source_id=source_id
    ).one_or_none()


# =============================================================================
# Dispatcher semantics (via the inbox poller)
# =============================================================================

@pytest.mark.asyncio
async def test_inbox_poll_ingests_and_advances_checkpoint(db, connection):
    handler = graph_inbox_handler({
        "page-1": [
            _message("m1", "2026-03-02T07:00:00+0000"),
            _message("m2", "2026-03-02T07:30:00+0000", sender_id="page-1"),
        ]
    })
    poller = InboxPoller(client_factory=client_factory(handler))

    result = await poller.run(db, now=T0)

    assert result.sources_checked == 1
    assert result.items_ingested == 2
    messages = {m.platform_message_id: m for m in db.query(SocialMessage).all()}
    assert messages["m1"].direction == MessageDirection.INBOUND.value
    assert messages["m1"].is_read is False
    assert messages["m2"].direction == MessageDirection.OUTBOUND.value
    assert messages["m1"].platform_conversation_id == "page-1-conv"

    checkpoint = _checkpoint(db, PollSourceType.INBOX, connection.id)
    assert checkpoint.last_seen_external_id == "2026-03-02T07:30:00+00:00"
    assert checkpoint.last_checked_at == T0


@pytest.mark.asyncio
async def test_inbox_poll_is_idempotent(db, connection):
    handler = graph_inbox_handler({"page-1": [_message("m1", "2026-03-02T07:00:00+0000")]})
    poller = InboxPoller(client_factory=client_factory(handler))

    await poller.run(db, now=T0)
    second = await poller.run(db, now=T0 + timedelta(minutes=5))

    assert second.items_ingested == 0
    assert second.duplicates == 1
    assert db.query(SocialMessage).count() == 1


@pytest.mark.asyncio
async def test_messages_older_than_checkpoint_are_not_fetched(db, connection):
    checkpoint = polling_service.get_or_create_checkpoint(db, PollSourceType.INBOX, connection.id)
    checkpoint.last_seen_external_id = "2026-03-02T07:15:00+00:00"
    db.commit()
    handler = graph_inbox_handler({
        "page-1": [
            _message("old", "2026-03-02T07:00:00+0000"),
            _message("new", "2026-03-02T07:45:00+0000"),
        ]
    })

    result = await InboxPoller(client_factory=client_factory(handler)).run(db, now=T0)

    assert result.items_fetched == 1
    assert [m.platform_message_id for m in db.query(SocialMessage).all()] == ["new"]


@pytest.mark.asyncio
async def test_auth_failure_deactivates_only_that_source(db, user_id, connection):
    expired = SocialConnection(
        user_id=user_id,
        platform="instagram",
        platform_account_id="page-2",
        access_token="expired",
    )
    db.add(expired)
    db.commit()
    handler = graph_inbox_handler(
        {"page-1": [_message("m1", "2026-03-02T07:00:00+0000")]},
        failing={"page-2": 401},
    )

    result = await InboxPoller(client_factory=client_factory(handler)).run(db, now=T0)

    assert result.sources_deactivated == 1
    assert result.items_ingested == 1
    db.expire_all()
    assert expired.is_active is False
    assert expired.status == SourceStatus.INACTIVE.value
    assert "authentication failed" in expired.last_error
    assert connection.is_active is True

    # Inactive sources are not polled again
    again = await InboxPoller(client_factory=client_factory(handler)).run(db, now=T0)
    assert again.sources_checked == 1


@pytest.mark.asyncio
async def test_other_errors_leave_source_active_and_checkpoint_unmoved(db, connection):
    handler = graph_inbox_handler({}, failing={"page-1": 404})

    result = await InboxPoller(client_factory=client_factory(handler)).run(db, now=T0)

    assert result.sources_failed == 1
    assert "SourceFetchError" in result.errors[0]
    db.expire_all()
    assert connection.is_active is True
    checkpoint = _checkpoint(db, PollSourceType.INBOX, connection.id)
    assert checkpoint.last_seen_external_id is None
    assert checkpoint.last_checked_at is None


@pytest.mark.asyncio
async def test_unsupported_platform_is_a_no_op(db, user_id):
    db.add(SocialConnection(user_id=user_id, platform="linkedin", platform_account_id="li-1"))
    db.commit()

    def handler(request):
        raise AssertionError("LinkedIn inbox is not polled")

    result = await InboxPoller(client_factory=client_factory(handler)).run(db, now=T0)

    assert result.sources_checked == 1
    assert result.items_fetched == 0


class _NoDedupInboxPoller(InboxPoller):
    """Skips the pre-insert check so the unique constraint has to catch duplicates."""

    def exists(self, db, source, external_id):
        return False


@pytest.mark.asyncio
async def test_unique_violation_falls_back_to_per_item_inserts(db, connection):
    db.add(
        SocialMessage(
            user_id=connection.user_id,
            connection_id=connection.id,
            platform="facebook",
            platform_message_id="m1",
            content="already here",
        )
    )
    db.commit()
    handler = graph_inbox_handler({
        "page-1": [
            _message("m1", "2026-03-02T07:00:00+0000"),
            _message("m2", "2026-03-02T07:10:00+0000"),
        ]
    })

    result = await _NoDedupInboxPoller(client_factory=client_factory(handler)).run(db, now=T0)

    assert result.items_ingested == 1
    assert result.duplicates == 1
    assert result.sources_failed == 0
    assert sorted(m.platform_message_id for m in db.query(SocialMessage).all()) == ["m1", "m2"]


def test_advance_checkpoint_is_compare_and_set(db, connection):
    checkpoint = polling_service.get_or_create_checkpoint(db, PollSourceType.INBOX, connection.id)

    assert polling_service.advance_checkpoint(db, checkpoint.id, None, "a", T0)
    assert not polling_service.advance_checkpoint(db, checkpoint.id, None, "b", T0)
    assert polling_service.advance_checkpoint(db, checkpoint.id, "a", "c", T0)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2026-03-02T07:00:00+0000", "2026-03-02T07:00:00+00:00"),
        ("2026-03-02T07:00:00Z", "2026-03-02T07:00:00+00:00"),
        ("2026-03-02T09:00:00+02:00", "2026-03-02T07:00:00+00:00"),
    ],
)
def test_parse_platform_time(raw, expected):
    assert polling_service.parse_platform_time(raw).isoformat() == expected


def test_latest_timestamp_cursor_never_moves_backwards():
    current = "2026-03-02T07:00:00+00:00"
    older = polling_service.parse_platform_time("2026-03-01T07:00:00Z")

    assert polling_service.latest_timestamp_cursor([older, None], current) == current
    assert polling_service.latest_timestamp_cursor([], None) is None


# =============================================================================
# Reviews
# =============================================================================

class FakeGenerator(ContentGenerator):
    def __init__(self):
        self.specs = []

    async def generate(self, spec):
        self.specs.append(spec)
        return f"Thanks {spec.context['Reviewer']}!"


def google_reviews_handler(request: httpx.Request) -> httpx.Response:
    assert request.url.path == "/v4/locations/loc-1/reviews"
    assert request.headers["Authorization"] == "Bearer g-token"
    return httpx.Response(
        200,
        json={
            "reviews": [
                {
                    "reviewId": "r1",
                    "reviewer": {"displayName": "Sam"},
                    "starRating": "FOUR",
                    "comment": "Great service",
                    "createTime": "2026-03-01T10:00:00Z",
                },
                {
                    "reviewId": "r2",
                    "reviewer": {},
                    "starRating": "ONE",
                    "createTime": "2026-03-01T12:00:00Z",
                },
            ]
        },
    )


@pytest.fixture
def review_source(db, user_id) -> ReviewSource:
    source = ReviewSource(
        user_id=user_id,
        platform="google",
        platform_account_id="loc-1",
        access_token="g-token",
    )
    db.add(source)
    db.commit()
    return source


@pytest.mark.asyncio
async def test_review_poll_stores_reviews_and_drafts_replies(db, review_source):
    generator = FakeGenerator()
    poller = ReviewPoller(client_factory=client_factory(google_reviews_handler), generator=generator)

    result = await poller.run(db, now=T0)

    assert result.items_ingested == 2
    reviews = {r.platform_review_id: r for r in db.query(Review).all()}
    assert reviews["r1"].rating == 4
    assert reviews["r1"].reviewer_name == "Sam"
    assert reviews["r1"].suggested_response == "Thanks Sam!"
    assert reviews["r2"].rating == 1
    assert reviews["r2"].reviewer_name == "Anonymous"
    assert len(generator.specs) == 2

    again = await poller.run(db, now=T0 + timedelta(hours=4))
    assert again.items_ingested == 0
    assert len(generator.specs) == 2
    checkpoint = _checkpoint(db, PollSourceType.REVIEWS, review_source.id)
    assert checkpoint.last_seen_external_id == "2026-03-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_review_poll_without_generator_stores_reviews(db, review_source):
    poller = ReviewPoller(client_factory=client_factory(google_reviews_handler))

    await poller.run(db, now=T0)

    assert all(r.suggested_response is None for r in db.query(Review).all())


def openai_malformed_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "chatcmpl-1", "choices": []})


def openai_unreachable_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("openai unreachable")


def openai_rate_limited_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(429, json={"error": {"message": "Rate limit reached"}})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "openai_handler",
    [openai_malformed_handler, openai_unreachable_handler, openai_rate_limited_handler],
)
async def test_reply_draft_failure_keeps_review(db, review_source, openai_handler):
    generator = OpenAIContentGenerator("sk-test", client_factory=client_factory(openai_handler))
    poller = ReviewPoller(client_factory=client_factory(google_reviews_handler), generator=generator)

    result = await poller.run(db, now=T0)

    assert result.items_ingested == 2
    assert result.sources_failed == 0
    assert db.query(Review).count() == 2
    assert all(r.suggested_response is None for r in db.query(Review).all())


@pytest.mark.asyncio
async def test_openai_generator_rejects_response_without_content():
    generator = OpenAIContentGenerator(
        "sk-test", client_factory=client_factory(openai_malformed_handler)
    )

    with pytest.raises(ContentGenerationError):
        await generator.generate(ContentSpec(instructions="Reply politely"))


@pytest.mark.asyncio
async def test_facebook_recommendations_map_to_stars(db, user_id):
    db.add(
        ReviewSource(
            user_id=user_id, platform="facebook", platform_account_id="page-9", access_token="t"
        )
    )
    db.commit()

    def handler(request):
        assert request.url.path.endswith("/page-9/ratings")
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "reviewer": {"id": "u1", "name": "Lee"},
                        "recommendation_type": "positive",
                        "review_text": "Loved it",
                        "created_time": "2026-03-01T10:00:00+0000",
                        "open_graph_story": {"id": "story-1"},
                    }
                ]
            },
        )

    await ReviewPoller(client_factory=client_factory(handler)).run(db, now=T0)

    review = db.query(Review).one()
    assert review.platform_review_id == "story-1"
    assert review.rating == 5


# =============================================================================
# Rankings
# =============================================================================

@pytest.fixture
def keyword(db, user_id) -> TrackedKeyword:
    tracked = TrackedKeyword(
        user_id=user_id,
        keyword="plumber denver",
        domain="acmeplumbing.com",
        location="Denver, Colorado",
        competitors=["rival.com"],
    )
    db.add(tracked)
    db.commit()
    return tracked


@pytest.mark.asyncio
async def test_rank_tracker_takes_one_snapshot_per_day(db, keyword):
    provider = FakeRankProvider({"acmeplumbing.com": 3, "rival.com": None})
    tracker = RankTracker(provider)

    first = await tracker.run(db, now=T0)
    second = await tracker.run(db, now=T0 + timedelta(hours=6))

    assert first.items_ingested == 1
    assert second.items_fetched == 0
    snapshot = db.query(KeywordRankSnapshot).one()
    assert snapshot.rank == 3
    assert snapshot.competitor_ranks == {"rival.com": None}
    assert snapshot.snapshot_key == "2026-03-02"
    assert len(provider.calls) == 2

    await tracker.run(db, now=T0 + timedelta(days=1))
    assert db.query(KeywordRankSnapshot).count() == 2


@pytest.mark.asyncio
async def test_serpapi_provider_finds_domain_position():
    def handler(request):
        assert request.url.params["q"] == "plumber denver"
        assert request.url.params["location"] == "Denver"
        return httpx.Response(
            200,
            json={
                "organic_results": [
                    {"position": 1, "link": "https://www.rival.com/"},
                    {"position": 2, "link": "https://blog.acmeplumbing.com/post"},
                ]
            },
        )

    provider = SerpApiRankProvider("key", client_factory=client_factory(handler))

    assert await provider.get_rank("plumber denver", "acmeplumbing.com", "Denver") == 2
    assert await provider.get_rank("plumber denver", "www.rival.com", "Denver") == 1
    assert await provider.get_rank("plumber denver", "absent.com", "Denver") is None


@pytest.mark.asyncio
async def test_serpapi_provider_requires_key():
    with pytest.raises(SourceFetchError):
        await SerpApiRankProvider("").get_rank("kw", "example.com", None)
