"""Tests for open/click tracking and unsubscribe links."""

import uuid

import pytest

from navi.core.security import create_signed_token, verify_signed_token
from navi.db.models import Broadcast, BroadcastRecipient, Contact
from navi.services import tracking_service, unsubscribe_service


@pytest.fixture
def recipient(db, user_id) -> BroadcastRecipient:
    broadcast = Broadcast(
        user_id=user_id,
        name="Tracked",
        status="sent",
        content_versions=[{"variant": "A", "subject": "S", "body": "B"}],
    )
    db.add(broadcast)
    db.flush()
    row = BroadcastRecipient(
        broadcast_id=broadcast.id,
        contact_id=uuid.uuid4(),
        variant="A",
        phase="test",
        status="sent",
        tracking_token=tracking_service.generate_tracking_token(),
    )
    db.add(row)
    db.commit()
    return row


# =============================================================================
# Email content transformation
# =============================================================================

def test_prepare_email_wraps_links_and_adds_pixel():
    html = (
        '<html><body><a href="https://example.com/offer?x=1">Offer</a>'
        '<a href="mailto:hi@example.com">Mail</a></body></html>'
    )

    result = tracking_service.prepare_email_for_tracking(html, "tok")

    assert "https://api.test/tracking/click/tok?url=https%3A%2F%2Fexample.com%2Foffer%3Fx%3D1" in result
    assert 'href="mailto:hi@example.com"' in result
    assert result.index("/tracking/open/tok") < result.index("</body>")


def test_pixel_appended_when_no_body_tag():
    result = tracking_service.inject_tracking_pixel("<p>Hi</p>", "tok")
    assert result.startswith("<p>Hi</p><img")


# =============================================================================
# Tracking endpoints
# =============================================================================

@pytest.mark.asyncio
async def test_open_pixel_records_first_open_once(client, db, recipient):
    for _ in range(2):
        response = await client.get(f"/tracking/open/{recipient.tracking_token}")
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"
        assert response.headers["cache-control"].startswith("no-store")

    db.expire_all()
    assert recipient.open_count == 2
    assert recipient.opened_at is not None
    assert db.get(Broadcast, recipient.broadcast_id).open_count == 1


@pytest.mark.asyncio
async def test_unknown_token_still_returns_pixel(client):
    response = await client.get("/tracking/open/not-a-token")
    assert response.status_code == 200
    assert response.content.startswith(b"GIF89a")


@pytest.mark.asyncio
async def test_click_redirects_and_counts_as_open(client, db, recipient):
    response = await client.get(
        f"/tracking/click/{recipient.tracking_token}",
        params={"url": "https://example.com/offer"},
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/offer"
    db.expire_all()
    broadcast = db.get(Broadcast, recipient.broadcast_id)
    assert recipient.click_count == 1
    assert recipient.opened_at is not None
    assert broadcast.click_count == 1
    assert broadcast.open_count == 1


# =============================================================================
# Unsubscribe
# =============================================================================

@pytest.mark.asyncio
async def test_unsubscribe_link_flags_contact(client, db, make_contact):
    contact = make_contact()
    url = unsubscribe_service.build_unsubscribe_url(contact_id=contact.id)
    assert url.startswith("https://api.test/email/unsubscribe/")
    token = url.rsplit("/", 1)[1]

    response = await client.get(f"/email/unsubscribe/{token}")

    assert response.status_code == 200
    assert "unsubscribed" in response.text
    db.expire_all()
    refreshed = db.get(Contact, contact.id)
    assert refreshed.is_unsubscribed is True
    assert refreshed.unsubscribed_at is not None

    # One-click repeat is a no-op
    again = await client.post(f"/email/unsubscribe/{token}")
    assert again.status_code == 200
    assert again.json() == {"status": "unsubscribed"}


@pytest.mark.asyncio
async def test_invalid_unsubscribe_token_404(client):
    response = await client.get("/email/unsubscribe/garbage.token")
    assert response.status_code == 404


# =============================================================================
# Signed tokens
# =============================================================================

def test_signed_token_roundtrip_checks_purpose():
    token = create_signed_token("unsubscribe", {"contact_id": "abc"}, ttl_seconds=60)

    assert verify_signed_token(token, "unsubscribe")["contact_id"] == "abc"
    assert verify_signed_token(token, "review_feedback") is None


def test_tampered_token_rejected():
    token = create_signed_token("unsubscribe", {"contact_id": "abc"}, ttl_seconds=60)
    payload, signature = token.split(".")

    assert verify_signed_token(f"{payload}x.{signature}", "unsubscribe") is None
    assert verify_signed_token("no-dot", "unsubscribe") is None


def test_expired_token_rejected():
    token = create_signed_token("unsubscribe", {"contact_id": "abc"}, ttl_seconds=-10)
    assert verify_signed_token(token, "unsubscribe") is None


def test_previous_secret_still_verifies(monkeypatch):
    from navi.core.config import settings

    token = create_signed_token("unsubscribe", {"contact_id": "abc"}, ttl_seconds=60)
    monkeypatch.setattr(settings, "TOKEN_SECRET_PREVIOUS", settings.TOKEN_SECRET)
    monkeypatch.setattr(settings, "TOKEN_SECRET", "rotated-secret")

    assert verify_signed_token(token, "unsubscribe") is not None
