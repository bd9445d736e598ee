"""
Tests for the broadcast scheduler.

Covers due selection, compare-and-set status changes, per-send unsubscribe
checks, counters, and review request links.
"""

from datetime import timedelta

import pytest

from conftest import T0
from navi.db.enums import BroadcastStatus, RecipientPhase, RecipientStatus
from navi.db.models import Broadcast, BroadcastRecipient
from navi.schemas.broadcast import BroadcastCreate
from navi.services import broadcast_service, feedback_service
from navi.services.audience_service import unsubscribe_contact
from navi.services.dispatch_service import DispatchResult


def _create(db, user_id, **overrides) -> Broadcast:
    data = {
        "user_id": user_id,
        "name": "Spring sale",
        "channel": "email",
        "content_versions": [
            {"variant": "A", "subject": "Hi {{first_name}}", "body": "<p>Sale!</p>"}
        ],
        "scheduled_at": T0,
    }
    data.update(overrides)
    return broadcast_service.create_broadcast(db, BroadcastCreate(**data))


def _reload(db, broadcast_id) -> Broadcast:
    db.expire_all()
    return db.get(Broadcast, broadcast_id)


# =============================================================================
# Scheduling
# =============================================================================

def test_create_without_schedule_is_draft(db, user_id):
    broadcast = _create(db, user_id, scheduled_at=None)

    assert broadcast.status == BroadcastStatus.DRAFT.value
    assert broadcast.ab_test_config is None


def test_schedule_and_unschedule_are_compare_and_set(db, user_id):
    broadcast = _create(db, user_id, scheduled_at=None)

    assert broadcast_service.schedule_broadcast(db, broadcast.id, T0)
    assert not broadcast_service.schedule_broadcast(db, broadcast.id, T0)
    assert broadcast_service.unschedule_broadcast(db, broadcast.id)
    assert _reload(db, broadcast.id).status == BroadcastStatus.DRAFT.value


@pytest.mark.asyncio
async def test_not_due_broadcast_is_left_alone(db, user_id, make_contact, dispatcher, resolver):
    make_contact()
    broadcast = _create(db, user_id, scheduled_at=T0 + timedelta(minutes=5))

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.processed == 0
    assert _reload(db, broadcast.id).status == BroadcastStatus.SCHEDULED.value
    assert dispatcher.attempts == []


@pytest.mark.asyncio
async def test_sends_to_audience_and_marks_sent(db, user_id, make_contact, dispatcher, resolver):
    ada = make_contact(name="Ada Lovelace", email="ada@example.com")
    make_contact(name="Grace Hopper", email="grace@example.com")
    make_contact(name="No Email", email=None, phone="+15550001111")
    broadcast = _create(db, user_id)

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.broadcasts_sent == 1
    assert sorted(dispatcher.addresses()) == ["ada@example.com", "grace@example.com"]
    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.SENT.value
    assert refreshed.sent_at == T0
    assert refreshed.total_recipients == 2
    assert refreshed.sent_count == 2
    assert refreshed.failed_count == 0

    recipient = db.query(BroadcastRecipient).filter_by(contact_id=ada.id).one()
    assert recipient.phase == RecipientPhase.FULL.value
    assert recipient.status == RecipientStatus.SENT.value
    assert recipient.variant is None

    message = next(m for _, address, m in dispatcher.sent if address == "ada@example.com")
    assert message.subject == "Hi Ada"
    assert f"/tracking/open/{recipient.tracking_token}" in message.body
    assert message.unsubscribe_url is not None


@pytest.mark.asyncio
async def test_second_run_does_not_resend(db, user_id, make_contact, dispatcher, resolver):
    make_contact()
    _create(db, user_id)

    await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)
    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.processed == 0
    assert len(dispatcher.attempts) == 1


@pytest.mark.asyncio
async def test_tag_filter_is_or(db, user_id, make_contact, dispatcher, resolver):
    make_contact(email="vip@example.com", tags=["vip"])
    make_contact(email="new@example.com", tags=["new", "other"])
    make_contact(email="none@example.com", tags=["cold"])
    _create(db, user_id, audience_spec="tags:vip,new")

    await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert sorted(dispatcher.addresses()) == ["new@example.com", "vip@example.com"]


# =============================================================================
# Unsubscribe and failures
# =============================================================================

@pytest.mark.asyncio
async def test_unsubscribes_mid_flight_are_skipped(db, user_id, make_contact, dispatcher, resolver):
    """100 contacts, 5 unsubscribe while the broadcast is sending: 95 sent."""
    contacts = [make_contact(email=f"c{i:03d}@example.com") for i in range(100)]
    broadcast = _create(db, user_id)

    async def unsubscribe_after_first(channel, address, message):
        if not dispatcher.attempts:
            others = [c.id for c in contacts if c.email != address]
            for contact_id in others[:5]:
                unsubscribe_contact(db, contact_id)

    dispatcher.before_send = unsubscribe_after_first

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    refreshed = _reload(db, broadcast.id)
    assert refreshed.total_recipients == 100
    assert refreshed.sent_count == 95
    assert refreshed.failed_count == 0
    assert result.skipped == 5
    assert len(dispatcher.attempts) == 95
    assert db.query(BroadcastRecipient).count() == 95


@pytest.mark.asyncio
async def test_failed_sends_are_counted(db, user_id, make_contact, dispatcher, resolver):
    make_contact(email="ok@example.com")
    make_contact(email="bounce@example.com")
    broadcast = _create(db, user_id)
    dispatcher.failures["bounce@example.com"] = DispatchResult.failed("Resend error 422", permanent=True)

    await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.SENT.value
    assert refreshed.sent_count == 1
    assert refreshed.failed_count == 1
    failed = db.query(BroadcastRecipient).filter_by(status=RecipientStatus.FAILED.value).one()
    assert "422" in failed.error


@pytest.mark.asyncio
async def test_unexpected_error_marks_broadcast_failed(
    db, user_id, make_contact, dispatcher, resolver, monkeypatch
):
    make_contact()
    broadcast = _create(db, user_id)

    def broken(*args, **kwargs):
        raise RuntimeError("contact store down")

    monkeypatch.setattr(resolver, "resolve_audience", broken)

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.broadcasts_failed == 1
    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.FAILED.value
    assert "contact store down" in refreshed.last_error


@pytest.mark.asyncio
async def test_crash_mid_send_keeps_counts_of_what_went_out(
    db, user_id, make_contact, dispatcher, resolver
):
    for i in range(5):
        make_contact(email=f"c{i}@example.com")
    broadcast = _create(db, user_id)

    async def crash_on_third(channel, address, message):
        if len(dispatcher.attempts) == 2:
            raise ValueError("provider client blew up")

    dispatcher.before_send = crash_on_third

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.broadcasts_failed == 1
    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.FAILED.value
    assert refreshed.sent_count == 2
    assert refreshed.failed_count == 1
    assert refreshed.sending_started_at is None
    assert "provider client blew up" in refreshed.last_error

    statuses = sorted(r.status for r in db.query(BroadcastRecipient).all())
    assert statuses == ["failed", "sent", "sent"]
    interrupted = db.query(BroadcastRecipient).filter_by(status="failed").one()
    assert interrupted.error.startswith("Send interrupted")


def _stranded_send(db, user_id, started_at) -> Broadcast:
    broadcast = _create(db, user_id, scheduled_at=T0 - timedelta(hours=2))
    broadcast.status = BroadcastStatus.SENDING.value
    broadcast.sending_started_at = started_at
    db.commit()
    return broadcast


@pytest.mark.asyncio
async def test_stale_send_is_resumed_without_resending(
    db, user_id, make_contact, dispatcher, resolver
):
    delivered = make_contact(email="delivered@example.com")
    in_flight = make_contact(email="inflight@example.com")
    make_contact(email="untouched@example.com")
    broadcast = _stranded_send(db, user_id, T0 - timedelta(hours=1))
    for contact, status in ((delivered, "sent"), (in_flight, "pending")):
        db.add(
            BroadcastRecipient(
                broadcast_id=broadcast.id,
                contact_id=contact.id,
                phase=RecipientPhase.FULL.value,
                status=status,
            )
        )
    db.commit()

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.resumed == 1
    assert dispatcher.addresses() == ["untouched@example.com"]
    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.SENT.value
    assert refreshed.sent_count == 2
    assert refreshed.failed_count == 1
    row = db.query(BroadcastRecipient).filter_by(contact_id=in_flight.id).one()
    assert row.status == RecipientStatus.FAILED.value


@pytest.mark.asyncio
async def test_send_within_lease_is_not_resumed(db, user_id, make_contact, dispatcher, resolver):
    make_contact()
    broadcast = _stranded_send(db, user_id, T0 - timedelta(minutes=5))

    result = await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    assert result.resumed == 0
    assert dispatcher.attempts == []
    assert _reload(db, broadcast.id).status == BroadcastStatus.SENDING.value


def test_stale_send_reclaimed_once(db, user_id):
    broadcast = _stranded_send(db, user_id, T0 - timedelta(hours=1))

    assert broadcast_service.reclaim_stale_send(db, broadcast.id, T0)
    assert not broadcast_service.reclaim_stale_send(db, broadcast.id, T0)


@pytest.mark.asyncio
async def test_bad_audience_spec_fails_broadcast(db, user_id, make_contact, dispatcher, resolver):
    make_contact()
    broadcast = _create(db, user_id, audience_spec="segment:whales")

    await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    refreshed = _reload(db, broadcast.id)
    assert refreshed.status == BroadcastStatus.FAILED.value
    assert "AudienceSpecError" in refreshed.last_error


# =============================================================================
# Review requests and SMS
# =============================================================================

@pytest.mark.asyncio
async def test_review_request_includes_feedback_link(db, user_id, make_contact, dispatcher, resolver):
    contact = make_contact(name="Ada", phone="+15550001111")
    broadcast = _create(
        db,
        user_id,
        broadcast_type="review_request",
        channel="sms",
        audience_spec="platform:google",
        content_versions=[{"variant": "A", "body": "Thanks for visiting, {{first_name}}!"}],
    )

    await broadcast_service.run_broadcast_scheduler(db, dispatcher, resolver, now=T0)

    _, address, message = dispatcher.sent[0]
    assert address == "+15550001111"
    assert message.body.startswith("Thanks for visiting, Ada!")
    token = message.body.rsplit("/feedback/", 1)[1]
    claims = feedback_service.parse_feedback_token(token)
    assert claims == {
        "broadcast_id": str(broadcast.id),
        "contact_id": str(contact.id),
        "platform": "google",
    }
    recipient = db.query(BroadcastRecipient).one()
    assert recipient.tracking_token is None
