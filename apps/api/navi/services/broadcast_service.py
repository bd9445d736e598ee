"""Broadcast service - scheduling, sending, and A/B winner resolution.

Status changes are compare-and-set on the current status so overlapping
scheduler invocations cannot send the same broadcast twice. Each contact's
exposure is reserved as a BroadcastRecipient row before dispatch, and the
broadcast counters are always recomputed from those rows. A broadcast stuck
in `sending` past its lease is resumed by the next scheduler run.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.structured_logging import build_log_context
from navi.db.enums import (
    BroadcastStatus,
    BroadcastType,
    Channel,
    RecipientPhase,
    RecipientStatus,
    Variant,
)
from navi.db.models import Broadcast, BroadcastRecipient, Contact
from navi.schemas.broadcast import (
    AbTestConfig,
    BroadcastCreate,
    ContentVersion,
    parse_audience_spec,
)
from navi.services import feedback_service, tracking_service, unsubscribe_service
from navi.services.audience_service import ContactResolver, address_for_channel
from navi.services.dispatch_service import MessageDispatcher, OutboundMessage
from navi.services.template_service import render_for_contact

logger = logging.getLogger(__name__)


@dataclass
class SendTally:
    sent: int = 0
    failed: int = 0
    skipped: int = 0  # Unsubscribed at send time or already exposed


@dataclass
class BroadcastRunResult:
    processed: int = 0
    broadcasts_sent: int = 0
    tests_started: int = 0
    winners_resolved: int = 0
    resumed: int = 0  # Interrupted sends picked up again
    broadcasts_failed: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, tally: SendTally) -> None:
        self.messages_sent += tally.sent
        self.messages_failed += tally.failed
        self.skipped += tally.skipped

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "broadcasts_sent": self.broadcasts_sent,
            "tests_started": self.tests_started,
            "winners_resolved": self.winners_resolved,
            "resumed": self.resumed,
            "broadcasts_failed": self.broadcasts_failed,
            "messages_sent": self.messages_sent,
            "messages_failed": self.messages_failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


# =============================================================================
# CRUD and status transitions
# =============================================================================


def create_broadcast(db: Session, data: BroadcastCreate) -> Broadcast:
    """Create a broadcast; it is scheduled right away if scheduled_at is set."""
    ab_config = data.ab_test_config
    if ab_config is None and len(data.content_versions) == 2:
        ab_config = AbTestConfig(
            test_size_percentage=settings.AB_TEST_SIZE_PERCENTAGE,
            test_duration_hours=settings.AB_TEST_DURATION_HOURS,
        )
    broadcast = Broadcast(
        user_id=data.user_id,
        name=data.name,
        broadcast_type=data.broadcast_type,
        channel=data.channel,
        audience_spec=data.audience_spec,
        content_versions=[v.model_dump() for v in data.content_versions],
        ab_test_config=ab_config.model_dump() if ab_config else None,
        scheduled_at=data.scheduled_at,
        status=(
            BroadcastStatus.SCHEDULED.value
            if data.scheduled_at
            else BroadcastStatus.DRAFT.value
        ),
    )
    db.add(broadcast)
    db.commit()
    db.refresh(broadcast)
    return broadcast


def transition_status(
    db: Session,
    broadcast_id: UUID,
    expected: BroadcastStatus,
    new: BroadcastStatus,
    **values,
) -> bool:
    """Move a broadcast from expected to new status; False if it was not in expected."""
    result = db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast_id, Broadcast.status == expected.value)
        .values(status=new.value, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def schedule_broadcast(db: Session, broadcast_id: UUID, scheduled_at: datetime) -> bool:
    """Schedule a draft. Use scheduled_at=now to send on the next run."""
    return transition_status(
        db, broadcast_id, BroadcastStatus.DRAFT, BroadcastStatus.SCHEDULED,
        scheduled_at=scheduled_at,
    )


def unschedule_broadcast(db: Session, broadcast_id: UUID) -> bool:
    """Return a scheduled broadcast to draft before the scheduler picks it up."""
    return transition_status(
        db, broadcast_id, BroadcastStatus.SCHEDULED, BroadcastStatus.DRAFT,
        scheduled_at=None,
    )


def find_due_broadcasts(db: Session, now: datetime, limit: int | None = None) -> list[Broadcast]:
    return list(
        db.execute(
            select(Broadcast)
            .where(
                Broadcast.status == BroadcastStatus.SCHEDULED.value,
                Broadcast.scheduled_at.is_not(None),
                Broadcast.scheduled_at <= now,
            )
            .order_by(Broadcast.scheduled_at)
            .limit(limit or settings.BROADCAST_BATCH_SIZE)
        ).scalars().all()
    )


def find_due_winner_checks(
    db: Session, now: datetime, limit: int | None = None
) -> list[Broadcast]:
    return list(
        db.execute(
            select(Broadcast)
            .where(
                Broadcast.status == BroadcastStatus.AWAITING_WINNER.value,
                Broadcast.winner_check_at.is_not(None),
                Broadcast.winner_check_at <= now,
            )
            .order_by(Broadcast.winner_check_at)
            .limit(limit or settings.BROADCAST_BATCH_SIZE)
        ).scalars().all()
    )


# =============================================================================
# Content helpers
# =============================================================================


def get_content_versions(broadcast: Broadcast) -> dict[str, ContentVersion]:
    versions = [ContentVersion.model_validate(v) for v in broadcast.content_versions or []]
    return {v.variant: v for v in versions}


def get_ab_config(broadcast: Broadcast) -> AbTestConfig | None:
    if not broadcast.ab_test_config:
        return None
    return AbTestConfig.model_validate(broadcast.ab_test_config)


def is_ab_test(broadcast: Broadcast) -> bool:
    versions = get_content_versions(broadcast)
    return get_ab_config(broadcast) is not None and {"A", "B"} <= set(versions)


def split_test_groups(
    contacts: list[Contact], config: AbTestConfig, seed: int
) -> tuple[list[Contact], list[Contact]]:
    """
    Pick the A and B test groups.

    The test group is test_size_percentage of the audience, divided
    variant_a_size/rest between A and B. The shuffle is seeded per broadcast.
    """
    shuffled = list(contacts)
    random.Random(seed).shuffle(shuffled)
    test_size = len(shuffled) * config.test_size_percentage // 100
    size_a = test_size * config.variant_a_size // 100
    return shuffled[:size_a], shuffled[size_a:test_size]


def _build_message(
    broadcast: Broadcast,
    contact: Contact,
    content: ContentVersion,
    platform: str | None,
    tracking_token: str | None,
) -> OutboundMessage:
    channel = Channel(broadcast.channel)
    rendered = render_for_contact(content.subject, content.body, contact)
    body = rendered.body

    if broadcast.broadcast_type == BroadcastType.REVIEW_REQUEST.value:
        feedback_url = feedback_service.build_feedback_url(
            broadcast_id=broadcast.id, contact_id=contact.id, platform=platform
        )
        body = feedback_service.append_feedback_link(
            body, feedback_url, html=channel == Channel.EMAIL
        )

    idempotency_key = f"broadcast/{broadcast.id}/{contact.id}"
    if channel == Channel.SMS:
        return OutboundMessage(body=body, idempotency_key=idempotency_key)

    if tracking_token:
        body = tracking_service.prepare_email_for_tracking(body, tracking_token)
    return OutboundMessage(
        subject=rendered.subject,
        body=body,
        idempotency_key=idempotency_key,
        unsubscribe_url=unsubscribe_service.build_unsubscribe_url(contact_id=contact.id),
    )


def _reserve_recipient(
    db: Session,
    broadcast_id: UUID,
    contact_id: UUID,
    variant: str | None,
    phase: RecipientPhase,
    tracking_token: str | None,
) -> BroadcastRecipient | None:
    """Insert the exposure row; None if the contact was already exposed."""
    recipient = BroadcastRecipient(
        broadcast_id=broadcast_id,
        contact_id=contact_id,
        variant=variant,
        phase=phase.value,
        status=RecipientStatus.PENDING.value,
        tracking_token=tracking_token,
    )
    db.add(recipient)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    return recipient


async def send_to_contacts(
    db: Session,
    broadcast: Broadcast,
    contacts: list[Contact],
    content: ContentVersion,
    variant: str | None,
    phase: RecipientPhase,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
) -> SendTally:
    """
    Send content to each contact once.

    Unsubscribe is re-checked right before every send; unsubscribed contacts
    are skipped and counted nowhere.
    """
    tally = SendTally()
    broadcast_id = broadcast.id
    channel = Channel(broadcast.channel)
    platform = parse_audience_spec(broadcast.audience_spec).platform
    track_opens = channel == Channel.EMAIL

    for contact in contacts:
        contact_id = contact.id
        if resolver.is_unsubscribed(contact_id):
            tally.skipped += 1
            continue
        address = address_for_channel(contact, channel)
        if address is None:
            tally.skipped += 1
            continue

        token = tracking_service.generate_tracking_token() if track_opens else None
        recipient = _reserve_recipient(db, broadcast_id, contact_id, variant, phase, token)
        if recipient is None:
            tally.skipped += 1
            continue

        message = _build_message(broadcast, contact, content, platform, token)
        result = await dispatcher.dispatch(channel, address, message)

        recipient.status = (
            RecipientStatus.SENT.value if result.success else RecipientStatus.FAILED.value
        )
        recipient.error = result.error
        recipient.provider_message_id = result.message_id
        recipient.sent_at = datetime.now(timezone.utc) if result.success else None
        db.commit()

        if result.success:
            tally.sent += 1
        else:
            tally.failed += 1
            logger.info(
                "Broadcast send failed: %s", result.error,
                extra=build_log_context(broadcast_id=str(broadcast_id)),
            )
    return tally


def _exposed_contact_ids(db: Session, broadcast_id: UUID) -> set[UUID]:
    return set(
        db.execute(
            select(BroadcastRecipient.contact_id).where(
                BroadcastRecipient.broadcast_id == broadcast_id
            )
        ).scalars().all()
    )


def _resolve_audience(broadcast: Broadcast, resolver: ContactResolver) -> list[Contact]:
    spec = parse_audience_spec(broadcast.audience_spec)
    return resolver.resolve_audience(broadcast.user_id, spec.tags, broadcast.channel)


def recipient_counts(db: Session, broadcast_id: UUID) -> tuple[int, int]:
    """(sent, failed) as recorded on the recipient rows."""
    counts = dict(
        db.execute(
            select(BroadcastRecipient.status, func.count(BroadcastRecipient.id))
            .where(BroadcastRecipient.broadcast_id == broadcast_id)
            .group_by(BroadcastRecipient.status)
        ).all()
    )
    return (
        counts.get(RecipientStatus.SENT.value, 0),
        counts.get(RecipientStatus.FAILED.value, 0),
    )


def fail_pending_recipients(db: Session, broadcast_id: UUID, error: str) -> int:
    """
    Close out exposures whose dispatch never reported back.

    The message may or may not have left; it is not retried.
    """
    result = db.execute(
        update(BroadcastRecipient)
        .where(
            BroadcastRecipient.broadcast_id == broadcast_id,
            BroadcastRecipient.status == RecipientStatus.PENDING.value,
        )
        .values(status=RecipientStatus.FAILED.value, error=error[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def _finish_sending(db: Session, broadcast_id: UUID, new: BroadcastStatus, **values) -> bool:
    """Leave `sending` with counters recomputed from the recipient rows."""
    sent, failed = recipient_counts(db, broadcast_id)
    return transition_status(
        db, broadcast_id, BroadcastStatus.SENDING, new,
        sent_count=sent,
        failed_count=failed,
        sending_started_at=None,
        **values,
    )


# =============================================================================
# Scheduler
# =============================================================================


async def _send_full(
    db: Session,
    broadcast: Broadcast,
    contacts: list[Contact],
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
) -> SendTally:
    versions = get_content_versions(broadcast)
    content = versions.get(Variant.A.value) or next(iter(versions.values()))
    tally = await send_to_contacts(
        db, broadcast, contacts, content, None, RecipientPhase.FULL, dispatcher, resolver
    )
    _finish_sending(db, broadcast.id, BroadcastStatus.SENT, sent_at=now)
    return tally


async def _start_ab_test(
    db: Session,
    broadcast: Broadcast,
    contacts: list[Contact],
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
) -> SendTally:
    config = get_ab_config(broadcast)
    versions = get_content_versions(broadcast)
    group_a, group_b = split_test_groups(contacts, config, seed=broadcast.id.int)

    tally = await send_to_contacts(
        db, broadcast, group_a, versions["A"], Variant.A.value, RecipientPhase.TEST,
        dispatcher, resolver,
    )
    tally_b = await send_to_contacts(
        db, broadcast, group_b, versions["B"], Variant.B.value, RecipientPhase.TEST,
        dispatcher, resolver,
    )
    tally.sent += tally_b.sent
    tally.failed += tally_b.failed
    tally.skipped += tally_b.skipped

    _finish_sending(
        db, broadcast.id, BroadcastStatus.AWAITING_WINNER,
        winner_check_at=now + timedelta(hours=config.test_duration_hours),
    )
    logger.info(
        "A/B test started: %s A, %s B", len(group_a), len(group_b),
        extra=build_log_context(broadcast_id=str(broadcast.id)),
    )
    return tally


async def _send_remainder(
    db: Session,
    broadcast: Broadcast,
    winner: str,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
) -> SendTally:
    """Winner content to every current audience member not already exposed."""
    exposed = _exposed_contact_ids(db, broadcast.id)
    remainder = [c for c in _resolve_audience(broadcast, resolver) if c.id not in exposed]
    content = get_content_versions(broadcast)[winner]
    tally = await send_to_contacts(
        db, broadcast, remainder, content, winner, RecipientPhase.REMAINDER,
        dispatcher, resolver,
    )
    _finish_sending(db, broadcast.id, BroadcastStatus.SENT, sent_at=now)
    return tally


async def _deliver(
    db: Session,
    broadcast_id: UUID,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
    result: BroadcastRunResult,
) -> None:
    """
    Run the send phase a `sending` broadcast is in.

    A persisted winner means the remainder phase; otherwise the test phase
    (A/B) or the full send. Contacts already exposed are skipped, so this also
    resumes an interrupted send.
    """
    broadcast = db.get(Broadcast, broadcast_id)
    config = get_ab_config(broadcast)

    if is_ab_test(broadcast) and config.winner_variant:
        tally = await _send_remainder(
            db, broadcast, config.winner_variant, dispatcher, resolver, now
        )
        result.winners_resolved += 1
        result.add(tally)
        return

    contacts = _resolve_audience(broadcast, resolver)
    db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast_id)
        .values(total_recipients=len(contacts))
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if is_ab_test(broadcast):
        tally = await _start_ab_test(db, broadcast, contacts, dispatcher, resolver, now)
        result.tests_started += 1
    else:
        tally = await _send_full(db, broadcast, contacts, dispatcher, resolver, now)
        result.broadcasts_sent += 1
    result.add(tally)


def _fail_broadcast(db: Session, broadcast_id: UUID, error: str) -> None:
    """Mark a broadcast failed, keeping the counts of what already went out."""
    db.rollback()
    fail_pending_recipients(db, broadcast_id, f"Send interrupted: {error}")
    _finish_sending(db, broadcast_id, BroadcastStatus.FAILED, last_error=error[:1000])


async def _deliver_or_fail(
    db: Session,
    broadcast_id: UUID,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
    result: BroadcastRunResult,
    job_name: str,
) -> None:
    try:
        await _deliver(db, broadcast_id, dispatcher, resolver, now, result)
    except Exception as exc:
        logger.exception(
            "Broadcast %s failed", broadcast_id,
            extra=build_log_context(job_name=job_name),
        )
        _fail_broadcast(db, broadcast_id, f"{exc.__class__.__name__}: {exc}")
        result.broadcasts_failed += 1
        result.errors.append(f"{broadcast_id}: {exc}")


def _stale_sending_cutoff(now: datetime) -> datetime:
    return now - timedelta(minutes=settings.BROADCAST_SENDING_LEASE_MINUTES)


def _is_stale_send(now: datetime):
    return and_(
        Broadcast.status == BroadcastStatus.SENDING.value,
        or_(
            Broadcast.sending_started_at.is_(None),
            Broadcast.sending_started_at < _stale_sending_cutoff(now),
        ),
    )


def find_stale_sends(db: Session, now: datetime, limit: int | None = None) -> list[Broadcast]:
    """Broadcasts left in `sending` past the lease (the sender crashed or lost the store)."""
    return list(
        db.execute(
            select(Broadcast)
            .where(_is_stale_send(now))
            .order_by(Broadcast.sending_started_at)
            .limit(limit or settings.BROADCAST_BATCH_SIZE)
        ).scalars().all()
    )


def reclaim_stale_send(db: Session, broadcast_id: UUID, now: datetime) -> bool:
    """Take over an expired send lease; False if another run got there first."""
    result = db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast_id, _is_stale_send(now))
        .values(sending_started_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


async def run_broadcast_scheduler(
    db: Session,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime | None = None,
) -> BroadcastRunResult:
    """
    Send every scheduled broadcast whose scheduled_at has passed.

    Also resumes sends whose lease expired while still `sending`.
    """
    now = now or datetime.now(timezone.utc)
    result = BroadcastRunResult()
    job_name = "broadcast_scheduler"

    stale_ids = [b.id for b in find_stale_sends(db, now)]
    for broadcast_id in stale_ids:
        if not reclaim_stale_send(db, broadcast_id, now):
            continue
        logger.warning(
            "Resuming interrupted send", extra=build_log_context(
                job_name=job_name, broadcast_id=str(broadcast_id)
            ),
        )
        result.processed += 1
        result.resumed += 1
        fail_pending_recipients(db, broadcast_id, "Send interrupted")
        await _deliver_or_fail(db, broadcast_id, dispatcher, resolver, now, result, job_name)

    due_ids = [b.id for b in find_due_broadcasts(db, now)]
    logger.info("Broadcast scheduler: %s due broadcasts", len(due_ids))

    for broadcast_id in due_ids:
        result.processed += 1
        if not transition_status(
            db, broadcast_id, BroadcastStatus.SCHEDULED, BroadcastStatus.SENDING,
            sending_started_at=now,
        ):
            logger.debug("Broadcast %s already claimed", broadcast_id)
            continue
        await _deliver_or_fail(db, broadcast_id, dispatcher, resolver, now, result, job_name)

    return result


# =============================================================================
# A/B winner resolution
# =============================================================================


def variant_open_rates(db: Session, broadcast_id: UUID) -> dict[str, float]:
    """Opens / successful sends for each test variant (0.0 when nothing was sent)."""
    rows = db.execute(
        select(
            BroadcastRecipient.variant,
            func.count(BroadcastRecipient.id),
            func.count(BroadcastRecipient.opened_at),
        )
        .where(
            BroadcastRecipient.broadcast_id == broadcast_id,
            BroadcastRecipient.phase == RecipientPhase.TEST.value,
            BroadcastRecipient.status == RecipientStatus.SENT.value,
        )
        .group_by(BroadcastRecipient.variant)
    ).all()

    rates = {Variant.A.value: 0.0, Variant.B.value: 0.0}
    for variant, sent, opened in rows:
        if variant in rates and sent:
            rates[variant] = opened / sent
    return rates


def pick_winner(channel: Channel | str, rates: dict[str, float]) -> str:
    """Higher open rate wins; ties, and SMS (no open tracking), go to A."""
    if Channel(channel) == Channel.SMS:
        return Variant.A.value
    if rates.get(Variant.B.value, 0.0) > rates.get(Variant.A.value, 0.0):
        return Variant.B.value
    return Variant.A.value


async def run_ab_test_winner_check(
    db: Session,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime | None = None,
) -> BroadcastRunResult:
    """
    Resolve finished A/B tests and send the winner to the rest of the audience.

    The winner is persisted in the same compare-and-set that moves the
    broadcast to `sending`, so a resumed send always knows its variant.
    """
    now = now or datetime.now(timezone.utc)
    result = BroadcastRunResult()
    job_name = "ab_test_winner_check"

    due_ids = [b.id for b in find_due_winner_checks(db, now)]
    logger.info("A/B winner check: %s due broadcasts", len(due_ids))

    for broadcast_id in due_ids:
        result.processed += 1
        try:
            broadcast = db.get(Broadcast, broadcast_id)
            rates = variant_open_rates(db, broadcast_id)
            winner = pick_winner(broadcast.channel, rates)
            config = get_ab_config(broadcast) or AbTestConfig()
            config.winner_variant = winner
        except Exception as exc:
            logger.exception(
                "A/B winner check for %s failed", broadcast_id,
                extra=build_log_context(job_name=job_name),
            )
            db.rollback()
            transition_status(
                db, broadcast_id, BroadcastStatus.AWAITING_WINNER, BroadcastStatus.FAILED,
                last_error=f"{exc.__class__.__name__}: {exc}"[:1000],
            )
            result.broadcasts_failed += 1
            result.errors.append(f"{broadcast_id}: {exc}")
            continue

        if not transition_status(
            db, broadcast_id, BroadcastStatus.AWAITING_WINNER, BroadcastStatus.SENDING,
            ab_test_config=config.model_dump(),
            sending_started_at=now,
        ):
            continue
        logger.info(
            "Variant %s wins (A: %.1f%%, B: %.1f%%)",
            winner, rates["A"] * 100, rates["B"] * 100,
            extra=build_log_context(broadcast_id=str(broadcast_id)),
        )
        await _deliver_or_fail(db, broadcast_id, dispatcher, resolver, now, result, job_name)

    return result
