"""Automation engine - advances due enrollments one step per invocation.

Invoked by external cron about once a minute. Each enrollment is handled
independently: a failure is logged and collected, and the loop moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from navi.core.structured_logging import build_log_context
from navi.db.enums import Channel, EnrollmentStatus
from navi.db.models import AutomationStep, Contact, EnrollmentProgress
from navi.schemas.automation import (
    SendEmailPayload,
    SendSmsPayload,
    WaitPayload,
    parse_step_payload,
)
from navi.services import enrollment_service, unsubscribe_service
from navi.services.audience_service import ContactResolver, address_for_channel
from navi.services.dispatch_service import MessageDispatcher, OutboundMessage
from navi.services.template_service import render_for_contact

logger = logging.getLogger(__name__)


@dataclass
class AutomationRunResult:
    processed: int = 0
    steps_executed: int = 0
    messages_sent: int = 0
    steps_skipped: int = 0
    completed: int = 0
    canceled: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0  # Lost claims, inactive sequences
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "steps_executed": self.steps_executed,
            "messages_sent": self.messages_sent,
            "steps_skipped": self.steps_skipped,
            "completed": self.completed,
            "canceled": self.canceled,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _build_message(
    payload: SendEmailPayload | SendSmsPayload,
    contact: Contact,
    enrollment_id: UUID,
    step: AutomationStep,
) -> OutboundMessage:
    subject = payload.subject if isinstance(payload, SendEmailPayload) else ""
    rendered = render_for_contact(subject, payload.body, contact)
    idempotency_key = f"enrollment-step/{enrollment_id}/{step.id}"
    if isinstance(payload, SendSmsPayload):
        return OutboundMessage(body=rendered.body, idempotency_key=idempotency_key)
    return OutboundMessage(
        subject=rendered.subject,
        body=rendered.body,
        idempotency_key=idempotency_key,
        unsubscribe_url=unsubscribe_service.build_unsubscribe_url(contact_id=contact.id),
    )


async def _process_enrollment(
    db: Session,
    enrollment: EnrollmentProgress,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime,
    result: AutomationRunResult,
) -> None:
    enrollment_id = enrollment.id
    sequence = enrollment.sequence
    read_order = enrollment.current_step_order
    previous_attempts = enrollment.attempts
    log_extra = build_log_context(
        job_name="automation_engine", enrollment_id=str(enrollment_id)
    )

    # Unsubscribe wins over any pending step, checked fresh each time
    contact = resolver.get_contact(enrollment.contact_id)
    if contact is None or resolver.is_unsubscribed(enrollment.contact_id):
        reason = "contact_deleted" if contact is None else "unsubscribed"
        if enrollment_service.cancel_enrollment(db, enrollment_id, reason, now):
            result.canceled += 1
            logger.info("Enrollment canceled: %s", reason, extra=log_extra)
        return

    if not sequence.is_active:
        result.skipped += 1
        return

    step = enrollment_service.get_next_step(db, sequence.id, read_order)
    if step is None:
        if enrollment_service.complete_enrollment(db, enrollment_id, read_order, now):
            result.completed += 1
        else:
            result.skipped += 1
        return

    claim_token = enrollment_service.claim_step(db, enrollment_id, read_order, now)
    if claim_token is None:
        logger.debug("Lost claim on enrollment, skipping", extra=log_extra)
        result.skipped += 1
        return

    try:
        await _execute_claimed_step(
            db, enrollment_id, claim_token, previous_attempts, step, contact,
            dispatcher, now, result, log_extra,
        )
    except Exception as exc:
        # Release the lease as a counted failure so the attempt cap still applies
        db.rollback()
        status = enrollment_service.record_step_failure(
            db, enrollment_id, claim_token, previous_attempts,
            f"{exc.__class__.__name__}: {exc}", now,
        )
        _tally_failure(result, status)
        raise


async def _execute_claimed_step(
    db: Session,
    enrollment_id: UUID,
    claim_token: str,
    previous_attempts: int,
    step: AutomationStep,
    contact: Contact,
    dispatcher: MessageDispatcher,
    now: datetime,
    result: AutomationRunResult,
    log_extra: dict,
) -> None:
    step_order = step.step_order
    try:
        payload = parse_step_payload(step.step_type, step.payload)
    except ValidationError as exc:
        # A malformed step can never succeed; burn through the retry budget
        status = enrollment_service.record_step_failure(
            db, enrollment_id, claim_token, previous_attempts, f"invalid_payload: {exc}", now
        )
        _tally_failure(result, status)
        return

    if isinstance(payload, WaitPayload):
        if enrollment_service.advance_step(
            db, enrollment_id, claim_token, step_order, now + timedelta(days=payload.days)
        ):
            result.steps_executed += 1
        return

    channel = Channel.EMAIL if isinstance(payload, SendEmailPayload) else Channel.SMS
    address = address_for_channel(contact, channel)
    if address is None:
        # Nothing to send to; move past the step without retrying
        if enrollment_service.advance_step(db, enrollment_id, claim_token, step_order, now):
            result.steps_skipped += 1
        logger.info(
            "Contact has no %s address, step %s skipped", channel.value, step_order,
            extra=log_extra,
        )
        return

    message = _build_message(payload, contact, enrollment_id, step)
    dispatch = await dispatcher.dispatch(channel, address, message)

    if dispatch.success or dispatch.permanent:
        advanced = enrollment_service.advance_step(
            db, enrollment_id, claim_token, step_order, now
        )
        if not advanced:
            logger.warning("Enrollment changed during dispatch", extra=log_extra)
        elif dispatch.success:
            result.steps_executed += 1
            result.messages_sent += 1
        else:
            result.steps_skipped += 1
            logger.info(
                "Permanent dispatch failure, step %s skipped: %s",
                step_order, dispatch.error, extra=log_extra,
            )
        return

    status = enrollment_service.record_step_failure(
        db, enrollment_id, claim_token, previous_attempts,
        dispatch.error or "dispatch_failed", now,
    )
    _tally_failure(result, status)
    logger.warning(
        "Dispatch failed for step %s (%s): %s",
        step_order, status.value if status else "lease_lost", dispatch.error,
        extra=log_extra,
    )


def _tally_failure(result: AutomationRunResult, status: EnrollmentStatus | None) -> None:
    if status == EnrollmentStatus.FAILED:
        result.failed += 1
    elif status == EnrollmentStatus.ACTIVE:
        result.retried += 1


async def run_automation_engine(
    db: Session,
    dispatcher: MessageDispatcher,
    resolver: ContactResolver,
    now: datetime | None = None,
    limit: int | None = None,
) -> AutomationRunResult:
    """
    Execute at most one step for every due enrollment.

    Safe to run concurrently with itself: each step is claimed with a
    conditional update before it executes, so overlapping invocations
    never execute the same step twice.
    """
    now = now or datetime.now(timezone.utc)
    result = AutomationRunResult()

    due = enrollment_service.find_due_enrollments(db, now, limit)
    due_ids = [e.id for e in due]
    logger.info("Automation engine: %s due enrollments", len(due_ids))

    for enrollment_id in due_ids:
        result.processed += 1
        try:
            enrollment = db.get(EnrollmentProgress, enrollment_id)
            if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE.value:
                result.skipped += 1
                continue
            await _process_enrollment(db, enrollment, dispatcher, resolver, now, result)
        except Exception as exc:
            db.rollback()
            logger.exception(
                "Automation engine failed for enrollment %s", enrollment_id,
                extra=build_log_context(job_name="automation_engine"),
            )
            result.errors.append(f"{enrollment_id}: {exc.__class__.__name__}: {exc}")

    return result
