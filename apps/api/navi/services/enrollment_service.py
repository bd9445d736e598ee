"""Enrollment tracker - sequence authoring, enrollment and conditional progress updates.

Every write to an active enrollment is an UPDATE ... WHERE <expected state>;
callers check the returned bool and treat False as "someone else got there
first".
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.exceptions import SequenceValidationError
from navi.db.enums import EnrollmentStatus, StepType, TriggerType
from navi.db.models import AutomationSequence, AutomationStep, EnrollmentProgress
from navi.schemas.automation import SequenceCreate, dump_step_payload

logger = logging.getLogger(__name__)

NOT_STARTED = -1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Sequence authoring
# =============================================================================


def validate_sequence_steps(steps: Iterable[tuple[int, str]]) -> None:
    """
    Check (step_order, step_type) pairs before a sequence is saved.

    Orders must be unique and contiguous from 0, and two waits may not be
    adjacent. The engine relies on both.
    """
    ordered = sorted(steps, key=lambda s: s[0])
    orders = [order for order, _ in ordered]
    if orders != list(range(len(orders))):
        raise SequenceValidationError(
            f"Step orders must be contiguous from 0, got {orders}"
        )
    for (_, prev_type), (order, step_type) in zip(ordered, ordered[1:]):
        if prev_type == StepType.WAIT.value and step_type == StepType.WAIT.value:
            raise SequenceValidationError(f"Consecutive wait steps at order {order}")


def create_sequence(db: Session, data: SequenceCreate) -> AutomationSequence:
    """Create a sequence with its steps."""
    validate_sequence_steps((s.step_order, s.payload.type) for s in data.steps)

    sequence = AutomationSequence(
        user_id=data.user_id,
        name=data.name,
        description=data.description,
        trigger_type=data.trigger_type,
        is_active=data.is_active,
    )
    for step in data.steps:
        sequence.steps.append(
            AutomationStep(
                step_order=step.step_order,
                step_type=step.payload.type,
                payload=dump_step_payload(step.payload),
            )
        )
    db.add(sequence)
    db.commit()
    db.refresh(sequence)
    return sequence


def get_next_step(db: Session, sequence_id: UUID, after_order: int) -> AutomationStep | None:
    """Smallest step_order strictly greater than after_order."""
    return db.execute(
        select(AutomationStep)
        .where(
            AutomationStep.sequence_id == sequence_id,
            AutomationStep.step_order > after_order,
        )
        .order_by(AutomationStep.step_order)
        .limit(1)
    ).scalar_one_or_none()


# =============================================================================
# Enrollment
# =============================================================================


def get_active_enrollment(
    db: Session, sequence_id: UUID, contact_id: UUID
) -> EnrollmentProgress | None:
    return db.execute(
        select(EnrollmentProgress).where(
            EnrollmentProgress.sequence_id == sequence_id,
            EnrollmentProgress.contact_id == contact_id,
            EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
        )
    ).scalar_one_or_none()


def enroll_contact(
    db: Session, sequence: AutomationSequence, contact_id: UUID
) -> EnrollmentProgress | None:
    """
    Enroll a contact at the start of a sequence, due immediately.

    Returns None when the contact already has an active enrollment; the
    partial unique index backs this up against concurrent triggers.
    """
    if get_active_enrollment(db, sequence.id, contact_id):
        return None

    enrollment = EnrollmentProgress(
        sequence_id=sequence.id,
        contact_id=contact_id,
        current_step_order=NOT_STARTED,
        next_step_at=None,
        status=EnrollmentStatus.ACTIVE.value,
    )
    db.add(enrollment)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Concurrent enrollment for sequence %s, skipping", sequence.id)
        return None

    db.execute(
        update(AutomationSequence)
        .where(AutomationSequence.id == sequence.id)
        .values(total_executions=AutomationSequence.total_executions + 1)
    )
    db.commit()
    db.refresh(enrollment)
    return enrollment


def handle_new_lead_added(
    db: Session, user_id: UUID, contact_id: UUID
) -> list[EnrollmentProgress]:
    """Enroll a new lead into every active new_lead_added sequence of the tenant."""
    sequences = (
        db.execute(
            select(AutomationSequence)
            .where(
                AutomationSequence.user_id == user_id,
                AutomationSequence.trigger_type == TriggerType.NEW_LEAD_ADDED.value,
                AutomationSequence.is_active.is_(True),
            )
            .order_by(AutomationSequence.created_at)
        )
        .scalars()
        .all()
    )

    enrolled = []
    for sequence in sequences:
        enrollment = enroll_contact(db, sequence, contact_id)
        if enrollment:
            enrolled.append(enrollment)
    logger.info(
        "New lead enrolled in %s of %s sequences", len(enrolled), len(sequences),
        extra={"user_id": str(user_id)},
    )
    return enrolled


# =============================================================================
# Due work and claims
# =============================================================================


def _is_due(now: datetime):
    return or_(
        EnrollmentProgress.next_step_at.is_(None),
        EnrollmentProgress.next_step_at <= now,
    )


def find_due_enrollments(
    db: Session, now: datetime, limit: int | None = None
) -> list[EnrollmentProgress]:
    """Active enrollments whose next step is due, oldest first (NULL first)."""
    query = (
        select(EnrollmentProgress)
        .where(
            EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
            _is_due(now),
        )
        .order_by(EnrollmentProgress.next_step_at.is_not(None), EnrollmentProgress.next_step_at)
        .limit(limit or settings.AUTOMATION_BATCH_SIZE)
    )
    return list(db.execute(query).scalars().all())


def claim_step(
    db: Session, enrollment_id: UUID, expected_step_order: int, now: datetime
) -> str | None:
    """
    Take the execution lease for the enrollment's pending step.

    Succeeds only if the row is still active, still due, still at the step
    order the caller read, and not leased by a live claim. Returns the claim
    token, or None if the claim was lost.
    """
    token = secrets.token_hex(16)
    lease_cutoff = now - timedelta(minutes=settings.AUTOMATION_CLAIM_LEASE_MINUTES)
    result = db.execute(
        update(EnrollmentProgress)
        .where(
            EnrollmentProgress.id == enrollment_id,
            EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
            EnrollmentProgress.current_step_order == expected_step_order,
            _is_due(now),
            or_(
                EnrollmentProgress.claim_token.is_(None),
                and_(
                    EnrollmentProgress.claimed_at.is_not(None),
                    EnrollmentProgress.claimed_at < lease_cutoff,
                ),
            ),
        )
        .values(claim_token=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return token if result.rowcount == 1 else None


def _claimed(enrollment_id: UUID, claim_token: str):
    return (
        EnrollmentProgress.id == enrollment_id,
        EnrollmentProgress.claim_token == claim_token,
        EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
    )


def advance_step(
    db: Session,
    enrollment_id: UUID,
    claim_token: str,
    step_order: int,
    next_step_at: datetime,
) -> bool:
    """Record step_order as done and release the lease."""
    result = db.execute(
        update(EnrollmentProgress)
        .where(*_claimed(enrollment_id, claim_token))
        .values(
            current_step_order=step_order,
            next_step_at=next_step_at,
            attempts=0,
            last_error=None,
            claim_token=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def retry_delay(attempts: int) -> timedelta:
    """Backoff after the Nth consecutive failure (N >= 1), capped."""
    minutes = settings.AUTOMATION_RETRY_BASE_MINUTES * (2 ** max(attempts - 1, 0))
    return timedelta(minutes=min(minutes, settings.AUTOMATION_RETRY_MAX_MINUTES))


def record_step_failure(
    db: Session,
    enrollment_id: UUID,
    claim_token: str,
    previous_attempts: int,
    error: str,
    now: datetime,
) -> EnrollmentStatus | None:
    """
    Leave the step unadvanced and schedule a retry with backoff.

    Once AUTOMATION_MAX_STEP_ATTEMPTS consecutive failures accumulate the
    enrollment is marked failed. Returns the resulting status, or None if the
    lease was lost.
    """
    attempts = previous_attempts + 1
    values: dict = {
        "attempts": attempts,
        "last_error": error[:1000],
        "claim_token": None,
        "claimed_at": None,
    }
    if attempts >= settings.AUTOMATION_MAX_STEP_ATTEMPTS:
        status = EnrollmentStatus.FAILED
        values["status"] = status.value
        values["completed_at"] = now
    else:
        status = EnrollmentStatus.ACTIVE
        values["next_step_at"] = now + retry_delay(attempts)

    result = db.execute(
        update(EnrollmentProgress)
        .where(*_claimed(enrollment_id, claim_token))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return status if result.rowcount == 1 else None


def complete_enrollment(
    db: Session, enrollment_id: UUID, expected_step_order: int, now: datetime
) -> bool:
    """Mark an enrollment completed once it has no step after expected_step_order."""
    result = db.execute(
        update(EnrollmentProgress)
        .where(
            EnrollmentProgress.id == enrollment_id,
            EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
            EnrollmentProgress.current_step_order == expected_step_order,
            EnrollmentProgress.claim_token.is_(None),
        )
        .values(
            status=EnrollmentStatus.COMPLETED.value,
            completed_at=now,
            next_step_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def cancel_enrollment(
    db: Session, enrollment_id: UUID, reason: str, now: datetime | None = None
) -> bool:
    """Cancel an active enrollment (unsubscribe, deleted contact)."""
    result = db.execute(
        update(EnrollmentProgress)
        .where(
            EnrollmentProgress.id == enrollment_id,
            EnrollmentProgress.status == EnrollmentStatus.ACTIVE.value,
        )
        .values(
            status=EnrollmentStatus.CANCELED.value,
            last_error=reason,
            completed_at=now or _utcnow(),
            claim_token=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1
