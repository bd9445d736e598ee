"""Automation sequence models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from navi.db.base import Base
from navi.db.enums import EnrollmentStatus, TriggerType
from navi.db.types import JSONType


class AutomationSequence(Base):
    """
    A tenant-owned drip sequence.

    Steps run in ascending step_order. The engine never edits a sequence;
    it only counts enrollments in total_executions.
    """

    __tablename__ = "automation_sequences"
    __table_args__ = (
        Index("idx_sequences_trigger", "user_id", "trigger_type", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(
        String(50), default=TriggerType.NEW_LEAD_ADDED.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=text("true"), default=True, nullable=False
    )
    total_executions: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    steps: Mapped[list["AutomationStep"]] = relationship(
        back_populates="sequence",
        cascade="all, delete-orphan",
        order_by="AutomationStep.step_order",
    )


class AutomationStep(Base):
    """One step of a sequence; payload shape depends on step_type."""

    __tablename__ = "automation_steps"
    __table_args__ = (
        UniqueConstraint("sequence_id", "step_order", name="uq_step_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_sequences.id", ondelete="CASCADE"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    sequence: Mapped[AutomationSequence] = relationship(back_populates="steps")


class EnrollmentProgress(Base):
    """
    A contact's position in a sequence.

    current_step_order is the last completed step (-1 before the first).
    next_step_at NULL means due immediately. Only the automation engine
    moves current_step_order/next_step_at, always via a conditional update
    guarded by claim_token.
    """

    __tablename__ = "automation_enrollments"
    __table_args__ = (
        Index(
            "idx_enrollments_due",
            "status",
            "next_step_at",
            postgresql_where=text("status = 'active'"),
        ),
        # At most one active enrollment per (sequence, contact)
        Index(
            "uq_enrollment_active",
            "sequence_id",
            "contact_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_sequences.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    current_step_order: Mapped[int] = mapped_column(
        Integer, server_default=text("-1"), default=-1, nullable=False
    )
    next_step_at: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=EnrollmentStatus.ACTIVE.value, nullable=False
    )

    # Consecutive failed dispatches of the pending step
    attempts: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Execution lease held while a step is in flight
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    sequence: Mapped[AutomationSequence] = relationship()
