"""Job run history."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from navi.db.base import Base
from navi.db.enums import JobRunStatus
from navi.db.types import JSONType


class JobRun(Base):
    """One invocation of a scheduled job, with its summary counters."""

    __tablename__ = "job_runs"
    __table_args__ = (Index("idx_job_runs_name", "job_name", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=JobRunStatus.RUNNING.value, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
