"""Job run service - records each scheduled job invocation."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from navi.core.structured_logging import build_log_context
from navi.db.enums import JobName, JobRunStatus
from navi.db.models import JobRun

logger = logging.getLogger(__name__)


def start_job_run(db: Session, job_name: JobName) -> JobRun:
    """Create a running job record."""
    run = JobRun(
        job_name=job_name.value,
        status=JobRunStatus.RUNNING.value,
        started_at=datetime.now(timezone.utc),
        details={},
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_job_run_completed(db: Session, run: JobRun, details: dict[str, Any]) -> JobRun:
    run.status = JobRunStatus.COMPLETED.value
    run.completed_at = datetime.now(timezone.utc)
    run.details = details
    db.commit()
    db.refresh(run)
    return run


def mark_job_run_failed(db: Session, run: JobRun, error: str) -> JobRun:
    run.status = JobRunStatus.FAILED.value
    run.completed_at = datetime.now(timezone.utc)
    run.error_message = error[:2000]
    db.commit()
    db.refresh(run)
    return run


async def record_job_run(
    db: Session,
    job_name: JobName,
    job_fn: Callable[[], Awaitable[dict[str, Any]]],
) -> JobRun:
    """
    Run job_fn inside a job run record.

    Fatal errors are recorded on the run and re-raised to the trigger.
    """
    run = start_job_run(db, job_name)
    log_extra = build_log_context(job_name=job_name.value, run_id=str(run.id))
    logger.info("Job %s started", job_name.value, extra=log_extra)
    try:
        details = await job_fn()
    except Exception as exc:
        db.rollback()
        mark_job_run_failed(db, run, f"{exc.__class__.__name__}: {exc}")
        logger.exception("Job %s failed", job_name.value, extra=log_extra)
        raise

    run = mark_job_run_completed(db, run, details)
    logger.info("Job %s completed: %s", job_name.value, details, extra=log_extra)
    return run


def list_job_runs(db: Session, job_name: JobName | None = None, limit: int = 50) -> list[JobRun]:
    query = db.query(JobRun)
    if job_name:
        query = query.filter(JobRun.job_name == job_name.value)
    return query.order_by(JobRun.started_at.desc()).limit(limit).all()
