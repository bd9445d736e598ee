"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron at the cadence noted on each endpoint.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from navi.core.deps import get_db, get_job_context, verify_internal_secret
from navi.db.enums import JobName
from navi.jobs.context import JobContext
from navi.jobs.registry import run_job
from navi.schemas.job import JobRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


async def _trigger(db: Session, job_name: JobName, ctx: JobContext) -> JobRunResponse:
    try:
        run = await run_job(db, job_name, ctx)
    except Exception:
        # Already recorded on the job run and logged by the runner
        raise HTTPException(status_code=500, detail=f"Job {job_name.value} failed")
    return JobRunResponse.model_validate(run)


@router.post("/automation-engine", response_model=JobRunResponse)
async def automation_engine(
    db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)
):
    """Advance due sequence enrollments by one step. Every minute."""
    return await _trigger(db, JobName.AUTOMATION_ENGINE, ctx)


@router.post("/broadcast-scheduler", response_model=JobRunResponse)
async def broadcast_scheduler(
    db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)
):
    """Send broadcasts whose scheduled time has passed. Every minute."""
    return await _trigger(db, JobName.BROADCAST_SCHEDULER, ctx)


@router.post("/ab-test-winner", response_model=JobRunResponse)
async def ab_test_winner(
    db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)
):
    """Resolve finished A/B tests and send the winner. Every minute."""
    return await _trigger(db, JobName.AB_TEST_WINNER_CHECK, ctx)


@router.post("/poll-inbox", response_model=JobRunResponse)
async def poll_inbox(db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)):
    """Pull new social inbox messages. Every 5 minutes."""
    return await _trigger(db, JobName.INBOX_POLL, ctx)


@router.post("/fetch-reviews", response_model=JobRunResponse)
async def fetch_reviews(db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)):
    """Pull new reviews. Every 4 hours."""
    return await _trigger(db, JobName.REVIEW_FETCH, ctx)


@router.post("/track-keywords", response_model=JobRunResponse)
async def track_keywords(db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)):
    """Snapshot keyword ranks. Daily."""
    return await _trigger(db, JobName.RANK_TRACKING, ctx)


@router.post("/publish-content", response_model=JobRunResponse)
async def publish_content(db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)):
    """Hand approved, due blog posts to the website and social hub. Every 10 minutes."""
    return await _trigger(db, JobName.CONTENT_PUBLISH, ctx)


@router.post("/publish-review-responses", response_model=JobRunResponse)
async def publish_review_responses(
    db: Session = Depends(get_db), ctx: JobContext = Depends(get_job_context)
):
    """Post approved review replies. Every 5 minutes."""
    return await _trigger(db, JobName.REVIEW_RESPONSE_PUBLISH, ctx)
