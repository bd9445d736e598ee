"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from sqlalchemy.orm import Session

from navi.db.enums import JobName
from navi.db.models import JobRun
from navi.jobs.context import JobContext
from navi.jobs.handlers import automation, broadcasts, polling, publishing
from navi.services import job_run_service

JobHandler = Callable[[Session, JobContext], Awaitable[dict]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobName.AUTOMATION_ENGINE.value: automation.process_automation_engine,
    JobName.BROADCAST_SCHEDULER.value: broadcasts.process_broadcast_scheduler,
    JobName.AB_TEST_WINNER_CHECK.value: broadcasts.process_ab_test_winner_check,
    JobName.INBOX_POLL.value: polling.process_inbox_poll,
    JobName.REVIEW_FETCH.value: polling.process_review_fetch,
    JobName.RANK_TRACKING.value: polling.process_rank_tracking,
    JobName.CONTENT_PUBLISH.value: publishing.process_content_publish,
    JobName.REVIEW_RESPONSE_PUBLISH.value: publishing.process_review_response_publish,
}


def resolve_job_handler(job_name: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_name)
    if not handler:
        raise ValueError(f"Unknown job: {job_name}")
    return handler


async def run_job(db: Session, job_name: JobName | str, ctx: JobContext) -> JobRun:
    """Run a registered job inside a JobRun record."""
    name = JobName(job_name)
    handler = resolve_job_handler(name.value)
    return await job_run_service.record_job_run(db, name, lambda: handler(db, ctx))
