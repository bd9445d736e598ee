"""Automation engine job handler."""

from sqlalchemy.orm import Session

from navi.jobs.context import JobContext
from navi.services import automation_engine


async def process_automation_engine(db: Session, ctx: JobContext) -> dict:
    result = await automation_engine.run_automation_engine(
        db, ctx.dispatcher, ctx.resolver, now=ctx.now
    )
    return result.as_dict()
