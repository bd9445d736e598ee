"""Broadcast job handlers."""

from sqlalchemy.orm import Session

from navi.jobs.context import JobContext
from navi.services import broadcast_service


async def process_broadcast_scheduler(db: Session, ctx: JobContext) -> dict:
    result = await broadcast_service.run_broadcast_scheduler(
        db, ctx.dispatcher, ctx.resolver, now=ctx.now
    )
    return result.as_dict()


async def process_ab_test_winner_check(db: Session, ctx: JobContext) -> dict:
    result = await broadcast_service.run_ab_test_winner_check(
        db, ctx.dispatcher, ctx.resolver, now=ctx.now
    )
    return result.as_dict()
