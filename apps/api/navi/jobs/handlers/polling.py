"""Polling dispatcher job handlers (inbox, reviews, rankings)."""

from sqlalchemy.orm import Session

from navi.jobs.context import JobContext


async def process_inbox_poll(db: Session, ctx: JobContext) -> dict:
    return (await ctx.inbox_poller.run(db, now=ctx.now)).as_dict()


async def process_review_fetch(db: Session, ctx: JobContext) -> dict:
    return (await ctx.review_poller.run(db, now=ctx.now)).as_dict()


async def process_rank_tracking(db: Session, ctx: JobContext) -> dict:
    return (await ctx.rank_tracker.run(db, now=ctx.now)).as_dict()
