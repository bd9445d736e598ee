"""Publishing job handlers (blog posts, review replies)."""

from sqlalchemy.orm import Session

from navi.jobs.context import JobContext
from navi.services import content_publisher


async def process_content_publish(db: Session, ctx: JobContext) -> dict:
    return content_publisher.run_content_publisher(db, now=ctx.now).as_dict()


async def process_review_response_publish(db: Session, ctx: JobContext) -> dict:
    return (await ctx.response_publisher.run(db, now=ctx.now)).as_dict()
