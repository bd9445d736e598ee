"""FastAPI dependencies for database access, job collaborators and internal auth."""

import hmac
from typing import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.db.session import SessionLocal
from navi.jobs.context import JobContext, build_job_context
from navi.services.audience_service import ContactResolver, DbContactResolver


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_contact_resolver(db: Session = Depends(get_db)) -> ContactResolver:
    return DbContactResolver(db)


def get_job_context(db: Session = Depends(get_db)) -> JobContext:
    """Production job collaborators; tests override this dependency."""
    return build_job_context(db)


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the X-Internal-Secret header used by cron triggers."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not hmac.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")
