"""
Email Tracking Router.

Public endpoints for recording email opens and link clicks.
These endpoints must be unauthenticated since they're called from email clients.
"""

import base64
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from navi.core.deps import get_db
from navi.services import tracking_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking", tags=["tracking"])

# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw==")
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/open/{token}")
def track_open(token: str, db: Session = Depends(get_db)) -> Response:
    """Record an email open and return the tracking pixel."""
    try:
        tracking_service.record_open(db=db, token=token)
    except SQLAlchemyError:
        # The pixel is always served; a lost open is not worth a broken image
        db.rollback()
        logger.warning("Failed to record open", exc_info=True)

    return Response(content=TRANSPARENT_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/click/{token}")
def track_click(token: str, url: str, db: Session = Depends(get_db)) -> Response:
    """Record a link click and redirect to the original URL."""
    try:
        original_url = tracking_service.record_click(db=db, token=token, url=url)
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Failed to record click", exc_info=True)
        original_url = None

    return RedirectResponse(url=original_url or url, status_code=302)
