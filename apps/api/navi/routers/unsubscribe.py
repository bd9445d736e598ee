"""Public unsubscribe endpoints (links in emails and List-Unsubscribe one-click)."""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from navi.core.deps import get_db
from navi.services import unsubscribe_service

router = APIRouter(prefix="/email/unsubscribe", tags=["unsubscribe"])

CONFIRMATION_HTML = """<!doctype html>
<html><head><meta charset="utf-8"><title>Unsubscribed</title></head>
<body style="font-family:sans-serif;max-width:480px;margin:64px auto;text-align:center">
<h1>You're unsubscribed</h1>
<p>You will no longer receive these messages.</p>
</body></html>"""


def _apply(token: str, db: Session) -> None:
    if unsubscribe_service.unsubscribe_by_token(db, token) is None:
        raise HTTPException(status_code=404, detail="Invalid or expired unsubscribe link")


@router.get("/{token}", response_class=HTMLResponse)
def unsubscribe_page(token: str, db: Session = Depends(get_db)):
    """Unsubscribe link clicked from an email."""
    _apply(token, db)
    return HTMLResponse(CONFIRMATION_HTML)


@router.post("/{token}")
def unsubscribe_one_click(token: str, db: Session = Depends(get_db)):
    """RFC 8058 one-click unsubscribe from the mail client."""
    _apply(token, db)
    return {"status": "unsubscribed"}
