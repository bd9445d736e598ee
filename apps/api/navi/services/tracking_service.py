"""
Email Tracking Service.

Handles tracking pixel generation, link wrapping, and recording
open/click events for broadcast analytics (A/B winner selection reads
the per-recipient open counts recorded here).
"""

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, unquote

from sqlalchemy import update
from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.db.models import Broadcast, BroadcastRecipient


logger = logging.getLogger(__name__)


# =============================================================================
# Token Generation
# =============================================================================


def generate_tracking_token() -> str:
    """Generate a unique tracking token for a recipient."""
    return secrets.token_urlsafe(32)


# =============================================================================
# URL Generation
# =============================================================================


def get_tracking_base_url() -> str:
    return (settings.API_BASE_URL or "http://localhost:8000").rstrip("/")


def get_tracking_pixel_url(token: str) -> str:
    """Get the URL for the tracking pixel (open tracking)."""
    return f"{get_tracking_base_url()}/tracking/open/{token}"


def get_tracked_link_url(token: str, original_url: str) -> str:
    """Get the tracking URL for a link (click tracking)."""
    encoded_url = quote(original_url, safe="")
    return f"{get_tracking_base_url()}/tracking/click/{token}?url={encoded_url}"


# =============================================================================
# Email Content Transformation
# =============================================================================


_BODY_CLOSE = re.compile(r"(</body>)", re.IGNORECASE)
_LINK = re.compile(r'(<a\s+[^>]*href\s*=\s*)["\']([^"\']+)["\']', re.IGNORECASE)


def inject_tracking_pixel(html_body: str, token: str) -> str:
    """Insert a 1x1 pixel before </body>, or append it if there is none."""
    pixel_html = (
        f'<img src="{get_tracking_pixel_url(token)}" width="1" height="1" '
        'style="display:block;width:1px;height:1px;border:0;" alt="" />'
    )
    if _BODY_CLOSE.search(html_body):
        return _BODY_CLOSE.sub(f"{pixel_html}\\1", html_body, count=1)
    return html_body + pixel_html


def wrap_links_in_email(html_body: str, token: str) -> str:
    """Route <a href> links through the click tracking endpoint."""

    def replace_link(match):
        original_url = match.group(2)
        # mailto/tel/anchors and already-wrapped links stay as they are
        if original_url.startswith(("mailto:", "tel:", "#", "{{")):
            return match.group(0)
        if "/tracking/click/" in original_url:
            return match.group(0)
        return f'{match.group(1)}"{get_tracked_link_url(token, original_url)}"'

    return _LINK.sub(replace_link, html_body)


def prepare_email_for_tracking(html_body: str, token: str) -> str:
    """Wrap links, then inject the pixel."""
    return inject_tracking_pixel(wrap_links_in_email(html_body, token), token)


# =============================================================================
# Event Recording
# =============================================================================


def _get_recipient(db: Session, token: str) -> Optional[BroadcastRecipient]:
    if not token:
        return None
    return (
        db.query(BroadcastRecipient)
        .filter(BroadcastRecipient.tracking_token == token)
        .first()
    )


def record_open(db: Session, token: str) -> bool:
    """
    Record an email open.

    Returns True if the token matched a recipient. Only the first open
    bumps the broadcast's open_count.
    """
    recipient = _get_recipient(db, token)
    if not recipient:
        return False

    recipient.open_count += 1
    if not recipient.opened_at:
        recipient.opened_at = datetime.now(timezone.utc)
        db.execute(
            update(Broadcast)
            .where(Broadcast.id == recipient.broadcast_id)
            .values(open_count=Broadcast.open_count + 1)
        )
    db.commit()
    return True


def record_click(db: Session, token: str, url: str) -> Optional[str]:
    """
    Record a link click.

    Returns the original URL to redirect to, or None if token not found.
    A click also counts as an open for clients that block images.
    """
    recipient = _get_recipient(db, token)
    if not recipient:
        return None

    now = datetime.now(timezone.utc)
    recipient.click_count += 1
    first_click = recipient.clicked_at is None
    if first_click:
        recipient.clicked_at = now
    first_open = recipient.opened_at is None
    if first_open:
        recipient.opened_at = now
        recipient.open_count += 1

    if first_click or first_open:
        db.execute(
            update(Broadcast)
            .where(Broadcast.id == recipient.broadcast_id)
            .values(
                click_count=Broadcast.click_count + (1 if first_click else 0),
                open_count=Broadcast.open_count + (1 if first_open else 0),
            )
        )
    db.commit()
    return unquote(url)
