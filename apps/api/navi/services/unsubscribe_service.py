"""Unsubscribe token and URL helpers."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from navi.core.config import settings
from navi.core.security import create_signed_token, verify_signed_token
from navi.services import audience_service

UNSUBSCRIBE_PURPOSE = "unsubscribe"


def generate_unsubscribe_token(*, contact_id: UUID) -> str:
    """Generate a signed unsubscribe token for a contact."""
    return create_signed_token(
        UNSUBSCRIBE_PURPOSE,
        {"contact_id": str(contact_id)},
        ttl_seconds=settings.UNSUBSCRIBE_TOKEN_TTL_DAYS * 86400,
    )


def parse_unsubscribe_token(token: str) -> Optional[UUID]:
    """Verify an unsubscribe token. Returns the contact id or None."""
    payload = verify_signed_token(token, UNSUBSCRIBE_PURPOSE)
    if not payload:
        return None
    try:
        return UUID(str(payload.get("contact_id")))
    except ValueError:
        return None


def build_unsubscribe_url(*, contact_id: UUID, base_url: str | None = None) -> str:
    """Build a full unsubscribe URL for use in email bodies and headers."""
    token = generate_unsubscribe_token(contact_id=contact_id)
    base = (base_url or settings.API_BASE_URL or "").strip()
    if not base:
        return f"/email/unsubscribe/{token}"
    return f"{base.rstrip('/')}/email/unsubscribe/{token}"


def unsubscribe_by_token(db: Session, token: str) -> Optional[UUID]:
    """Apply an unsubscribe link. Returns the contact id, or None if invalid.

    Clicking twice is fine; the second click is a no-op.
    """
    contact_id = parse_unsubscribe_token(token)
    if contact_id is None:
        return None
    audience_service.unsubscribe_contact(db, contact_id)
    return contact_id
