"""Signed per-contact feedback links for review request broadcasts."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from navi.core.config import settings
from navi.core.security import create_signed_token, verify_signed_token

FEEDBACK_PURPOSE = "review_feedback"


def build_feedback_url(
    *, broadcast_id: UUID, contact_id: UUID, platform: str | None = None
) -> str:
    """Link to the public feedback page; platform selects the review site."""
    claims: dict[str, str] = {
        "broadcast_id": str(broadcast_id),
        "contact_id": str(contact_id),
    }
    if platform:
        claims["platform"] = platform
    token = create_signed_token(
        FEEDBACK_PURPOSE, claims, ttl_seconds=settings.FEEDBACK_TOKEN_TTL_DAYS * 86400
    )
    return f"{settings.FRONTEND_URL.rstrip('/')}/feedback/{token}"


def parse_feedback_token(token: str) -> Optional[dict[str, str]]:
    payload = verify_signed_token(token, FEEDBACK_PURPOSE)
    if not payload:
        return None
    try:
        UUID(str(payload.get("broadcast_id")))
        UUID(str(payload.get("contact_id")))
    except ValueError:
        return None
    return {
        "broadcast_id": payload["broadcast_id"],
        "contact_id": payload["contact_id"],
        "platform": payload.get("platform"),
    }


def append_feedback_link(body: str, feedback_url: str, *, html: bool) -> str:
    if html:
        return (
            f'{body}<p><a href="{feedback_url}">Tell us about your experience</a></p>'
        )
    return f"{body}\n\nTell us about your experience: {feedback_url}"
