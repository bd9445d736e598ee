"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any

from navi.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API process or the CLI."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )


def build_log_context(
    *,
    user_id: str | None = None,
    job_name: str | None = None,
    run_id: str | None = None,
    enrollment_id: str | None = None,
    broadcast_id: str | None = None,
    source_id: str | None = None,
    post_id: str | None = None,
    review_id: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if job_name:
        context["job_name"] = job_name
    if run_id:
        context["run_id"] = run_id
    if enrollment_id:
        context["enrollment_id"] = enrollment_id
    if broadcast_id:
        context["broadcast_id"] = broadcast_id
    if source_id:
        context["source_id"] = source_id
    if post_id:
        context["post_id"] = post_id
    if review_id:
        context["review_id"] = review_id
    return context


def mask_email(email: str | None) -> str:
    """Mask an email for logs: j***@example.com."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logs, keeping the last 4 digits."""
    if not phone:
        return "***"
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"
