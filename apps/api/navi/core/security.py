"""Signed, URL-safe tokens for public links (unsubscribe, review feedback)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from navi.core.config import settings


TOKEN_VERSION = 1


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest)


def create_signed_token(purpose: str, claims: dict[str, Any], ttl_seconds: int) -> str:
    """Create a `payload.signature` token bound to a purpose."""
    secrets = settings.token_secrets
    if not secrets:
        raise ValueError("TOKEN_SECRET must be set to generate signed tokens")

    now = int(time.time())
    payload = {
        "v": TOKEN_VERSION,
        "p": purpose,
        "iat": now,
        "exp": now + ttl_seconds,
        **claims,
    }
    payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, secrets[0])}"


def verify_signed_token(token: str, purpose: str) -> Optional[dict[str, Any]]:
    """Verify signature, version, purpose and expiry. Returns claims or None."""
    if not token:
        return None

    try:
        payload_b64, signature = token.split(".", 1)
    except ValueError:
        return None

    if not any(
        hmac.compare_digest(_sign(payload_b64, secret), signature)
        for secret in settings.token_secrets
    ):
        return None

    try:
        payload = json.loads(_b64decode(payload_b64))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    if payload.get("v") != TOKEN_VERSION or payload.get("p") != purpose:
        return None

    exp = payload.get("exp")
    if isinstance(exp, int) and exp > 0 and int(time.time()) > exp:
        return None

    return payload
