"""Broadcast schemas: content variants, A/B config, audience spec."""
from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from navi.core.exceptions import AudienceSpecError


# =============================================================================
# Content and A/B configuration
# =============================================================================

class ContentVersion(BaseModel):
    """One content variant of a broadcast."""
    variant: Literal["A", "B"] = "A"
    subject: str = ""
    body: str = Field(..., min_length=1)


class AbTestConfig(BaseModel):
    """A/B split configuration; winner_variant is set once resolved."""
    test_size_percentage: int = Field(default=20, ge=2, le=100)
    variant_a_size: int = Field(default=50, ge=1, le=99)
    test_duration_hours: int = Field(default=4, ge=1)
    winner_variant: Literal["A", "B"] | None = None


class BroadcastCreate(BaseModel):
    """Create a broadcast (draft unless scheduled_at is given)."""
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    broadcast_type: Literal["standard", "review_request"] = "standard"
    channel: Literal["email", "sms"] = "email"
    audience_spec: str = ""
    content_versions: list[ContentVersion] = Field(..., min_length=1, max_length=2)
    ab_test_config: AbTestConfig | None = None
    scheduled_at: datetime | None = None

    @field_validator("content_versions")
    @classmethod
    def variants_unique(cls, value: list[ContentVersion]) -> list[ContentVersion]:
        variants = [v.variant for v in value]
        if len(set(variants)) != len(variants):
            raise ValueError("content variants must be unique")
        return value

    @model_validator(mode="after")
    def email_needs_subject(self) -> "BroadcastCreate":
        if self.channel == "email" and any(not v.subject for v in self.content_versions):
            raise ValueError("email broadcasts need a subject for every variant")
        return self


# =============================================================================
# Audience spec: "tags:t1,t2|platform:google"
# =============================================================================

class AudienceSpec(BaseModel):
    """Parsed audience selector. Tags are OR-ed; no tags means everyone."""
    tags: list[str] = Field(default_factory=list)
    platform: str | None = None


def parse_audience_spec(raw: str | None) -> AudienceSpec:
    """Parse `tags:a,b|platform:p`. Unknown segments are rejected."""
    spec = AudienceSpec()
    if not raw or not raw.strip():
        return spec

    for part in raw.split("|"):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition(":")
        if not sep:
            raise AudienceSpecError(f"Malformed audience segment: {part!r}")
        key = key.strip().lower()
        if key == "tags":
            spec.tags = [t.strip() for t in value.split(",") if t.strip()]
        elif key == "platform":
            spec.platform = value.strip() or None
        else:
            raise AudienceSpecError(f"Unknown audience segment: {key!r}")
    return spec


def format_audience_spec(spec: AudienceSpec) -> str:
    parts = []
    if spec.tags:
        parts.append("tags:" + ",".join(spec.tags))
    if spec.platform:
        parts.append(f"platform:{spec.platform}")
    return "|".join(parts)


# =============================================================================
# Responses
# =============================================================================

class BroadcastResponse(BaseModel):
    id: UUID
    name: str
    channel: str
    status: str
    scheduled_at: datetime | None
    winner_check_at: datetime | None
    sent_at: datetime | None
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    open_count: int = 0

    model_config = {"from_attributes": True}
