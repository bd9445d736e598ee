"""Automation schemas: step payloads and sequence authoring."""
from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from navi.db.enums import StepType


# =============================================================================
# Step payloads (tagged by step type)
# =============================================================================

class SendEmailPayload(BaseModel):
    """Send an email to the enrolled contact."""
    type: Literal["send_email"] = StepType.SEND_EMAIL.value
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)


class SendSmsPayload(BaseModel):
    """Send an SMS to the enrolled contact."""
    type: Literal["send_sms"] = StepType.SEND_SMS.value
    body: str = Field(..., min_length=1, max_length=1600)


class WaitPayload(BaseModel):
    """Pause the enrollment for a whole number of days."""
    type: Literal["wait"] = StepType.WAIT.value
    days: int = Field(default=1, ge=1)


StepPayload = Annotated[
    Union[SendEmailPayload, SendSmsPayload, WaitPayload],
    Field(discriminator="type"),
]

_step_payload_adapter: TypeAdapter[StepPayload] = TypeAdapter(StepPayload)


def parse_step_payload(step_type: str, payload: dict | None) -> StepPayload:
    """Validate a stored payload against the shape required by its step type.

    Raises pydantic.ValidationError for unknown types or malformed payloads.
    """
    data = dict(payload or {})
    data["type"] = step_type
    return _step_payload_adapter.validate_python(data)


def dump_step_payload(payload: StepPayload) -> dict:
    """Serialize a payload for the JSON column (type lives in step_type)."""
    return payload.model_dump(exclude={"type"})


# =============================================================================
# Sequence authoring
# =============================================================================

class StepCreate(BaseModel):
    """A step as submitted by the sequence editor."""
    step_order: int = Field(..., ge=0)
    payload: StepPayload


class SequenceCreate(BaseModel):
    """Create a new sequence with its steps."""
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    trigger_type: Literal["new_lead_added"] = "new_lead_added"
    is_active: bool = True
    steps: list[StepCreate] = Field(default_factory=list)


# =============================================================================
# Events and run summaries
# =============================================================================

class NewLeadEvent(BaseModel):
    """A contact was added for a tenant."""
    user_id: UUID
    contact_id: UUID


class EnrollmentResponse(BaseModel):
    id: UUID
    sequence_id: UUID
    contact_id: UUID
    current_step_order: int
    next_step_at: datetime | None
    status: str

    model_config = {"from_attributes": True}


class NewLeadResponse(BaseModel):
    enrolled: list[EnrollmentResponse]
