"""Job run schemas."""
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class JobRunResponse(BaseModel):
    """Summary returned by the scheduled job endpoints."""
    id: UUID
    job_name: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"from_attributes": True}
