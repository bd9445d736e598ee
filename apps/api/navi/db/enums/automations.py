"""Automation sequence enums."""

from enum import Enum


class TriggerType(str, Enum):
    """Events that enroll contacts into a sequence."""

    NEW_LEAD_ADDED = "new_lead_added"


class StepType(str, Enum):
    """Kinds of sequence steps."""

    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    WAIT = "wait"


class EnrollmentStatus(str, Enum):
    """Lifecycle of a contact's progress through a sequence."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"  # Dispatch retries exhausted
