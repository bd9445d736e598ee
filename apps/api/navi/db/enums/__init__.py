"""Enum definitions for application constants."""

from navi.db.enums.automations import EnrollmentStatus, StepType, TriggerType
from navi.db.enums.broadcasts import (
    BroadcastStatus,
    BroadcastType,
    Channel,
    RecipientPhase,
    RecipientStatus,
    Variant,
)
from navi.db.enums.jobs import JobName, JobRunStatus
from navi.db.enums.polling import (
    MessageDirection,
    PollSourceType,
    ReviewPlatform,
    ReviewStatus,
    SocialPlatform,
    SourceStatus,
)
from navi.db.enums.publishing import ActionCommandStatus, ActionCommandType, PostStatus

__all__ = [
    "ActionCommandStatus",
    "ActionCommandType",
    "BroadcastStatus",
    "BroadcastType",
    "Channel",
    "EnrollmentStatus",
    "JobName",
    "JobRunStatus",
    "MessageDirection",
    "PollSourceType",
    "PostStatus",
    "RecipientPhase",
    "RecipientStatus",
    "ReviewPlatform",
    "ReviewStatus",
    "SocialPlatform",
    "SourceStatus",
    "StepType",
    "TriggerType",
    "Variant",
]
