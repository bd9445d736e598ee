"""SQLAlchemy ORM models."""

from navi.db.models.automations import AutomationSequence, AutomationStep, EnrollmentProgress
from navi.db.models.broadcasts import Broadcast, BroadcastRecipient
from navi.db.models.contacts import Contact
from navi.db.models.jobs import JobRun
from navi.db.models.polling import (
    KeywordRankSnapshot,
    PollCheckpoint,
    Review,
    ReviewResponse,
    ReviewSource,
    SocialConnection,
    SocialMessage,
    TrackedKeyword,
)
from navi.db.models.publishing import ActionCommand, BlogPost

__all__ = [
    "ActionCommand",
    "AutomationSequence",
    "AutomationStep",
    "BlogPost",
    "Broadcast",
    "BroadcastRecipient",
    "Contact",
    "EnrollmentProgress",
    "JobRun",
    "KeywordRankSnapshot",
    "PollCheckpoint",
    "Review",
    "ReviewResponse",
    "ReviewSource",
    "SocialConnection",
    "SocialMessage",
    "TrackedKeyword",
]
