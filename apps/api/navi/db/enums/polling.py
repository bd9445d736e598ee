"""Polling source enums."""

from enum import Enum


class PollSourceType(str, Enum):
    """Checkpoint namespaces, one per polling use-site."""

    INBOX = "inbox"
    REVIEWS = "reviews"
    RANKINGS = "rankings"


class SourceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"  # Credentials rejected; needs reconnect


class SocialPlatform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    TWITTER = "twitter"


class ReviewPlatform(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"
    YELP = "yelp"


class ReviewStatus(str, Enum):
    NEEDS_RESPONSE = "needs_response"
    RESPONSE_APPROVED = "response_approved"  # Queued for the response publisher
    RESPONSE_PUBLISHING = "response_publishing"
    RESPONDED = "responded"
    RESPONSE_FAILED = "response_failed"
    IGNORED = "ignored"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
