"""Broadcast-related enums."""

from enum import Enum


class BroadcastStatus(str, Enum):
    """Status of a broadcast."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    AWAITING_WINNER = "awaiting_winner"
    SENT = "sent"
    FAILED = "failed"


class BroadcastType(str, Enum):
    STANDARD = "standard"
    REVIEW_REQUEST = "review_request"


class Channel(str, Enum):
    """Outbound message channel."""

    EMAIL = "email"
    SMS = "sms"


class Variant(str, Enum):
    A = "A"
    B = "B"


class RecipientPhase(str, Enum):
    """Which send pass exposed a recipient."""

    FULL = "full"
    TEST = "test"
    REMAINDER = "remainder"


class RecipientStatus(str, Enum):
    PENDING = "pending"  # Exposure reserved, dispatch in flight
    SENT = "sent"
    FAILED = "failed"
