"""Job-related enums."""

from enum import Enum


class JobName(str, Enum):
    """Scheduled jobs triggered by external cron."""

    AUTOMATION_ENGINE = "automation_engine"
    BROADCAST_SCHEDULER = "broadcast_scheduler"
    AB_TEST_WINNER_CHECK = "ab_test_winner_check"
    INBOX_POLL = "inbox_poll"  # Every 5 minutes
    REVIEW_FETCH = "review_fetch"  # Every 4 hours
    RANK_TRACKING = "rank_tracking"  # Daily
    CONTENT_PUBLISH = "content_publish"  # Every 10 minutes
    REVIEW_RESPONSE_PUBLISH = "review_response_publish"  # Every 5 minutes


class JobRunStatus(str, Enum):
    """Status of a job run record."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
