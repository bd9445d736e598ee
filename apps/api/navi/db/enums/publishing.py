"""Content publishing enums."""

from enum import Enum


class PostStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"  # Published once scheduled_at passes
    PUBLISHED = "published"
    FAILED = "failed"


class ActionCommandType(str, Enum):
    """Commands queued for the website builder and social hub."""

    ADD_WEBSITE_BLOG_POST = "ADD_WEBSITE_BLOG_POST"
    CREATE_SOCIAL_POST_DRAFT = "CREATE_SOCIAL_POST_DRAFT"


class ActionCommandStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
