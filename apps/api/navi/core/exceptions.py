"""Domain exceptions."""


class NaviError(Exception):
    """Base class for domain errors."""


class SequenceValidationError(NaviError):
    """Sequence steps violate an authoring invariant."""


class AudienceSpecError(NaviError):
    """Audience spec string could not be parsed."""


class ContentGenerationError(NaviError):
    """The text generator failed or returned something other than text."""


class SourceFetchError(NaviError):
    """A polled source failed for a reason that may clear up on the next run."""


class SourceAuthError(SourceFetchError):
    """A polled source rejected our credentials (401/403, expired token).

    The source is marked inactive until it is reconnected.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ReplyPublishError(NaviError):
    """A review reply was not posted. Permanent errors are not retried."""

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent
