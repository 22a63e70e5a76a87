"""Exception hierarchy for the follow-up mailer."""


class FollowupError(Exception):
    """Base class for all follow-up mailer errors."""


class ConfigError(FollowupError):
    """Configuration is invalid or transport credentials are missing.

    Fatal at startup.
    """


class TransportError(FollowupError):
    """A single delivery attempt failed (network, auth, provider rejection).

    The message is recorded verbatim as the entry's ``email_error``.
    """


class StoreError(FollowupError):
    """The submission store cannot be read or written.

    Aborts the current processing cycle.
    """


class NotFoundError(StoreError):
    """The submission no longer exists."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission {submission_id} not found")
        self.submission_id = submission_id
