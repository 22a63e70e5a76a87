"""CV Follow-up Mailer - Email Queue Processing.

Persistent SQLite-backed queue of CV analysis follow-up emails, a
processor that sends due emails with retry tracking, and a fixed-interval
scheduler that drives it.
"""

from .errors import (
    ConfigError,
    FollowupError,
    NotFoundError,
    StoreError,
    TransportError,
)
from .models import (
    AttemptOutcome,
    CycleSummary,
    EmailQueueEntry,
    EmailStatus,
)
from .queue_processor import EmailQueueProcessor
from .scheduler import QueueScheduler
from .submission_store import SubmissionStore
from .transport import EmailTransport, LogTransport, SmtpTransport, build_transport

__all__ = [
    "AttemptOutcome",
    "ConfigError",
    "CycleSummary",
    "EmailQueueEntry",
    "EmailQueueProcessor",
    "EmailStatus",
    "EmailTransport",
    "FollowupError",
    "LogTransport",
    "NotFoundError",
    "QueueScheduler",
    "SmtpTransport",
    "StoreError",
    "SubmissionStore",
    "TransportError",
    "build_transport",
]
