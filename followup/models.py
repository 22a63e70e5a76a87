"""Data models for the CV follow-up mailer.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
just stdlib.  Timestamps are timezone-aware UTC datetimes; the store
serializes them with ``to_iso`` so that string order equals time order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC.  Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Fixed-width ISO 8601 string, e.g. '2026-10-19T06:00:00.000000+00:00'."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO string back into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EmailStatus(Enum):
    """Lifecycle states for a submission's follow-up email."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not EmailStatus.PENDING


class AttemptOutcome(Enum):
    """Result of a single delivery attempt, as written to the audit log."""

    SUCCESS = "success"
    FAILED = "failed"


# Columns of a submission row the queue processor is allowed to write.
EMAIL_QUEUE_FIELDS: frozenset[str] = frozenset({
    "email_status",
    "email_scheduled_at",
    "email_attempts",
    "email_last_attempt_at",
    "email_sent_at",
    "email_error",
    "email_opened_at",
})


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class EmailQueueEntry:
    """One CV submission's follow-up email record.

    The ``email_*`` fields are owned by the queue.  The recipient fields
    (``email`` through ``analysis_results``) are written by the upload
    workflow and only read here to build the email.
    """

    submission_id: str

    # --- queue state ---
    email_status: EmailStatus = EmailStatus.PENDING
    email_scheduled_at: datetime | None = None
    email_attempts: int = 0
    email_last_attempt_at: datetime | None = None
    email_sent_at: datetime | None = None
    email_error: str | None = None
    email_opened_at: datetime | None = None

    # --- recipient (read-only to the processor) ---
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    analysis_results: dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_due(self, now: datetime) -> bool:
        """True when the entry is pending and its scheduled time has arrived."""
        return (
            self.email_status is EmailStatus.PENDING
            and self.email_scheduled_at is not None
            and self.email_scheduled_at <= ensure_utc(now)
        )

    @property
    def template_data(self) -> dict[str, Any]:
        """Variables handed to the transport for rendering the email."""
        results = self.analysis_results or {}
        return {
            "submission_id": self.submission_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "overall_score": results.get("overall_score"),
            "ats_compatibility": results.get("ats_compatibility"),
            "strengths": list(results.get("strengths") or []),
            "improvements": list(results.get("improvements") or []),
            "detailed_feedback": results.get("detailed_feedback", ""),
        }


@dataclass
class CycleSummary:
    """Outcome counts of one processing cycle.

    ``failed`` only counts entries that reached the terminal ``failed``
    state this cycle; failures that will be retried are ``still_pending``.
    """

    attempted: int = 0
    sent: int = 0
    failed: int = 0
    still_pending: int = 0
    now: datetime | None = None             # the injected cycle time

    def as_dict(self) -> dict[str, int]:
        return {
            "attempted": self.attempted,
            "sent": self.sent,
            "failed": self.failed,
            "still_pending": self.still_pending,
        }

    def __str__(self) -> str:
        return (
            f"attempted={self.attempted} sent={self.sent} "
            f"failed={self.failed} still_pending={self.still_pending}"
        )
