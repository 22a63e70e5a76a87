"""
CV Follow-up Mailer -- Email Queue Processor

Runs one processing cycle over the submission store:

    select due (pending, scheduled <= now, oldest first, batch_size)
      -> for each entry, in order:
           claim the entry             (attempts + 1 if unchanged, last_attempt_at = now,
                                        scheduled_at = now + claim lease)
           send via the transport
           success  -> sent            (sent_at = now, error cleared)
           failure  -> pending + retry (scheduled_at = now + retry delay)
                    -> failed          (once attempts reach max_attempts)

The attempt is written before the send, so a crash mid-send leaves a
counted attempt rather than an unbounded resend loop.  The claim is a
compare-and-set on the attempt count, and the lease keeps the entry out of
the due set, so a second cycle (another process, or a CLI run next to the
scheduler) never sends the same entry twice.  A crashed send becomes due
again when the lease expires.

Transport failures are recorded on the entry and never leave the cycle.
A StoreError aborts the cycle; entries already written keep their state.
A submission deleted mid-attempt is logged and skipped.

Also provides the operator-facing queue operations: queue_email,
retry_failed_email, skip_email, record_email_opened, get_queue_stats and
get_failed_emails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .config import QueueSettings
from .errors import NotFoundError, TransportError
from .models import (
    AttemptOutcome,
    CycleSummary,
    EmailQueueEntry,
    EmailStatus,
    ensure_utc,
)
from .submission_store import SubmissionStore
from .transport import EmailTransport

logger = logging.getLogger(__name__)


class EmailQueueProcessor:
    """Selects due follow-up emails, sends them and tracks the outcome."""

    def __init__(
        self,
        store: SubmissionStore,
        transport: EmailTransport,
        settings: QueueSettings | None = None,
    ):
        self.store = store
        self.transport = transport
        self.settings = settings or QueueSettings()
        if self.settings.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.settings.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.settings.claim_lease_minutes <= 0:
            raise ValueError("claim_lease_minutes must be positive")

    @property
    def max_attempts(self) -> int:
        return self.settings.max_attempts

    @property
    def batch_size(self) -> int:
        return self.settings.batch_size

    # ------------------------------------------------------------------
    # Processing cycle
    # ------------------------------------------------------------------

    def process_queue(self, now: datetime) -> CycleSummary:
        """Run one cycle at time ``now``.

        Raises:
            StoreError: If the store cannot be read or written.
        """
        now = ensure_utc(now)
        summary = CycleSummary(now=now)

        entries = self.store.select_due_email_entries(now, self.batch_size)
        logger.info("Processing %d due email(s) (batch size %d)", len(entries), self.batch_size)

        for entry in entries:
            outcome = self._process_entry(entry, now)
            if outcome is None:
                continue
            summary.attempted += 1
            if outcome is EmailStatus.SENT:
                summary.sent += 1
            elif outcome is EmailStatus.FAILED:
                summary.failed += 1
            else:
                summary.still_pending += 1

        logger.info("Email queue cycle complete: %s", summary)
        return summary

    def _process_entry(self, entry: EmailQueueEntry, now: datetime) -> EmailStatus | None:
        """Attempt one entry.  Returns its resulting status, or None if skipped."""
        attempt_number = entry.email_attempts + 1
        lease_until = now + timedelta(minutes=self.settings.claim_lease_minutes)

        try:
            claimed = self.store.claim_email_entry(
                entry.submission_id, entry.email_attempts, now, lease_until,
            )
        except NotFoundError:
            logger.warning("Submission %s disappeared before sending; skipping",
                           entry.submission_id)
            return None
        if not claimed:
            logger.warning("Submission %s was claimed elsewhere or is no longer pending; "
                           "skipping", entry.submission_id)
            return None

        logger.info(
            "Attempting follow-up email for submission %s (attempt %d/%d)",
            entry.submission_id, attempt_number, self.max_attempts,
        )

        error = self._send(entry)

        if error is None:
            status = EmailStatus.SENT
            fields: dict[str, Any] = {
                "email_status": EmailStatus.SENT,
                "email_sent_at": now,
                "email_error": None,
            }
            outcome = AttemptOutcome.SUCCESS
            logger.info("Email delivered for submission %s on attempt %d",
                        entry.submission_id, attempt_number)
        elif attempt_number >= self.max_attempts:
            status = EmailStatus.FAILED
            fields = {"email_status": EmailStatus.FAILED, "email_error": error}
            outcome = AttemptOutcome.FAILED
            logger.error(
                "Email for submission %s failed after %d attempts: %s",
                entry.submission_id, attempt_number, error,
            )
        else:
            status = EmailStatus.PENDING
            next_attempt = now + timedelta(minutes=self.settings.retry_delay_minutes)
            fields = {"email_error": error, "email_scheduled_at": next_attempt}
            outcome = AttemptOutcome.FAILED
            logger.warning(
                "Email for submission %s failed on attempt %d (%s); retry at %s",
                entry.submission_id, attempt_number, error, next_attempt.isoformat(),
            )

        try:
            self.store.update_email_entry(entry.submission_id, fields)
            self.store.log_email_attempt(
                entry.submission_id, attempt_number, outcome, error, now,
            )
        except NotFoundError:
            logger.warning("Submission %s was deleted during attempt %d; outcome not recorded",
                           entry.submission_id, attempt_number)
        return status

    def _send(self, entry: EmailQueueEntry) -> str | None:
        """Call the transport.  Returns None on success, else the error text."""
        try:
            self.transport.send(entry.email, entry.template_data)
        except TransportError as exc:
            return str(exc) or exc.__class__.__name__
        except Exception as exc:
            logger.exception("Unexpected error sending email for submission %s",
                             entry.submission_id)
            return f"Unexpected error: {exc}"
        return None

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def queue_email(
        self,
        submission_id: str,
        now: datetime,
        delay_hours: float | None = None,
    ) -> datetime | None:
        """Schedule a pending submission's follow-up for ``now + delay_hours``.

        Returns:
            The scheduled time, or None if the entry is no longer pending.

        Raises:
            NotFoundError: If the submission does not exist.
        """
        if delay_hours is None:
            delay_hours = self.settings.email_delay_hours
        if delay_hours < 0:
            raise ValueError("delay_hours must not be negative")
        scheduled_at = ensure_utc(now) + timedelta(hours=delay_hours)

        updated = self.store.update_email_entry(
            submission_id,
            {"email_scheduled_at": scheduled_at},
            expected_status=EmailStatus.PENDING,
        )
        if not updated:
            logger.warning("Cannot queue email for submission %s: not pending", submission_id)
            return None
        logger.info("Email queued for submission %s at %s",
                    submission_id, scheduled_at.isoformat())
        return scheduled_at

    def retry_failed_email(self, submission_id: str, now: datetime) -> bool:
        """Manually retry a failed email with one immediate attempt.

        Attempts are not reset.  The entry ends up ``sent`` or back in
        ``failed``.

        Returns:
            True if the email was sent.
        """
        now = ensure_utc(now)
        entry = self.store.get_entry(submission_id)
        if entry is None or entry.email_status is not EmailStatus.FAILED:
            logger.warning("No failed email found for retry: %s", submission_id)
            return False

        reopened = self.store.update_email_entry(
            submission_id,
            {"email_status": EmailStatus.PENDING, "email_scheduled_at": now},
            expected_status=EmailStatus.FAILED,
        )
        if not reopened:
            return False

        # Exhausted entries get exactly one more attempt: any failure ends
        # in FAILED again because attempts already >= max_attempts.
        entry.email_status = EmailStatus.PENDING
        outcome = self._process_entry(entry, now)
        if outcome is EmailStatus.PENDING:
            # Below max_attempts (max was raised since it failed); leave it
            # to the scheduler like any other retry.
            return False
        return outcome is EmailStatus.SENT

    def skip_email(self, submission_id: str) -> bool:
        """Move a pending entry to the terminal ``skipped`` state."""
        skipped = self.store.update_email_entry(
            submission_id,
            {"email_status": EmailStatus.SKIPPED},
            expected_status=EmailStatus.PENDING,
        )
        if skipped:
            logger.info("Email skipped for submission %s", submission_id)
        return skipped

    def record_email_opened(self, submission_id: str, opened_at: datetime) -> None:
        """Record an open-tracking event (first open wins)."""
        entry = self.store.get_entry(submission_id)
        if entry is None:
            raise NotFoundError(submission_id)
        if entry.email_opened_at is None:
            self.store.update_email_entry(submission_id, {"email_opened_at": opened_at})

    def get_queue_stats(self, now: datetime | None = None) -> dict[str, int]:
        return self.store.get_status_counts(now)

    def get_failed_emails(self, limit: int = 50) -> list[EmailQueueEntry]:
        return self.store.get_failed_entries(limit)

    def get_attempt_log(self, submission_id: str) -> list[dict[str, Any]]:
        return self.store.get_attempt_log(submission_id)
