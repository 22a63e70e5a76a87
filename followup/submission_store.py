"""
CV Follow-up Mailer -- Submission Store

SQLite-backed store for CV submissions and their follow-up email state.
The upload workflow creates rows; the queue processor reads due rows and
writes the ``email_*`` columns; admin tooling reads stats and failures.

Database schema:
    cv_submissions     - One row per CV submission, with email queue columns
    email_attempt_log  - Every delivery attempt, for auditing

Usage:
    from followup.submission_store import SubmissionStore

    store = SubmissionStore("data/submissions.db")
    sid = store.create_submission("ada@example.com", "Ada", "Lovelace",
                                  analysis_results={"overall_score": 82})
    due = store.select_due_email_entries(now, batch_size=50)
    store.update_email_entry(sid, {"email_status": EmailStatus.SENT,
                                   "email_sent_at": now})

Every sqlite3 failure surfaces as StoreError so callers can tell a broken
store apart from a failed delivery.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping

from .errors import NotFoundError, StoreError
from .models import (
    EMAIL_QUEUE_FIELDS,
    AttemptOutcome,
    EmailQueueEntry,
    EmailStatus,
    ensure_utc,
    from_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cv_submissions (
    submission_id           TEXT PRIMARY KEY,

    -- Recipient, written by the upload workflow
    email                   TEXT NOT NULL DEFAULT '',
    first_name              TEXT NOT NULL DEFAULT '',
    last_name               TEXT NOT NULL DEFAULT '',
    phone                   TEXT NOT NULL DEFAULT '',
    analysis_results        TEXT NOT NULL DEFAULT '{}',   -- JSON document
    submitted_at            TEXT NOT NULL DEFAULT '',

    -- Email queue
    email_status            TEXT NOT NULL DEFAULT 'pending',
    email_scheduled_at      TEXT,
    email_attempts          INTEGER NOT NULL DEFAULT 0,
    email_last_attempt_at   TEXT,
    email_sent_at           TEXT,
    email_error             TEXT,
    email_opened_at         TEXT
);

CREATE TABLE IF NOT EXISTS email_attempt_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id   TEXT NOT NULL,
    attempt_number  INTEGER NOT NULL,
    outcome         TEXT NOT NULL,
    error           TEXT,
    attempted_at    TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES cv_submissions(submission_id)
);

CREATE INDEX IF NOT EXISTS idx_submissions_due
    ON cv_submissions(email_status, email_scheduled_at);
CREATE INDEX IF NOT EXISTS idx_attempt_log_submission
    ON email_attempt_log(submission_id);
"""

_ENTRY_COLUMNS = """
    submission_id, email, first_name, last_name, phone, analysis_results,
    submitted_at, email_status, email_scheduled_at, email_attempts,
    email_last_attempt_at, email_sent_at, email_error, email_opened_at
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _to_db_value(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _parse_json_dict(val: Any) -> dict[str, Any]:
    if not val:
        return {}
    try:
        result = json.loads(val) if isinstance(val, str) else val
        return result if isinstance(result, dict) else {}
    except (json.JSONDecodeError, TypeError):
        return {}


def _row_to_entry(row: Mapping[str, Any]) -> EmailQueueEntry:
    """Convert a cv_submissions row into an EmailQueueEntry."""
    return EmailQueueEntry(
        submission_id=row["submission_id"],
        email_status=EmailStatus(row["email_status"]),
        email_scheduled_at=from_iso(row["email_scheduled_at"]),
        email_attempts=int(row["email_attempts"] or 0),
        email_last_attempt_at=from_iso(row["email_last_attempt_at"]),
        email_sent_at=from_iso(row["email_sent_at"]),
        email_error=row["email_error"],
        email_opened_at=from_iso(row["email_opened_at"]),
        email=row["email"] or "",
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
        phone=row["phone"] or "",
        analysis_results=_parse_json_dict(row["analysis_results"]),
        submitted_at=from_iso(row["submitted_at"]),
    )


# ---------------------------------------------------------------------------
# SubmissionStore -- the main public API
# ---------------------------------------------------------------------------

class SubmissionStore:
    """Persistent CV submission store backed by SQLite.

    Each method opens and closes its own connection, and each write is its
    own transaction.  The queue processor relies on this: an entry updated
    before a later failure keeps its update.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection, commit on success, translate sqlite3 errors."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open submission store {self.db_path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Submission store error: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._connect() as conn:
            conn.executescript(_SCHEMA_SQL)
        logger.debug("Submission store ready at %s", self.db_path)

    # ------------------------------------------------------------------
    # Submissions (written by the upload workflow)
    # ------------------------------------------------------------------

    def create_submission(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        phone: str = "",
        analysis_results: dict[str, Any] | None = None,
        submitted_at: datetime | None = None,
        submission_id: str | None = None,
    ) -> str:
        """Insert a new submission with a fresh, unscheduled email entry.

        Returns:
            The submission_id (generated UUID unless one is given).
        """
        sid = submission_id or str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO cv_submissions
                   (submission_id, email, first_name, last_name, phone,
                    analysis_results, submitted_at, email_status, email_attempts)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)""",
                (
                    sid, email, first_name, last_name, phone,
                    json.dumps(analysis_results or {}),
                    to_iso(submitted_at or utc_now()),
                    EmailStatus.PENDING.value,
                ),
            )
        return sid

    def get_entry(self, submission_id: str) -> EmailQueueEntry | None:
        """Retrieve a single entry.  Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cv_submissions WHERE submission_id = ?",
                (submission_id,),
            ).fetchone()
        return _row_to_entry(row) if row else None

    # ------------------------------------------------------------------
    # Queue contract (used by the processor)
    # ------------------------------------------------------------------

    def select_due_email_entries(
        self, now: datetime, batch_size: int
    ) -> list[EmailQueueEntry]:
        """Pending entries scheduled at or before ``now``, oldest due first.

        Args:
            now: Cycle time.
            batch_size: Maximum entries to return.
        """
        if batch_size <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_ENTRY_COLUMNS}
                    FROM cv_submissions
                    WHERE email_status = ?
                      AND email_scheduled_at IS NOT NULL
                      AND email_scheduled_at <= ?
                    ORDER BY email_scheduled_at ASC, submitted_at ASC, rowid ASC
                    LIMIT ?""",
                (EmailStatus.PENDING.value, to_iso(now), batch_size),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def update_email_entry(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        expected_status: EmailStatus | None = None,
    ) -> bool:
        """Partially update the email-queue columns of one submission.

        Args:
            submission_id: Row to update.
            fields: Column -> value.  Only email-queue columns are accepted;
                datetimes and enums are serialized.
            expected_status: If given, the update only applies while the row
                still has this status.

        Returns:
            True if the row was updated, False if ``expected_status`` did not
            match.

        Raises:
            ValueError: If ``fields`` is empty or names a non-queue column.
            NotFoundError: If the submission does not exist.
            StoreError: On any database failure.
        """
        if not fields:
            raise ValueError("No fields to update")
        unknown = set(fields) - EMAIL_QUEUE_FIELDS
        if unknown:
            raise ValueError(f"Not email queue fields: {', '.join(sorted(unknown))}")

        columns = sorted(fields)
        set_clause = ", ".join(f"{c} = ?" for c in columns)
        params: list[Any] = [_to_db_value(fields[c]) for c in columns]
        sql = f"UPDATE cv_submissions SET {set_clause} WHERE submission_id = ?"
        params.append(submission_id)
        if expected_status is not None:
            sql += " AND email_status = ?"
            params.append(expected_status.value)

        with self._connect() as conn:
            result = conn.execute(sql, params)
            if result.rowcount > 0:
                return True
            exists = conn.execute(
                "SELECT 1 FROM cv_submissions WHERE submission_id = ?",
                (submission_id,),
            ).fetchone()
        if exists is None:
            raise NotFoundError(submission_id)
        return False

    def claim_email_entry(
        self,
        submission_id: str,
        expected_attempts: int,
        attempted_at: datetime,
        lease_until: datetime,
    ) -> bool:
        """Count an attempt and take the entry out of the due set.

        Compare-and-set: the row is only claimed while it is still pending
        with ``expected_attempts`` attempts, so a concurrent cycle that read
        the same row loses.  ``email_scheduled_at`` moves to ``lease_until``
        so no other selector picks the entry up while it is being sent.

        Returns:
            True if this caller claimed the entry.

        Raises:
            NotFoundError: If the submission does not exist.
        """
        with self._connect() as conn:
            result = conn.execute(
                """UPDATE cv_submissions
                   SET email_attempts = email_attempts + 1,
                       email_last_attempt_at = ?,
                       email_scheduled_at = ?
                   WHERE submission_id = ?
                     AND email_status = ?
                     AND email_attempts = ?""",
                (
                    to_iso(attempted_at), to_iso(lease_until), submission_id,
                    EmailStatus.PENDING.value, expected_attempts,
                ),
            )
            if result.rowcount > 0:
                return True
            exists = conn.execute(
                "SELECT 1 FROM cv_submissions WHERE submission_id = ?",
                (submission_id,),
            ).fetchone()
        if exists is None:
            raise NotFoundError(submission_id)
        return False

    def delete_submission(self, submission_id: str) -> bool:
        """Remove a submission and its attempt log.  Returns False if absent."""
        with self._connect() as conn:
            conn.execute("DELETE FROM email_attempt_log WHERE submission_id = ?",
                         (submission_id,))
            result = conn.execute("DELETE FROM cv_submissions WHERE submission_id = ?",
                                  (submission_id,))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Attempt audit log
    # ------------------------------------------------------------------

    def log_email_attempt(
        self,
        submission_id: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        error: str | None,
        attempted_at: datetime,
    ) -> None:
        """Record one delivery attempt.

        Raises:
            NotFoundError: If the submission does not exist.
        """
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM cv_submissions WHERE submission_id = ?",
                (submission_id,),
            ).fetchone()
            if exists is None:
                raise NotFoundError(submission_id)
            conn.execute(
                """INSERT INTO email_attempt_log
                   (submission_id, attempt_number, outcome, error, attempted_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (submission_id, attempt_number, outcome.value, error, to_iso(attempted_at)),
            )

    def get_attempt_log(self, submission_id: str) -> list[dict[str, Any]]:
        """Attempts for one submission, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT submission_id, attempt_number, outcome, error, attempted_at
                   FROM email_attempt_log
                   WHERE submission_id = ?
                   ORDER BY id ASC""",
                (submission_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Stats & admin queries
    # ------------------------------------------------------------------

    def get_status_counts(self, now: datetime | None = None) -> dict[str, int]:
        """Count entries per status, plus ``due`` and ``unscheduled``."""
        now_iso = to_iso(ensure_utc(now) if now else utc_now())
        stats = {s.value: 0 for s in EmailStatus}
        with self._connect() as conn:
            for row in conn.execute(
                "SELECT email_status, COUNT(*) AS cnt FROM cv_submissions GROUP BY email_status"
            ).fetchall():
                stats[row["email_status"]] = row["cnt"]
            row = conn.execute(
                """SELECT
                     SUM(CASE WHEN email_scheduled_at IS NOT NULL
                               AND email_scheduled_at <= ? THEN 1 ELSE 0 END) AS due,
                     SUM(CASE WHEN email_scheduled_at IS NULL THEN 1 ELSE 0 END) AS unscheduled
                   FROM cv_submissions
                   WHERE email_status = ?""",
                (now_iso, EmailStatus.PENDING.value),
            ).fetchone()
        stats["due"] = row["due"] or 0
        stats["unscheduled"] = row["unscheduled"] or 0
        return stats

    def get_failed_entries(self, limit: int = 50) -> list[EmailQueueEntry]:
        """Failed entries, most recent attempt first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_ENTRY_COLUMNS}
                    FROM cv_submissions
                    WHERE email_status = ?
                    ORDER BY email_last_attempt_at DESC
                    LIMIT ?""",
                (EmailStatus.FAILED.value, limit),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count(self, status: EmailStatus | None = None) -> int:
        """Count submissions, optionally filtered by email status."""
        with self._connect() as conn:
            if status:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM cv_submissions WHERE email_status = ?",
                    (status.value,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM cv_submissions").fetchone()
        return row["cnt"]
