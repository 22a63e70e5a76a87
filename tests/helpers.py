"""Test helpers shared across modules: a fixed cycle time, sample analysis
results, a scriptable fake transport and an entry factory."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from followup.errors import TransportError
from followup.models import EmailStatus
from followup.submission_store import SubmissionStore
from followup.transport import EmailTransport

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

SAMPLE_ANALYSIS = {
    "overall_score": 82,
    "ats_compatibility": 74,
    "strengths": ["Clear contact information", "Quantified achievements"],
    "improvements": [
        {
            "category": "Summary",
            "priority": "medium",
            "issue": "Professional summary is generic",
            "suggestion": "Tailor the summary to the target role",
        },
        {
            "category": "Skills",
            "priority": "high",
            "issue": "No skills section",
            "suggestion": "Add a dedicated skills section",
        },
    ],
    "detailed_feedback": "A solid CV with room to sharpen the summary.",
}


class FakeTransport(EmailTransport):
    """Records every send.  Fails for recipients listed in ``failures``."""

    def __init__(self, failures: Mapping[str, Exception | str] | None = None):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, Exception | str] = dict(failures or {})

    def send(self, recipient: str, template_data: Mapping[str, Any]) -> None:
        self.calls.append((recipient, dict(template_data)))
        failure = self.failures.get(recipient)
        if isinstance(failure, Exception):
            raise failure
        if failure:
            raise TransportError(failure)

    @property
    def recipients(self) -> list[str]:
        return [r for r, _ in self.calls]


def add_entry(
    store: SubmissionStore,
    email: str,
    scheduled_at: datetime | None = NOW,
    attempts: int = 0,
    status: EmailStatus = EmailStatus.PENDING,
    **fields: Any,
) -> str:
    """Create a submission and force its queue state."""
    sid = store.create_submission(
        email=email,
        first_name=email.split("@")[0].capitalize(),
        last_name="Tester",
        analysis_results=SAMPLE_ANALYSIS,
        submitted_at=NOW - timedelta(days=1),
    )
    updates: dict[str, Any] = {
        "email_status": status,
        "email_attempts": attempts,
        "email_scheduled_at": scheduled_at,
    }
    updates.update(fields)
    store.update_email_entry(sid, updates)
    return sid
