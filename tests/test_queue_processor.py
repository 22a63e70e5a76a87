"""Tests for the email queue processor."""

from datetime import timedelta

import pytest

from followup.config import QueueSettings
from followup.errors import NotFoundError, StoreError, TransportError
from followup.models import EmailStatus
from followup.queue_processor import EmailQueueProcessor
from followup.submission_store import SubmissionStore

from tests.helpers import NOW, FakeTransport, add_entry


def _processor(store, transport, **settings):
    return EmailQueueProcessor(store, transport, QueueSettings(**settings))


class TestScenarios:
    def test_successful_first_attempt(self, store, transport, processor):
        sid = add_entry(store, "ada@example.com", scheduled_at=NOW - timedelta(minutes=1))

        summary = processor.process_queue(NOW)

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.SENT
        assert entry.email_attempts == 1
        assert entry.email_sent_at == NOW
        assert entry.email_last_attempt_at == NOW
        assert entry.email_error is None
        assert transport.recipients == ["ada@example.com"]
        assert (summary.attempted, summary.sent, summary.failed, summary.still_pending) == (1, 1, 0, 0)

    def test_transient_failure_stays_pending(self, store):
        transport = FakeTransport({"bob@example.com": "mailbox full"})
        processor = _processor(store, transport, max_attempts=3)
        sid = add_entry(store, "bob@example.com", scheduled_at=NOW - timedelta(minutes=5), attempts=1)

        summary = processor.process_queue(NOW)

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.PENDING
        assert entry.email_attempts == 2
        assert entry.email_error == "mailbox full"
        assert entry.email_sent_at is None
        assert summary.still_pending == 1

    def test_final_failure_marks_failed(self, store):
        transport = FakeTransport({"cy@example.com": "mailbox full"})
        processor = _processor(store, transport, max_attempts=3)
        sid = add_entry(store, "cy@example.com", scheduled_at=NOW - timedelta(minutes=5), attempts=2)

        summary = processor.process_queue(NOW)

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.FAILED
        assert entry.email_attempts == 3
        assert entry.email_error == "mailbox full"
        assert summary.failed == 1

        # Never selected again.
        processor.process_queue(NOW + timedelta(days=1))
        assert len(transport.calls) == 1
        assert store.get_entry(sid).email_attempts == 3

    def test_batch_limit(self, store, transport):
        processor = _processor(store, transport, batch_size=1)
        e1 = add_entry(store, "one@example.com", scheduled_at=NOW - timedelta(minutes=10))
        e2 = add_entry(store, "two@example.com", scheduled_at=NOW - timedelta(minutes=5))

        summary = processor.process_queue(NOW)

        assert summary.attempted == 1
        assert store.get_entry(e1).email_status == EmailStatus.SENT
        untouched = store.get_entry(e2)
        assert untouched.email_status == EmailStatus.PENDING
        assert untouched.email_attempts == 0
        assert untouched.email_last_attempt_at is None

        processor.process_queue(NOW)
        assert store.get_entry(e2).email_status == EmailStatus.SENT


class TestSelection:
    def test_future_entries_not_sent(self, store, transport, processor):
        sid = add_entry(store, "later@example.com", scheduled_at=NOW + timedelta(seconds=1))

        summary = processor.process_queue(NOW)

        assert summary.attempted == 0
        assert transport.calls == []
        assert store.get_entry(sid).email_attempts == 0

    def test_entry_due_exactly_now_is_sent(self, store, transport, processor):
        add_entry(store, "now@example.com", scheduled_at=NOW)
        assert processor.process_queue(NOW).sent == 1

    def test_unscheduled_entries_not_sent(self, store, transport, processor):
        store.create_submission("fresh@example.com")
        assert processor.process_queue(NOW).attempted == 0
        assert transport.calls == []

    @pytest.mark.parametrize("status", [EmailStatus.SENT, EmailStatus.FAILED, EmailStatus.SKIPPED])
    def test_terminal_entries_never_selected(self, store, transport, processor, status):
        add_entry(store, "done@example.com", scheduled_at=NOW - timedelta(hours=1), status=status)
        assert processor.process_queue(NOW).attempted == 0
        assert transport.calls == []

    def test_oldest_due_first(self, store, transport, processor):
        add_entry(store, "b@example.com", scheduled_at=NOW - timedelta(minutes=1))
        add_entry(store, "a@example.com", scheduled_at=NOW - timedelta(minutes=30))
        add_entry(store, "c@example.com", scheduled_at=NOW)

        processor.process_queue(NOW)

        assert transport.recipients == ["a@example.com", "b@example.com", "c@example.com"]

    def test_each_entry_sent_once_per_cycle(self, store, transport, processor):
        for i in range(5):
            add_entry(store, f"user{i}@example.com", scheduled_at=NOW - timedelta(minutes=i))

        processor.process_queue(NOW)

        assert sorted(transport.recipients) == sorted(set(transport.recipients))
        assert len(transport.recipients) == 5

    def test_template_data_passed_to_transport(self, store, transport, processor):
        add_entry(store, "ada@example.com")
        processor.process_queue(NOW)

        _, data = transport.calls[0]
        assert data["first_name"] == "Ada"
        assert data["overall_score"] == 82
        assert len(data["improvements"]) == 2


class TestAttempts:
    def test_failed_only_after_max_attempts(self, store):
        transport = FakeTransport({"flaky@example.com": "timeout"})
        processor = _processor(store, transport, max_attempts=3, retry_delay_minutes=30)
        sid = add_entry(store, "flaky@example.com")

        statuses = []
        now = NOW
        for _ in range(3):
            processor.process_queue(now)
            statuses.append(store.get_entry(sid).email_status)
            now += timedelta(minutes=30)

        assert statuses == [EmailStatus.PENDING, EmailStatus.PENDING, EmailStatus.FAILED]
        assert store.get_entry(sid).email_attempts == 3
        assert len(transport.calls) == 3

    def test_retry_backoff_reschedules(self, store):
        transport = FakeTransport({"slow@example.com": "try later"})
        processor = _processor(store, transport, retry_delay_minutes=30)
        sid = add_entry(store, "slow@example.com")

        processor.process_queue(NOW)

        assert store.get_entry(sid).email_scheduled_at == NOW + timedelta(minutes=30)
        # Not due again until the delay elapses.
        assert processor.process_queue(NOW + timedelta(minutes=29)).attempted == 0
        assert processor.process_queue(NOW + timedelta(minutes=30)).attempted == 1

    def test_zero_retry_delay_is_due_next_cycle(self, store):
        transport = FakeTransport({"x@example.com": "boom"})
        processor = _processor(store, transport, retry_delay_minutes=0)
        add_entry(store, "x@example.com")

        processor.process_queue(NOW)
        assert processor.process_queue(NOW).attempted == 1

    def test_attempt_counted_on_success_and_failure(self, store):
        transport = FakeTransport({"bad@example.com": "rejected"})
        processor = _processor(store, transport)
        good = add_entry(store, "good@example.com", attempts=1)
        bad = add_entry(store, "bad@example.com", attempts=1)

        processor.process_queue(NOW)

        assert store.get_entry(good).email_attempts == 2
        assert store.get_entry(bad).email_attempts == 2

    def test_success_clears_previous_error(self, store, transport, processor):
        sid = add_entry(store, "ok@example.com", attempts=1, email_error="mailbox full")
        processor.process_queue(NOW)
        assert store.get_entry(sid).email_error is None

    def test_attempt_log_records_outcomes(self, store):
        transport = FakeTransport({"log@example.com": "mailbox full"})
        processor = _processor(store, transport, max_attempts=2, retry_delay_minutes=0)
        sid = add_entry(store, "log@example.com")

        processor.process_queue(NOW)
        processor.process_queue(NOW + timedelta(minutes=1))

        log = processor.get_attempt_log(sid)
        assert [row["attempt_number"] for row in log] == [1, 2]
        assert {row["outcome"] for row in log} == {"failed"}
        assert log[0]["error"] == "mailbox full"


class TestIsolation:
    def test_failure_does_not_stop_other_entries(self, store):
        transport = FakeTransport({"bad@example.com": "mailbox full"})
        processor = _processor(store, transport)
        bad = add_entry(store, "bad@example.com", scheduled_at=NOW - timedelta(minutes=2))
        good = add_entry(store, "good@example.com", scheduled_at=NOW - timedelta(minutes=1))

        summary = processor.process_queue(NOW)

        assert store.get_entry(bad).email_status == EmailStatus.PENDING
        assert store.get_entry(good).email_status == EmailStatus.SENT
        assert (summary.sent, summary.still_pending) == (1, 1)

    def test_unexpected_transport_exception_recorded(self, store):
        transport = FakeTransport({"weird@example.com": RuntimeError("boom")})
        processor = _processor(store, transport)
        sid = add_entry(store, "weird@example.com")

        summary = processor.process_queue(NOW)

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.PENDING
        assert entry.email_error == "Unexpected error: boom"
        assert summary.still_pending == 1

    def test_empty_transport_error_gets_a_message(self, store):
        transport = FakeTransport({"blank@example.com": TransportError()})
        processor = _processor(store, transport)
        sid = add_entry(store, "blank@example.com")

        processor.process_queue(NOW)

        assert store.get_entry(sid).email_error == "TransportError"

    def test_store_error_aborts_cycle_but_keeps_written_state(self, tmp_path):
        class BrokenStore(SubmissionStore):
            fail_for = None

            def log_email_attempt(self, submission_id, *args, **kwargs):
                if submission_id == self.fail_for:
                    raise StoreError("disk I/O error")
                return super().log_email_attempt(submission_id, *args, **kwargs)

        store = BrokenStore(tmp_path / "broken.db")
        transport = FakeTransport()
        processor = _processor(store, transport)
        first = add_entry(store, "first@example.com", scheduled_at=NOW - timedelta(minutes=3))
        second = add_entry(store, "second@example.com", scheduled_at=NOW - timedelta(minutes=2))
        third = add_entry(store, "third@example.com", scheduled_at=NOW - timedelta(minutes=1))
        store.fail_for = second

        with pytest.raises(StoreError):
            processor.process_queue(NOW)

        assert store.get_entry(first).email_status == EmailStatus.SENT
        assert store.get_entry(second).email_status == EmailStatus.SENT
        assert store.get_entry(third).email_attempts == 0
        assert transport.recipients == ["first@example.com", "second@example.com"]

    def test_entry_no_longer_pending_is_skipped(self, tmp_path):
        class StaleStore(SubmissionStore):
            stale = None

            def select_due_email_entries(self, now, batch_size):
                return list(self.stale)

        store = StaleStore(tmp_path / "stale.db")
        sid = add_entry(store, "stale@example.com")
        store.stale = SubmissionStore.select_due_email_entries(store, NOW, 10)
        # Sent by someone else between selection and update.
        store.update_email_entry(sid, {"email_status": EmailStatus.SENT})

        transport = FakeTransport()
        summary = _processor(store, transport).process_queue(NOW)

        assert summary.attempted == 0
        assert transport.calls == []
        assert store.get_entry(sid).email_attempts == 0

    def test_deleted_entry_is_skipped(self, tmp_path):
        class GhostStore(SubmissionStore):
            ghosts = ()

            def select_due_email_entries(self, now, batch_size):
                return list(self.ghosts)

        store = GhostStore(tmp_path / "ghost.db")
        sid = add_entry(store, "ghost@example.com")
        ghost = store.get_entry(sid)
        ghost.submission_id = "does-not-exist"
        store.ghosts = (ghost,)

        transport = FakeTransport()
        summary = _processor(store, transport).process_queue(NOW)

        assert summary.attempted == 0
        assert transport.calls == []

    def test_entry_deleted_during_send_does_not_abort_cycle(self, store):
        class DeletingTransport(FakeTransport):
            def send(self, recipient, template_data):
                super().send(recipient, template_data)
                if recipient == "gone@example.com":
                    store.delete_submission(template_data["submission_id"])

        transport = DeletingTransport()
        gone = add_entry(store, "gone@example.com", scheduled_at=NOW - timedelta(minutes=2))
        kept = add_entry(store, "kept@example.com", scheduled_at=NOW - timedelta(minutes=1))

        summary = _processor(store, transport).process_queue(NOW)

        assert transport.recipients == ["gone@example.com", "kept@example.com"]
        assert store.get_entry(gone) is None
        assert store.get_entry(kept).email_status == EmailStatus.SENT
        assert (summary.attempted, summary.sent) == (2, 2)

    def test_entry_deleted_during_failed_send(self, store):
        class DeletingTransport(FakeTransport):
            def send(self, recipient, template_data):
                store.delete_submission(template_data["submission_id"])
                raise TransportError("mailbox full")

        gone = add_entry(store, "gone@example.com")

        summary = _processor(store, DeletingTransport()).process_queue(NOW)

        assert store.get_entry(gone) is None
        assert summary.still_pending == 1


class TestConcurrentCycles:
    def test_second_cycle_during_send_does_not_resend(self, store):
        inner_summaries = []

        class ReentrantTransport(FakeTransport):
            def send(self, recipient, template_data):
                super().send(recipient, template_data)
                if len(self.calls) == 1:
                    other = EmailQueueProcessor(store, self, QueueSettings())
                    inner_summaries.append(other.process_queue(NOW))

        transport = ReentrantTransport()
        sid = add_entry(store, "once@example.com")

        _processor(store, transport).process_queue(NOW)

        assert transport.recipients == ["once@example.com"]
        assert inner_summaries[0].attempted == 0
        entry = store.get_entry(sid)
        assert entry.email_attempts == 1
        assert entry.email_status == EmailStatus.SENT

    def test_stale_read_loses_the_claim(self, tmp_path):
        class SnapshotStore(SubmissionStore):
            snapshot = ()

            def select_due_email_entries(self, now, batch_size):
                return list(self.snapshot)

        store = SnapshotStore(tmp_path / "snapshot.db")
        sid = add_entry(store, "race@example.com")
        store.snapshot = (store.get_entry(sid),)

        # Another cycle already attempted it and rescheduled it as due.
        assert store.claim_email_entry(sid, 0, NOW, NOW)
        store.update_email_entry(sid, {"email_scheduled_at": NOW})

        transport = FakeTransport()
        summary = _processor(store, transport).process_queue(NOW)

        assert summary.attempted == 0
        assert transport.calls == []
        assert store.get_entry(sid).email_attempts == 1

    def test_crashed_send_becomes_due_after_lease(self, store, transport):
        processor = _processor(store, transport, claim_lease_minutes=15)
        sid = add_entry(store, "crash@example.com")
        # Claimed, then the process died before recording an outcome.
        store.claim_email_entry(sid, 0, NOW, NOW + timedelta(minutes=15))

        assert processor.process_queue(NOW + timedelta(minutes=14)).attempted == 0
        assert processor.process_queue(NOW + timedelta(minutes=15)).sent == 1
        assert store.get_entry(sid).email_attempts == 2


class TestValidation:
    @pytest.mark.parametrize("settings", [{"max_attempts": 0}, {"batch_size": 0}, {"claim_lease_minutes": 0}])
    def test_rejects_non_positive_settings(self, store, transport, settings):
        with pytest.raises(ValueError):
            _processor(store, transport, **settings)

    def test_naive_now_treated_as_utc(self, store, transport, processor):
        sid = add_entry(store, "naive@example.com")
        processor.process_queue(NOW.replace(tzinfo=None))
        assert store.get_entry(sid).email_sent_at == NOW


class TestQueueOperations:
    def test_queue_email_default_delay(self, store, processor):
        sid = store.create_submission("new@example.com")
        scheduled = processor.queue_email(sid, NOW)
        assert scheduled == NOW + timedelta(hours=24)
        assert store.get_entry(sid).email_scheduled_at == scheduled

    def test_queue_email_immediate(self, store, transport, processor):
        sid = store.create_submission("now@example.com")
        processor.queue_email(sid, NOW, delay_hours=0)
        assert processor.process_queue(NOW).sent == 1
        assert store.get_entry(sid).email_status == EmailStatus.SENT

    def test_queue_email_not_pending(self, store, processor):
        sid = add_entry(store, "sent@example.com", status=EmailStatus.SENT)
        assert processor.queue_email(sid, NOW) is None

    def test_queue_email_missing(self, processor):
        with pytest.raises(NotFoundError):
            processor.queue_email("nope", NOW)

    def test_queue_email_negative_delay(self, store, processor):
        sid = store.create_submission("neg@example.com")
        with pytest.raises(ValueError):
            processor.queue_email(sid, NOW, delay_hours=-1)

    def test_retry_failed_email_success(self, store, transport, processor):
        sid = add_entry(store, "retry@example.com", status=EmailStatus.FAILED,
                        attempts=3, email_error="mailbox full")

        assert processor.retry_failed_email(sid, NOW) is True

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.SENT
        assert entry.email_attempts == 4
        assert entry.email_error is None

    def test_retry_failed_email_fails_again(self, store):
        transport = FakeTransport({"retry@example.com": "still full"})
        processor = _processor(store, transport, max_attempts=3)
        sid = add_entry(store, "retry@example.com", status=EmailStatus.FAILED, attempts=3)

        assert processor.retry_failed_email(sid, NOW) is False

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.FAILED
        assert entry.email_attempts == 4
        assert entry.email_error == "still full"

    def test_retry_below_raised_limit_stays_pending(self, store):
        transport = FakeTransport({"retry@example.com": "still full"})
        processor = _processor(store, transport, max_attempts=5, retry_delay_minutes=30)
        sid = add_entry(store, "retry@example.com", status=EmailStatus.FAILED, attempts=3)

        assert processor.retry_failed_email(sid, NOW) is False

        entry = store.get_entry(sid)
        assert entry.email_status == EmailStatus.PENDING
        assert entry.email_attempts == 4
        assert entry.email_error == "still full"
        assert entry.email_scheduled_at == NOW + timedelta(minutes=30)

    def test_retry_requires_failed_status(self, store, transport, processor):
        sid = add_entry(store, "pending@example.com")
        assert processor.retry_failed_email(sid, NOW) is False
        assert processor.retry_failed_email("missing", NOW) is False
        assert transport.calls == []

    def test_skip_email(self, store, transport, processor):
        sid = add_entry(store, "skip@example.com")
        assert processor.skip_email(sid) is True
        assert store.get_entry(sid).email_status == EmailStatus.SKIPPED
        assert processor.process_queue(NOW).attempted == 0
        assert processor.skip_email(sid) is False

    def test_record_email_opened_first_open_wins(self, store, processor):
        sid = add_entry(store, "open@example.com", status=EmailStatus.SENT)
        processor.record_email_opened(sid, NOW)
        processor.record_email_opened(sid, NOW + timedelta(hours=1))
        assert store.get_entry(sid).email_opened_at == NOW

    def test_record_email_opened_missing(self, processor):
        with pytest.raises(NotFoundError):
            processor.record_email_opened("missing", NOW)

    def test_queue_stats_and_failed_list(self, store, processor):
        add_entry(store, "due@example.com")
        add_entry(store, "later@example.com", scheduled_at=NOW + timedelta(hours=1))
        store.create_submission("unscheduled@example.com")
        add_entry(store, "sent@example.com", status=EmailStatus.SENT)
        failed = add_entry(store, "failed@example.com", status=EmailStatus.FAILED,
                           email_last_attempt_at=NOW)

        stats = processor.get_queue_stats(NOW)

        assert stats["pending"] == 3
        assert stats["due"] == 1
        assert stats["unscheduled"] == 1
        assert stats["sent"] == 1
        assert stats["failed"] == 1
        assert stats["skipped"] == 0
        assert [e.submission_id for e in processor.get_failed_emails()] == [failed]
