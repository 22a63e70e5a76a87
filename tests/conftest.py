"""Shared fixtures: a temp SQLite store, a fake transport and a processor."""

import pytest

from followup.config import QueueSettings
from followup.queue_processor import EmailQueueProcessor
from followup.submission_store import SubmissionStore

from tests.helpers import FakeTransport


@pytest.fixture
def store(tmp_path) -> SubmissionStore:
    return SubmissionStore(tmp_path / "submissions.db")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def processor(store, transport) -> EmailQueueProcessor:
    return EmailQueueProcessor(
        store, transport, QueueSettings(max_attempts=3, batch_size=50, retry_delay_minutes=30),
    )
