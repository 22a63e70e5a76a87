"""
CV Follow-up Mailer -- Queue Scheduler

Runs the queue processor once immediately on start, then every
``interval_ms`` until stopped.

    scheduler = QueueScheduler(processor, interval_ms=900_000)
    scheduler.start()
    ...
    scheduler.stop()          # waits for an in-flight cycle to finish

Cycles never overlap: a trigger that arrives while a cycle is running is
skipped and counted.  A cycle that raises is logged and the timer keeps
going.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .errors import StoreError
from .models import CycleSummary, utc_now
from .queue_processor import EmailQueueProcessor

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 15 * 60 * 1000


class QueueScheduler:
    """Fixed-interval trigger for the email queue processor.

    Attributes:
        cycles_run: Cycles that started.
        cycles_failed: Cycles that ended in an exception.
        cycles_skipped: Triggers dropped because a cycle was still running.
        last_summary: Summary of the most recent successful cycle.
        last_error: Exception of the most recent failed cycle.
    """

    def __init__(
        self,
        processor: EmailQueueProcessor,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not isinstance(interval_ms, int) or isinstance(interval_ms, bool) or interval_ms <= 0:
            raise ValueError(f"interval_ms must be a positive integer, got {interval_ms!r}")
        self.processor = processor
        self.interval_ms = interval_ms
        self.clock = clock

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.cycles_run = 0
        self.cycles_failed = 0
        self.cycles_skipped = 0
        self.last_summary: Optional[CycleSummary] = None
        self.last_error: Optional[BaseException] = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the timer thread.  The first cycle runs immediately."""
        if self.is_running:
            raise RuntimeError("Scheduler is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="email-queue-scheduler", daemon=True,
        )
        logger.info("Email queue scheduler started (every %.0f seconds)", self.interval_seconds)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop triggering cycles and wait for an in-flight cycle to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        if thread is None or not thread.is_alive():
            self._thread = None
        logger.info("Email queue scheduler stopped")

    def run_forever(self) -> None:
        """Start, then block until SIGINT/SIGTERM.  Main thread only."""

        def _handle_signal(signum, _frame):
            logger.info("Received %s, stopping scheduler", signal.Signals(signum).name)
            self._stop_event.set()

        previous = {
            sig: signal.signal(sig, _handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            self.start()
            while self.is_running:
                self._thread.join(timeout=1.0)
        finally:
            self.stop()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        interval = self.interval_seconds
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            self.run_cycle()

            next_run += interval
            now = time.monotonic()
            if now >= next_run:
                missed = int((now - next_run) // interval) + 1
                self.cycles_skipped += missed
                logger.warning(
                    "Email queue cycle overran the %.0fs interval; skipping %d trigger(s)",
                    interval, missed,
                )
                next_run += missed * interval
            if self._stop_event.wait(max(0.0, next_run - time.monotonic())):
                break

    def run_cycle(self) -> Optional[CycleSummary]:
        """Run one cycle unless one is already running.

        Returns:
            The cycle summary, or None if the trigger was skipped or the
            cycle failed.
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.cycles_skipped += 1
            logger.warning("Previous email queue cycle still running; skipping trigger")
            return None

        try:
            self.cycles_run += 1
            cycle_no = self.cycles_run
            started = time.monotonic()
            logger.info("Email queue cycle #%d started", cycle_no)
            try:
                summary = self.processor.process_queue(self.clock())
            except StoreError as exc:
                self.cycles_failed += 1
                self.last_error = exc
                logger.error("Email queue cycle #%d aborted: %s", cycle_no, exc)
                return None
            except Exception as exc:
                self.cycles_failed += 1
                self.last_error = exc
                logger.exception("Email queue cycle #%d failed unexpectedly", cycle_no)
                return None

            self.last_summary = summary
            logger.info(
                "Email queue cycle #%d finished in %.1fs: %s",
                cycle_no, time.monotonic() - started, summary,
            )
            return summary
        finally:
            self._cycle_lock.release()
