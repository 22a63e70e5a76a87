"""CV Follow-up Mailer -- Command Line Entry Point.

Commands::

    # Run the scheduler (one cycle now, then every interval) until Ctrl+C:
    python -m followup.main run

    # Run a single processing cycle and exit:
    python -m followup.main process

    # Queue statistics / failed emails:
    python -m followup.main stats
    python -m followup.main failed --limit 10

    # Operator actions:
    python -m followup.main retry <submission_id>
    python -m followup.main queue <submission_id> --delay-hours 0

Global options: ``--config path/to/config.yaml``, ``--dry-run`` (log emails
instead of sending), ``--verbose``.  A ``.env`` file in the working
directory is loaded before configuration.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .config import FollowupConfig, get_config, validate_config
from .errors import ConfigError, NotFoundError, StoreError
from .models import utc_now
from .queue_processor import EmailQueueProcessor
from .scheduler import QueueScheduler
from .submission_store import SubmissionStore
from .transport import build_transport

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def configure_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Console logging, plus a file handler when ``log_file`` is set."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


def build_processor(cfg: FollowupConfig, dry_run: bool = False) -> EmailQueueProcessor:
    store = SubmissionStore(cfg.database.resolved_path)
    transport = build_transport(cfg, dry_run=dry_run)
    return EmailQueueProcessor(store, transport, cfg.queue)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_run(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    processor = build_processor(cfg, dry_run=args.dry_run)
    if not processor.transport.verify_connection():
        logger.error("Email transport connection failed; not starting scheduler")
        return 1
    scheduler = QueueScheduler(processor, interval_ms=cfg.scheduler.interval_ms)
    scheduler.run_forever()
    return 0


def _cmd_process(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    processor = build_processor(cfg, dry_run=args.dry_run)
    summary = processor.process_queue(utc_now())
    print(f"Sent: {summary.sent}  Failed: {summary.failed}  "
          f"Retrying: {summary.still_pending}  Attempted: {summary.attempted}")
    return 0


def _cmd_stats(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    store = SubmissionStore(cfg.database.resolved_path)
    stats = store.get_status_counts(utc_now())
    print("Email Queue Statistics")
    print("-" * 30)
    for key in ("pending", "due", "unscheduled", "sent", "failed", "skipped"):
        print(f"  {key:<12s}: {stats.get(key, 0)}")
    return 0


def _cmd_failed(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    store = SubmissionStore(cfg.database.resolved_path)
    entries = store.get_failed_entries(limit=args.limit)
    if not entries:
        print("No failed emails.")
        return 0
    for i, entry in enumerate(entries, start=1):
        last = entry.email_last_attempt_at.isoformat() if entry.email_last_attempt_at else "-"
        print(f"{i}. {entry.full_name} <{entry.email}>")
        print(f"   Submission ID: {entry.submission_id}")
        print(f"   Attempts: {entry.email_attempts}  Last attempt: {last}")
        print(f"   Error: {entry.email_error}")
    return 0


def _cmd_retry(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    processor = build_processor(cfg, dry_run=args.dry_run)
    if processor.retry_failed_email(args.submission_id, utc_now()):
        print(f"Email for {args.submission_id} sent.")
        return 0
    print(f"Email for {args.submission_id} was not sent.")
    return 1


def _cmd_queue(cfg: FollowupConfig, args: argparse.Namespace) -> int:
    store = SubmissionStore(cfg.database.resolved_path)
    processor = EmailQueueProcessor(store, build_transport(cfg, dry_run=True), cfg.queue)
    scheduled_at = processor.queue_email(args.submission_id, utc_now(), args.delay_hours)
    if scheduled_at is None:
        print(f"Submission {args.submission_id} is not pending.")
        return 1
    print(f"Email for {args.submission_id} scheduled at {scheduled_at.isoformat()}")
    return 0


_COMMANDS = {
    "run": (_cmd_run, True),
    "process": (_cmd_process, True),
    "stats": (_cmd_stats, False),
    "failed": (_cmd_failed, False),
    "retry": (_cmd_retry, True),
    "queue": (_cmd_queue, False),
}


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="followup",
        description="CV follow-up email queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m followup.main run\n"
            "  python -m followup.main process --dry-run\n"
            "  python -m followup.main failed --limit 10\n"
            "  python -m followup.main retry 3f2c...\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log emails instead of sending them (entries are still marked sent)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the scheduler until interrupted")
    sub.add_parser("process", help="Run one processing cycle")
    sub.add_parser("stats", help="Print queue statistics")

    failed = sub.add_parser("failed", help="List failed emails")
    failed.add_argument("--limit", type=int, default=10)

    retry = sub.add_parser("retry", help="Retry a failed email now")
    retry.add_argument("submission_id")

    queue = sub.add_parser("queue", help="Schedule a pending submission's email")
    queue.add_argument("submission_id")
    queue.add_argument("--delay-hours", type=float, default=None,
                       help="Hours from now (default: queue.email_delay_hours)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        cfg = get_config(args.config)
    except ConfigError as exc:
        configure_logging(args.verbose)
        logger.error("%s", exc)
        return 1

    configure_logging(args.verbose, cfg.output.resolved_log_file)
    handler, needs_transport = _COMMANDS[args.command]

    try:
        validate_config(cfg, require_transport=needs_transport and not args.dry_run)
        return handler(cfg, args)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    except NotFoundError as exc:
        logger.error("%s", exc)
        return 1
    except StoreError as exc:
        logger.error("Submission store unavailable: %s", exc)
        return 1
    except Exception:
        logger.exception("Unexpected error")
        return 1


if __name__ == "__main__":
    sys.exit(main())
