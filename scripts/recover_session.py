"""Replay a retained staging snapshot into a new session without re-scraping.

Sessions that end ``incomplete`` or ``failed`` keep their staging snapshot.
This script commits those raw records again under a fresh session id.

Usage:
    python -m scripts.recover_session --list
    python -m scripts.recover_session local_1700000000000_abc123xyz [--origin api]
"""
import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from scrapevault.data.models import SessionOrigin
from scrapevault.errors import SessionNotFoundError
from scrapevault.logging_utils import setup_pipeline_logging
from scrapevault.pipeline import build_pipeline

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Recover a session from its staging snapshot")
    parser.add_argument("session_id", nargs="?", help="Session id whose snapshot should be replayed")
    parser.add_argument(
        "--origin",
        choices=[origin.value for origin in SessionOrigin],
        default=SessionOrigin.APP.value,
        help="Origin namespace for the recovered session (default: app)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List session ids that still have a staging snapshot",
    )
    parser.add_argument("--quiet", action="store_true", help="Only log to the file handler")
    return parser.parse_args()


def main():
    args = parse_args()
    setup_pipeline_logging(quiet=args.quiet)

    # Recovery must not wipe the snapshots it is about to replay.
    pipeline = build_pipeline(clear_staging=False)

    if args.list or not args.session_id:
        session_ids = pipeline.staging.list_session_ids()
        if not session_ids:
            print("No retained staging snapshots.")
            return 0
        for session_id in session_ids:
            snapshot = pipeline.staging.read(session_id)
            staged = len(snapshot.records) if snapshot else 0
            print(f"{session_id}\t{staged} staged record(s)")
        return 0

    try:
        result = pipeline.recover(args.session_id, SessionOrigin(args.origin))
    except SessionNotFoundError as exc:
        logger.error("%s", exc)
        return 1

    print(
        f"Recovered {args.session_id} into {result.session_id}: {result.status.value} "
        f"(committed={result.records_committed}, failed={result.records_failed}, "
        f"rejected={result.records_rejected})"
    )
    return 0 if result.status.value == "completed" else 2


if __name__ == "__main__":
    sys.exit(main())
