"""Print committed sessions with their status and record counts.

Usage:
    python -m scripts.list_sessions [--status completed] [--limit 20]
"""
import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from scrapevault.data.models import SessionStatus
from scrapevault.logging_utils import setup_pipeline_logging
from scrapevault.pipeline import build_pipeline


def parse_args():
    parser = argparse.ArgumentParser(description="List committed scrape sessions")
    parser.add_argument(
        "--status",
        choices=[status.value for status in SessionStatus],
        help="Only show sessions with this status",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of sessions to print (default: 50)",
    )
    return parser.parse_args()


def main():
    args = parse_args()
    setup_pipeline_logging(quiet=True)
    pipeline = build_pipeline(clear_staging=False)

    headers = pipeline.list_sessions()
    if args.status:
        headers = [header for header in headers if header.status.value == args.status]

    if not headers:
        print("No sessions found.")
        return 0

    print(f"{'SESSION':<40} {'ORIGIN':<6} {'KIND':<10} {'STATUS':<11} {'RECORDS':>7}  OPENED")
    for header in headers[: args.limit]:
        print(
            f"{header.session_id:<40} {header.origin.value:<6} {header.kind.value:<10} "
            f"{header.status.value:<11} {header.committed_count:>7}  {header.opened_at}"
        )
    if len(headers) > args.limit:
        print(f"... {len(headers) - args.limit} more")
    return 0


if __name__ == "__main__":
    sys.exit(main())
