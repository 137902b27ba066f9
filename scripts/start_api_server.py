"""Start the delegated scrape API.

Usage:
    python -m scripts.start_api_server --producer mypackage.producers:BrowserProducer
    python -m scripts.start_api_server --records captured.jsonl --enable-delegation
"""
import argparse
import logging
import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(PROJECT_ROOT))

from scrapevault.api.server import create_app
from scrapevault.config import get_api_settings
from scrapevault.logging_utils import setup_pipeline_logging
from scrapevault.pipeline import StaticRecordProducer, build_pipeline, load_producer

logger = logging.getLogger(__name__)


def parse_args():
    settings = get_api_settings()
    parser = argparse.ArgumentParser(description="Start the scrape delegation API server")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--producer",
        help="Record producer as 'module:attribute' (class, factory or instance)",
    )
    source.add_argument(
        "--records",
        type=Path,
        help="Replay raw records from a JSON-lines file instead of a live producer",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"Host to bind to (default: {settings.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to bind to (default: {settings.port})",
    )
    parser.add_argument(
        "--enable-delegation",
        action="store_true",
        help="Start with API delegation already enabled",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode",
    )
    return parser.parse_args()


def main():
    args = parse_args()

    # Configure logging level via environment if not set
    if not os.getenv("API_LOG_LEVEL"):
        os.environ["API_LOG_LEVEL"] = "DEBUG" if args.debug else "INFO"
    setup_pipeline_logging(console_level=logging.DEBUG if args.debug else logging.INFO)

    if args.producer:
        producer = load_producer(args.producer)
    else:
        producer = StaticRecordProducer.from_json_lines(args.records)

    pipeline = build_pipeline(producer)
    app = create_app(
        pipeline,
        {"API_PORT": args.port, "DELEGATION_ENABLED": args.enable_delegation},
    )

    logger.info("Starting scrape delegation API on http://%s:%s", args.host, args.port)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
