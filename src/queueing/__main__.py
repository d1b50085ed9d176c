"""
Worker process entry point.

Usage:
    python -m src.queueing                      # every queue
    python -m src.queueing --queues webhook email
    python -m src.queueing --no-recovery

Builds the queue service, registers every processor, starts the pools and
blocks until SIGTERM/SIGINT has shut everything down.
"""

import argparse
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

from src.infra.logging_config import setup_logging
from src.processors import register_processors
from src.shopify import ShopifyClient
from src.store import create_store

from .config import QUEUE_SETTINGS
from .service import QueueService


logger = logging.getLogger(__name__)


def build_worker_service() -> QueueService:
    """Queue service with every processor registered, configured from env."""
    service = QueueService.from_env()
    register_processors(
        service.registry,
        store=create_store(),
        shopify_client=ShopifyClient.from_env(),
        enqueue=service.enqueue,
        clean_jobs=service.cleanup,
    )
    return service


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run job queue workers")
    parser.add_argument(
        "--queues",
        nargs="+",
        choices=sorted(QUEUE_SETTINGS),
        help="Queues to work (default: all)",
    )
    parser.add_argument(
        "--no-recovery",
        action="store_true",
        help="Skip stalled-job recovery at startup",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for in-flight jobs on shutdown",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    service = build_worker_service()
    recovery = service.start(queues=args.queues, run_recovery=not args.no_recovery)
    if recovery:
        logger.info(
            f"Startup recovery: {recovery['requeued']} requeued, "
            f"{recovery['failed']} failed"
        )

    service.install_signal_handlers(timeout=args.shutdown_timeout)
    logger.info("Workers running; press Ctrl+C to stop")
    service.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
