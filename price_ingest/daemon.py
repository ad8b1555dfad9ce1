#!/usr/bin/env python3
"""
PRICE INGEST DAEMON
===================

Runs the ingestion worker until SIGINT/SIGTERM.

Usage:
    price-ingest                      # Run on the configured cadence
    price-ingest --once               # Single run, exit 0 if any asset succeeded
    price-ingest --dry-run --once     # No database or Redis needed
    price-ingest --cadence 5m         # Override PRICE_INGEST_CADENCE

Exit codes:
    0  clean shutdown (or --once run with at least one success)
    1  --once run in which every asset failed
    2  invalid configuration
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from price_ingest import __version__
from price_ingest.config import load_config
from price_ingest.exceptions import ConfigError
from price_ingest.locks import acquire_lock, release_lock
from price_ingest.logging_setup import setup_logging
from price_ingest.worker import IngestionWorker

logger = logging.getLogger("price_ingest.daemon")

LOCK_NAME = "price_ingest"
EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scheduled crypto price ingestion worker")
    parser.add_argument("--once", action="store_true", help="Execute one run and exit")
    parser.add_argument("--dry-run", action="store_true",
                        help="Use in-memory store and publisher")
    parser.add_argument("--env-file", type=Path, default=None, help="Path to .env file")
    parser.add_argument("--cadence", default=None, help="Override run cadence")
    parser.add_argument("--log-level", default=None, help="Override log level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.cadence:
        overrides["cadence"] = args.cadence
    if args.log_level:
        overrides["log_level"] = args.log_level

    try:
        config = load_config(dotenv_path=args.env_file, **overrides)
    except ConfigError as e:
        setup_logging(None)
        logger.error(str(e))
        return EXIT_CONFIG_ERROR

    setup_logging(config.log_dir, config.log_level)

    if not acquire_lock(LOCK_NAME, config.lock_dir):
        return EXIT_OK

    try:
        try:
            worker = IngestionWorker.build(config, dry_run=args.dry_run)
        except ConfigError as e:
            logger.error(str(e))
            return EXIT_CONFIG_ERROR

        with worker:
            if args.once:
                outcome = worker.run_once("manual")
                if outcome is None or not outcome.success:
                    return EXIT_RUN_FAILED
                return EXIT_OK

            return run_forever(worker)
    finally:
        release_lock(LOCK_NAME, config.lock_dir)


def run_forever(worker: IngestionWorker) -> int:
    shutdown = threading.Event()

    def handler(signum, frame):
        logger.info(f"Shutdown signal received ({signum})")
        shutdown.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)

    logger.info("=" * 60)
    logger.info(f"PRICE INGEST WORKER v{__version__}")
    logger.info(f"  Assets:  {', '.join(worker.config.asset_ids)}")
    logger.info(f"  Batch:   {worker.config.batch_size}  Timeout: {worker.config.run_timeout}s")
    logger.info("=" * 60)

    worker.start()
    while not shutdown.wait(1.0):
        pass

    worker.stop()
    logger.info("Price ingest worker shutdown complete")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
