"""Run the STEWARD workers and expiration sweeper: python -m core.driver --config steward.yaml"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from core.config import load_config
from core.errors import ConfigError
from .bootstrap import build_driver


logger = logging.getLogger(__name__)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Run the STEWARD orchestration engine")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration (defaults for every section if omitted)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Override driver.worker_count",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
        driver = build_driver(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    worker_count = args.workers or config.driver.worker_count
    threads = driver.run_workers(worker_count, stop_event)

    driver.run_expiration_sweeper(config.driver.sweep_interval_seconds, stop_event)

    for thread in threads:
        thread.join(timeout=5.0)
    logger.info("STEWARD stopped")


if __name__ == "__main__":
    main()
