"""
Entry point for running polling sessions.

Usage:
    # Run every session in the config file
    python -m polling_cdc --config config.yaml

    # Run one session
    python -m polling_cdc --config config.yaml --session orders

    # Single session from environment only
    POLLING_TABLE=orders POLLING_COLUMN=id \\
        POLLING_DATABASE_URL=sqlite:///shop.db python -m polling_cdc

Change events are written to stdout as JSON lines; logs go to stderr and
the rotating log file. Exits non-zero if any session fails.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from prometheus_client import start_http_server

from core.logging.setup import get_logger, setup_logging
from polling_cdc.common.exceptions import PollingError
from polling_cdc.config import PollingConfig
from polling_cdc.poller.events import JsonLinesEventSink
from polling_cdc.runner import PollingRunner

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

_shutdown_event = threading.Event()


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Poll database tables for new rows and emit change events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run all configured sessions
    python -m polling_cdc --config config.yaml

    # Run a single session with debug console output
    python -m polling_cdc --config config.yaml --session orders --log-level DEBUG

    # Expose metrics on a custom port
    python -m polling_cdc --metrics-port 9090
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: POLLING_CONFIG_PATH env var or ./config.yaml)",
    )

    parser.add_argument(
        "--session",
        action="append",
        default=None,
        help="Session to run; repeat for several (default: all sessions)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Console logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server, 0 to disable (default: 8000)",
    )

    return parser.parse_args(argv)


def setup_signal_handlers() -> None:
    """Stop all sessions on SIGINT/SIGTERM."""

    def handle_signal(signum, frame):
        name = signal.Signals(signum).name
        if not _shutdown_event.is_set():
            logger.info(f"Received signal {name}, stopping polling sessions...")
            _shutdown_event.set()
        else:
            logger.warning(f"Received second signal {name}, shutdown already in progress")

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)


def main(argv=None) -> int:
    """Main entry point; returns the process exit code."""
    global logger
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level)

    # Set JSON_LOGS=false for human-readable file logs during local development
    json_logs = os.getenv("JSON_LOGS", "true").lower() in ("true", "1", "yes")

    # Log directory: CLI arg > env var > default ./logs
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))

    setup_logging(
        name="polling_cdc",
        log_dir=log_dir,
        json_format=json_logs,
        console_level=log_level,
    )

    # Re-get logger after setup to use new handlers
    logger = get_logger(__name__)

    try:
        config = PollingConfig.load_config(args.config)
    except PollingError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if not config.sessions:
        logger.error("No polling sessions configured")
        return 2

    if args.metrics_port:
        logger.info(f"Starting metrics server on port {args.metrics_port}")
        start_http_server(args.metrics_port)

    setup_signal_handlers()

    stdout_lock = threading.Lock()
    runner = PollingRunner(
        config,
        sink_factory=lambda session: JsonLinesEventSink(sys.stdout, session, lock=stdout_lock),
    )

    exit_code: Optional[int] = None
    try:
        runner.start(args.session)
        runner.wait(_shutdown_event)
    except PollingError as e:
        logger.error(f"Failed to start polling sessions: {e}")
        exit_code = 2
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    finally:
        runner.stop_all()

    if exit_code is not None:
        return exit_code

    if runner.failures:
        for name, failure in runner.failures.items():
            logger.error(
                f"Session {name} failed: {failure}",
                extra={"restartable": failure.is_restartable},
            )
        return 1

    logger.info("Polling shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
