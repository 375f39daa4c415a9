"""Main entry point for gotest-watcher.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main wait loop. It wires the SourceWatcher, the
RestartCoordinator and the ProcessSupervisor together.

Key Responsibilities:
    - CLI Argument Parsing: Handles --watch-path, --log-level, --queue-size, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM for graceful shutdown.
    - Logging: Console logging goes to stderr so stdout carries only test
      output. Optional file logging rotates at 10MB.
    - Startup/Shutdown Invariants: A watcher that cannot attach to the tree
      aborts startup before any test run. On exit the watcher is stopped
      first, then the coordinator, which cancels the run in flight.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Optional

try:
    from gotest_watcher import __version__
    from gotest_watcher.colorizer import StreamSink
    from gotest_watcher.config import load_config
    from gotest_watcher.coordinator import RestartCoordinator
    from gotest_watcher.supervisor import GO_TEST_COMMAND, ProcessSupervisor
    from gotest_watcher.watcher import SourceWatcher
except ImportError as e:
    if "watchdog" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stderr) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Startup, restarts, shutdown.
            - ``WARNING``: Dropped notifications, failed cancels.
            - ``ERROR``: Spawn failures, unexpected worker errors.
            - ``DEBUG``: Raw events, suppressed duplicates, exit codes.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Output**: Console logs go to stderr. File logging is optional via ``--log-file``.
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"Re-run '{' '.join(GO_TEST_COMMAND)}' whenever a .go file changes."
    )
    parser.add_argument(
        "--watch-path", type=str, default=None,
        help="Directory to watch and run the tests in (default: current directory).",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--queue-size", type=int, default=None,
        help="Capacity of the restart queue (1-1024). Default: 16",
    )
    parser.add_argument(
        "--send-timeout", type=float, default=None,
        help="Seconds a change may wait on a full queue before being dropped. Default: 1.0",
    )
    parser.add_argument(
        "--grace-period", type=float, default=None,
        help="Seconds between SIGTERM and SIGKILL for a cancelled run. Default: 2.0",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main() -> None:
    """Execute the main application logic.

    Parse arguments, load configuration, set up logging, start the watcher
    and the restart coordinator, then block until SIGINT/SIGTERM.

    Raises:
        SystemExit: If configuration is invalid, or if the watcher cannot
            attach to the tree (code 1).

    Example:
        $ cd ~/src/myproject && gotest-watcher --debug
    """
    args = build_parser().parse_args()

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stderr)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    except Exception as e:
        sys.exit(f"Startup Error: {e}")
    logger.info(f"Starting gotest-watcher v{__version__} (PID: {os.getpid()})...")

    supervisor = ProcessSupervisor(
        cwd=config.watch_path,
        stdout=StreamSink(sys.stdout.buffer),
        stderr=StreamSink(sys.stderr.buffer),
        grace_period=config.grace_period,
    )
    coordinator = RestartCoordinator(
        supervisor,
        queue_size=config.queue_size,
        send_timeout=config.send_timeout,
    )
    watcher = SourceWatcher(config.watch_path, coordinator)

    def cleanup() -> None:
        """Stop the watcher, then the coordinator (which cancels the live run)."""
        try:
            watcher.stop()
        except Exception as e:
            logger.error(f"Error stopping watcher in cleanup: {e}")
        try:
            coordinator.stop()
        except Exception as e:
            logger.error(f"Error stopping coordinator in cleanup: {e}")
        stats = coordinator.get_statistics()
        logger.info(
            f"Shutdown complete. Notifications={stats['notifications']}, "
            f"Restarts={stats['restarts']}, Suppressed={stats['suppressed']}, "
            f"Dropped={stats['dropped']}"
        )

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        watcher.start()
    except (FileNotFoundError, RuntimeError) as e:
        logger.critical(f"Cannot watch {config.watch_path}: {e}")
        sys.exit(1)

    atexit.register(cleanup)
    try:
        coordinator.start()
        # Blocks the main thread until the signal handler sets the event
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
