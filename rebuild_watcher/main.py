"""Main entry point for rebuild-watcher.

This module handles the command-line interface (CLI), configuration loading,
logging setup and the process lifecycle. It wires the ProcessRunner, Pipeline,
RunCoordinator and DirWatcher together.

Key Responsibilities:
    - CLI Argument Parsing: Handles --watch-path, --debounce-ms, --schema-only, etc.
    - Initial Run: Runs the pipeline once before watching. A failed initial run
      is fatal (exit 1) and the watcher is never started.
    - Signal Handling: SIGINT/SIGTERM stop the watcher, cancel any active run and
      exit with status 0.
    - Logging: Console logging plus optional rotating file logging (10MB).

Exit Status:
    - 0: graceful shutdown.
    - 1: configuration error, missing runtime, failed initial run, or a watcher
      that could not start or failed while running.
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
from typing import List, Optional

from rebuild_watcher import __version__
from rebuild_watcher.config import Config, load_config, make_ignore_rule, uses_runtime
from rebuild_watcher.coordinator import RunCoordinator
from rebuild_watcher.errors import RuntimeNotFoundError, WatcherError
from rebuild_watcher.pipeline import Pipeline
from rebuild_watcher.runner import ProcessRunner, can_execute
from rebuild_watcher.watcher import DirWatcher

# Logging configuration constants
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: State transitions (run start, step start/success, change
              detected, cancellation, shutdown).
            - ``WARNING``: Recoverable issues (a watch-triggered rebuild failed).
            - ``ERROR``: Step failures and spawn errors.
            - ``CRITICAL``: Fatal errors that end the process.
            - ``DEBUG``: Raw events, signals sent, spawned PIDs.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Returns:
        None

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging isn't set up yet, so report on stderr directly.
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def ensure_runtime(config: Config) -> None:
    """Check that the runtime used by the configured tasks is installed.

    Args:
        config (Config): The loaded configuration.

    Returns:
        None

    Raises:
        RuntimeNotFoundError: If a task needs the runtime and it cannot run.
    """
    if uses_runtime(config.tasks, config.runtime) and not can_execute(config.runtime):
        raise RuntimeNotFoundError(config.runtime)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rebuild-watcher",
        description="Run a build pipeline once, then re-run it whenever the watched directory changes.",
    )
    parser.add_argument(
        "--watch-path", type=str, default=None,
        help="Directory to watch (default: 'functions' from convex.json, else ./convex).",
    )
    parser.add_argument(
        "--debounce-ms", type=int, default=None,
        help="Milliseconds without changes before a rebuild starts (default: 200).",
    )
    parser.add_argument(
        "--no-recursive", action="store_const", const=True, default=None,
        help="Only watch the top level of the watch path.",
    )
    parser.add_argument(
        "--ignore", type=str, default=None,
        help="Comma-separated glob patterns of relative paths to ignore.",
    )
    parser.add_argument(
        "--runtime", type=str, default=None,
        help="Script runtime checked before running tasks that use it (default: bun).",
    )
    parser.add_argument(
        "--schema-only", action="store_const", const=True, default=None,
        help="Only generate schemas, skip uploading functions.",
    )
    parser.add_argument(
        "--convex-command", type=str, default=None,
        help="Command that uploads functions (default: '{runtime}x convex dev --once').",
    )
    parser.add_argument(
        "--schema-command", type=str, default=None,
        help="Command that generates the schema file.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, run the
    pipeline once and then watch for changes until a shutdown signal arrives.

    Args:
        argv (Optional[List[str]]): Arguments to parse. Defaults to ``sys.argv[1:]``.

    Returns:
        None: The function always ends the process through ``sys.exit``.

    Raises:
        SystemExit: With status 0 on graceful shutdown and 1 on fatal errors.

    Example:
        $ rebuild-watcher --watch-path ./convex --schema-command "bun run gen-schema.ts"
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        handlers=[bootstrap_handler],
        force=True,
    )

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        logger.critical(f"Configuration Error: {e}")
        sys.exit(1)

    logger.info(f"Starting rebuild-watcher v{__version__} (PID: {os.getpid()})...")

    try:
        ensure_runtime(config)
    except RuntimeNotFoundError as e:
        logger.critical(f"{e}. Please install it and re-run this command.")
        if config.runtime == "bun":
            logger.critical("Docs: https://bun.sh")
        sys.exit(1)

    runner = ProcessRunner()
    pipeline = Pipeline(config.tasks, runner)
    coordinator = RunCoordinator(pipeline)
    watcher: Optional[DirWatcher] = None

    stop_event = threading.Event()
    fatal_errors: List[BaseException] = []

    def cleanup() -> None:
        """Stop the watcher and cancel any active run.

        Registered via `atexit` as well as called from the `finally` block;
        every step is idempotent.

        Returns:
            None
        """
        if watcher is not None:
            try:
                watcher.stop()
            except Exception as e:
                logger.error(f"Error stopping watcher in cleanup: {e}")
        try:
            coordinator.stop()
        except Exception as e:
            logger.error(f"Error stopping coordinator in cleanup: {e}")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by requesting a graceful shutdown.

        Cancellation happens on a helper thread: the main thread may be holding
        the runner's lock when the signal arrives.

        Args:
            sig (int): The signal number.
            frame (Optional[FrameType]): The current stack frame (unused).

        Returns:
            None
        """
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()
        threading.Thread(target=coordinator.cancel, name="ShutdownCancel", daemon=True).start()

    def on_watch_error(error: WatcherError) -> None:
        fatal_errors.append(error)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        # Initial run: failure is fatal and the watcher never starts.
        result = coordinator.run_once()
        if stop_event.is_set():
            logger.info("Shutdown requested during initial run.")
        elif result is None or not result.succeeded:
            logger.critical("Initial run failed. Not starting watcher.")
            exit_code = 1
        else:
            watcher = DirWatcher(
                config.watch_path,
                on_change=coordinator.request_rebuild,
                recursive=config.recursive,
                debounce_ms=config.debounce_ms,
                should_ignore=make_ignore_rule(config.ignore),
                on_error=on_watch_error,
            )
            coordinator.start()
            watcher.start()

            # Block until a signal or a watcher failure sets the event.
            stop_event.wait()

            if fatal_errors:
                logger.critical(f"Fatal watcher error: {fatal_errors[0]}")
                exit_code = 1
    except WatcherError as e:
        logger.critical(f"Could not start watcher: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        cleanup()
        atexit.unregister(cleanup)
        stats = coordinator.get_statistics()
        logger.info(
            f"Shutdown complete. Runs={stats['runs_started']} "
            f"(ok={stats['runs_succeeded']}, failed={stats['runs_failed']}, "
            f"cancelled={stats['runs_cancelled']}), Triggers={stats['triggers_received']}"
        )

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
