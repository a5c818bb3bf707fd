"""
Debounced directory watcher built on watchdog.

Responsibility:
    Observe a directory tree, drop ignored paths, coalesce bursts of events and
    report one relative path per settled burst. The watcher knows nothing about
    pipelines; it only calls the ``on_change`` callback.

Design:
    - **Event-Driven**: Uses a ``watchdog`` Observer (inotify, FSEvents,
      ReadDirectoryChangesW, or the polling fallback). All of them watch
      subdirectories natively when ``recursive=True``, including directories
      created after the watch started.
    - **Debouncing**: A single ``DebounceTimer`` thread is re-armed by every
      accepted event. When it fires, the callback receives the last recorded
      path; earlier paths in the same window are discarded.
    - **Decoupled callback**: The callback runs on the timer thread, separate
      from the observer thread, so new events keep re-arming the timer while a
      callback is in progress.
    - **Fail hard**: A missing root or an observer that cannot start raises from
      ``start()``. An observer that dies, or a root that disappears while
      watching, is reported to ``on_error`` after the watcher stops itself.
      There is no automatic recovery.

Key Invariants:
    - Ignored paths never arm the debounce timer.
    - ``stop()`` is idempotent and releases the observer, timer and health check.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from watchdog.events import (
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from rebuild_watcher.errors import (
    WatcherError,
    WatcherFailedError,
    WatcherStartError,
    WatchRootNotFoundError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

IgnoreRule = Callable[[str], bool]

DEFAULT_DEBOUNCE_MS = 200
HEALTH_CHECK_INTERVAL = 10.0

__all__ = ["DebounceTimer", "ChangeEventHandler", "DirWatcher", "IgnoreRule"]


class DebounceTimer:
    """Reusable debounce timer backed by one thread per active window.

    Each :meth:`schedule` call pushes the deadline ``interval`` seconds into the
    future. The callback runs once the deadline passes with no further calls.

    Attributes:
        interval (float): The debounce interval in seconds.
        callback (Callable[[], None]): The function to call when the timer fires.
    """

    __slots__ = ("interval", "callback", "_condition", "_deadline", "_armed", "_stopped", "_thread")

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._condition = threading.Condition()
        self._deadline = 0.0
        self._armed = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def armed(self) -> bool:
        return self._armed

    def schedule(self) -> None:
        """Arm the timer, or push back its deadline if already armed.

        Returns:
            None
        """
        with self._condition:
            if self._stopped:
                return
            self._deadline = time.monotonic() + self.interval
            if self._armed:
                self._condition.notify()
                return
            self._armed = True
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="DebounceTimer", daemon=True)
                self._thread.start()
            else:
                # Thread is running the callback; it picks up the new deadline afterwards.
                self._condition.notify()

    def cancel(self) -> None:
        """Disarm a pending window without firing the callback.

        Returns:
            None
        """
        with self._condition:
            self._armed = False
            self._condition.notify_all()

    def stop(self) -> None:
        """Disarm the timer permanently.

        Returns:
            None
        """
        with self._condition:
            self._stopped = True
            self._armed = False
            self._condition.notify_all()

    def _run(self) -> None:
        with self._condition:
            while self._armed and not self._stopped:
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue

                self._armed = False
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.error("Error in debounce callback", exc_info=True)
                finally:
                    self._condition.acquire()
            self._thread = None

    def __repr__(self) -> str:
        return f"<DebounceTimer interval={self.interval} armed={self._armed}>"


class ChangeEventHandler(FileSystemEventHandler):
    """Translate watchdog events into debounced change callbacks.

    Attributes:
        root (Path): Absolute path of the watched tree.
        on_change (Callable[[str], None]): Called with the last changed relative path.
        should_ignore (Optional[IgnoreRule]): Predicate over relative paths.
        on_root_deleted (Optional[Callable[[], None]]): Called if the root itself is deleted.
    """

    def __init__(
        self,
        root: Path,
        on_change: Callable[[str], None],
        debounce_seconds: float = DEFAULT_DEBOUNCE_MS / 1000.0,
        should_ignore: Optional[IgnoreRule] = None,
        on_root_deleted: Optional[Callable[[], None]] = None,
    ) -> None:
        self.root = root
        self.root_str = str(root)
        self.root_label = root.name or self.root_str
        self.on_change = on_change
        self.should_ignore = should_ignore
        self.on_root_deleted = on_root_deleted

        self._lock = threading.Lock()
        self._last_path: Optional[str] = None
        self._stopped = False
        self._debounce_timer = DebounceTimer(debounce_seconds, self._on_debounce_fired)

        # Metrics
        self.events_detected = 0
        self.events_ignored = 0
        self.total_debounced_events = 0
        self.callbacks_fired = 0
        self.last_event_time = 0.0

    @property
    def last_path(self) -> Optional[str]:
        return self._last_path

    def relative_path(self, raw_path: Union[str, bytes]) -> Optional[str]:
        """Return ``raw_path`` relative to the root, or None if outside it.

        Separators are normalised to ``/`` so ignore rules behave the same on
        every platform.
        """
        path = os.fsdecode(raw_path)
        try:
            rel = os.path.relpath(path, self.root_str)
        except ValueError:
            # Different drive on Windows.
            return None
        if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep):
            return None
        return Path(rel).as_posix()

    def _process_event(self, event: FileSystemEvent) -> None:
        if self._stopped:
            return

        src_path = os.fsdecode(event.src_path)
        if event.is_directory and event.event_type == EVENT_TYPE_DELETED and src_path == self.root_str:
            logger.error(f"Watch root was deleted: {self.root_str}")
            if self.on_root_deleted:
                self.on_root_deleted()
            return

        # A directory "modified" event only says that its entries changed; the
        # entry itself produces its own event.
        if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            return

        rel: Optional[str] = None
        if event.event_type == EVENT_TYPE_MOVED:
            rel = self.relative_path(getattr(event, "dest_path", "") or "")
        if rel is None:
            rel = self.relative_path(src_path)
        if rel is None:
            return

        if self.should_ignore and self.should_ignore(rel):
            self.events_ignored += 1
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Ignoring {event.event_type} on {rel}")
            return

        with self._lock:
            if self._debounce_timer.armed:
                self.total_debounced_events += 1
            self._last_path = rel
            self.events_detected += 1
            self.last_event_time = time.monotonic()
            self._debounce_timer.schedule()

        logger.info(f"Change detected in {self.root_label}/: {rel}")

    def _on_debounce_fired(self) -> None:
        with self._lock:
            path = self._last_path
            self._last_path = None
        if path is None or self._stopped:
            return
        self.callbacks_fired += 1
        self.on_change(path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def stop(self) -> None:
        """Stop reacting to events and drop any pending change.

        Returns:
            None
        """
        self._stopped = True
        self._debounce_timer.stop()
        with self._lock:
            self._last_path = None

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events_detected": self.events_detected,
                "events_ignored": self.events_ignored,
                "total_debounced_events": self.total_debounced_events,
                "callbacks_fired": self.callbacks_fired,
                "last_event_time": self.last_event_time,
            }

    def __repr__(self) -> str:
        return f"<ChangeEventHandler root={self.root_str}>"


class DirWatcher:
    """Own the watchdog Observer and the event handler for one watch root.

    Attributes:
        root (Path): Absolute path of the watched tree.
        recursive (bool): Whether subdirectories are watched.
        debounce_ms (int): Debounce window in milliseconds.
        handler (ChangeEventHandler): The event handler instance.
        on_error (Optional[Callable[[WatcherError], None]]): Receives the error
            when the watch fails after ``start()``. The watcher has already
            stopped itself when this is called.

    Example:
        >>> watcher = DirWatcher("convex", on_change=print, should_ignore=lambda p: p.startswith("."))
        >>> watcher.start()
        >>> # ...
        >>> watcher.stop()
    """

    def __init__(
        self,
        root_dir: Union[str, Path],
        on_change: Callable[[str], None],
        recursive: bool = True,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        should_ignore: Optional[IgnoreRule] = None,
        on_error: Optional[Callable[[WatcherError], None]] = None,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
    ) -> None:
        if debounce_ms <= 0:
            raise ValueError(f"debounce_ms must be positive, got {debounce_ms}")

        self.root = Path(root_dir).absolute()
        self.recursive = recursive
        self.debounce_ms = debounce_ms
        self.on_error = on_error
        self.health_check_interval = health_check_interval

        self._observer: Optional[Any] = None
        self._health_check_timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._started = False
        self._failed = False

        self.handler = ChangeEventHandler(
            self.root,
            on_change,
            debounce_seconds=debounce_ms / 1000.0,
            should_ignore=should_ignore,
            on_root_deleted=lambda: self._fail(f"Watch root was deleted: {self.root}"),
        )

    @property
    def started(self) -> bool:
        return self._started

    @property
    def failed(self) -> bool:
        return self._failed

    def start(self) -> None:
        """Start observing the root directory.

        Returns:
            None

        Raises:
            WatchRootNotFoundError: If the root does not exist or is not a directory.
            WatcherStartError: If the observer could not be started.
        """
        with self._lock:
            if self._started:
                return

            if not self.root.is_dir():
                logger.error(f"Watch root not found: {self.root}")
                raise WatchRootNotFoundError(f"Watch root not found: {self.root}")

            observer = Observer()
            try:
                observer.schedule(self.handler, str(self.root), recursive=self.recursive)
                observer.start()
            except Exception as e:
                logger.error(
                    f"Failed to start observer on {self.root} (recursive={self.recursive}): {e}"
                )
                raise WatcherStartError(
                    f"Failed to start observer on {self.root}: {e}"
                ) from e

            self._observer = observer
            self._started = True
            self._failed = False

        logger.info(
            f"Watching {self.root} ({type(observer).__name__}, recursive={self.recursive}, "
            f"debounce={self.debounce_ms}ms)"
        )
        self._schedule_health_check()

    def stop(self) -> None:
        """Stop the observer, debounce timer and health check.

        Safe to call more than once, and from the observer thread itself.

        Returns:
            None
        """
        with self._lock:
            if not self._started:
                return
            self._started = False
            observer = self._observer
            self._observer = None
            if self._health_check_timer:
                self._health_check_timer.cancel()
                self._health_check_timer = None

        self.handler.stop()
        if observer is not None:
            try:
                observer.stop()
                if observer is not threading.current_thread() and observer.is_alive():
                    observer.join(timeout=5.0)
                    if observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        logger.info("Watcher stopped.")

    def check_health(self) -> None:
        """Fail the watcher if the observer died or the root disappeared.

        Returns:
            None
        """
        if not self._started:
            return
        observer = self._observer
        if observer is None or not observer.is_alive():
            self._fail("Watchdog observer thread died")
            return
        try:
            root_ok = self.root.is_dir()
        except OSError as e:
            logger.debug(f"Error checking watch root: {e}")
            root_ok = False
        if not root_ok:
            self._fail(f"Watch root disappeared: {self.root}")

    def _fail(self, reason: str) -> None:
        if self._failed or not self._started:
            return
        self._failed = True
        logger.critical(f"Watcher failed: {reason}")
        self.stop()
        if self.on_error:
            self.on_error(WatcherFailedError(reason))

    def _schedule_health_check(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._health_check_timer = threading.Timer(self.health_check_interval, self._run_health_check)
            self._health_check_timer.daemon = True
            self._health_check_timer.start()

    def _run_health_check(self) -> None:
        try:
            self.check_health()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
        finally:
            self._schedule_health_check()

    def get_statistics(self) -> Dict[str, Any]:
        return self.handler.get_statistics()

    def __repr__(self) -> str:
        return f"<DirWatcher root={self.root} started={self._started}>"
