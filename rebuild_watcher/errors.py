"""Exception hierarchy for rebuild-watcher.

Errors fall into three groups:

    * **Environment-fatal**: the watch root is missing, the watch facility cannot
      be established or dies, or the script runtime is not installed. The entry
      point logs these and exits with status 1.
    * **Task outcomes**: ``SpawnError``, ``TaskFailedError`` and
      ``TaskCancelledError`` describe how a single step ended. Cancellation is
      never reported as a failure.
    * **Contract violations**: ``AlreadyCancelledError``,
      ``AbortedBeforeStartError`` and ``DuplicateKindError`` are raised when the
      process runner is called incorrectly.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "RebuildWatcherError",
    "ConfigError",
    "WatcherError",
    "WatchRootNotFoundError",
    "WatcherStartError",
    "WatcherFailedError",
    "RuntimeNotFoundError",
    "RunnerError",
    "AlreadyCancelledError",
    "AbortedBeforeStartError",
    "DuplicateKindError",
    "SpawnError",
    "TaskFailedError",
    "TaskCancelledError",
]


class RebuildWatcherError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(RebuildWatcherError, ValueError):
    """Raised when configuration values are invalid."""


class WatcherError(RebuildWatcherError):
    """Base class for environment-fatal watcher errors."""


class WatchRootNotFoundError(WatcherError, FileNotFoundError):
    """Raised by ``DirWatcher.start()`` when the watch root does not exist."""


class WatcherStartError(WatcherError):
    """Raised when the filesystem observer cannot be established."""


class WatcherFailedError(WatcherError):
    """Reported when a running observer dies or the watch root disappears."""


class RuntimeNotFoundError(RebuildWatcherError):
    """Raised when the runtime required by a pipeline step is not installed."""

    def __init__(self, runtime: str) -> None:
        super().__init__(f"Runtime '{runtime}' is not installed or not on PATH")
        self.runtime = runtime


class RunnerError(RebuildWatcherError):
    """Base class for errors produced by the process runner.

    Attributes:
        kind (str): The task kind the error relates to.
    """

    def __init__(self, message: str, kind: str) -> None:
        super().__init__(message)
        self.kind = kind


class AlreadyCancelledError(RunnerError):
    """The runner is globally cancelled and must be reset before new runs."""

    def __init__(self, kind: str) -> None:
        super().__init__("Process runner is cancelled", kind)


class AbortedBeforeStartError(RunnerError):
    """The per-call cancel token fired before the process was spawned."""

    def __init__(self, kind: str) -> None:
        super().__init__("Run aborted before start", kind)


class DuplicateKindError(RunnerError):
    """A process of the same kind is already being tracked."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"A task of kind '{kind}' is already running", kind)


class SpawnError(RunnerError):
    """The OS refused to start the process (missing binary, permissions).

    Attributes:
        os_error (OSError): The underlying error raised by the OS.
    """

    def __init__(self, label: str, kind: str, os_error: OSError) -> None:
        super().__init__(f"Failed to start {label}: {os_error}", kind)
        self.label = label
        self.os_error = os_error


class TaskFailedError(RunnerError):
    """The process exited with a non-zero code or was killed by a signal.

    Attributes:
        label (str): Display label of the task.
        returncode (Optional[int]): Exit code, or None if killed by a signal.
        signal (Optional[int]): Terminating signal number, if any.
    """

    def __init__(
        self,
        label: str,
        kind: str,
        returncode: Optional[int] = None,
        signal: Optional[int] = None,
    ) -> None:
        code = "unknown" if returncode is None else returncode
        super().__init__(f"{label} failed with code {code}", kind)
        self.label = label
        self.returncode = returncode
        self.signal = signal


class TaskCancelledError(RunnerError):
    """The process ended after cancellation was requested.

    This is the expected outcome of a superseding trigger and is never logged
    as an error.
    """

    def __init__(
        self,
        kind: str,
        returncode: Optional[int] = None,
        signal: Optional[int] = None,
    ) -> None:
        super().__init__("cancelled", kind)
        self.returncode = returncode
        self.signal = signal
