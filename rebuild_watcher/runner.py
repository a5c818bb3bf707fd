"""
Process runner with per-kind mutual exclusion and cooperative cancellation.

Responsibility:
    Spawn build-step processes, track at most one live process per task kind and
    deliver interrupt signals when a run is cancelled. The runner never captures
    output: children inherit the parent's standard streams.

Design:
    - **Single process per kind**: a second ``run`` for a kind that is still
      tracked fails with ``DuplicateKindError`` before anything is spawned.
    - **Cooperative cancellation**: cancelling sends SIGINT (or a caller supplied
      signal) and lets the child decide how to exit. The runner never
      force-kills, so a child that ignores the signal stalls settlement.
    - **Process groups**: on POSIX every child leads its own session and signals
      go to the whole group, so the command behind a ``sh -c`` wrapper is
      interrupted too, not only the shell.
    - **Thread safety**: the kind -> process map is guarded by a lock because
      ``run`` (worker thread) and ``cancel_all`` (watcher/signal path) are called
      from different threads.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from rebuild_watcher.errors import (
    AbortedBeforeStartError,
    AlreadyCancelledError,
    DuplicateKindError,
    SpawnError,
    TaskCancelledError,
    TaskFailedError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

Command = Union[str, Sequence[str]]

_USE_PROCESS_GROUPS = hasattr(os, "killpg")

__all__ = ["CancelToken", "Command", "ProcessRunner", "can_execute"]


class CancelToken:
    """A one-shot cancellation handle shared by everything working on one run.

    Callbacks registered with :meth:`add_callback` are invoked exactly once,
    on the thread that calls :meth:`request_cancel`.
    """

    __slots__ = ("_lock", "_event", "_callbacks")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        """Mark the token cancelled and run the registered callbacks.

        Calling this more than once has no further effect.

        Returns:
            None
        """
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.error("Error in cancel callback", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback, calling it immediately if already cancelled.

        Args:
            callback (Callable[[], None]): Function to run on cancellation.

        Returns:
            None
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancellation is requested or the timeout expires.

        Args:
            timeout (Optional[float]): Seconds to wait, or None to wait forever.

        Returns:
            bool: True if the token was cancelled.
        """
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"<CancelToken cancelled={self.is_cancelled}>"


class ProcessRunner:
    """Spawn shell commands, track them by kind and cancel them on request.

    Example:
        >>> runner = ProcessRunner()
        >>> runner.run("echo hello", kind="echo", label="Saying hello...")
        >>> runner.cancel_all()
        >>> runner.reset_cancelled()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: Dict[str, subprocess.Popen] = {}
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def reset_cancelled(self) -> None:
        """Clear the global cancelled flag so that ``run`` accepts new work.

        Processes that were already cancelled are not restarted.

        Returns:
            None
        """
        with self._lock:
            self._cancelled = False

    def running_kinds(self) -> List[str]:
        """Return the kinds of all currently tracked processes."""
        with self._lock:
            return sorted(self._procs)

    def run(
        self,
        command: Command,
        kind: str,
        label: str,
        success_message: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
        shell: Optional[bool] = None,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Run a command to completion, blocking the calling thread.

        Preconditions are checked before anything is spawned, in this order:
        the runner is not cancelled, the token is not cancelled, and no process
        of the same kind is tracked.

        Args:
            command (Command): A shell string or an argument sequence.
            kind (str): Mutual-exclusion key for the task.
            label (str): Human-readable label logged when the process starts.
            success_message (Optional[str]): Logged when the process exits with 0.
            cancel_token (Optional[CancelToken]): Per-call cancellation handle.
                When it fires, the process is sent SIGINT.
            shell (Optional[bool]): Run through the shell. Defaults to True for
                string commands and False for argument sequences.
            cwd (Optional[str]): Working directory for the child.
            env (Optional[Mapping[str, str]]): Environment for the child.

        Returns:
            None

        Raises:
            AlreadyCancelledError: If the runner is globally cancelled.
            AbortedBeforeStartError: If ``cancel_token`` is already cancelled.
            DuplicateKindError: If a process of ``kind`` is already running.
            SpawnError: If the OS could not start the process.
            TaskCancelledError: If cancellation was requested while it ran.
            TaskFailedError: If it exited non-zero or was killed by a signal.
        """
        if shell is None:
            shell = isinstance(command, str)

        with self._lock:
            if self._cancelled:
                raise AlreadyCancelledError(kind)
            if cancel_token is not None and cancel_token.is_cancelled:
                raise AbortedBeforeStartError(kind)
            if kind in self._procs:
                raise DuplicateKindError(kind)

            logger.info(label)
            try:
                proc = subprocess.Popen(
                    command,
                    shell=shell,
                    cwd=cwd,
                    env=dict(env) if env is not None else None,
                    start_new_session=_USE_PROCESS_GROUPS,
                )
            except OSError as e:
                logger.error(f"Failed to start {label}: {e}")
                raise SpawnError(label, kind, e) from e
            self._procs[kind] = proc

        logger.debug(f"Spawned {kind} (PID={proc.pid}): {command}")

        def abort() -> None:
            self._send_signal(kind, proc, signal.SIGINT)

        if cancel_token is not None:
            cancel_token.add_callback(abort)

        try:
            returncode = proc.wait()
        finally:
            with self._lock:
                if self._procs.get(kind) is proc:
                    del self._procs[kind]
            if cancel_token is not None:
                cancel_token.remove_callback(abort)

        # Negative return codes mean the child was terminated by that signal.
        code: Optional[int] = returncode
        sig: Optional[int] = None
        if returncode < 0:
            code, sig = None, -returncode

        if self._cancelled or (cancel_token is not None and cancel_token.is_cancelled):
            logger.debug(f"{kind} cancelled (code={code}, signal={sig})")
            raise TaskCancelledError(kind, code, sig)

        if returncode == 0:
            if success_message:
                logger.info(success_message)
            return

        logger.error(
            f"{label} failed (code={'unknown' if code is None else code}, "
            f"signal={_signal_name(sig)})"
        )
        raise TaskFailedError(label, kind, code, sig)

    def cancel_all(self, sig: int = signal.SIGINT) -> None:
        """Mark the runner cancelled and signal every tracked process.

        Does not wait for the processes to exit.

        Args:
            sig (int): Signal to send. Defaults to SIGINT.

        Returns:
            None
        """
        with self._lock:
            self._cancelled = True
            procs = list(self._procs.items())

        for kind, proc in procs:
            self._send_signal(kind, proc, sig)

    def cancel_kind(self, kind: str, sig: int = signal.SIGINT) -> None:
        """Signal a single tracked process without setting the cancelled flag.

        Args:
            kind (str): The task kind to signal.
            sig (int): Signal to send. Defaults to SIGINT.

        Returns:
            None
        """
        with self._lock:
            proc = self._procs.get(kind)
        if proc is not None:
            self._send_signal(kind, proc, sig)

    def _send_signal(self, kind: str, proc: subprocess.Popen, sig: int) -> None:
        if proc.returncode is not None:
            # Already reaped; its pid may belong to someone else now.
            return
        try:
            if _USE_PROCESS_GROUPS:
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
            logger.debug(f"Sent {_signal_name(sig)} to {kind} (PID={proc.pid})")
        except (OSError, ValueError) as e:
            # Process already gone or signal unsupported on this platform.
            logger.debug(f"Could not signal {kind} (PID={proc.pid}): {e}")

    def __repr__(self) -> str:
        return f"<ProcessRunner running={self.running_kinds()} cancelled={self._cancelled}>"


def _signal_name(sig: Optional[int]) -> str:
    if sig is None:
        return "none"
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


def can_execute(program: str) -> bool:
    """Check whether ``program --version`` runs successfully.

    Used to confirm that a script runtime (e.g. ``bun``) is installed before
    any pipeline step that depends on it is started.

    Args:
        program (str): Executable name or path.

    Returns:
        bool: True if the program started and exited with status 0.
    """
    try:
        result = subprocess.run(
            [program, "--version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as e:
        logger.debug(f"Runtime probe for {program} failed: {e}")
        return False
    return result.returncode == 0
