"""
Run coordinator: single-flight pipeline execution with a depth-1 rebuild queue.

Responsibility:
    Drive the pipeline "once at a time". ``run_once`` is single-flight, ``cancel``
    interrupts the active run, and ``request_rebuild`` feeds change triggers into
    a mailbox of depth one consumed by a dedicated worker thread.

State machine:
    - **Idle**: no run is active.
    - **Running**: a run is executing and has not been asked to stop.
    - **Settling**: a run has been cancelled and its processes are exiting.

Key Invariants:
    - At most one pipeline run is active at any instant.
    - At most one trigger is queued behind it. Triggers arriving while one is
      already queued only update the informational trigger path.
    - The worker never starts a run before the previous run has settled, so two
      runs never have live processes at the same time.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from rebuild_watcher.pipeline import Pipeline, PipelineResult
from rebuild_watcher.runner import CancelToken

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["CoordinatorState", "PipelineRun", "RunCoordinator"]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SETTLING = "settling"


@dataclass
class PipelineRun:
    """One execution of the pipeline for one trigger.

    Attributes:
        run_id (int): Monotonic identity; higher ids are newer runs.
        trigger (Optional[str]): Relative path that caused the run, if any.
            Informational only; the pipeline always rebuilds the whole tree.
        cancel_token (CancelToken): Token shared by every step of the run.
        started_at (float): ``time.monotonic()`` at creation.
    """

    run_id: int
    trigger: Optional[str] = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    started_at: float = field(default_factory=time.monotonic)


class RunCoordinator:
    """Coordinate pipeline runs triggered by the entry point and the watcher.

    Attributes:
        pipeline (Pipeline): The pipeline to execute.
        last_run (Optional[PipelineRun]): The most recently started run.
        last_result (Optional[PipelineResult]): Result of the last settled run.

    Example:
        >>> coordinator = RunCoordinator(Pipeline(tasks, ProcessRunner()))
        >>> result = coordinator.run_once()  # initial run, blocking
        >>> coordinator.start()              # start the rebuild worker
        >>> coordinator.request_rebuild("queries.ts")
        >>> coordinator.stop()
    """

    def __init__(self, pipeline: Pipeline) -> None:
        self.pipeline = pipeline
        self.runner = pipeline.runner

        self._condition = threading.Condition()
        self._run_ids = itertools.count(1)
        self._active_run: Optional[PipelineRun] = None
        self._pending = False
        self._pending_path: Optional[str] = None
        self._worker_busy = False
        self._stopping = False
        self._worker: Optional[threading.Thread] = None

        self.last_run: Optional[PipelineRun] = None
        self.last_result: Optional[PipelineResult] = None

        # Metrics
        self.runs_started = 0
        self.runs_succeeded = 0
        self.runs_failed = 0
        self.runs_cancelled = 0
        self.triggers_received = 0
        self.triggers_coalesced = 0

    @property
    def running(self) -> bool:
        return self._active_run is not None

    @property
    def state(self) -> CoordinatorState:
        run = self._active_run
        if run is None:
            return CoordinatorState.IDLE
        if run.cancel_token.is_cancelled:
            return CoordinatorState.SETTLING
        return CoordinatorState.RUNNING

    @property
    def pending(self) -> bool:
        return self._pending

    def run_once(self, trigger: Optional[str] = None) -> Optional[PipelineResult]:
        """Execute the pipeline once, blocking until it settles.

        If a run is already active this is a no-op and returns None.

        Args:
            trigger (Optional[str]): Relative path that caused the run.

        Returns:
            Optional[PipelineResult]: The run's result, or None if another run
                was already in progress.
        """
        with self._condition:
            if self._active_run is not None:
                logger.debug(
                    f"Run #{self._active_run.run_id} already in progress, ignoring run_once()"
                )
                return None
            run = PipelineRun(run_id=next(self._run_ids), trigger=trigger)
            self._active_run = run
            self.last_run = run
            self.runs_started += 1
            self.runner.reset_cancelled()

        if trigger:
            logger.info(f"Starting run #{run.run_id} (triggered by {trigger})")
        else:
            logger.info(f"Starting run #{run.run_id}")

        result: Optional[PipelineResult] = None
        try:
            result = self.pipeline.run(run.cancel_token, run.run_id)
        finally:
            with self._condition:
                self._active_run = None
                self.runner.reset_cancelled()
                if result is not None:
                    self.last_result = result
                    if result.succeeded:
                        self.runs_succeeded += 1
                    elif result.cancelled:
                        self.runs_cancelled += 1
                    else:
                        self.runs_failed += 1
                self._condition.notify_all()

        elapsed = time.monotonic() - run.started_at
        if result.cancelled:
            logger.info(f"Run #{run.run_id} cancelled after {elapsed:.2f}s")
        else:
            logger.debug(f"Run #{run.run_id} {result.status.value} in {elapsed:.2f}s")
        return result

    def cancel(self) -> None:
        """Cancel the active run, if any.

        The run's token is cancelled and the runner signals all tracked
        processes. Does not wait for the run to settle. No-op while idle.

        Returns:
            None
        """
        with self._condition:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        run = self._active_run
        if run is None or run.cancel_token.is_cancelled:
            return
        logger.info(f"Cancelling run #{run.run_id}...")
        run.cancel_token.request_cancel()
        self.runner.cancel_all()

    def request_rebuild(self, path: Optional[str] = None) -> bool:
        """Queue a rebuild, cancelling the active run.

        This never blocks on a pipeline run. The worker thread starts the
        rebuild once the cancelled run has fully settled.

        Args:
            path (Optional[str]): Relative path of the change that triggered it.

        Returns:
            bool: True if a new rebuild was queued, False if one was already
                queued (the request is coalesced into it) or the coordinator
                is stopping.
        """
        with self._condition:
            if self._stopping:
                return False
            self.triggers_received += 1
            self._pending_path = path
            self._cancel_locked()
            if self._pending:
                self.triggers_coalesced += 1
                logger.debug(f"Rebuild already queued, coalescing change: {path}")
                return False
            self._pending = True
            self._condition.notify_all()
            return True

    def start(self) -> None:
        """Start the rebuild worker thread.

        Returns:
            None
        """
        with self._condition:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stopping = False
            self._worker = threading.Thread(
                target=self._worker_loop,
                name="RebuildWorker",
                daemon=True,
            )
            self._worker.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Drop any queued rebuild, cancel the active run and stop the worker.

        Args:
            timeout (Optional[float]): Seconds to wait for the worker to exit.

        Returns:
            None
        """
        with self._condition:
            self._stopping = True
            self._pending = False
            self._cancel_locked()
            self._condition.notify_all()
            worker = self._worker

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
            if worker.is_alive():
                logger.warning("Rebuild worker did not terminate within timeout.")
        self._worker = None

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is active and no rebuild is queued.

        Args:
            timeout (Optional[float]): Seconds to wait, or None to wait forever.

        Returns:
            bool: True if the coordinator became idle within the timeout.
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: not self._pending and not self._worker_busy and self._active_run is None,
                timeout=timeout,
            )

    def _worker_loop(self) -> None:
        """Consume queued rebuilds one at a time."""
        while True:
            with self._condition:
                self._condition.wait_for(
                    lambda: self._stopping or (self._pending and self._active_run is None)
                )
                if self._stopping:
                    break
                self._pending = False
                path = self._pending_path
                self._worker_busy = True

            try:
                result = self.run_once(trigger=path)
                if result is None:
                    # Another caller started a run in between; try again after it.
                    with self._condition:
                        if not self._stopping:
                            self._pending = True
                elif result.failed:
                    logger.warning("Rebuild failed. Waiting for the next change...")
            except Exception as e:
                logger.error(f"Error in rebuild worker: {e}", exc_info=True)
            finally:
                with self._condition:
                    self._worker_busy = False
                    self._condition.notify_all()

        logger.debug("Rebuild worker stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        """Return run and trigger counters.

        Returns:
            Dict[str, Any]: Counters plus the current state name.
        """
        with self._condition:
            return {
                "state": self.state.value,
                "runs_started": self.runs_started,
                "runs_succeeded": self.runs_succeeded,
                "runs_failed": self.runs_failed,
                "runs_cancelled": self.runs_cancelled,
                "triggers_received": self.triggers_received,
                "triggers_coalesced": self.triggers_coalesced,
                "pending": self._pending,
            }

    def __repr__(self) -> str:
        return f"<RunCoordinator state={self.state.value} pending={self._pending}>"
