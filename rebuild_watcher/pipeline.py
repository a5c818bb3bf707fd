"""Ordered, fail-fast build pipeline.

A pipeline is a list of steps executed in order for one trigger. Each step is
either a :class:`ProcessStep` backed by the :class:`ProcessRunner` or a
:class:`CallableStep` wrapping opaque in-process work. Execution stops at the
first step that fails or is cancelled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from rebuild_watcher.errors import (
    AbortedBeforeStartError,
    AlreadyCancelledError,
    TaskCancelledError,
)
from rebuild_watcher.runner import CancelToken, Command, ProcessRunner

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Task",
    "Step",
    "ProcessStep",
    "CallableStep",
    "PipelineStatus",
    "PipelineResult",
    "Pipeline",
]

WATCHING_MESSAGE = "Watching for changes..."

_CANCELLED_ERRORS = (TaskCancelledError, AlreadyCancelledError, AbortedBeforeStartError)


@dataclass(frozen=True)
class Task:
    """An external command run as one pipeline step.

    Attributes:
        kind (str): Unique key; only one process per kind may run at a time.
        command (Command): Shell string or argument tuple.
        label (str): Logged when the step starts.
        success_message (Optional[str]): Logged when the step succeeds.
        cwd (Optional[str]): Working directory for the command.
    """

    kind: str
    command: Command
    label: str
    success_message: Optional[str] = None
    cwd: Optional[str] = None


class Step:
    """Base class for pipeline steps."""

    kind: str
    label: str

    def execute(self, runner: ProcessRunner, cancel_token: CancelToken) -> None:
        raise NotImplementedError


class ProcessStep(Step):
    """Run a :class:`Task` through the process runner."""

    def __init__(self, task: Task) -> None:
        self.task = task
        self.kind = task.kind
        self.label = task.label

    def execute(self, runner: ProcessRunner, cancel_token: CancelToken) -> None:
        runner.run(
            self.task.command,
            kind=self.task.kind,
            label=self.task.label,
            success_message=self.task.success_message,
            cancel_token=cancel_token,
            cwd=self.task.cwd,
        )

    def __repr__(self) -> str:
        return f"<ProcessStep kind={self.kind}>"


class CallableStep(Step):
    """Run an in-process function as a step.

    The function receives the run's cancel token and is expected to return
    early once it is cancelled. A step whose token was cancelled while it ran
    settles as cancelled regardless of how the function returned.
    """

    def __init__(
        self,
        kind: str,
        label: str,
        func: Callable[[CancelToken], None],
        success_message: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.label = label
        self.func = func
        self.success_message = success_message

    def execute(self, runner: ProcessRunner, cancel_token: CancelToken) -> None:
        if cancel_token.is_cancelled or runner.is_cancelled:
            raise AbortedBeforeStartError(self.kind)
        logger.info(self.label)
        self.func(cancel_token)
        if cancel_token.is_cancelled or runner.is_cancelled:
            raise TaskCancelledError(self.kind)
        if self.success_message:
            logger.info(self.success_message)

    def __repr__(self) -> str:
        return f"<CallableStep kind={self.kind}>"


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineResult:
    """Outcome of a single pipeline run.

    Attributes:
        run_id (int): Identity of the run that produced this result.
        status (PipelineStatus): How the run ended.
        error (Optional[BaseException]): The error of the step that stopped the run.
        completed (List[str]): Kinds of the steps that succeeded, in order.
        duration (float): Wall time of the run in seconds.
    """

    run_id: int
    status: PipelineStatus
    error: Optional[BaseException] = None
    completed: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status is PipelineStatus.FAILED

    @property
    def cancelled(self) -> bool:
        return self.status is PipelineStatus.CANCELLED


class Pipeline:
    """Execute steps sequentially, stopping at the first failure or cancellation.

    Attributes:
        steps (List[Step]): The ordered steps. Plain :class:`Task` objects are
            wrapped in :class:`ProcessStep`.
        runner (ProcessRunner): Runner used by process-backed steps.
    """

    def __init__(self, steps: Sequence[Union[Step, Task]], runner: ProcessRunner) -> None:
        self.steps: List[Step] = [
            ProcessStep(step) if isinstance(step, Task) else step for step in steps
        ]
        self.runner = runner

    @property
    def kinds(self) -> List[str]:
        return [step.kind for step in self.steps]

    def run(self, cancel_token: Optional[CancelToken] = None, run_id: int = 0) -> PipelineResult:
        """Run every step in order.

        Args:
            cancel_token (Optional[CancelToken]): Shared token for the whole run.
            run_id (int): Identity of the run, used in logs and the result.

        Returns:
            PipelineResult: SUCCEEDED if every step succeeded, CANCELLED if the
                token (or the runner) was cancelled, FAILED otherwise with the
                failing step's error attached.
        """
        token = cancel_token if cancel_token is not None else CancelToken()
        started = time.monotonic()
        completed: List[str] = []

        def result(status: PipelineStatus, error: Optional[BaseException] = None) -> PipelineResult:
            return PipelineResult(
                run_id=run_id,
                status=status,
                error=error,
                completed=list(completed),
                duration=time.monotonic() - started,
            )

        for step in self.steps:
            if token.is_cancelled or self.runner.is_cancelled:
                logger.info(f"Run #{run_id} cancelled before {step.kind}")
                return result(PipelineStatus.CANCELLED)
            try:
                step.execute(self.runner, token)
            except _CANCELLED_ERRORS as e:
                logger.info(f"Run #{run_id} cancelled during {step.kind}")
                return result(PipelineStatus.CANCELLED, e)
            except Exception as e:
                if token.is_cancelled:
                    logger.info(f"Run #{run_id} cancelled during {step.kind}")
                    return result(PipelineStatus.CANCELLED, e)
                logger.error(f"Run #{run_id} failed at step '{step.kind}': {e}")
                return result(PipelineStatus.FAILED, e)
            completed.append(step.kind)

        logger.info(WATCHING_MESSAGE)
        return result(PipelineStatus.SUCCEEDED)

    def __repr__(self) -> str:
        return f"<Pipeline steps={self.kinds}>"
