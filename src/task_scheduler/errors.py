from typing import Optional


class SchedulerError(Exception):
    """
    Base class for all errors raised by the scheduler core.
    """


class ScheduleValidationError(SchedulerError, ValueError):
    """
    A schedule definition is malformed. Raised synchronously when a job is
    created or updated; the job is never persisted.
    """


class StorageError(SchedulerError):
    """
    The storage layer failed. The scheduler treats this as retryable at the
    next poll tick.
    """


class InvalidStateTransition(SchedulerError):
    """
    An execution was moved out of a terminal state or into an unreachable one.
    """


class UnknownTaskError(SchedulerError, KeyError):
    """
    No task is registered under the requested name.
    """

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown task"


class JobNotFoundError(SchedulerError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Job not found"


class TaskExecutionError(SchedulerError):
    """
    Raised by task handlers to classify their own failure.

    Handlers may raise any exception; this hierarchy only exists so that a
    handler can say whether a retry makes sense.
    """
    retryable: bool = True

    def __init__(self, message: str = "", retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class TransientExecutionError(TaskExecutionError):
    retryable = True


class FatalExecutionError(TaskExecutionError):
    retryable = False


class TaskCancelledError(SchedulerError):
    """
    Raised by CancellationSignal.raise_if_cancelled() once cancellation has been
    requested.
    """


class ExecutionTimeoutError(TaskCancelledError):
    """
    Cancellation was requested because the per-job timeout elapsed.
    """
