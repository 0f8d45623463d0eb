from typing import Any, Protocol, Union

from task_scheduler.domain.outcome import Failed, Succeeded
from task_scheduler.executors.context import CancellationSignal, ExecutionContext


TaskResult = Union[Succeeded, Failed, Any]


class TaskHandler(Protocol):
    """
    Protocol class for task handlers.

    Handlers may also define the optional class attributes ``task_name``,
    ``description``, ``tags`` and ``request_schema``; the registry reads them
    once at registration.
    """

    async def execute(self, request: Any, context: ExecutionContext, cancellation: CancellationSignal) -> TaskResult:
        """
        Run the task.

        ``execute`` may also be a plain (synchronous) method, in which case it
        runs in a worker thread.

        Args:
            request: The request payload of the execution.
            context: Execution context, used to report progress.
            cancellation: Signal the handler should check regularly.

        Returns:
            Succeeded(payload) or Failed(message, retryable). Any other return
            value is treated as the payload of a successful run.
        """
        ...
