import asyncio
import inspect
import logging
import threading
from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Set

from pydantic_core import PydanticSerializationError, to_jsonable_python

from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.execution import ExecutionStatus, TaskExecution
from task_scheduler.domain.outcome import OUTCOME_TYPES, Cancelled, ExecutionOutcome, Failed, Succeeded, TimedOut
from task_scheduler.errors import StorageError, TaskCancelledError
from task_scheduler.executors.context import CancellationReason, CancellationSignal, ExecutionContext, ProgressReport
from task_scheduler.executors.protocol import TaskHandler
from task_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


class ExecutionRunner:
    """
    Runs one task execution to a terminal outcome.

    Errors raised by a handler never leave the runner: they are converted to a
    Failed outcome. Cancellation is cooperative; a handler that ignores the
    signal for longer than the grace period is abandoned, not stopped, and
    whatever it eventually returns is discarded.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        grace_period: timedelta = timedelta(seconds=10),
        worker_id: Optional[str] = None,
    ):
        self.storage = storage
        self.grace_period = grace_period
        self.worker_id = worker_id
        self._active: Dict[str, CancellationSignal] = {}
        self._abandoned: Set[asyncio.Future] = set()

    @classmethod
    def from_config(cls, config: SchedulerConfig, storage: Optional[Storage] = None, worker_id: Optional[str] = None) -> "ExecutionRunner":
        return cls(storage=storage, grace_period=config.cancellation_grace_period, worker_id=worker_id)

    @property
    def active_executions(self) -> List[str]:
        return list(self._active)

    def cancel(self, execution_id: str, reason: str = CancellationReason.REQUESTED) -> bool:
        """
        Signal cancellation to a running execution.

        Returns:
            bool: False if the execution is not running in this runner.
        """
        signal = self._active.get(execution_id)
        if signal is None:
            return False
        signal.cancel(reason)
        logger.info("Cancellation requested for execution %s", execution_id)
        return True

    async def run(
        self,
        handler: TaskHandler,
        request: Any,
        execution: TaskExecution,
        cancellation: Optional[CancellationSignal] = None,
        timeout: Optional[timedelta] = None,
    ) -> ExecutionOutcome:
        """
        Run ``handler`` for a Pending ``execution`` and record its outcome.

        Args:
            handler: The task handler.
            request: Request payload passed to the handler.
            execution: The execution record; moved to Running, then to a terminal state.
            cancellation: Signal shared with the caller. A new one is created if omitted.
            timeout: Optional limit after which the execution is cancelled and marked TimedOut.

        Returns:
            ExecutionOutcome: The terminal outcome, also stored on ``execution``.
        """
        cancellation = cancellation or CancellationSignal()
        if execution.worker_id is None:
            execution.worker_id = self.worker_id
        publisher = _ProgressPublisher(self.storage, execution.id)
        context = ExecutionContext(
            execution.id,
            execution.task_name,
            attempt=execution.attempt,
            job_id=execution.job_id,
            on_progress=publisher.notify,
        )

        execution.set_status(ExecutionStatus.RUNNING)
        await self._persist(execution)
        self._active[execution.id] = cancellation
        publisher.start()
        logger.info("Execution %s of task '%s' started (attempt %d)", execution.id, execution.task_name, execution.attempt)

        try:
            outcome = await self._supervise(handler, request, context, cancellation, timeout, execution)
        except asyncio.CancelledError:
            # The worker itself is shutting down.
            cancellation.cancel(CancellationReason.REQUESTED)
            outcome = Cancelled(reason="Worker shut down while the execution was running")
            self._finish(execution, context, outcome)
            await publisher.stop()
            await self._persist(execution)
            raise
        finally:
            self._active.pop(execution.id, None)

        await publisher.stop()
        self._finish(execution, context, outcome)
        await self._persist(execution)
        log = logger.info if outcome.is_success else logger.warning
        log("Execution %s of task '%s' finished: %s", execution.id, execution.task_name, execution.status.value)
        return outcome

    async def _supervise(
        self,
        handler: TaskHandler,
        request: Any,
        context: ExecutionContext,
        cancellation: CancellationSignal,
        timeout: Optional[timedelta],
        execution: TaskExecution,
    ) -> ExecutionOutcome:
        invocation = asyncio.ensure_future(self._invoke(handler, request, context, cancellation))
        watcher = asyncio.ensure_future(cancellation.wait())
        try:
            done, _ = await asyncio.wait(
                {invocation, watcher},
                timeout=timeout.total_seconds() if timeout is not None else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._abandon(invocation, execution.id)
            raise
        finally:
            watcher.cancel()

        if invocation in done:
            return self._classify(invocation, cancellation)

        if not cancellation.is_cancelled:
            logger.warning("Execution %s exceeded its timeout of %s", execution.id, timeout)
        cancellation.cancel(CancellationReason.TIMEOUT)

        try:
            done, _ = await asyncio.wait({invocation}, timeout=self.grace_period.total_seconds())
        except asyncio.CancelledError:
            self._abandon(invocation, execution.id)
            raise
        if invocation not in done:
            logger.warning(
                "Execution %s did not stop within %s after cancellation, abandoning it",
                execution.id, self.grace_period,
            )
            self._abandon(invocation, execution.id)
        elif not invocation.cancelled() and invocation.exception() is not None:
            # Typically the TaskCancelledError raised by raise_if_cancelled().
            logger.debug("Execution %s stopped with %r after cancellation", execution.id, invocation.exception())
        return self._cancelled_outcome(cancellation)

    async def _invoke(self, handler: TaskHandler, request: Any, context: ExecutionContext, cancellation: CancellationSignal) -> Any:
        if inspect.iscoroutinefunction(handler.execute):
            return await handler.execute(request, context, cancellation)
        result = await asyncio.to_thread(handler.execute, request, context, cancellation)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _classify(self, invocation: asyncio.Future, cancellation: CancellationSignal) -> ExecutionOutcome:
        if invocation.cancelled():
            return Cancelled(reason="Handler was cancelled")

        error = invocation.exception()
        if error is None:
            result = invocation.result()
            if isinstance(result, OUTCOME_TYPES) and not isinstance(result, Succeeded):
                return result
            if isinstance(result, Succeeded):
                result = result.payload
            # Results are stored as JSON; datetimes, models and the like are
            # converted here so the terminal state can always be persisted.
            try:
                return Succeeded(payload=to_jsonable_python(result))
            except PydanticSerializationError as e:
                logger.warning("Task handler returned a result that cannot be stored: %s", e)
                return Failed(error_kind="UnserializableResult", message=str(e), retryable=False)

        if isinstance(error, TaskCancelledError):
            return self._cancelled_outcome(cancellation)

        retryable = bool(getattr(error, "retryable", True))
        logger.warning("Task handler raised %s: %s", type(error).__name__, error, exc_info=error)
        return Failed(error_kind=type(error).__name__, message=str(error), retryable=retryable)

    def _cancelled_outcome(self, cancellation: CancellationSignal) -> ExecutionOutcome:
        if cancellation.reason == CancellationReason.TIMEOUT:
            return TimedOut()
        return Cancelled()

    def _finish(self, execution: TaskExecution, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        snapshot = context.progress
        if snapshot.sequence:
            execution.progress = snapshot.percent
            execution.progress_message = snapshot.message
        execution.complete(outcome)

    def _abandon(self, invocation: asyncio.Future, execution_id: str) -> None:
        self._abandoned.add(invocation)
        invocation.add_done_callback(partial(self._discard_late_result, execution_id))

    def _discard_late_result(self, execution_id: str, future: asyncio.Future) -> None:
        self._abandoned.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug("Discarding late error of abandoned execution %s: %r", execution_id, error)
        else:
            logger.debug("Discarding late result of abandoned execution %s", execution_id)

    async def _persist(self, execution: TaskExecution) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.save_execution(execution)
        except StorageError:
            logger.exception("Failed to persist execution %s (%s)", execution.id, execution.status.value)


class _ProgressPublisher:
    """
    Forwards progress reports to storage, keeping only the latest one.

    ``notify`` may be called from any thread; writes happen on the event loop.
    """

    def __init__(self, storage: Optional[Storage], execution_id: str):
        self._storage = storage
        self._execution_id = execution_id
        self._loop = asyncio.get_running_loop()
        self._pending = asyncio.Event()
        self._lock = threading.Lock()
        self._latest: Optional[ProgressReport] = None
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._publish_loop())

    def notify(self, report: ProgressReport) -> None:
        with self._lock:
            if self._closed:
                return
            self._latest = report
        try:
            self._loop.call_soon_threadsafe(self._pending.set)
        except RuntimeError:
            # Loop already closed; the report is dropped.
            pass

    async def stop(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._flush()

    async def _publish_loop(self) -> None:
        while True:
            await self._pending.wait()
            self._pending.clear()
            await self._flush()

    async def _flush(self) -> None:
        with self._lock:
            report, self._latest = self._latest, None
        if report is None or self._storage is None:
            return
        try:
            await self._storage.update_progress(self._execution_id, report.percent, report.message)
        except StorageError:
            logger.warning("Could not store progress of execution %s", self._execution_id, exc_info=True)
