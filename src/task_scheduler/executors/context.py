import asyncio
import logging
import threading
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from task_scheduler.errors import ExecutionTimeoutError, TaskCancelledError

logger = logging.getLogger(__name__)


class CancellationReason:
    REQUESTED = "requested"
    TIMEOUT = "timeout"


class CancellationSignal:
    """
    Cooperative cancellation flag shared between the runner and a handler.

    The runner sets it; the handler decides when to look at it. Safe to use
    from the event loop and from worker threads.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def cancel(self, reason: str = CancellationReason.REQUESTED) -> bool:
        """
        Request cancellation. Only the first request is recorded.

        Returns:
            bool: True if this call set the signal.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            waiters, self._waiters = self._waiters, []
        for loop, waiter in waiters:
            try:
                loop.call_soon_threadsafe(_wake, waiter)
            except RuntimeError:
                # The waiting loop is closed.
                pass
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        if self._reason == CancellationReason.TIMEOUT:
            raise ExecutionTimeoutError("Execution timed out")
        raise TaskCancelledError("Execution was cancelled")

    async def wait(self) -> None:
        """
        Wait until cancellation is requested.
        """
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append((loop, waiter))
        try:
            await waiter
        finally:
            with self._lock:
                if (loop, waiter) in self._waiters:
                    self._waiters.remove((loop, waiter))


def _wake(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class ProgressReport(BaseModel):
    percent: float = Field(0.0, ge=0.0, le=100.0)
    message: Optional[str] = None
    sequence: int = Field(0, description="Number of reports received so far")


class ExecutionContext:
    """
    Per-execution view handed to a task handler.

    Progress reports may come from a worker thread while the runner reads the
    latest one, so only the latest snapshot is kept, under a lock.
    """

    def __init__(
        self,
        execution_id: str,
        task_name: str,
        attempt: int = 0,
        job_id: Optional[str] = None,
        on_progress: Optional[Callable[[ProgressReport], None]] = None,
    ):
        self.execution_id = execution_id
        self.task_name = task_name
        self.attempt = attempt
        self.job_id = job_id
        self._on_progress = on_progress
        self._lock = threading.Lock()
        self._progress = ProgressReport()
        self._anomalies: List[str] = []

    def report_progress(self, percent: float, message: Optional[str] = None) -> None:
        """
        Report progress. Out-of-range values are clamped to [0, 100] and
        reports that go backwards are kept; both are logged as anomalies but
        never rejected.
        """
        with self._lock:
            anomaly = None
            clamped = min(100.0, max(0.0, float(percent)))
            if clamped != percent:
                anomaly = f"progress {percent} out of range, clamped to {clamped}"
            elif clamped < self._progress.percent:
                anomaly = f"progress went backwards from {self._progress.percent} to {clamped}"
            if anomaly:
                self._anomalies.append(anomaly)
            report = ProgressReport(percent=clamped, message=message, sequence=self._progress.sequence + 1)
            self._progress = report

        if anomaly:
            logger.warning("Execution %s (%s): %s", self.execution_id, self.task_name, anomaly)
        logger.debug("Execution %s progress %.1f%% %s", self.execution_id, report.percent, message or "")
        if self._on_progress:
            self._on_progress(report)

    @property
    def progress(self) -> ProgressReport:
        with self._lock:
            return self._progress

    @property
    def anomalies(self) -> List[str]:
        with self._lock:
            return list(self._anomalies)
