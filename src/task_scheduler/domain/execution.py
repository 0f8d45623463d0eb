import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidStateTransition
from .outcome import Cancelled, ExecutionOutcome, Failed, Succeeded, TimedOut
from .schedule import UtcDatetime, utcnow


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


_OUTCOME_STATUS = {
    Succeeded: ExecutionStatus.SUCCEEDED,
    Failed: ExecutionStatus.FAILED,
    Cancelled: ExecutionStatus.CANCELLED,
    TimedOut: ExecutionStatus.TIMED_OUT,
}


class ErrorDetail(BaseModel):
    kind: str = Field(..., description="Error classification")
    message: str = Field("", description="Error message")


class TaskExecution(BaseModel):
    """
    Represents one attempt to run a task.

    A retry never reuses an execution: it is a new TaskExecution with an
    incremented ``attempt``, and the previous one stays as history.
    """
    id: str = Field(default_factory=lambda: f"exe_{uuid.uuid4().hex[:12]}", description="Unique execution identifier")
    task_name: str = Field(..., description="Name of the registered task to run")
    request: Optional[Any] = Field(None, description="Opaque request payload handed to the task")
    status: ExecutionStatus = ExecutionStatus.PENDING
    progress: float = Field(0.0, ge=0.0, le=100.0, description="Latest reported progress percentage")
    progress_message: Optional[str] = Field(None, description="Latest reported progress message")
    created_at: UtcDatetime = Field(default_factory=utcnow)
    scheduled_at: Optional[UtcDatetime] = Field(None, description="Earliest start time, set for delayed retries")
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    result: Optional[Any] = None
    error: Optional[ErrorDetail] = None
    attempt: int = Field(0, ge=0, description="0 for the initial run, incremented for every retry")
    job_id: Optional[str] = Field(None, description="Recurring job this execution belongs to, if any")
    fire_time: Optional[UtcDatetime] = Field(None, description="Scheduled fire time this execution serves")
    worker_id: Optional[str] = Field(None, description="Worker that ran the execution")
    catch_up: bool = Field(False, description="True for the single catch-up run of a misfired job")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def set_status(self, status: ExecutionStatus, at: Optional[datetime] = None):
        """
        Move the execution along Pending -> Running -> terminal.
        """
        if self.status.is_terminal:
            raise InvalidStateTransition(f"Execution {self.id} is already {self.status.value}")
        if status == ExecutionStatus.PENDING:
            raise InvalidStateTransition(f"Execution {self.id} cannot go back to pending")
        if status == ExecutionStatus.RUNNING and self.status != ExecutionStatus.PENDING:
            raise InvalidStateTransition(f"Execution {self.id} is already running")

        self.status = status
        if status == ExecutionStatus.RUNNING:
            self.started_at = at or utcnow()
        else:
            self.completed_at = at or utcnow()

    def complete(self, outcome: ExecutionOutcome, at: Optional[datetime] = None):
        """
        Record the terminal outcome of the execution.
        """
        status = _OUTCOME_STATUS[type(outcome)]
        self.set_status(status, at=at)
        if isinstance(outcome, Succeeded):
            self.result = outcome.payload
        elif isinstance(outcome, Failed):
            self.error = ErrorDetail(kind=outcome.error_kind, message=outcome.message)
        elif isinstance(outcome, Cancelled):
            self.error = ErrorDetail(kind="Cancelled", message=outcome.reason)
        else:
            self.error = ErrorDetail(kind="TimedOut", message=outcome.message)

    def next_attempt(self, scheduled_at: Optional[datetime] = None) -> "TaskExecution":
        """
        Build the Pending execution that retries this one.
        """
        return TaskExecution(
            task_name=self.task_name,
            request=self.request,
            attempt=self.attempt + 1,
            job_id=self.job_id,
            fire_time=self.fire_time,
            scheduled_at=scheduled_at,
        )

