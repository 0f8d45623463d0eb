from datetime import datetime
from typing import List, Optional, Protocol

from task_scheduler.domain.execution import TaskExecution
from task_scheduler.domain.health import HealthSample
from task_scheduler.domain.job import RecurringJobDefinition
from task_scheduler.domain.outcome import ExecutionOutcome


class Storage(Protocol):
    """
    Persistence operations required by the scheduler core.

    Every method may raise StorageError.
    """

    # Recurring jobs

    async def create_job(self, job: RecurringJobDefinition) -> str:
        """Create a new recurring job and return its ID."""
        ...

    async def get_job(self, job_id: str) -> Optional[RecurringJobDefinition]:
        """Retrieve a job by its ID."""
        ...

    async def update_job(self, job: RecurringJobDefinition) -> bool:
        """Update the administrative fields of a job (never its lease). Return True if the job exists."""
        ...

    async def delete_job(self, job_id: str) -> bool:
        """Physically delete a job. Return True if it existed."""
        ...

    async def list_jobs(self, limit: int = 100, offset: int = 0) -> List[RecurringJobDefinition]:
        """List jobs with pagination."""
        ...

    async def get_due_recurring_jobs(self, now: datetime) -> List[RecurringJobDefinition]:
        """Enabled jobs with next_run_at <= now whose lease is absent or expired."""
        ...

    async def try_claim_job(self, job_id: str, worker_id: str, lease_expiry: datetime, now: datetime) -> bool:
        """
        Atomically set the lease to (worker_id, lease_expiry) if the job is
        enabled, due at ``now`` and unclaimed or its lease expired.
        """
        ...

    async def renew_lease(self, job_id: str, worker_id: str, new_expiry: datetime) -> bool:
        """Extend the lease, only if ``worker_id`` still holds it."""
        ...

    async def release_job(self, job_id: str, worker_id: str) -> None:
        """Clear the lease if ``worker_id`` holds it."""
        ...

    async def update_next_run(self, job_id: str, next_run_at: Optional[datetime], last_run_at: Optional[datetime] = None) -> None:
        """Persist the next fire time. None disables the job."""
        ...

    # Executions

    async def save_execution(self, execution: TaskExecution) -> None:
        """Insert or update an execution."""
        ...

    async def update_progress(self, execution_id: str, percent: float, message: Optional[str]) -> None:
        """Store the latest progress of an execution."""
        ...

    async def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        """Retrieve an execution by its ID."""
        ...

    async def list_executions(self, job_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 20) -> List[TaskExecution]:
        """List executions, most recent first."""
        ...

    async def count_executions(self, job_id: str) -> int:
        """Number of executions that reference a job."""
        ...

    # Health

    async def append_health_sample(self, subject: str, outcome: ExecutionOutcome, recorded_at: datetime) -> None:
        """Record one execution outcome for a job or task."""
        ...

    async def list_health_samples(self, subject: str, since: Optional[datetime] = None) -> List[HealthSample]:
        """List samples of a subject, oldest first."""
        ...
