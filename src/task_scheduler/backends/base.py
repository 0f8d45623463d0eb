from abc import ABC
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from task_scheduler.calculator import next_fire_time, validate_schedule
from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.execution import TaskExecution
from task_scheduler.domain.health import HealthAggregate
from task_scheduler.domain.job import RecurringJobDefinition
from task_scheduler.domain.schedule import utcnow
from task_scheduler.domain.task import TaskDefinition
from task_scheduler.errors import ScheduleValidationError
from task_scheduler.scheduler import RecurringJobScheduler
from task_scheduler.storages.protocol import Storage
from task_scheduler.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


class BaseBackend(ABC):
    """
    Administrative operations over jobs, executions and health.

    Jobs are validated before they reach storage: an invalid schedule, an
    unknown task or a request that does not match the task's schema is
    rejected and nothing is persisted.
    """

    def __init__(
        self,
        storage: Storage,
        registry: TaskRegistry,
        config: Optional[SchedulerConfig] = None,
        scheduler: Optional[RecurringJobScheduler] = None,
    ):
        self.storage: Storage = storage
        self.registry: TaskRegistry = registry
        self.config: SchedulerConfig = config or SchedulerConfig()
        self.scheduler: RecurringJobScheduler = scheduler or RecurringJobScheduler(storage, registry, self.config)

    async def start(self):
        pass

    async def stop(self):
        pass

    def _validate_job(self, job: RecurringJobDefinition) -> None:
        validate_schedule(job.schedule)
        self.registry.validate_request(job.task_name, job.parameters)

    def _first_run(self, job: RecurringJobDefinition, now: Optional[datetime]) -> datetime:
        next_run = next_fire_time(job.schedule, now or utcnow())
        if next_run is None:
            raise ScheduleValidationError(f"Schedule of job '{job.name}' has no future fire time")
        return next_run

    # Jobs

    async def create_job(self, job: RecurringJobDefinition, now: Optional[datetime] = None) -> str:
        """
        Validate and store a new recurring job.

        Raises:
            ScheduleValidationError: If the schedule is invalid or never fires again.
            UnknownTaskError: If the job's task is not registered.
            ValueError: If the parameters do not match the task's request schema.
        """
        self._validate_job(job)
        job.next_run_at = self._first_run(job, now)
        job_id = await self.storage.create_job(job)
        logger.info("Created job %s ('%s'), first run at %s", job_id, job.name, job.next_run_at)
        return job_id

    async def get_job(self, job_id: str) -> Optional[RecurringJobDefinition]:
        return await self.storage.get_job(job_id)

    async def list_jobs(self, limit: int = 100, offset: int = 0) -> List[RecurringJobDefinition]:
        return await self.storage.list_jobs(limit, offset)

    async def update_job(self, job: RecurringJobDefinition, now: Optional[datetime] = None) -> bool:
        """
        Store a modified job. The next run is recomputed from its schedule.
        """
        self._validate_job(job)
        job.next_run_at = self._first_run(job, now)
        return await self.storage.update_job(job)

    async def enable_job(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """
        Enable a job. Fires missed while it was disabled are skipped.
        """
        job = await self.get_job(job_id)
        if job:
            job.enable()
            job.next_run_at = self._first_run(job, now)
            return await self.storage.update_job(job)
        return False

    async def disable_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job:
            job.disable()
            return await self.storage.update_job(job)
        return False

    async def delete_job(self, job_id: str) -> bool:
        """
        Delete a job. Jobs with recorded executions are disabled instead so
        their history stays readable.
        """
        if await self.storage.count_executions(job_id):
            logger.info("Job %s has executions, disabling it instead of deleting it", job_id)
            return await self.disable_job(job_id)
        return await self.storage.delete_job(job_id)

    # Executions

    async def request_execution(
        self,
        task_name: str,
        request: Any = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
    ) -> TaskExecution:
        return await self.scheduler.submit(task_name, request, max_attempts=max_attempts, timeout=timeout)

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Signal cancellation to an execution running on this worker.
        """
        return self.scheduler.cancel(execution_id)

    async def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        return await self.storage.get_execution(execution_id)

    async def list_executions(self, job_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 20) -> List[TaskExecution]:
        return await self.storage.list_executions(job_id=job_id, task_name=task_name, limit=limit)

    # Health and tasks

    def get_health(self, subject: str) -> HealthAggregate:
        return self.scheduler.health.aggregate(subject)

    def list_health(self) -> List[HealthAggregate]:
        return self.scheduler.health.aggregates()

    def list_tasks(self) -> List[TaskDefinition]:
        return self.registry.definitions()
