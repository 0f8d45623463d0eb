"""
The polling loop that turns due recurring jobs into executions.

Each tick:

    1. load the enabled jobs whose next run is due and whose lease is free;
    2. claim each of them (only one worker wins a given fire);
    3. run the task, retrying failed attempts according to the retry policy
       while keeping the lease;
    4. persist the next run, computed from now, and release the lease;
    5. feed every outcome to the health monitor.

A failing storage call aborts the current tick only. Task errors never reach
this module; the runner turns them into outcomes.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set

from task_scheduler.calculator import is_misfire, next_fire_time
from task_scheduler.claimer import ClaimResult, JobClaimer, LeaseKeeper
from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.execution import ExecutionStatus, TaskExecution
from task_scheduler.domain.health import job_subject, task_subject
from task_scheduler.domain.job import RecurringJobDefinition
from task_scheduler.domain.outcome import Cancelled, ExecutionOutcome, Failed
from task_scheduler.domain.schedule import utcnow
from task_scheduler.errors import StorageError, UnknownTaskError
from task_scheduler.executors.context import CancellationSignal
from task_scheduler.health import HealthMonitor
from task_scheduler.retry import GiveUp, RetryPolicy
from task_scheduler.runner import ExecutionRunner
from task_scheduler.storages.protocol import Storage
from task_scheduler.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


class RecurringJobScheduler:
    def __init__(
        self,
        storage: Storage,
        registry: TaskRegistry,
        config: Optional[SchedulerConfig] = None,
        worker_id: Optional[str] = None,
        runner: Optional[ExecutionRunner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        health_monitor: Optional[HealthMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.storage = storage
        self.registry = registry
        self.config = config or SchedulerConfig()
        self.claimer = JobClaimer(storage, worker_id=worker_id, clock=clock)
        self.worker_id = self.claimer.worker_id
        self.runner = runner or ExecutionRunner.from_config(self.config, storage, worker_id=self.worker_id)
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.health = health_monitor or HealthMonitor.from_config(self.config)
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._background: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self.is_running: bool = False

    # Lifecycle

    async def start(self):
        """
        Start the polling loop in the background.
        """
        if not self.is_running:
            self.is_running = True
            self._loop_task = asyncio.create_task(self.run_forever())
            logger.info("Scheduler %s started (polling every %s)", self.worker_id, self.config.polling_interval)

    async def stop(self):
        """
        Stop polling and cancel the executions dispatched by this worker.
        """
        if not self.is_running:
            return
        self.is_running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        for task in self._background:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        logger.info("Scheduler %s stopped", self.worker_id)

    async def run_forever(self):
        """
        Poll until stopped. A failing tick is logged and the loop goes on.
        """
        while self.is_running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error in scheduler tick")
            await self._sleep(self.config.polling_interval.total_seconds())

    async def drain(self):
        """
        Wait for every background execution started by this worker.
        """
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Polling

    async def tick(self) -> List[TaskExecution]:
        """
        Run one polling cycle.

        Returns:
            List[TaskExecution]: The first execution of every fire this worker claimed.
        """
        now = self._clock()
        try:
            jobs = await self.storage.get_due_recurring_jobs(now)
        except StorageError:
            logger.exception("Tick at %s aborted: could not load due jobs", now)
            return []

        dispatched: List[TaskExecution] = []
        awaited: List[Coroutine] = []
        for job in jobs:
            if not job.is_due(now):
                continue
            try:
                claim = await self.claimer.try_claim(job.id, self.config.lease_duration, now)
            except StorageError:
                logger.exception("Tick at %s aborted while claiming job %s", now, job.id)
                break
            if claim is ClaimResult.ALREADY_CLAIMED:
                continue

            execution = self._first_execution(job, now)
            dispatched.append(execution)
            if job.concurrency.allow_overlap:
                if await self._start_overlapping(job, execution, now):
                    self._spawn(self._run_fire_attempts(job, execution))
            else:
                awaited.append(self._fire(job, execution, now))

        if awaited:
            await asyncio.gather(*awaited)
        return dispatched

    def _first_execution(self, job: RecurringJobDefinition, now: datetime) -> TaskExecution:
        fire_time = job.next_run_at
        catch_up = fire_time is not None and is_misfire(fire_time, now, self.config.polling_interval)
        if catch_up:
            logger.warning(
                "Job %s ('%s') missed its fire time %s, running a single catch-up execution",
                job.id, job.name, fire_time,
            )
        return TaskExecution(
            task_name=job.task_name,
            request=job.parameters,
            job_id=job.id,
            fire_time=fire_time,
            catch_up=catch_up,
            worker_id=self.worker_id,
        )

    async def _fire(self, job: RecurringJobDefinition, execution: TaskExecution, fired_at: datetime) -> None:
        """
        Run a non-overlapping fire while holding the job's lease, then
        reschedule the job and release the lease.
        """
        logger.info("Dispatching job %s ('%s') as execution %s", job.id, job.name, execution.id)
        try:
            await self._supersede_orphaned_retries(job)
            await self.storage.save_execution(execution)
            async with self.claimer.hold(job.id, self.config.lease_duration, self.config.renewal_interval) as keeper:
                await self._run_fire_attempts(job, execution, lease=keeper)
            if keeper.lost:
                logger.error("Job %s lost its lease during execution, leaving it to the new holder", job.id)
                return
            await self._reschedule(job, fired_at)
            await self.claimer.release(job.id)
        except StorageError:
            logger.exception("Storage failure while running job %s; its lease will expire", job.id)

    async def _start_overlapping(self, job: RecurringJobDefinition, execution: TaskExecution, fired_at: datetime) -> bool:
        """
        Overlapping jobs are rescheduled and released before they run so the
        next fire is not blocked by this one.
        """
        logger.info("Dispatching overlapping job %s ('%s') as execution %s", job.id, job.name, execution.id)
        try:
            await self.storage.save_execution(execution)
            await self._reschedule(job, fired_at)
            await self.claimer.release(job.id)
        except StorageError:
            logger.exception("Storage failure while dispatching job %s; its lease will expire", job.id)
            return False
        return True

    async def _supersede_orphaned_retries(self, job: RecurringJobDefinition) -> None:
        """
        Cancel Pending retries left behind by a worker that died during a
        backoff. Only called while holding the job's lease, so no live worker
        can still be waiting on them.
        """
        for stale in await self.storage.list_executions(job_id=job.id):
            if stale.status != ExecutionStatus.PENDING:
                continue
            stale.complete(Cancelled(reason="Superseded by a later fire of the job"))
            await self.storage.save_execution(stale)
            logger.warning("Cancelled orphaned retry %s of job %s (attempt %d)", stale.id, job.id, stale.attempt)

    async def _run_fire_attempts(
        self,
        job: RecurringJobDefinition,
        execution: TaskExecution,
        lease: Optional[LeaseKeeper] = None,
    ) -> ExecutionOutcome:
        max_attempts = job.max_retry_attempts
        if max_attempts is None:
            max_attempts = self.config.default_max_retry_attempts
        return await self._run_attempts(
            execution,
            max_attempts=max_attempts,
            timeout=job.timeout,
            timeout_is_fatal=job.concurrency.timeout_is_fatal,
            subjects=[job_subject(job.id), task_subject(job.task_name)],
            lease=lease,
        )

    async def _reschedule(self, job: RecurringJobDefinition, fired_at: datetime) -> None:
        now = self._clock()
        next_run = next_fire_time(job.schedule, now, strict=True)
        if next_run is None:
            logger.info("Job %s ('%s') has no future fire time, disabling it", job.id, job.name)
        else:
            logger.debug("Job %s next run at %s", job.id, next_run)
        await self.storage.update_next_run(job.id, next_run, last_run_at=fired_at)

    # Executions

    async def submit(
        self,
        task_name: str,
        request: Any = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
    ) -> TaskExecution:
        """
        Run a task once, outside of any recurring job.

        The execution is persisted as Pending and runs in the background with
        the usual retry policy.

        Raises:
            UnknownTaskError: If the task is not registered.
            ValueError: If the request does not match the task's schema.
            StorageError: If the execution cannot be persisted.
        """
        self.registry.validate_request(task_name, request)
        execution = TaskExecution(task_name=task_name, request=request, worker_id=self.worker_id)
        await self.storage.save_execution(execution)
        if max_attempts is None:
            max_attempts = self.config.default_max_retry_attempts
        self._spawn(self._run_attempts(
            execution,
            max_attempts=max_attempts,
            timeout=timeout,
            timeout_is_fatal=False,
            subjects=[task_subject(task_name)],
        ))
        logger.info("Submitted execution %s of task '%s'", execution.id, task_name)
        return execution

    def cancel(self, execution_id: str) -> bool:
        return self.runner.cancel(execution_id)

    async def _run_attempts(
        self,
        execution: TaskExecution,
        max_attempts: int,
        timeout: Optional[timedelta],
        timeout_is_fatal: bool,
        subjects: List[str],
        lease: Optional[LeaseKeeper] = None,
    ) -> ExecutionOutcome:
        """
        Run ``execution`` and its retries until the retry policy gives up.

        When ``lease`` is given, it is confirmed before a retry is scheduled
        and again before it starts; retries stop as soon as the job belongs
        to another worker.
        """
        while True:
            outcome = await self._run_once(execution, timeout)
            await self._record_health(subjects, outcome)

            decision = self.retry_policy.next_attempt(outcome, execution.attempt, max_attempts, timeout_is_fatal)
            if isinstance(decision, GiveUp):
                if not outcome.is_success:
                    logger.warning(
                        "Giving up on task '%s' after attempt %d: %s",
                        execution.task_name, execution.attempt, decision.reason,
                    )
                return outcome

            if lease is not None and not await lease.confirm():
                logger.error("Lease on job %s lost, not retrying execution %s", lease.job_id, execution.id)
                return outcome

            execution = execution.next_attempt(scheduled_at=self._clock() + decision.after)
            execution.worker_id = self.worker_id
            await self.storage.save_execution(execution)
            logger.warning(
                "Task '%s' failed, retrying in %.1fs as execution %s (attempt %d)",
                execution.task_name, decision.after.total_seconds(), execution.id, execution.attempt,
            )
            await self._sleep(decision.after.total_seconds())

            if lease is not None and not await lease.confirm():
                logger.error("Lease on job %s lost during backoff, dropping retry %s", lease.job_id, execution.id)
                execution.complete(Cancelled(reason="Lease on the job was lost before the retry started"))
                await self.storage.save_execution(execution)
                return outcome

    async def _run_once(self, execution: TaskExecution, timeout: Optional[timedelta]) -> ExecutionOutcome:
        try:
            task = self.registry.get(execution.task_name)
        except UnknownTaskError as e:
            logger.error("Execution %s refers to an unknown task: %s", execution.id, e)
            outcome = Failed(error_kind="UnknownTaskError", message=str(e), retryable=False)
            execution.complete(outcome)
            await self.storage.save_execution(execution)
            return outcome

        async with self._semaphore:
            return await self.runner.run(task.handler, execution.request, execution, CancellationSignal(), timeout)

    async def _record_health(self, subjects: List[str], outcome: ExecutionOutcome) -> None:
        at = self._clock()
        for subject in subjects:
            self.health.record(subject, outcome, at)
            try:
                await self.storage.append_health_sample(subject, outcome, at)
            except StorageError:
                logger.warning("Could not store health sample for %s", subject, exc_info=True)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background execution failed: %s", error, exc_info=error)
