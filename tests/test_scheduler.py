import asyncio
from datetime import timedelta

import pytest

from task_scheduler.calculator import next_fire_time
from task_scheduler.claimer import ClaimResult, JobClaimer
from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.execution import ExecutionStatus, TaskExecution
from task_scheduler.domain.health import AlertState, job_subject, task_subject
from task_scheduler.domain.job import ConcurrencyPolicy, RecurringJobDefinition
from task_scheduler.domain.outcome import Failed
from task_scheduler.domain.schedule import IntervalSchedule, OneTimeSchedule
from task_scheduler.errors import StorageError
from task_scheduler.scheduler import RecurringJobScheduler
from task_scheduler.task_registry import TaskRegistry


class EchoTask:
    """Returns its request."""
    task_name = "echo"

    async def execute(self, request, context, cancellation):
        return request


class AlwaysFailingTask:
    task_name = "always_fails"

    async def execute(self, request, context, cancellation):
        return Failed(message="still broken", retryable=True)


class GatedTask:
    task_name = "gated"

    def __init__(self):
        self.gate = asyncio.Event()

    async def execute(self, request, context, cancellation):
        await self.gate.wait()
        return "opened"


class WaitForCancellationTask:
    task_name = "wait_for_cancellation"

    async def execute(self, request, context, cancellation):
        while True:
            cancellation.raise_if_cancelled()
            await asyncio.sleep(0.01)


@pytest.fixture(scope="function")
def config() -> SchedulerConfig:
    return SchedulerConfig(
        backoff_base=timedelta(0),
        jitter_fraction=0,
        cancellation_grace_period=timedelta(seconds=0.1),
        degraded_threshold=0.5,
        critical_threshold=1.0,
        critical_consecutive_failures=3,
    )


@pytest.fixture(scope="function")
def gated_task() -> GatedTask:
    return GatedTask()


@pytest.fixture(scope="function")
def registry(gated_task) -> TaskRegistry:
    registry = TaskRegistry()
    registry.register(EchoTask)
    registry.register(AlwaysFailingTask)
    registry.register(WaitForCancellationTask)
    registry.register(gated_task)
    return registry


@pytest.fixture(scope="function")
def sleeps():
    return []


@pytest.fixture(scope="function")
def scheduler(storage, registry, config, clock, sleeps) -> RecurringJobScheduler:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RecurringJobScheduler(storage, registry, config, worker_id="worker-a", clock=clock, sleep=fake_sleep)


@pytest.fixture(scope="function")
def make_job(storage, clock):
    async def make(schedule=None, **kwargs) -> RecurringJobDefinition:
        schedule = schedule or IntervalSchedule(period=timedelta(seconds=10), anchor=clock.now)
        job = RecurringJobDefinition(
            name=kwargs.pop("name", "test job"),
            task_name=kwargs.pop("task_name", "echo"),
            schedule=schedule,
            next_run_at=kwargs.pop("next_run_at", next_fire_time(schedule, clock.now)),
            **kwargs,
        )
        await storage.create_job(job)
        return job
    return make


@pytest.mark.asyncio
async def test_interval_job_fires_once_and_advances(scheduler, storage, clock, make_job):
    start = clock.now
    job = await make_job(parameters={"n": 1})

    clock.advance(timedelta(seconds=10))
    dispatched = await scheduler.tick()

    assert len(dispatched) == 1
    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.SUCCEEDED
    assert executions[0].result == {"n": 1}
    assert executions[0].fire_time == start
    assert executions[0].worker_id == "worker-a"

    stored = await storage.get_job(job.id)
    assert stored.next_run_at == start + timedelta(seconds=20)
    assert stored.last_run_at == start + timedelta(seconds=10)
    assert stored.lease is None

    # Nothing is due until the next boundary.
    assert await scheduler.tick() == []


@pytest.mark.asyncio
async def test_failing_job_is_retried_then_goes_critical(scheduler, storage, clock, make_job, sleeps):
    job = await make_job(task_name="always_fails", max_retry_attempts=2)

    await scheduler.tick()

    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 3
    assert sorted(e.attempt for e in executions) == [0, 1, 2]
    assert all(e.status == ExecutionStatus.FAILED for e in executions)
    assert {e.fire_time for e in executions} == {job.next_run_at}
    assert executions[0].attempt == 2
    assert executions[0].error.message == "still broken"
    assert sleeps == [0.0, 0.0]

    assert scheduler.health.aggregate(job_subject(job.id), clock.now).state == AlertState.CRITICAL
    assert scheduler.health.aggregate(task_subject("always_fails"), clock.now).failures == 3
    assert len(await storage.list_health_samples(job_subject(job.id))) == 3

    # Retries never move the job's own schedule past the next boundary.
    assert (await storage.get_job(job.id)).next_run_at == job.next_run_at + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_two_schedulers_fire_a_due_job_once(storage, registry, config, clock, make_job):
    job = await make_job()
    first = RecurringJobScheduler(storage, registry, config, worker_id="worker-1", clock=clock)
    second = RecurringJobScheduler(storage, registry, config, worker_id="worker-2", clock=clock)

    results = await asyncio.gather(first.tick(), second.tick())

    assert sum(len(dispatched) for dispatched in results) == 1
    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_misfire_runs_a_single_catch_up(scheduler, storage, clock, make_job):
    anchor = clock.now - timedelta(hours=1)
    job = await make_job(schedule=IntervalSchedule(period=timedelta(seconds=10), anchor=anchor), next_run_at=anchor)

    dispatched = await scheduler.tick()

    assert len(dispatched) == 1
    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 1
    assert executions[0].catch_up is True
    assert executions[0].fire_time == anchor
    assert (await storage.get_job(job.id)).next_run_at == clock.now + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_one_time_job_is_disabled_after_firing(scheduler, storage, clock, make_job):
    job = await make_job(schedule=OneTimeSchedule(fire_at=clock.now + timedelta(seconds=5)))
    assert await scheduler.tick() == []

    clock.advance(timedelta(seconds=6))
    assert len(await scheduler.tick()) == 1

    stored = await storage.get_job(job.id)
    assert stored.enabled is False
    assert stored.next_run_at is None
    clock.advance(timedelta(days=1))
    assert await scheduler.tick() == []


@pytest.mark.asyncio
async def test_unknown_task_fails_without_retry(scheduler, storage, make_job):
    job = await make_job(task_name="not_registered", max_retry_attempts=5)

    await scheduler.tick()

    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.FAILED
    assert executions[0].error.kind == "UnknownTaskError"
    assert (await storage.get_job(job.id)).next_run_at > job.next_run_at


@pytest.mark.asyncio
async def test_fatal_timeout_is_not_retried(scheduler, storage, make_job):
    job = await make_job(
        task_name="wait_for_cancellation",
        timeout=timedelta(seconds=0.05),
        concurrency=ConcurrencyPolicy(timeout_is_fatal=True),
    )

    await scheduler.tick()

    executions = await storage.list_executions(job_id=job.id)
    assert [e.status for e in executions] == [ExecutionStatus.TIMED_OUT]


@pytest.mark.asyncio
async def test_overlapping_job_is_released_while_running(scheduler, storage, clock, make_job, gated_task):
    job = await make_job(task_name="gated", concurrency=ConcurrencyPolicy(allow_overlap=True))

    dispatched = await scheduler.tick()
    assert len(dispatched) == 1

    stored = await storage.get_job(job.id)
    assert stored.lease is None
    assert stored.next_run_at == clock.now + timedelta(seconds=10)

    clock.advance(timedelta(seconds=10))
    assert len(await scheduler.tick()) == 1

    gated_task.gate.set()
    await scheduler.drain()
    executions = await storage.list_executions(job_id=job.id)
    assert [e.status for e in executions] == [ExecutionStatus.SUCCEEDED, ExecutionStatus.SUCCEEDED]


@pytest.mark.asyncio
async def test_submit_runs_in_background(scheduler, storage):
    execution = await scheduler.submit("echo", {"hello": "world"})
    assert (await storage.get_execution(execution.id)) is not None

    await scheduler.drain()

    stored = await storage.get_execution(execution.id)
    assert stored.status == ExecutionStatus.SUCCEEDED
    assert stored.result == {"hello": "world"}
    assert stored.job_id is None


@pytest.mark.asyncio
async def test_cancel_submitted_execution(scheduler, storage):
    execution = await scheduler.submit("wait_for_cancellation")
    while execution.id not in scheduler.runner.active_executions:
        await asyncio.sleep(0.01)

    assert scheduler.cancel(execution.id) is True
    await scheduler.drain()

    stored = await storage.get_execution(execution.id)
    assert stored.status == ExecutionStatus.CANCELLED
    assert len(await storage.list_executions(task_name="wait_for_cancellation")) == 1


@pytest.mark.asyncio
async def test_start_and_stop(storage, registry, make_job):
    config = SchedulerConfig(polling_interval=timedelta(seconds=0.02))
    job = await make_job()
    scheduler = RecurringJobScheduler(storage, registry, config)

    await scheduler.start()
    assert scheduler.is_running
    for _ in range(200):
        if await storage.list_executions(job_id=job.id):
            break
        await asyncio.sleep(0.02)
    await scheduler.stop()

    assert not scheduler.is_running
    executions = await storage.list_executions(job_id=job.id)
    assert len(executions) == 1


class UnreliableStorage:
    """Delegates to a real storage, except for the operations listed in ``failing``."""

    def __init__(self, storage):
        self._storage = storage
        self.failing = set()

    def __getattr__(self, name):
        if name in self.failing:
            async def unavailable(*args, **kwargs):
                raise StorageError(f"{name} is unavailable")
            return unavailable
        return getattr(self._storage, name)


@pytest.fixture(scope="function")
def unreliable_storage(storage) -> UnreliableStorage:
    return UnreliableStorage(storage)


@pytest.fixture(scope="function")
def unreliable_scheduler(unreliable_storage, registry, config, clock, sleeps) -> RecurringJobScheduler:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RecurringJobScheduler(unreliable_storage, registry, config, worker_id="worker-a", clock=clock, sleep=fake_sleep)


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["get_due_recurring_jobs", "try_claim_job"])
async def test_tick_survives_storage_failure_before_dispatch(unreliable_scheduler, unreliable_storage, storage, make_job, operation):
    job = await make_job()

    unreliable_storage.failing.add(operation)
    assert await unreliable_scheduler.tick() == []
    assert await storage.list_executions(job_id=job.id) == []

    unreliable_storage.failing.clear()
    assert len(await unreliable_scheduler.tick()) == 1
    assert len(await storage.list_executions(job_id=job.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["update_next_run", "release_job"])
async def test_failed_reschedule_leaves_lease_to_expire(unreliable_scheduler, unreliable_storage, storage, config, clock, make_job, operation):
    job = await make_job()

    unreliable_storage.failing.add(operation)
    assert len(await unreliable_scheduler.tick()) == 1
    executions = await storage.list_executions(job_id=job.id)
    assert [e.status for e in executions] == [ExecutionStatus.SUCCEEDED]
    assert (await storage.get_job(job.id)).lease.holder == "worker-a"

    unreliable_storage.failing.clear()
    clock.advance(timedelta(seconds=10))
    assert await unreliable_scheduler.tick() == []

    clock.advance(config.lease_duration)
    assert len(await unreliable_scheduler.tick()) == 1
    assert len(await storage.list_executions(job_id=job.id)) == 2
    assert (await storage.get_job(job.id)).lease is None


@pytest.mark.asyncio
async def test_polling_loop_survives_storage_outage(unreliable_storage, registry, config, clock):
    unreliable_storage.failing.add("get_due_recurring_jobs")
    pauses = []

    async def count_pauses(seconds):
        pauses.append(seconds)
        if len(pauses) == 3:
            scheduler.is_running = False

    scheduler = RecurringJobScheduler(unreliable_storage, registry, config, clock=clock, sleep=count_pauses)
    scheduler.is_running = True
    await scheduler.run_forever()

    assert pauses == [config.polling_interval.total_seconds()] * 3


@pytest.mark.asyncio
async def test_retries_stop_once_the_lease_is_lost(storage, registry, config, clock, make_job):
    job = await make_job(task_name="always_fails", max_retry_attempts=3)
    rival = JobClaimer(storage, worker_id="worker-b", clock=clock)
    takeovers = []

    async def slow_backoff(seconds):
        # The backoff outlives the lease and another worker takes the job over.
        clock.advance(config.lease_duration + timedelta(seconds=1))
        takeovers.append(await rival.try_claim(job.id, config.lease_duration))

    scheduler = RecurringJobScheduler(storage, registry, config, worker_id="worker-a", clock=clock, sleep=slow_backoff)
    await scheduler.tick()

    assert takeovers == [ClaimResult.CLAIMED]
    executions = sorted(await storage.list_executions(job_id=job.id), key=lambda e: e.attempt)
    assert [(e.attempt, e.status) for e in executions] == [
        (0, ExecutionStatus.FAILED),
        (1, ExecutionStatus.CANCELLED),
    ]
    assert executions[1].started_at is None

    stored = await storage.get_job(job.id)
    assert stored.lease.holder == "worker-b"
    assert stored.next_run_at == job.next_run_at


@pytest.mark.asyncio
async def test_orphaned_retry_is_superseded_by_next_fire(scheduler, storage, clock, make_job):
    job = await make_job()
    orphan = TaskExecution(
        task_name="echo",
        job_id=job.id,
        attempt=1,
        fire_time=job.next_run_at - timedelta(seconds=10),
        scheduled_at=clock.now - timedelta(seconds=5),
        worker_id="crashed-worker",
    )
    await storage.save_execution(orphan)

    dispatched = await scheduler.tick()

    stored_orphan = await storage.get_execution(orphan.id)
    assert stored_orphan.status == ExecutionStatus.CANCELLED
    assert stored_orphan.error.kind == "Cancelled"
    fresh = await storage.get_execution(dispatched[0].id)
    assert fresh.status == ExecutionStatus.SUCCEEDED
