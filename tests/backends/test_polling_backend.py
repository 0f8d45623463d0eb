import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from pydantic import BaseModel

from task_scheduler.backends.polling import PollingBackend
from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.execution import ExecutionStatus, TaskExecution
from task_scheduler.domain.health import AlertState, task_subject
from task_scheduler.domain.job import RecurringJobDefinition
from task_scheduler.domain.outcome import Failed
from task_scheduler.domain.schedule import CronSchedule, IntervalSchedule, OneTimeSchedule
from task_scheduler.errors import ScheduleValidationError, UnknownTaskError
from task_scheduler.storages.sqlalchemy import InMemoryStorage
from task_scheduler.task_registry import TaskRegistry


class GreetingRequest(BaseModel):
    name: str


class GreetTask:
    """Greets someone."""
    task_name = "greet"
    request_schema = GreetingRequest

    async def execute(self, request, context, cancellation):
        context.report_progress(100)
        return f"Hello {request['name']}"


class FlakyTask:
    task_name = "flaky"

    async def execute(self, request, context, cancellation):
        return Failed(message="flaky")


class SlowTask:
    task_name = "slow"

    async def execute(self, request, context, cancellation):
        while True:
            cancellation.raise_if_cancelled()
            await asyncio.sleep(0.01)


@pytest.fixture(scope="function")
def registry() -> TaskRegistry:
    registry = TaskRegistry()
    registry.register(GreetTask)
    registry.register(FlakyTask)
    registry.register(SlowTask)
    return registry


@pytest.fixture(scope="function")
def config() -> SchedulerConfig:
    return SchedulerConfig(
        polling_interval=timedelta(seconds=0.02),
        backoff_base=timedelta(0),
        cancellation_grace_period=timedelta(seconds=0.1),
    )


@pytest_asyncio.fixture(scope="function")
async def backend(storage, registry, config):
    backend = PollingBackend(storage, registry, config)
    yield backend
    await backend.stop()


def greet_job(clock, **kwargs) -> RecurringJobDefinition:
    fields = dict(
        name="Greeter",
        task_name="greet",
        schedule=IntervalSchedule(period=timedelta(hours=1), anchor=clock.now),
        parameters={"name": "Ada"},
    )
    fields.update(kwargs)
    return RecurringJobDefinition(**fields)


@pytest.mark.asyncio
async def test_create_job_computes_first_run(backend, clock):
    job_id = await backend.create_job(greet_job(clock), now=clock.now)

    job = await backend.get_job(job_id)
    assert job.next_run_at == clock.now
    assert [j.id for j in await backend.list_jobs()] == [job_id]


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides, error", [
    ({"schedule": CronSchedule(expression="99 * * * *")}, ScheduleValidationError),
    ({"schedule": CronSchedule(expression="0 * * * *", timezone="Nowhere/Special")}, ScheduleValidationError),
    ({"task_name": "unknown"}, UnknownTaskError),
    ({"parameters": {"nom": "Ada"}}, ValueError),
])
async def test_invalid_job_is_never_persisted(backend, clock, overrides, error):
    with pytest.raises(error):
        await backend.create_job(greet_job(clock, **overrides), now=clock.now)
    assert await backend.list_jobs() == []


@pytest.mark.asyncio
async def test_one_time_job_in_the_past_is_rejected(backend, clock):
    job = greet_job(clock, schedule=OneTimeSchedule(fire_at=clock.now - timedelta(minutes=1)))
    with pytest.raises(ScheduleValidationError):
        await backend.create_job(job, now=clock.now)


@pytest.mark.asyncio
async def test_update_job_recomputes_next_run(backend, clock):
    job_id = await backend.create_job(greet_job(clock), now=clock.now)
    job = await backend.get_job(job_id)

    job.schedule = CronSchedule(expression="0 0 1 1 *")
    job.parameters = {"name": "Grace"}
    assert await backend.update_job(job, now=clock.now) is True

    updated = await backend.get_job(job_id)
    assert updated.parameters == {"name": "Grace"}
    assert updated.next_run_at.month == 1 and updated.next_run_at.day == 1


@pytest.mark.asyncio
async def test_disable_and_enable_job(backend, clock):
    job_id = await backend.create_job(greet_job(clock), now=clock.now)

    assert await backend.disable_job(job_id) is True
    assert (await backend.get_job(job_id)).enabled is False

    later = clock.advance(timedelta(minutes=90))
    assert await backend.enable_job(job_id, now=later) is True
    enabled = await backend.get_job(job_id)
    assert enabled.enabled is True
    # Fires missed while disabled are skipped.
    assert enabled.next_run_at == later + timedelta(minutes=30)

    assert await backend.enable_job("job_missing") is False
    assert await backend.disable_job("job_missing") is False


@pytest.mark.asyncio
async def test_delete_job(backend, storage, clock):
    unused = await backend.create_job(greet_job(clock), now=clock.now)
    used = await backend.create_job(greet_job(clock, name="Used"), now=clock.now)
    await storage.save_execution(TaskExecution(task_name="greet", job_id=used))

    assert await backend.delete_job(unused) is True
    assert await backend.get_job(unused) is None

    assert await backend.delete_job(used) is True
    kept = await backend.get_job(used)
    assert kept is not None
    assert kept.enabled is False
    assert len(await backend.list_executions(job_id=used)) == 1


@pytest.mark.asyncio
async def test_request_execution(backend):
    execution = await backend.request_execution("greet", {"name": "Ada"})
    await backend.scheduler.drain()

    stored = await backend.get_execution(execution.id)
    assert stored.status == ExecutionStatus.SUCCEEDED
    assert stored.result == "Hello Ada"
    assert stored.progress == 100

    with pytest.raises(ValueError):
        await backend.request_execution("greet", {"nom": "Ada"})
    with pytest.raises(UnknownTaskError):
        await backend.request_execution("unknown")


@pytest.mark.asyncio
async def test_cancel_execution(backend):
    execution = await backend.request_execution("slow")
    while execution.id not in backend.scheduler.runner.active_executions:
        await asyncio.sleep(0.01)

    assert await backend.cancel_execution(execution.id) is True
    await backend.scheduler.drain()
    assert (await backend.get_execution(execution.id)).status == ExecutionStatus.CANCELLED
    assert await backend.cancel_execution("exe_missing") is False


@pytest.mark.asyncio
async def test_health_and_tasks(backend):
    await backend.request_execution("flaky", max_attempts=0)
    await backend.scheduler.drain()

    health = backend.get_health(task_subject("flaky"))
    assert health.failures == 1
    assert health.state == AlertState.DEGRADED
    assert [h.subject for h in backend.list_health()] == ["task:flaky"]
    assert {t.name for t in backend.list_tasks()} == {"greet", "flaky", "slow"}


@pytest.mark.asyncio
async def test_start_runs_due_jobs(registry, config, clock):
    storage = InMemoryStorage()
    backend = PollingBackend(storage, registry, config)
    await backend.start()
    try:
        schedule = IntervalSchedule(period=timedelta(hours=1), anchor=clock.now + timedelta(seconds=1))
        job_id = await backend.create_job(greet_job(clock, schedule=schedule))
        for _ in range(200):
            executions = await backend.list_executions(job_id=job_id)
            if executions and executions[0].status == ExecutionStatus.SUCCEEDED:
                break
            await asyncio.sleep(0.02)
        assert executions[0].status == ExecutionStatus.SUCCEEDED
        assert executions[0].result == "Hello Ada"
    finally:
        await backend.stop()
        await storage.dispose()
    assert not backend.scheduler.is_running
