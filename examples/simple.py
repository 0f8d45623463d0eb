import asyncio
import logging
from datetime import timedelta
from pydantic import BaseModel, Field
from task_scheduler.backends.polling import PollingBackend
from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.job import RecurringJobDefinition
from task_scheduler.domain.schedule import CronSchedule, IntervalSchedule, utcnow
from task_scheduler.executors.http import HttpCallTask
from task_scheduler.storages.sqlalchemy import InMemoryStorage
from task_scheduler.task_registry import TaskRegistry

class AgentCommand(BaseModel):
    action_command: str = Field(..., description="The action command to execute.")

class PrintTask:
    """Prints the action command of its request."""
    task_name = "print_command"
    request_schema = AgentCommand

    async def execute(self, request, context, cancellation):
        command = AgentCommand.model_validate(request)
        print(f"Executing {context.execution_id} (attempt {context.attempt}): {command.action_command}")
        context.report_progress(100)
        return {"printed": command.action_command}

# Set up the registry and backend
registry = TaskRegistry()
registry.register(PrintTask)
registry.register(HttpCallTask)
config = SchedulerConfig(polling_interval=timedelta(seconds=1))
backend = PollingBackend(InMemoryStorage(), registry, config)

async def main():
    logging.basicConfig(level=logging.INFO)
    await backend.start()

    await backend.create_job(RecurringJobDefinition(
        name="Say hello every 5 seconds",
        task_name="print_command",
        schedule=IntervalSchedule(period=timedelta(seconds=5), anchor=utcnow()),
        parameters={"action_command": "say hello"},
    ))
    await backend.create_job(RecurringJobDefinition(
        name="Ping example.com every minute",
        task_name="http_call",
        schedule=CronSchedule(expression="* * * * *"),
        parameters={"method": "GET", "url": "https://example.com"},
        max_retry_attempts=2,
    ))

    for job in await backend.list_jobs():
        print(job.readable_string)

    await asyncio.sleep(30)

    for execution in await backend.list_executions():
        print(f"{execution.id} {execution.task_name} attempt={execution.attempt} {execution.status.value}")
    for health in backend.list_health():
        print(f"{health.subject}: {health.state.value} ({health.failure_rate:.0%} failures)")

    await backend.stop()

if __name__ == "__main__":
    asyncio.run(main())
