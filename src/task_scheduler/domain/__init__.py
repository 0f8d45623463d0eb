from .schedule import ScheduleType, CronSchedule, IntervalSchedule, OneTimeSchedule, JobSchedule, utcnow
from .outcome import ExecutionOutcome, Succeeded, Failed, Cancelled, TimedOut
from .execution import TaskExecution, ExecutionStatus, ErrorDetail
from .job import RecurringJobDefinition, ConcurrencyPolicy, JobLease
from .task import TaskDefinition
from .health import AlertState, HealthAggregate, HealthSample, HealthTransition, job_subject, task_subject

__all__ = [
    "ScheduleType", "CronSchedule", "IntervalSchedule", "OneTimeSchedule", "JobSchedule", "utcnow",
    "ExecutionOutcome", "Succeeded", "Failed", "Cancelled", "TimedOut",
    "TaskExecution", "ExecutionStatus", "ErrorDetail",
    "RecurringJobDefinition", "ConcurrencyPolicy", "JobLease",
    "TaskDefinition",
    "AlertState", "HealthAggregate", "HealthSample", "HealthTransition", "job_subject", "task_subject",
]
