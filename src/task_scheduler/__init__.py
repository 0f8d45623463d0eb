"""
Distributed Task Scheduling System

This package runs registered tasks on recurring schedules, across one or more
worker processes sharing a database.

Core Concepts:

Task:
    A Task is a named unit of work, implemented by a handler registered in the
    TaskRegistry. A Task defines the work to be done but does not represent an
    actual execution.

Recurring Job:
    A RecurringJobDefinition binds a Task to a schedule (cron, fixed interval or
    one-time) and to the parameters passed on every fire.

Execution:
    A TaskExecution represents a single attempt at running a Task, either fired
    by a Recurring Job or requested directly. Each retry is a new execution.

Lease:
    A time-bounded claim a worker takes on a Recurring Job before firing it, so
    that a fire runs on exactly one worker.

Relationships:
    - A Recurring Job can have many executions, several per fire when retries happen.
    - Health is tracked per job and per task from execution outcomes.
"""

from .config import SchedulerConfig
from .scheduler import RecurringJobScheduler
from .task_registry import TaskRegistry

__all__ = ["SchedulerConfig", "RecurringJobScheduler", "TaskRegistry"]
