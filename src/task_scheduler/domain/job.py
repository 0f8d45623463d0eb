import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from .schedule import JobSchedule, UtcDatetime, utcnow


class ConcurrencyPolicy(BaseModel):
    allow_overlap: bool = Field(False, description="Whether a new fire may start while a previous one is still running")
    timeout_is_fatal: bool = Field(False, description="Whether a timed out execution gives up instead of retrying")


class JobLease(BaseModel):
    """
    Time-bounded claim on a job. ``holder`` is the id of the worker that owns
    the claim until ``expires_at``.
    """
    holder: str
    expires_at: UtcDatetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class RecurringJobDefinition(BaseModel):
    """
    A task bound to a schedule and a set of parameters.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}", description="Unique job identifier")
    name: str = Field(..., description="Job name")
    task_name: str = Field(..., description="Name of the registered task the job runs")
    schedule: JobSchedule = Field(..., description="When the job fires")
    parameters: Optional[Any] = Field(None, description="Request payload handed to the task on every fire")
    enabled: bool = Field(default=True, description="Disabled jobs are never picked up by the scheduler")
    concurrency: ConcurrencyPolicy = Field(default_factory=ConcurrencyPolicy)
    max_retry_attempts: Optional[int] = Field(None, ge=0, description="Retries per fire; None uses the configured default")
    timeout: Optional[timedelta] = Field(None, description="Per-execution timeout")
    next_run_at: Optional[UtcDatetime] = Field(None, description="Next time the job is due")
    last_run_at: Optional[UtcDatetime] = Field(None, description="Last time the job fired")
    lease: Optional[JobLease] = Field(None, description="Current claim, if any")
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        if not self.enabled or self.next_run_at is None or self.next_run_at > now:
            return False
        return self.lease is None or self.lease.is_expired(now)

    def disable(self) -> None:
        self.enabled = False

    def enable(self) -> None:
        self.enabled = True

    @property
    def readable_string(self) -> str:
        summary = f"Job Name: '{self.name}' (task '{self.task_name}')"
        state = "enabled" if self.enabled else "disabled"
        return f"{summary}\n{self.schedule.format_schedule()}\nState: {state}, next run: {self.next_run_at}"
