"""Scheduler configuration.

All tunables live in one explicit object that is handed to the scheduler, the
runner, the retry policy and the health monitor. Values can be supplied in
code or through ``TASK_SCHEDULER_*`` environment variables; durations accept
seconds or ISO 8601 strings.
"""

from datetime import timedelta
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TASK_SCHEDULER_", frozen=True)

    # Polling and leases
    polling_interval: timedelta = Field(default=timedelta(seconds=5), description="Delay between two scheduler ticks")
    lease_duration: timedelta = Field(default=timedelta(seconds=60), description="How long a claim on a job stays valid without renewal")
    lease_renewal_interval: Optional[timedelta] = Field(default=None, description="How often a running job renews its lease; defaults to a third of the lease duration")
    max_concurrency: int = Field(default=10, ge=1, description="Maximum executions dispatched in parallel by one worker")

    # Retries
    default_max_retry_attempts: int = Field(default=3, ge=0, description="Retries allowed when a job or request does not specify its own")
    backoff_base: timedelta = Field(default=timedelta(seconds=1), description="Base delay of the exponential backoff")
    backoff_cap: timedelta = Field(default=timedelta(minutes=5), description="Upper bound of any retry delay")
    jitter_fraction: float = Field(default=0.2, ge=0.0, le=1.0, description="Relative jitter applied to retry delays")

    # Execution
    cancellation_grace_period: timedelta = Field(default=timedelta(seconds=10), description="Time a handler gets to observe cancellation before it is abandoned")

    # Health
    health_window: timedelta = Field(default=timedelta(minutes=15), description="Sliding window over which failure rates are computed")
    degraded_threshold: float = Field(default=0.25, ge=0.0, le=1.0, description="Failure rate above which a subject becomes Degraded")
    critical_threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="Failure rate above which a Degraded subject becomes Critical")
    critical_consecutive_failures: int = Field(default=5, ge=1, description="Consecutive failures that make a Degraded subject Critical")
    recovery_success_streak: int = Field(default=3, ge=1, description="Consecutive successes that reset a subject to Normal")
    health_min_samples: int = Field(default=1, ge=1, description="Samples required in the window before rate thresholds apply")

    @model_validator(mode="after")
    def check_consistency(self) -> "SchedulerConfig":
        if self.critical_threshold <= self.degraded_threshold:
            raise ValueError("critical_threshold must be greater than degraded_threshold")
        for name in ("polling_interval", "lease_duration", "health_window"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        for name in ("backoff_base", "backoff_cap", "cancellation_grace_period"):
            if getattr(self, name) < timedelta(0):
                raise ValueError(f"{name} must not be negative")
        if self.lease_renewal_interval is not None and not (
            timedelta(0) < self.lease_renewal_interval < self.lease_duration
        ):
            raise ValueError("lease_renewal_interval must be positive and shorter than lease_duration")
        return self

    @property
    def renewal_interval(self) -> timedelta:
        return self.lease_renewal_interval or self.lease_duration / 3
