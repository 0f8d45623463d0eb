from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .schedule import UtcDatetime


class AlertState(str, Enum):
    NORMAL = "normal"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class HealthAggregate(BaseModel):
    """
    Rolling health of one task or job over the configured window.
    """
    subject: str = Field(..., description="job:<id> or task:<name>")
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    state: AlertState = AlertState.NORMAL
    last_transition_at: Optional[UtcDatetime] = None

    @property
    def failure_rate(self) -> float:
        decided = self.successes + self.failures
        return self.failures / decided if decided else 0.0


class HealthTransition(BaseModel):
    subject: str
    previous: AlertState
    current: AlertState
    at: UtcDatetime
    failure_rate: float
    consecutive_failures: int

    @property
    def is_escalation(self) -> bool:
        order = [AlertState.NORMAL, AlertState.DEGRADED, AlertState.CRITICAL]
        return order.index(self.current) > order.index(self.previous)


def job_subject(job_id: str) -> str:
    return f"job:{job_id}"


def task_subject(task_name: str) -> str:
    return f"task:{task_name}"


class HealthSample(BaseModel):
    subject: str
    outcome: str = Field(..., description="Outcome kind: succeeded, failed, cancelled or timed_out")
    recorded_at: UtcDatetime
