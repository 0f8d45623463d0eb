import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import AfterValidator, BaseModel, Field

logger = logging.getLogger(__name__)


def ensure_utc(v: datetime) -> datetime:
    """
    Normalise a datetime to UTC. Naive values are taken to be UTC already.
    """
    if v.tzinfo is None:
        logger.warning("Datetime %s does not include a timezone. Defaulting to UTC+0 for consistent representation.", v)
        return v.replace(tzinfo=ZoneInfo("UTC"))
    return v.astimezone(ZoneInfo("UTC"))


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


def utcnow() -> datetime:
    return datetime.now(ZoneInfo("UTC"))


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONE_TIME = "one_time"


class BaseSchedule(BaseModel, ABC):
    """
    Base class for all schedule types.
    """
    type: ScheduleType
    description: Optional[str] = Field(None, description="Free-form description of the schedule")

    @abstractmethod
    def format_schedule(self) -> str:
        pass


class CronSchedule(BaseSchedule):
    """
    Fires according to a cron expression evaluated in a given timezone.
    """
    type: Literal["cron"] = "cron"
    expression: str = Field(..., description="Cron expression (5 fields, or 6 with leading seconds)")
    timezone: str = Field("UTC", description="IANA timezone the expression is evaluated in")

    def format_schedule(self) -> str:
        return f"Scheduled to recur with cron expression: {self.expression} ({self.timezone})"


class IntervalSchedule(BaseSchedule):
    """
    Fires every ``period``, aligned on ``anchor``.
    """
    type: Literal["interval"] = "interval"
    period: timedelta = Field(..., description="Time between two fires")
    anchor: UtcDatetime = Field(..., description="Reference instant; fires happen at anchor + k * period")

    def format_schedule(self) -> str:
        return f"Scheduled every {self.period} starting from {self.anchor.strftime('%Y-%m-%d %H:%M:%S %Z')}"


class OneTimeSchedule(BaseSchedule):
    """
    Fires once at a precise instant.
    """
    type: Literal["one_time"] = "one_time"
    fire_at: UtcDatetime = Field(..., description="Precise datetime for the single execution")

    def format_schedule(self) -> str:
        return f"Scheduled for one-time execution at {self.fire_at.strftime('%Y-%m-%d %H:%M:%S %Z')}"


JobSchedule = Annotated[
    Union[CronSchedule, IntervalSchedule, OneTimeSchedule],
    Field(discriminator="type"),
]
