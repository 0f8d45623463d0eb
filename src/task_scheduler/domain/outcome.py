from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class Succeeded(BaseModel):
    """
    The handler finished its work.
    """
    kind: Literal["succeeded"] = "succeeded"
    payload: Optional[Any] = Field(None, description="Result returned by the handler")

    @property
    def is_success(self) -> bool:
        return True


class Failed(BaseModel):
    """
    The handler failed. ``retryable`` tells the retry policy whether another
    attempt can help.
    """
    kind: Literal["failed"] = "failed"
    error_kind: str = Field("TaskFailed", description="Classification of the failure, usually an exception class name")
    message: str = Field("", description="Human-readable failure detail")
    retryable: bool = Field(True, description="Whether a new attempt may succeed")

    @property
    def is_success(self) -> bool:
        return False


class Cancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    reason: str = Field("Cancellation requested", description="Why the execution was cancelled")

    @property
    def is_success(self) -> bool:
        return False


class TimedOut(BaseModel):
    kind: Literal["timed_out"] = "timed_out"
    message: str = Field("Execution exceeded its timeout", description="Timeout detail")

    @property
    def is_success(self) -> bool:
        return False


ExecutionOutcome = Annotated[
    Union[Succeeded, Failed, Cancelled, TimedOut],
    Field(discriminator="kind"),
]

OUTCOME_TYPES = (Succeeded, Failed, Cancelled, TimedOut)
