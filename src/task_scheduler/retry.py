"""Retry decisions for finished executions.

Example:
    >>> policy = RetryPolicy(base=timedelta(seconds=1), cap=timedelta(minutes=1), jitter_fraction=0.1)
    >>> decision = policy.next_attempt(Failed(message="boom"), attempt_number=0, max_attempts=3)
    >>> isinstance(decision, Retry)
    True
"""

import random
from datetime import timedelta
from typing import Optional, Union

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .domain.outcome import Cancelled, ExecutionOutcome, Failed, Succeeded, TimedOut


class Retry(BaseModel):
    after: timedelta = Field(..., description="Delay before the next attempt starts")


class GiveUp(BaseModel):
    reason: str = Field(..., description="Why no further attempt is made")


RetryDecision = Union[Retry, GiveUp]


class RetryPolicy:
    """
    Exponential backoff with jitter.

    ``delay(n) = min(cap, base * 2**n) * (1 ± jitter_fraction)``, capped again
    at ``cap`` after jitter is applied. Attempt numbers are 0-based: attempt 0
    is the initial run, so ``max_attempts`` is the number of retries allowed.
    """

    def __init__(
        self,
        base: timedelta = timedelta(seconds=1),
        cap: timedelta = timedelta(minutes=5),
        jitter_fraction: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be between 0 and 1")
        self.base = base
        self.cap = cap
        self.jitter_fraction = jitter_fraction
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: SchedulerConfig, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(config.backoff_base, config.backoff_cap, config.jitter_fraction, rng=rng)

    def backoff(self, attempt_number: int) -> timedelta:
        seconds = min(self.cap.total_seconds(), self.base.total_seconds() * (2 ** min(attempt_number, 64)))
        if self.jitter_fraction:
            seconds *= 1 + self._rng.uniform(-self.jitter_fraction, self.jitter_fraction)
        seconds = max(0.0, min(seconds, self.cap.total_seconds()))
        return timedelta(seconds=seconds)

    def next_attempt(
        self,
        outcome: ExecutionOutcome,
        attempt_number: int,
        max_attempts: int,
        timeout_is_fatal: bool = False,
    ) -> RetryDecision:
        """
        Decide whether the execution that produced ``outcome`` is retried.

        Args:
            outcome: Terminal outcome of the attempt.
            attempt_number: 0-based number of the attempt that just finished.
            max_attempts: Number of retries allowed for this fire.
            timeout_is_fatal: Whether TimedOut outcomes give up immediately.
        """
        if isinstance(outcome, Succeeded):
            return GiveUp(reason="succeeded")
        if isinstance(outcome, Cancelled):
            return GiveUp(reason="cancelled")
        if isinstance(outcome, Failed) and not outcome.retryable:
            return GiveUp(reason=f"non-retryable failure: {outcome.error_kind}")
        if isinstance(outcome, TimedOut) and timeout_is_fatal:
            return GiveUp(reason="timeout is fatal for this job")
        if attempt_number >= max_attempts:
            return GiveUp(reason=f"retry limit reached after attempt {attempt_number}")
        return Retry(after=self.backoff(attempt_number))
