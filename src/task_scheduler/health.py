"""Failure-rate tracking and alert state per job and task.

Each subject (``job:<id>`` or ``task:<name>``) keeps a sliding window of
outcomes. The alert state moves

    Normal -> Degraded    failure rate in the window above the degraded threshold
    Degraded -> Critical  failure rate above the critical threshold, or too many
                          consecutive failures
    * -> Normal           a streak of successes

and escalates at most one level per recorded outcome. Listeners are only told
about transitions, never about individual failures.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from task_scheduler.config import SchedulerConfig
from task_scheduler.domain.health import AlertState, HealthAggregate, HealthTransition
from task_scheduler.domain.outcome import Cancelled, ExecutionOutcome
from task_scheduler.domain.schedule import utcnow

logger = logging.getLogger(__name__)

TransitionListener = Callable[[HealthTransition], Any]


@dataclass
class _SubjectState:
    samples: Deque = field(default_factory=deque)
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    state: AlertState = AlertState.NORMAL
    last_transition_at: Optional[datetime] = None


class HealthMonitor:
    def __init__(
        self,
        window: timedelta = timedelta(minutes=15),
        degraded_threshold: float = 0.25,
        critical_threshold: float = 0.5,
        critical_consecutive_failures: int = 5,
        recovery_success_streak: int = 3,
        min_samples: int = 1,
        listeners: Optional[List[TransitionListener]] = None,
    ):
        if critical_threshold <= degraded_threshold:
            raise ValueError("critical_threshold must be greater than degraded_threshold")
        self.window = window
        self.degraded_threshold = degraded_threshold
        self.critical_threshold = critical_threshold
        self.critical_consecutive_failures = critical_consecutive_failures
        self.recovery_success_streak = recovery_success_streak
        self.min_samples = min_samples
        self._listeners: List[TransitionListener] = list(listeners or [])
        self._subjects: Dict[str, _SubjectState] = {}
        self._pending_notifications: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: SchedulerConfig, listeners: Optional[List[TransitionListener]] = None) -> "HealthMonitor":
        return cls(
            window=config.health_window,
            degraded_threshold=config.degraded_threshold,
            critical_threshold=config.critical_threshold,
            critical_consecutive_failures=config.critical_consecutive_failures,
            recovery_success_streak=config.recovery_success_streak,
            min_samples=config.health_min_samples,
            listeners=listeners,
        )

    def add_listener(self, listener: TransitionListener) -> None:
        """
        Register a callable notified on every transition. Coroutine functions
        are scheduled on the running event loop.
        """
        self._listeners.append(listener)

    def record(self, subject: str, outcome: ExecutionOutcome, at: Optional[datetime] = None) -> Optional[HealthTransition]:
        """
        Add one outcome to a subject's window and update its alert state.

        Returns:
            The transition, if the alert state changed.
        """
        at = at or utcnow()
        entry = self._subjects.setdefault(subject, _SubjectState())

        if isinstance(outcome, Cancelled):
            entry.samples.append((at, None))
        elif outcome.is_success:
            entry.samples.append((at, True))
            entry.consecutive_successes += 1
            entry.consecutive_failures = 0
        else:
            entry.samples.append((at, False))
            entry.consecutive_failures += 1
            entry.consecutive_successes = 0
        self._prune(entry, at)

        aggregate = self._aggregate(subject, entry)
        new_state = self._evaluate(entry, aggregate)
        if new_state == entry.state:
            return None

        transition = HealthTransition(
            subject=subject,
            previous=entry.state,
            current=new_state,
            at=at,
            failure_rate=aggregate.failure_rate,
            consecutive_failures=entry.consecutive_failures,
        )
        entry.state = new_state
        entry.last_transition_at = at
        self._emit(transition)
        return transition

    def aggregate(self, subject: str, now: Optional[datetime] = None) -> HealthAggregate:
        entry = self._subjects.get(subject)
        if entry is None:
            return HealthAggregate(subject=subject)
        self._prune(entry, now or utcnow())
        return self._aggregate(subject, entry)

    def aggregates(self) -> List[HealthAggregate]:
        return [self.aggregate(subject) for subject in sorted(self._subjects)]

    def _prune(self, entry: _SubjectState, now: datetime) -> None:
        horizon = now - self.window
        while entry.samples and entry.samples[0][0] < horizon:
            entry.samples.popleft()

    def _aggregate(self, subject: str, entry: _SubjectState) -> HealthAggregate:
        successes = sum(1 for _, ok in entry.samples if ok is True)
        failures = sum(1 for _, ok in entry.samples if ok is False)
        return HealthAggregate(
            subject=subject,
            attempts=len(entry.samples),
            successes=successes,
            failures=failures,
            consecutive_failures=entry.consecutive_failures,
            consecutive_successes=entry.consecutive_successes,
            state=entry.state,
            last_transition_at=entry.last_transition_at,
        )

    def _evaluate(self, entry: _SubjectState, aggregate: HealthAggregate) -> AlertState:
        if entry.state != AlertState.NORMAL and entry.consecutive_successes >= self.recovery_success_streak:
            return AlertState.NORMAL

        enough = aggregate.successes + aggregate.failures >= self.min_samples
        rate = aggregate.failure_rate
        if entry.state == AlertState.NORMAL:
            if enough and rate > self.degraded_threshold:
                return AlertState.DEGRADED
        elif entry.state == AlertState.DEGRADED:
            if entry.consecutive_failures >= self.critical_consecutive_failures:
                return AlertState.CRITICAL
            if enough and rate > self.critical_threshold:
                return AlertState.CRITICAL
        return entry.state

    def _emit(self, transition: HealthTransition) -> None:
        log = logger.warning if transition.is_escalation else logger.info
        log(
            "Health of %s changed from %s to %s (failure rate %.0f%%, %d consecutive failures)",
            transition.subject, transition.previous.value, transition.current.value,
            transition.failure_rate * 100, transition.consecutive_failures,
        )
        for listener in self._listeners:
            try:
                result = listener(transition)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending_notifications.add(task)
                    task.add_done_callback(self._notification_done)
            except Exception:
                logger.exception("Health listener %r failed", listener)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Health listener failed", exc_info=task.exception())
