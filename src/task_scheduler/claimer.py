"""Lease-based mutual exclusion over recurring jobs.

Several scheduler instances may poll the same storage. A job fire is only run
by the worker whose conditional update of the job's lease succeeds; everyone
else sees ``ALREADY_CLAIMED`` and moves on. A crashed worker's lease simply
expires, which makes the job claimable again.

Example:
    >>> claimer = JobClaimer(storage, worker_id="worker-1")
    >>> if await claimer.try_claim(job.id, timedelta(seconds=60)) is ClaimResult.CLAIMED:
    ...     async with claimer.hold(job.id, timedelta(seconds=60), timedelta(seconds=20)):
    ...         ...  # run the job
"""

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from task_scheduler.domain.schedule import utcnow
from task_scheduler.errors import StorageError
from task_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class JobClaimer:
    def __init__(
        self,
        storage: Storage,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.worker_id = worker_id or f"worker_{uuid.uuid4().hex[:12]}"
        self._clock = clock

    async def try_claim(self, job_id: str, lease_duration: timedelta, now: Optional[datetime] = None) -> ClaimResult:
        """
        Try to take the lease of a due job.

        The storage only grants the lease if the job is still due and nobody
        else holds an unexpired lease on it. Losing that race is a normal
        outcome, not an error.

        Raises:
            StorageError: If the storage call fails.
        """
        now = now or self._clock()
        claimed = await self.storage.try_claim_job(job_id, self.worker_id, now + lease_duration, now)
        if claimed:
            logger.debug("Worker %s claimed job %s until %s", self.worker_id, job_id, now + lease_duration)
            return ClaimResult.CLAIMED
        logger.debug("Job %s is already claimed, skipped by worker %s", job_id, self.worker_id)
        return ClaimResult.ALREADY_CLAIMED

    async def renew(self, job_id: str, lease_duration: timedelta) -> bool:
        """
        Extend our lease. Fails if another worker took the job over.
        """
        renewed = await self.storage.renew_lease(job_id, self.worker_id, self._clock() + lease_duration)
        if not renewed:
            logger.error("Worker %s lost the lease on job %s", self.worker_id, job_id)
        return renewed

    async def release(self, job_id: str) -> None:
        await self.storage.release_job(job_id, self.worker_id)
        logger.debug("Worker %s released job %s", self.worker_id, job_id)

    @contextlib.asynccontextmanager
    async def hold(self, job_id: str, lease_duration: timedelta, renew_every: timedelta) -> AsyncIterator["LeaseKeeper"]:
        """
        Keep renewing the lease of a claimed job while the body runs.

        The lease is not released on exit; callers release it once the job's
        next run has been persisted.
        """
        keeper = LeaseKeeper(self, job_id, lease_duration, renew_every)
        keeper.start()
        try:
            yield keeper
        finally:
            await keeper.stop()


class LeaseKeeper:
    """
    Background renewal of one lease.
    """

    def __init__(self, claimer: JobClaimer, job_id: str, lease_duration: timedelta, renew_every: timedelta):
        self.claimer = claimer
        self.job_id = job_id
        self.lease_duration = lease_duration
        self.renew_every = renew_every
        self.lost = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._renew_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def confirm(self) -> bool:
        """
        Renew the lease right now.

        Returns:
            bool: False once the lease has been lost to another worker.
        """
        if not self.lost:
            self.lost = not await self.claimer.renew(self.job_id, self.lease_duration)
        return not self.lost

    async def _renew_loop(self) -> None:
        while not self.lost:
            await asyncio.sleep(self.renew_every.total_seconds())
            try:
                self.lost = not await self.claimer.renew(self.job_id, self.lease_duration)
            except StorageError:
                # The lease may still be valid; try again at the next interval.
                logger.exception("Could not renew the lease on job %s", self.job_id)
