import logging

from task_scheduler.backends.base import BaseBackend
from task_scheduler.storages.sqlalchemy import InMemoryStorage

logger = logging.getLogger(__name__)


class PollingBackend(BaseBackend):
    """
    Backend that runs the scheduler loop in the current event loop.

    With an ``InMemoryStorage`` the tables are created on start, and all state
    is lost when the process exits.
    """

    async def start(self):
        """
        Start the backend scheduler.
        """
        if self.scheduler.is_running:
            return
        if isinstance(self.storage, InMemoryStorage):
            await self.storage.create_tables()
        await self.scheduler.start()
        logger.info("PollingBackend started with %d registered tasks", len(self.registry))

    async def stop(self):
        """
        Stop the backend scheduler and cancel its running executions.
        """
        if self.scheduler.is_running:
            await self.scheduler.stop()
            logger.info("PollingBackend stopped")

    async def __aenter__(self) -> "PollingBackend":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
