from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from task_scheduler.domain.schedule import utcnow
from task_scheduler.storages.sqlalchemy import InMemoryStorage


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock(utcnow().replace(microsecond=0))


@pytest_asyncio.fixture(scope="function")
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.dispose()
