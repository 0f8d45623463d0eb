import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional

from pydantic import TypeAdapter
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from task_scheduler.domain.execution import ErrorDetail, ExecutionStatus, TaskExecution
from task_scheduler.domain.health import HealthSample
from task_scheduler.domain.job import ConcurrencyPolicy, JobLease, RecurringJobDefinition
from task_scheduler.domain.outcome import ExecutionOutcome
from task_scheduler.domain.schedule import JobSchedule, utcnow
from task_scheduler.errors import StorageError
from task_scheduler.storages.protocol import Storage

Base = declarative_base()

_schedule_adapter: TypeAdapter = TypeAdapter(JobSchedule)


class UtcDateTime(TypeDecorator):
    """
    Timezone-aware datetime column that always round-trips as UTC.

    SQLite has no timezone support, so values are stored as naive UTC there and
    compared as such.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value} cannot be stored")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class RecurringJobModel(Base):
    __tablename__ = 'recurring_jobs'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    task_name = Column(String, nullable=False)
    schedule_type = Column(String, nullable=False)
    schedule = Column(JSON, nullable=False)
    parameters = Column(JSON)
    enabled = Column(Boolean, nullable=False, default=True)
    allow_overlap = Column(Boolean, nullable=False, default=False)
    timeout_is_fatal = Column(Boolean, nullable=False, default=False)
    max_retry_attempts = Column(Integer)
    timeout_seconds = Column(Float)
    next_run_at = Column(UtcDateTime, index=True)
    last_run_at = Column(UtcDateTime)
    lease_holder = Column(String)
    lease_expires_at = Column(UtcDateTime)
    created_at = Column(UtcDateTime, nullable=False)
    updated_at = Column(UtcDateTime, nullable=False)


class TaskExecutionModel(Base):
    __tablename__ = 'task_executions'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False)
    task_name = Column(String, nullable=False, index=True)
    job_id = Column(String, ForeignKey('recurring_jobs.id'), index=True)
    request = Column(JSON)
    status = Column(String, nullable=False)
    progress = Column(Float, nullable=False, default=0.0)
    progress_message = Column(String)
    created_at = Column(UtcDateTime, nullable=False)
    scheduled_at = Column(UtcDateTime)
    started_at = Column(UtcDateTime)
    completed_at = Column(UtcDateTime)
    result = Column(JSON)
    error_kind = Column(String)
    error_message = Column(String)
    attempt = Column(Integer, nullable=False, default=0)
    fire_time = Column(UtcDateTime)
    worker_id = Column(String)
    catch_up = Column(Boolean, nullable=False, default=False)


class HealthSampleModel(Base):
    __tablename__ = 'health_samples'

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject = Column(String, nullable=False, index=True)
    outcome = Column(String, nullable=False)
    recorded_at = Column(UtcDateTime, nullable=False)


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str, **engine_kwargs):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._lock: Optional[asyncio.Lock] = None

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        lock = self._lock or contextlib.nullcontext()
        async with lock:
            try:
                async with self.async_session() as session:
                    yield session
            except SQLAlchemyError as e:
                raise StorageError(f"Storage operation failed: {e}") from e

    # Recurring jobs

    async def create_job(self, job: RecurringJobDefinition) -> str:
        async with self._session() as session:
            db_job = RecurringJobModel(id=job.id, created_at=job.created_at)
            self._job_to_db(job, db_job)
            db_job.lease_holder = job.lease.holder if job.lease else None
            db_job.lease_expires_at = job.lease.expires_at if job.lease else None
            session.add(db_job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[RecurringJobDefinition]:
        async with self._session() as session:
            result = await session.execute(select(RecurringJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def update_job(self, job: RecurringJobDefinition) -> bool:
        async with self._session() as session:
            result = await session.execute(select(RecurringJobModel).filter_by(id=job.id))
            db_job = result.scalar_one_or_none()
            if db_job:
                job.updated_at = utcnow()
                self._job_to_db(job, db_job)
                await session.commit()
                return True
            return False

    async def delete_job(self, job_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(select(RecurringJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                await session.delete(db_job)
                await session.commit()
                return True
            return False

    async def list_jobs(self, limit: int = 100, offset: int = 0) -> List[RecurringJobDefinition]:
        async with self._session() as session:
            result = await session.execute(
                select(RecurringJobModel).order_by(RecurringJobModel.created_at.desc()).offset(offset).limit(limit)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def get_due_recurring_jobs(self, now: datetime) -> List[RecurringJobDefinition]:
        async with self._session() as session:
            result = await session.execute(
                select(RecurringJobModel)
                .where(
                    RecurringJobModel.enabled.is_(True),
                    RecurringJobModel.next_run_at.is_not(None),
                    RecurringJobModel.next_run_at <= now,
                    or_(RecurringJobModel.lease_holder.is_(None), RecurringJobModel.lease_expires_at <= now),
                )
                .order_by(RecurringJobModel.next_run_at)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def try_claim_job(self, job_id: str, worker_id: str, lease_expiry: datetime, now: datetime) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(RecurringJobModel)
                .where(
                    RecurringJobModel.id == job_id,
                    RecurringJobModel.enabled.is_(True),
                    RecurringJobModel.next_run_at.is_not(None),
                    RecurringJobModel.next_run_at <= now,
                    or_(RecurringJobModel.lease_holder.is_(None), RecurringJobModel.lease_expires_at <= now),
                )
                .values(lease_holder=worker_id, lease_expires_at=lease_expiry)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def renew_lease(self, job_id: str, worker_id: str, new_expiry: datetime) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(RecurringJobModel)
                .where(RecurringJobModel.id == job_id, RecurringJobModel.lease_holder == worker_id)
                .values(lease_expires_at=new_expiry)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def release_job(self, job_id: str, worker_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(RecurringJobModel)
                .where(RecurringJobModel.id == job_id, RecurringJobModel.lease_holder == worker_id)
                .values(lease_holder=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def update_next_run(self, job_id: str, next_run_at: Optional[datetime], last_run_at: Optional[datetime] = None) -> None:
        values = {"next_run_at": next_run_at, "updated_at": utcnow()}
        if next_run_at is None:
            values["enabled"] = False
        if last_run_at is not None:
            values["last_run_at"] = last_run_at
        async with self._session() as session:
            await session.execute(
                update(RecurringJobModel)
                .where(RecurringJobModel.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    # Executions

    async def save_execution(self, execution: TaskExecution) -> None:
        async with self._session() as session:
            result = await session.execute(select(TaskExecutionModel).filter_by(id=execution.id))
            db_execution = result.scalar_one_or_none()
            if db_execution is None:
                db_execution = TaskExecutionModel(id=execution.id)
                session.add(db_execution)
            self._execution_to_db(execution, db_execution)
            await session.commit()

    async def update_progress(self, execution_id: str, percent: float, message: Optional[str]) -> None:
        async with self._session() as session:
            await session.execute(
                update(TaskExecutionModel)
                .where(TaskExecutionModel.id == execution_id)
                .values(progress=percent, progress_message=message)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        async with self._session() as session:
            result = await session.execute(select(TaskExecutionModel).filter_by(id=execution_id))
            db_execution = result.scalar_one_or_none()
            if db_execution:
                return self._db_to_execution(db_execution)
            return None

    async def list_executions(self, job_id: Optional[str] = None, task_name: Optional[str] = None, limit: int = 20) -> List[TaskExecution]:
        query = select(TaskExecutionModel)
        if job_id is not None:
            query = query.filter_by(job_id=job_id)
        if task_name is not None:
            query = query.filter_by(task_name=task_name)
        async with self._session() as session:
            result = await session.execute(query.order_by(TaskExecutionModel.seq.desc()).limit(limit))
            return [self._db_to_execution(db_execution) for db_execution in result.scalars()]

    async def count_executions(self, job_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(TaskExecutionModel).where(TaskExecutionModel.job_id == job_id)
            )
            return result.scalar_one()

    # Health

    async def append_health_sample(self, subject: str, outcome: ExecutionOutcome, recorded_at: datetime) -> None:
        async with self._session() as session:
            session.add(HealthSampleModel(subject=subject, outcome=outcome.kind, recorded_at=recorded_at))
            await session.commit()

    async def list_health_samples(self, subject: str, since: Optional[datetime] = None) -> List[HealthSample]:
        query = select(HealthSampleModel).filter_by(subject=subject)
        if since is not None:
            query = query.where(HealthSampleModel.recorded_at >= since)
        async with self._session() as session:
            result = await session.execute(query.order_by(HealthSampleModel.id))
            return [
                HealthSample(subject=db_sample.subject, outcome=db_sample.outcome, recorded_at=db_sample.recorded_at)
                for db_sample in result.scalars()
            ]

    # Mapping

    def _job_to_db(self, job: RecurringJobDefinition, db_job: RecurringJobModel) -> None:
        db_job.name = job.name
        db_job.task_name = job.task_name
        db_job.schedule_type = job.schedule.type
        db_job.schedule = job.schedule.model_dump(mode="json")
        db_job.parameters = job.parameters
        db_job.enabled = job.enabled
        db_job.allow_overlap = job.concurrency.allow_overlap
        db_job.timeout_is_fatal = job.concurrency.timeout_is_fatal
        db_job.max_retry_attempts = job.max_retry_attempts
        db_job.timeout_seconds = job.timeout.total_seconds() if job.timeout is not None else None
        db_job.next_run_at = job.next_run_at
        db_job.last_run_at = job.last_run_at
        db_job.updated_at = job.updated_at

    def _db_to_job(self, db_job: RecurringJobModel) -> RecurringJobDefinition:
        lease = None
        if db_job.lease_holder is not None and db_job.lease_expires_at is not None:
            lease = JobLease(holder=db_job.lease_holder, expires_at=db_job.lease_expires_at)

        return RecurringJobDefinition(
            id=db_job.id,
            name=db_job.name,
            task_name=db_job.task_name,
            schedule=_schedule_adapter.validate_python(db_job.schedule),
            parameters=db_job.parameters,
            enabled=db_job.enabled,
            concurrency=ConcurrencyPolicy(
                allow_overlap=db_job.allow_overlap,
                timeout_is_fatal=db_job.timeout_is_fatal,
            ),
            max_retry_attempts=db_job.max_retry_attempts,
            timeout=timedelta(seconds=db_job.timeout_seconds) if db_job.timeout_seconds is not None else None,
            next_run_at=db_job.next_run_at,
            last_run_at=db_job.last_run_at,
            lease=lease,
            created_at=db_job.created_at,
            updated_at=db_job.updated_at,
        )

    def _execution_to_db(self, execution: TaskExecution, db_execution: TaskExecutionModel) -> None:
        db_execution.task_name = execution.task_name
        db_execution.job_id = execution.job_id
        db_execution.request = execution.request
        db_execution.status = execution.status.value
        db_execution.progress = execution.progress
        db_execution.progress_message = execution.progress_message
        db_execution.created_at = execution.created_at
        db_execution.scheduled_at = execution.scheduled_at
        db_execution.started_at = execution.started_at
        db_execution.completed_at = execution.completed_at
        db_execution.result = execution.result
        db_execution.error_kind = execution.error.kind if execution.error else None
        db_execution.error_message = execution.error.message if execution.error else None
        db_execution.attempt = execution.attempt
        db_execution.fire_time = execution.fire_time
        db_execution.worker_id = execution.worker_id
        db_execution.catch_up = execution.catch_up

    def _db_to_execution(self, db_execution: TaskExecutionModel) -> TaskExecution:
        error = None
        if db_execution.error_kind is not None:
            error = ErrorDetail(kind=db_execution.error_kind, message=db_execution.error_message or "")

        return TaskExecution(
            id=db_execution.id,
            task_name=db_execution.task_name,
            job_id=db_execution.job_id,
            request=db_execution.request,
            status=ExecutionStatus(db_execution.status),
            progress=db_execution.progress,
            progress_message=db_execution.progress_message,
            created_at=db_execution.created_at,
            scheduled_at=db_execution.scheduled_at,
            started_at=db_execution.started_at,
            completed_at=db_execution.completed_at,
            result=db_execution.result,
            error=error,
            attempt=db_execution.attempt,
            fire_time=db_execution.fire_time,
            worker_id=db_execution.worker_id,
            catch_up=db_execution.catch_up,
        )


class InMemoryStorage(SqlAlchemyStorage):
    """
    SQLite in-memory storage for development and tests.

    All sessions share one connection, so operations are serialized to keep
    each of them an isolated transaction.
    """
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
        self._lock = asyncio.Lock()
