from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Collection, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from backup_scheduler.domain.execution import (
    BackupResult, Execution, ExecutionErrorInfo, ExecutionRecord, JobStatus, Trigger,
)
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.domain.schedule import as_utc
from backup_scheduler.storages.protocol import ANY_EXECUTION, JobFilter, JobStore

Base = declarative_base()

# Statuses the scheduler tick never dispatches.
NOT_DUE = (JobStatus.RUNNING.value, JobStatus.PAUSED.value)


class JobModel(Base):
    __tablename__ = 'backup_jobs'

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    code = Column(String, index=True)
    name = Column(String, nullable=False)
    description = Column(String)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    priority = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    tags = Column(String, default="")
    enabled = Column(Boolean, default=True)
    next_run = Column(DateTime(timezone=True), index=True)
    execution_id = Column(String)
    cancel_requested = Column(Boolean, default=False)
    document = Column(JSON, nullable=False)
    execution = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=0)


class ExecutionModel(Base):
    __tablename__ = 'backup_executions'

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    trigger = Column(String, nullable=False)
    status = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ended_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Float)
    bytes_processed = Column(Integer, default=0)
    backup_size = Column(Integer, default=0)
    error = Column(JSON)
    result = Column(JSON)
    artifact_deleted = Column(Boolean, default=False)


SORTABLE = {
    "created_at": JobModel.created_at,
    "updated_at": JobModel.updated_at,
    "name": JobModel.name,
    "next_run": JobModel.next_run,
    "status": JobModel.status,
    "priority": JobModel.priority,
}


def _tags_column(tags: List[str]) -> str:
    return f",{','.join(tags)}," if tags else ""


class SqlAlchemyJobStore(JobStore):
    def __init__(self, db_url: str, **engine_kwargs: Any):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    def _job_values(self, job: BackupJob) -> Dict[str, Any]:
        return dict(
            tenant_id=job.tenant_id,
            code=job.code,
            name=job.name,
            description=job.description,
            type=job.type.value,
            status=job.status.value,
            priority=job.priority.value,
            is_active=job.is_active,
            tags=_tags_column(job.tags),
            enabled=job.schedule.enabled,
            next_run=as_utc(job.schedule.next_run),
            execution_id=job.execution.execution_id,
            cancel_requested=job.execution.cancel_requested,
            document=job.model_dump(mode="json", exclude={"execution", "version"}),
            execution=job.execution.model_dump(mode="json"),
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
        )

    async def create_job(self, job: BackupJob) -> str:
        async with self.async_session() as session:
            session.add(JobModel(id=job.id, version=job.version, **self._job_values(job)))
            await session.commit()
            return job.id

    async def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[BackupJob]:
        async with self.async_session() as session:
            query = select(JobModel).filter_by(id=job_id)
            if tenant_id is not None:
                query = query.filter_by(tenant_id=tenant_id)
            result = await session.execute(query)
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def compare_and_set(
        self,
        job: BackupJob,
        expected_status: Collection[JobStatus],
        expected_execution_id: Optional[str] = ANY_EXECUTION,
    ) -> bool:
        statement = (
            update(JobModel)
            .where(JobModel.id == job.id)
            .where(JobModel.status.in_([JobStatus(s).value for s in expected_status]))
            .where(JobModel.version == job.version)
        )
        if expected_execution_id is None:
            statement = statement.where(JobModel.execution_id.is_(None))
        elif expected_execution_id != ANY_EXECUTION:
            statement = statement.where(JobModel.execution_id == expected_execution_id)
        statement = statement.values(version=job.version + 1, **self._job_values(job)).execution_options(
            synchronize_session=False
        )
        async with self.async_session() as session:
            result = await session.execute(statement)
            await session.commit()
            if result.rowcount != 1:
                return False
            job.version += 1
            return True

    async def update_execution(self, job_id: str, execution_id: str, execution: Execution) -> bool:
        statement = (
            update(JobModel)
            .where(JobModel.id == job_id)
            .where(JobModel.status == JobStatus.RUNNING.value)
            .where(JobModel.execution_id == execution_id)
            .values(execution=execution.model_dump(mode="json"), updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        async with self.async_session() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount == 1

    async def request_cancel(self, job_id: str) -> bool:
        statement = (
            update(JobModel)
            .where(JobModel.id == job_id)
            .where(JobModel.status == JobStatus.RUNNING.value)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        async with self.async_session() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount == 1

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel.cancel_requested).filter_by(id=job_id))
            return bool(result.scalar_one_or_none())

    async def delete_job(self, job_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                delete(JobModel)
                .where(JobModel.id == job_id)
                .where(JobModel.status != JobStatus.RUNNING.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await session.execute(delete(ExecutionModel).where(ExecutionModel.job_id == job_id))
            await session.commit()
            return result.rowcount == 1

    def _filtered(self, query, tenant_id: str, filters: Optional[JobFilter]):
        query = query.where(JobModel.tenant_id == tenant_id)
        if filters is None:
            return query
        if filters.status:
            query = query.where(JobModel.status == filters.status.value)
        if filters.type:
            query = query.where(JobModel.type == filters.type.value)
        if filters.priority:
            query = query.where(JobModel.priority == filters.priority.value)
        if filters.tag:
            query = query.where(JobModel.tags.like(f"%,{filters.tag.strip().lower()},%"))
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(or_(
                JobModel.name.ilike(pattern),
                JobModel.description.ilike(pattern),
                JobModel.code.ilike(pattern),
            ))
        if filters.date_from:
            query = query.where(JobModel.created_at >= as_utc(filters.date_from))
        if filters.date_to:
            query = query.where(JobModel.created_at <= as_utc(filters.date_to))
        return query

    async def list_jobs(self, tenant_id: str, filters: Optional[JobFilter] = None,
                        limit: int = 20, offset: int = 0) -> List[BackupJob]:
        filters = filters or JobFilter()
        column = SORTABLE.get(filters.sort_by, JobModel.created_at)
        order = column.asc() if filters.sort_order == "asc" else column.desc()
        query = self._filtered(select(JobModel), tenant_id, filters).order_by(order, JobModel.id).offset(offset).limit(limit)
        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def count_jobs(self, tenant_id: str, filters: Optional[JobFilter] = None) -> int:
        query = self._filtered(select(func.count()).select_from(JobModel), tenant_id, filters)
        async with self.async_session() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def list_all_jobs(self, tenant_id: str) -> List[BackupJob]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel).filter_by(tenant_id=tenant_id).order_by(JobModel.created_at, JobModel.id)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def list_due_jobs(self, tenant_id: str, now: datetime) -> List[BackupJob]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .where(JobModel.tenant_id == tenant_id)
                .where(JobModel.is_active.is_(True))
                .where(JobModel.enabled.is_(True))
                .where(JobModel.next_run.is_not(None))
                .where(JobModel.next_run <= as_utc(now))
                .where(JobModel.status.not_in(NOT_DUE))
                .order_by(JobModel.next_run, JobModel.id)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def list_running_jobs(self, tenant_id: Optional[str] = None) -> List[BackupJob]:
        query = select(JobModel).where(JobModel.status == JobStatus.RUNNING.value)
        if tenant_id is not None:
            query = query.where(JobModel.tenant_id == tenant_id)
        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def count_jobs_created_on(self, tenant_id: str, day: date) -> int:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        async with self.async_session() as session:
            result = await session.execute(
                select(func.count()).select_from(JobModel)
                .where(JobModel.tenant_id == tenant_id)
                .where(JobModel.created_at >= start)
                .where(JobModel.created_at < start + timedelta(days=1))
            )
            return int(result.scalar_one())

    def _record_values(self, record: ExecutionRecord) -> Dict[str, Any]:
        return dict(
            job_id=record.job_id,
            tenant_id=record.tenant_id,
            trigger=record.trigger.value,
            status=record.status.value,
            started_at=as_utc(record.started_at),
            ended_at=as_utc(record.ended_at),
            duration_seconds=record.duration.total_seconds() if record.duration is not None else None,
            bytes_processed=record.bytes_processed,
            backup_size=record.backup_size,
            error=record.error.model_dump(mode="json") if record.error else None,
            result=record.result.model_dump(mode="json") if record.result else None,
            artifact_deleted=record.artifact_deleted,
        )

    async def create_execution_record(self, record: ExecutionRecord) -> str:
        async with self.async_session() as session:
            session.add(ExecutionModel(id=record.id, **self._record_values(record)))
            await session.commit()
            return record.id

    async def update_execution_record(self, record: ExecutionRecord) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id == record.id)
                .values(**self._record_values(record))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_execution_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        async with self.async_session() as session:
            result = await session.execute(select(ExecutionModel).filter_by(id=execution_id))
            db_record = result.scalar_one_or_none()
            if db_record:
                return self._db_to_record(db_record)
            return None

    async def list_execution_records(self, job_id: str, limit: int = 20, offset: int = 0) -> List[ExecutionRecord]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionModel)
                .filter_by(job_id=job_id)
                .order_by(ExecutionModel.started_at.desc(), ExecutionModel.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [self._db_to_record(db_record) for db_record in result.scalars()]

    async def count_execution_records(self, job_id: str) -> int:
        async with self.async_session() as session:
            result = await session.execute(
                select(func.count()).select_from(ExecutionModel).where(ExecutionModel.job_id == job_id)
            )
            return int(result.scalar_one())

    async def list_artifact_records(self, job_id: str) -> List[ExecutionRecord]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionModel)
                .where(ExecutionModel.job_id == job_id)
                .where(ExecutionModel.status == JobStatus.COMPLETED.value)
                .where(ExecutionModel.artifact_deleted.is_(False))
                .order_by(ExecutionModel.ended_at.desc())
            )
            return [self._db_to_record(db_record) for db_record in result.scalars()]

    async def mark_artifacts_deleted(self, execution_ids: Collection[str]) -> int:
        if not execution_ids:
            return 0
        async with self.async_session() as session:
            result = await session.execute(
                update(ExecutionModel)
                .where(ExecutionModel.id.in_(list(execution_ids)))
                .values(artifact_deleted=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def list_tenant_execution_records(self, tenant_id: str, since: Optional[datetime] = None,
                                            job_ids: Optional[Collection[str]] = None) -> List[ExecutionRecord]:
        query = select(ExecutionModel).where(ExecutionModel.tenant_id == tenant_id)
        if since is not None:
            query = query.where(ExecutionModel.started_at >= as_utc(since))
        if job_ids is not None:
            query = query.where(ExecutionModel.job_id.in_(list(job_ids)))
        async with self.async_session() as session:
            result = await session.execute(query.order_by(ExecutionModel.started_at))
            return [self._db_to_record(db_record) for db_record in result.scalars()]

    def _db_to_job(self, db_job: JobModel) -> BackupJob:
        data = dict(db_job.document)
        data["execution"] = dict(db_job.execution or {})
        data["execution"]["cancel_requested"] = bool(db_job.cancel_requested)
        data["status"] = db_job.status
        data["version"] = db_job.version or 0
        return BackupJob.model_validate(data)

    def _db_to_record(self, db_record: ExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=db_record.id,
            job_id=db_record.job_id,
            tenant_id=db_record.tenant_id,
            trigger=Trigger(db_record.trigger),
            status=JobStatus(db_record.status),
            started_at=db_record.started_at,
            ended_at=db_record.ended_at,
            duration=timedelta(seconds=db_record.duration_seconds) if db_record.duration_seconds is not None else None,
            bytes_processed=db_record.bytes_processed or 0,
            error=ExecutionErrorInfo.model_validate(db_record.error) if db_record.error else None,
            result=BackupResult.model_validate(db_record.result) if db_record.result else None,
            artifact_deleted=bool(db_record.artifact_deleted),
        )
