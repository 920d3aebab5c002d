import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from backup_scheduler.config import Settings, get_settings
from backup_scheduler.dependencies import DependencyGraph
from backup_scheduler.destination_check import ConfigTestReport, destination_problems, test_destination_config
from backup_scheduler.domain.execution import ExecutionRecord, JobStatus, Trigger
from backup_scheduler.domain.job import BackupJob, JobSpec
from backup_scheduler.domain.schedule import as_utc
from backup_scheduler.engine import ExecutionEngine
from backup_scheduler.errors import (
    ConflictError, DependencyExistsError, JobDisabledError, JobValidationError, NotFoundError,
)
from backup_scheduler.recurrence import next_run
from backup_scheduler.stats import BackupStats, build_stats
from backup_scheduler.storages.protocol import JobFilter, JobStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
# Schedule fields that carry state rather than configuration.
SCHEDULE_STATE = {"next_run", "last_run"}


class Pagination(BaseModel):
    current: int
    pages: int
    total: int
    limit: int


class JobPage(BaseModel):
    jobs: List[BackupJob]
    pagination: Pagination


class HistoryPage(BaseModel):
    history: List[ExecutionRecord]
    pagination: Pagination


class ExecuteResponse(BaseModel):
    execution_id: str
    status: JobStatus
    started_at: datetime


def deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class BackupService:
    """
    The operation set the REST layer maps onto: job CRUD, manual execution,
    history, statistics and configuration testing, all scoped to a tenant.
    """

    def __init__(self, store: JobStore, engine: ExecutionEngine,
                 clock: Optional[Callable[[], datetime]] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store: JobStore = store
        self.engine: ExecutionEngine = engine
        self.clock: Callable[[], datetime] = clock or engine.clock

    def validate_spec(self, data: Union[JobSpec, Mapping[str, Any]]) -> JobSpec:
        if isinstance(data, JobSpec):
            data = data.model_dump()
        try:
            spec = JobSpec.model_validate(data)
        except ValidationError as e:
            raise JobValidationError(
                "Validation failed", {"errors": e.errors(include_url=False, include_context=False)}
            )
        problems = destination_problems(spec.destination)
        if problems:
            raise JobValidationError("Validation failed", {"errors": problems})
        return spec

    async def get_job(self, tenant_id: str, job_id: str) -> BackupJob:
        job = await self.store.get_job(job_id, tenant_id)
        if job is None:
            raise NotFoundError("Backup job not found", {"job_id": job_id})
        return job

    async def list_jobs(self, tenant_id: str, filters: Optional[JobFilter] = None,
                        page: int = 1, limit: int = 20) -> JobPage:
        page, limit = self._page_args(page, limit)
        total = await self.store.count_jobs(tenant_id, filters)
        jobs = await self.store.list_jobs(tenant_id, filters, limit=limit, offset=(page - 1) * limit)
        return JobPage(jobs=jobs, pagination=self._pagination(page, limit, total))

    async def _generate_code(self, tenant_id: str, now: datetime) -> str:
        count = await self.store.count_jobs_created_on(tenant_id, now.date())
        return f"BKP{now:%Y%m%d}{count + 1:03d}"

    async def create_job(self, tenant_id: str, spec: Union[JobSpec, Mapping[str, Any]],
                         created_by: Optional[str] = None) -> BackupJob:
        spec = self.validate_spec(spec)
        now = self.clock()
        job = BackupJob(
            **spec.model_dump(),
            tenant_id=tenant_id,
            code=await self._generate_code(tenant_id, now),
            created_by=created_by,
            updated_by=created_by,
            created_at=now,
            updated_at=now,
        )
        job.schedule.last_run = None
        job.schedule.next_run = next_run(job.schedule, now)
        job.status = job.settled_status()

        existing = await self.store.list_all_jobs(tenant_id)
        DependencyGraph(existing + [job]).validate()

        await self.store.create_job(job)
        logger.info("Backup job %s (%s) created for tenant %s", job.id, job.code, tenant_id)
        return job

    async def update_job(self, tenant_id: str, job_id: str, patch: Mapping[str, Any],
                         updated_by: Optional[str] = None) -> BackupJob:
        job = await self.get_job(tenant_id, job_id)
        if job.status == JobStatus.RUNNING:
            raise ConflictError("Cannot update a running backup job", {"job_id": job_id})

        current = job.spec().model_dump(mode="json")
        spec = self.validate_spec(deep_merge(current, patch))
        now = self.clock()

        data = job.model_dump()
        data.update(spec.model_dump())
        data["schedule"]["last_run"] = job.schedule.last_run
        data["schedule"]["next_run"] = job.schedule.next_run
        data.update(updated_by=updated_by, updated_at=now)
        updated = BackupJob.model_validate(data)

        schedule_changed = (
            updated.schedule.model_dump(exclude=SCHEDULE_STATE) != job.schedule.model_dump(exclude=SCHEDULE_STATE)
        )
        if schedule_changed:
            updated.schedule.next_run = next_run(updated.schedule, now)
        if not updated.schedule.enabled:
            updated.status = JobStatus.PAUSED
        elif job.status == JobStatus.PAUSED:
            updated.status = JobStatus.SCHEDULED

        others = [other for other in await self.store.list_all_jobs(tenant_id) if other.id != job_id]
        DependencyGraph(others + [updated]).validate()

        if not await self.store.compare_and_set(updated, [job.status], job.execution.execution_id):
            raise ConflictError("Backup job changed while it was being updated", {"job_id": job_id})
        logger.info("Backup job %s updated", job_id)
        return updated

    async def pause_job(self, tenant_id: str, job_id: str, updated_by: Optional[str] = None) -> BackupJob:
        return await self.update_job(tenant_id, job_id, {"schedule": {"enabled": False}}, updated_by)

    async def resume_job(self, tenant_id: str, job_id: str, updated_by: Optional[str] = None) -> BackupJob:
        return await self.update_job(tenant_id, job_id, {"schedule": {"enabled": True}}, updated_by)

    async def delete_job(self, tenant_id: str, job_id: str) -> bool:
        job = await self.get_job(tenant_id, job_id)
        if job.status == JobStatus.RUNNING:
            raise ConflictError("Cannot delete a running backup job. Stop it first.", {"job_id": job_id})

        dependents = DependencyGraph(await self.store.list_all_jobs(tenant_id)).dependents(job_id)
        if dependents:
            raise DependencyExistsError(
                "Cannot delete backup job. Other jobs depend on it.",
                {"dependent_jobs": [{"id": d.id, "name": d.name} for d in dependents]},
            )
        if not await self.store.delete_job(job_id):
            raise ConflictError("Cannot delete a running backup job. Stop it first.", {"job_id": job_id})
        logger.info("Backup job %s deleted", job_id)
        return True

    async def execute_job(self, tenant_id: str, job_id: str) -> ExecuteResponse:
        """
        Start a job now. The run continues in the background; its outcome is
        recorded on the job and in its history, never raised here.
        """
        job = await self.get_job(tenant_id, job_id)
        if job.status == JobStatus.RUNNING:
            raise ConflictError("Backup job is already running", {"job_id": job_id})
        if not job.is_active:
            raise JobDisabledError("Backup job is disabled", {"job_id": job_id})

        result = await self.engine.launch(job_id, Trigger.MANUAL)
        if not result.started:
            raise ConflictError(f"Backup job could not be started: {result.reason}", {"job_id": job_id})
        return ExecuteResponse(execution_id=result.execution_id, status=JobStatus.RUNNING,
                               started_at=result.started_at)

    async def stop_job(self, tenant_id: str, job_id: str) -> bool:
        await self.get_job(tenant_id, job_id)
        return await self.engine.stop(job_id)

    async def list_execution_history(self, tenant_id: str, job_id: str,
                                     page: int = 1, limit: Optional[int] = None) -> HistoryPage:
        await self.get_job(tenant_id, job_id)
        page, limit = self._page_args(page, limit or self.settings.history_page_size)
        total = await self.store.count_execution_records(job_id)
        history = await self.store.list_execution_records(job_id, limit=limit, offset=(page - 1) * limit)
        return HistoryPage(history=history, pagination=self._pagination(page, limit, total))

    async def get_stats(self, tenant_id: str, date_from: Optional[datetime] = None,
                        date_to: Optional[datetime] = None, now: Optional[datetime] = None) -> BackupStats:
        jobs = await self.store.list_all_jobs(tenant_id)
        if date_from is not None:
            jobs = [job for job in jobs if job.created_at >= as_utc(date_from)]
        if date_to is not None:
            jobs = [job for job in jobs if job.created_at <= as_utc(date_to)]
        records = await self.store.list_tenant_execution_records(tenant_id, job_ids=[job.id for job in jobs])
        return build_stats(jobs, records, now or self.clock(), timedelta(days=self.settings.stats_window_days))

    def test_destination_config(self, destination: Any, compression: Any = None,
                                encryption: Any = None) -> ConfigTestReport:
        return test_destination_config(destination, compression, encryption, now=self.clock())

    @staticmethod
    def _page_args(page: int, limit: int):
        if page < 1:
            raise JobValidationError("page must be 1 or greater", {"page": page})
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise JobValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit})
        return page, limit

    @staticmethod
    def _pagination(page: int, limit: int, total: int) -> Pagination:
        return Pagination(current=page, pages=math.ceil(total / limit) if total else 0, total=total, limit=limit)
