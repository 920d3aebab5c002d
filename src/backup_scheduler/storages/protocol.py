from datetime import date, datetime
from typing import Collection, List, Optional, Protocol

from pydantic import BaseModel

from backup_scheduler.domain.execution import Execution, ExecutionRecord, JobStatus
from backup_scheduler.domain.job import BackupJob, BackupType, Priority

ANY_EXECUTION = "__any__"


class JobFilter(BaseModel):
    status: Optional[JobStatus] = None
    type: Optional[BackupType] = None
    priority: Optional[Priority] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"


class JobStore(Protocol):
    async def create_job(self, job: BackupJob) -> str:
        """Create a new backup job and return its ID."""
        ...

    async def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[BackupJob]:
        """Retrieve a job by its ID, optionally scoped to a tenant."""
        ...

    async def compare_and_set(
        self,
        job: BackupJob,
        expected_status: Collection[JobStatus],
        expected_execution_id: Optional[str] = ANY_EXECUTION,
    ) -> bool:
        """
        Atomically write ``job`` only if the stored status is one of ``expected_status``,
        the stored version still equals ``job.version`` and, unless ANY_EXECUTION is given,
        the stored execution id matches. A successful write bumps ``job.version``.
        Return True if the write happened.
        """
        ...

    async def update_execution(self, job_id: str, execution_id: str, execution: Execution) -> bool:
        """Write the execution block of a running job. Return False if the job is not running that execution."""
        ...

    async def request_cancel(self, job_id: str) -> bool:
        """Flag a running job for cooperative cancellation. Return False if it is not running."""
        ...

    async def is_cancel_requested(self, job_id: str) -> bool:
        ...

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job unless it is running. Return True if a row was deleted."""
        ...

    async def list_jobs(self, tenant_id: str, filters: Optional[JobFilter] = None,
                        limit: int = 20, offset: int = 0) -> List[BackupJob]:
        """List a tenant's jobs with filtering and pagination."""
        ...

    async def count_jobs(self, tenant_id: str, filters: Optional[JobFilter] = None) -> int:
        ...

    async def list_all_jobs(self, tenant_id: str) -> List[BackupJob]:
        """Every job of a tenant, unpaginated."""
        ...

    async def list_due_jobs(self, tenant_id: str, now: datetime) -> List[BackupJob]:
        """Active, enabled jobs whose next_run is at or before ``now`` and which are not running or paused."""
        ...

    async def list_running_jobs(self, tenant_id: Optional[str] = None) -> List[BackupJob]:
        ...

    async def count_jobs_created_on(self, tenant_id: str, day: date) -> int:
        ...

    async def create_execution_record(self, record: ExecutionRecord) -> str:
        ...

    async def update_execution_record(self, record: ExecutionRecord) -> bool:
        ...

    async def get_execution_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    async def list_execution_records(self, job_id: str, limit: int = 20, offset: int = 0) -> List[ExecutionRecord]:
        """List a job's executions, newest first."""
        ...

    async def count_execution_records(self, job_id: str) -> int:
        ...

    async def list_artifact_records(self, job_id: str) -> List[ExecutionRecord]:
        """Completed executions whose backup artifact has not been deleted."""
        ...

    async def mark_artifacts_deleted(self, execution_ids: Collection[str]) -> int:
        ...

    async def list_tenant_execution_records(self, tenant_id: str, since: Optional[datetime] = None,
                                            job_ids: Optional[Collection[str]] = None) -> List[ExecutionRecord]:
        ...
