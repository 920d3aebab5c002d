import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .schedule import as_utc


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Trigger(str, Enum):
    SCHEDULER = "scheduler"
    MANUAL = "manual"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


def new_execution_id() -> str:
    return f"exe_{uuid.uuid4().hex[:12]}"


class Progress(BaseModel):
    percentage: float = Field(0, ge=0, le=100)
    current_step: Optional[str] = None
    total_steps: Optional[int] = Field(None, ge=0)
    completed_steps: int = Field(0, ge=0)
    bytes_processed: int = Field(0, ge=0)
    bytes_total: int = Field(0, ge=0)


class LogEntry(BaseModel):
    timestamp: datetime
    level: LogLevel = LogLevel.INFO
    message: str
    details: Optional[Any] = None

    @field_validator("timestamp")
    def check_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)


class ExecutionErrorInfo(BaseModel):
    """
    Structured error recorded on a failed run.
    """
    code: str = Field("UNKNOWN_ERROR", description="Machine readable error code, e.g. TIMEOUT")
    message: str
    stack: Optional[str] = None
    timestamp: datetime
    transient: bool = Field(False, description="Whether a fresh execution may succeed without a job update")

    @field_validator("timestamp")
    def check_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)


class Execution(BaseModel):
    """
    The current or most recent run of a job.

    Progress and logs are owned by whoever holds the running claim.
    """
    execution_id: Optional[str] = None
    trigger: Optional[Trigger] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[timedelta] = None
    outcome: Optional[JobStatus] = Field(None, description="Terminal status of the run once it has ended")
    progress: Progress = Field(default_factory=Progress)
    logs: List[LogEntry] = Field(default_factory=list)
    error: Optional[ExecutionErrorInfo] = None
    cancel_requested: bool = False

    @field_validator("start_time", "end_time")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def finish(self, end_time: datetime, outcome: JobStatus) -> None:
        self.end_time = end_time
        self.outcome = outcome
        self.cancel_requested = False
        if self.start_time is not None:
            self.duration = self.end_time - self.start_time


class BackupFile(BaseModel):
    name: Optional[str] = None
    path: Optional[str] = None
    size: Optional[int] = Field(None, ge=0, description="Size in bytes")
    checksum: Optional[str] = None
    compression_ratio: Optional[float] = None


class BackupStatistics(BaseModel):
    files_backed_up: int = 0
    folders_backed_up: int = 0
    databases_backed_up: int = 0
    collections_backed_up: int = 0
    documents_backed_up: int = 0
    total_size: int = 0
    compressed_size: int = 0


class VerificationStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Verification(BaseModel):
    status: VerificationStatus = VerificationStatus.PENDING
    checksum_match: Optional[bool] = None
    integrity_check: Optional[bool] = None
    verified_at: Optional[datetime] = None


class BackupResult(BaseModel):
    """
    What an executor reports back after a successful transfer.
    """
    backup_file: Optional[BackupFile] = None
    statistics: BackupStatistics = Field(default_factory=BackupStatistics)
    verification: Verification = Field(default_factory=Verification)


class ExecutionRecord(BaseModel):
    """
    One row of a job's execution history.
    """
    id: str = Field(default_factory=new_execution_id, description="Execution identifier")
    job_id: str
    tenant_id: str
    trigger: Trigger = Trigger.SCHEDULER
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration: Optional[timedelta] = None
    bytes_processed: int = 0
    error: Optional[ExecutionErrorInfo] = None
    result: Optional[BackupResult] = None
    artifact_deleted: bool = False

    @field_validator("started_at", "ended_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def backup_size(self) -> int:
        if self.result and self.result.backup_file and self.result.backup_file.size:
            return self.result.backup_file.size
        return 0

    @property
    def has_artifact(self) -> bool:
        return (
            self.status == JobStatus.COMPLETED
            and not self.artifact_deleted
            and self.result is not None
            and self.result.backup_file is not None
        )
