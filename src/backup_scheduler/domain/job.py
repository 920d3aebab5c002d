import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .execution import BackupResult, Execution, JobStatus
from .schedule import Frequency, Schedule, as_utc


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    DATABASE_ONLY = "database_only"
    FILES_ONLY = "files_only"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return [Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW].index(self)


class DestinationType(str, Enum):
    LOCAL = "local"
    S3 = "s3"
    AZURE = "azure"
    GCP = "gcp"
    FTP = "ftp"
    SFTP = "sftp"


class CompressionAlgorithm(str, Enum):
    GZIP = "gzip"
    BZIP2 = "bzip2"
    LZ4 = "lz4"
    ZSTD = "zstd"


class EncryptionAlgorithm(str, Enum):
    AES_256 = "AES-256"
    AES_128 = "AES-128"


class DependencyRelation(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class DependencyPolicy(str, Enum):
    """
    What the scheduler does with a due job whose prerequisites are not met.
    """
    WAIT = "wait"
    SKIP = "skip"
    FAIL = "fail"


class DatabaseSource(BaseModel):
    name: str = Field(..., min_length=1)
    collections: List[str] = Field(default_factory=list, description="Empty means every collection")
    size: int = Field(0, ge=0, description="Size in bytes")


class FileSource(BaseModel):
    path: str = Field(..., min_length=1, max_length=500)
    pattern: Optional[str] = None
    recursive: bool = True
    size: int = Field(0, ge=0, description="Size in bytes")


class Source(BaseModel):
    databases: List[DatabaseSource] = Field(default_factory=list)
    files: List[FileSource] = Field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(db.size for db in self.databases) + sum(f.size for f in self.files)

    @property
    def is_empty(self) -> bool:
        return not self.databases and not self.files


class Credentials(BaseModel):
    """
    Reference to stored credentials plus the non-secret connection details.
    """
    credential_ref: Optional[str] = Field(None, description="Key of the secret in the credential vault")
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None


class RetentionPolicy(BaseModel):
    keep_daily: Optional[int] = Field(None, ge=1, le=365)
    keep_weekly: Optional[int] = Field(None, ge=1, le=52)
    keep_monthly: Optional[int] = Field(None, ge=1, le=12)
    keep_yearly: Optional[int] = Field(None, ge=1, le=10)
    days: Optional[int] = Field(None, ge=1, description="Keep every artifact younger than this many days")
    max_backups: Optional[int] = Field(None, ge=1, description="Never keep more than this many artifacts")

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())


class Destination(BaseModel):
    type: DestinationType
    path: str = Field(..., min_length=1, max_length=500)
    credentials: Credentials = Field(default_factory=Credentials)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)


class Compression(BaseModel):
    enabled: bool = True
    algorithm: CompressionAlgorithm = CompressionAlgorithm.GZIP
    level: int = Field(6, ge=1, le=9)


class Encryption(BaseModel):
    enabled: bool = False
    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256
    key_id: Optional[str] = None

    @model_validator(mode="after")
    def check_key(self) -> "Encryption":
        if self.enabled and not self.key_id:
            raise ValueError("Encryption requires key_id when enabled")
        return self


class NotificationRule(BaseModel):
    enabled: bool = False
    recipients: List[str] = Field(default_factory=list)


class Notifications(BaseModel):
    on_success: NotificationRule = Field(default_factory=lambda: NotificationRule(enabled=True))
    on_failure: NotificationRule = Field(default_factory=lambda: NotificationRule(enabled=True))
    on_warning: NotificationRule = Field(default_factory=NotificationRule)


class Dependency(BaseModel):
    job_id: str
    relation: DependencyRelation = DependencyRelation.BEFORE


class JobSpec(BaseModel):
    """
    The user-editable part of a backup job, as accepted by create and update.
    """
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    type: BackupType
    priority: Priority = Priority.NORMAL
    tags: List[str] = Field(default_factory=list)
    schedule: Schedule = Field(default_factory=Schedule)
    source: Source = Field(default_factory=Source)
    destination: Destination
    compression: Compression = Field(default_factory=Compression)
    encryption: Encryption = Field(default_factory=Encryption)
    notifications: Notifications = Field(default_factory=Notifications)
    dependencies: List[Dependency] = Field(default_factory=list)
    dependency_policy: Optional[DependencyPolicy] = Field(
        None, description="Required when dependencies are declared"
    )
    dependency_freshness: Optional[timedelta] = Field(
        None, description="How recent a prerequisite's successful run must be"
    )
    max_execution_time: Optional[timedelta] = Field(
        None, description="Watchdog limit for a single run"
    )
    is_active: bool = True

    @field_validator("name")
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Backup job name is required")
        return v

    @field_validator("tags")
    def normalize_tags(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in v:
            tag = tag.strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @field_validator("dependency_freshness", "max_execution_time")
    def check_positive(cls, v: Optional[timedelta]) -> Optional[timedelta]:
        if v is not None and v <= timedelta(0):
            raise ValueError("Must be a positive duration")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "JobSpec":
        if self.type == BackupType.DATABASE_ONLY and not self.source.databases:
            raise ValueError("database_only jobs need at least one source database")
        if self.type == BackupType.FILES_ONLY and not self.source.files:
            raise ValueError("files_only jobs need at least one source file path")
        if self.source.is_empty:
            raise ValueError("A backup job needs at least one source database or file path")
        if self.dependencies and self.dependency_policy is None:
            raise ValueError("dependency_policy must be set to wait, skip or fail when dependencies are declared")
        seen = set()
        for dep in self.dependencies:
            if dep.job_id in seen:
                raise ValueError(f"Duplicate dependency on job '{dep.job_id}'")
            seen.add(dep.job_id)
        return self


class BackupJob(JobSpec):
    """
    Durable description of a backup job plus the state of its latest run.
    """
    id: str = Field(default_factory=lambda: f"bkp_{uuid.uuid4().hex[:12]}", description="Unique job identifier")
    tenant_id: str = Field(..., description="Lab the job belongs to")
    code: Optional[str] = Field(None, description="Human readable code, e.g. BKP20240101001")
    status: JobStatus = JobStatus.SCHEDULED
    execution: Execution = Field(default_factory=Execution)
    result: BackupResult = Field(default_factory=BackupResult)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(0, ge=0, description="Bumped by every whole-job write; guards against lost updates")

    @field_validator("created_at", "updated_at")
    def check_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def next_run(self) -> Optional[datetime]:
        return self.schedule.next_run

    @property
    def is_recurring(self) -> bool:
        return self.schedule.frequency != Frequency.MANUAL

    @property
    def is_running(self) -> bool:
        return self.status == JobStatus.RUNNING

    def spec(self) -> JobSpec:
        return JobSpec.model_validate(self.model_dump(include=set(JobSpec.model_fields)))

    def settled_status(self) -> JobStatus:
        """
        Status a job falls back to outside of a run, given its schedule.
        """
        if not self.schedule.enabled:
            return JobStatus.PAUSED
        return JobStatus.SCHEDULED

    @property
    def readable_string(self) -> str:
        summary = f"Backup Job: '{self.name}' ({self.code or self.id})"
        if self.description:
            summary += f"\nDescription: {self.description}"
        return (
            f"{summary}\nType: {self.type.value}\n{self.schedule.format_schedule()}"
            f"\nDestination: {self.destination.type.value}:{self.destination.path}"
        )


STATUS_COLORS: Dict[JobStatus, str] = {
    JobStatus.SCHEDULED: "#3B82F6",
    JobStatus.RUNNING: "#F59E0B",
    JobStatus.COMPLETED: "#10B981",
    JobStatus.FAILED: "#EF4444",
    JobStatus.CANCELLED: "#6B7280",
    JobStatus.PAUSED: "#8B5CF6",
}


def status_color(status: Any) -> str:
    try:
        return STATUS_COLORS[JobStatus(status)]
    except ValueError:
        return "#6B7280"


def format_duration(duration: Optional[timedelta]) -> str:
    if not duration:
        return "N/A"
    seconds = int(duration.total_seconds())
    minutes, hours = seconds // 60, seconds // 3600
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
