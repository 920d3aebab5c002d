from .schedule import Schedule, Frequency, ShortMonthPolicy
from .execution import (
    JobStatus, Trigger, LogLevel, Execution, ExecutionErrorInfo, ExecutionRecord,
    BackupResult, BackupFile, BackupStatistics, Verification, VerificationStatus,
)
from .job import (
    BackupJob, JobSpec, BackupType, Priority, Destination, DestinationType, Credentials,
    RetentionPolicy, Compression, Encryption, Source, Dependency, DependencyRelation,
    DependencyPolicy, Notifications, NotificationRule, status_color, format_duration,
)

__all__ = [
    "Schedule", "Frequency", "ShortMonthPolicy",
    "JobStatus", "Trigger", "LogLevel", "Execution", "ExecutionErrorInfo", "ExecutionRecord",
    "BackupResult", "BackupFile", "BackupStatistics", "Verification", "VerificationStatus",
    "BackupJob", "JobSpec", "BackupType", "Priority", "Destination", "DestinationType", "Credentials",
    "RetentionPolicy", "Compression", "Encryption", "Source", "Dependency", "DependencyRelation",
    "DependencyPolicy", "Notifications", "NotificationRule", "status_color", "format_duration",
]
