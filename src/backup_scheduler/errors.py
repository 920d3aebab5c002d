from typing import Any, Dict, Optional


class BackupSchedulerError(Exception):
    """
    Base class for errors returned to callers of the backup service.
    """
    code: str = "BACKUP_SCHEDULER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class JobValidationError(BackupSchedulerError):
    """Bad job configuration: invalid cron, retention numbers, destination shape..."""
    code = "VALIDATION_ERROR"


class NotFoundError(BackupSchedulerError):
    code = "NOT_FOUND"


class ConflictError(BackupSchedulerError):
    """Duplicate start attempt, or update/delete on a running job."""
    code = "CONFLICT"


class JobDisabledError(BackupSchedulerError):
    code = "DISABLED"


class DependencyError(BackupSchedulerError):
    code = "DEPENDENCY_ERROR"


class DependencyCycleError(DependencyError):
    code = "DEPENDENCY_CYCLE"


class DependencyExistsError(DependencyError):
    code = "DEPENDENCY_EXISTS"


class MissingDependencyError(DependencyError):
    code = "DEPENDENCY_NOT_FOUND"


class BackupError(Exception):
    """
    Raised by backup executors when a transfer cannot finish.

    These never reach API callers; the engine records them on the job.
    """
    transient: bool = False

    def __init__(self, message: str, code: str = "BACKUP_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class TransientBackupError(BackupError):
    """I/O or network trouble; a fresh execute_job call may succeed."""
    transient = True

    def __init__(self, message: str, code: str = "TRANSIENT_ERROR"):
        super().__init__(message, code)


class PermanentBackupError(BackupError):
    """Bad credentials or configuration; retrying without a job update is pointless."""

    def __init__(self, message: str, code: str = "PERMANENT_ERROR"):
        super().__init__(message, code)


class BackupCancelled(Exception):
    """Raised by an executor once it has observed a cancellation request."""
