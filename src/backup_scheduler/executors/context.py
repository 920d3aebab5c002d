from typing import TYPE_CHECKING, Any, Optional

from backup_scheduler.domain.execution import LogLevel
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.errors import BackupCancelled

if TYPE_CHECKING:
    from backup_scheduler.engine import ExecutionEngine


class ExecutionContext:
    """
    What an executor sees of the run it is performing.
    """

    def __init__(self, engine: "ExecutionEngine", job: BackupJob, execution_id: str):
        self.engine = engine
        self.job = job
        self.execution_id = execution_id

    async def update_progress(
        self,
        percentage: float,
        current_step: Optional[str] = None,
        bytes_processed: Optional[int] = None,
        **fields: Any,
    ) -> None:
        await self.engine.update_progress(
            self.job.id, percentage, current_step, bytes_processed, execution_id=self.execution_id, **fields
        )

    async def log(self, level: LogLevel, message: str, details: Any = None) -> None:
        await self.engine.add_log(self.job.id, level, message, details, execution_id=self.execution_id)

    async def info(self, message: str, details: Any = None) -> None:
        await self.log(LogLevel.INFO, message, details)

    async def warning(self, message: str, details: Any = None) -> None:
        await self.log(LogLevel.WARNING, message, details)

    async def is_cancel_requested(self) -> bool:
        return await self.engine.store.is_cancel_requested(self.job.id)

    async def checkpoint(self) -> None:
        """
        Raise BackupCancelled if a stop has been requested.
        """
        if await self.is_cancel_requested():
            raise BackupCancelled(f"Backup job {self.job.id} cancelled at checkpoint")
