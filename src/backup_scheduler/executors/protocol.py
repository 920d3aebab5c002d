from typing import TYPE_CHECKING, List, Protocol

from backup_scheduler.domain.execution import BackupResult, ExecutionRecord
from backup_scheduler.domain.job import BackupJob, DestinationType

if TYPE_CHECKING:
    from backup_scheduler.executors.context import ExecutionContext


class BackupExecutor(Protocol):
    """
    Protocol class for backup executors, the storage-backend collaborators
    that perform the actual transfer.
    """

    async def execute(self, context: "ExecutionContext") -> BackupResult:
        """
        Run the backup transfer for ``context.job``.

        Implementations should report progress through ``context`` and poll
        ``context.is_cancel_requested()`` at safe checkpoints (per file, per
        collection), raising BackupCancelled once they have stopped.

        Args:
            context (ExecutionContext): Handle on the running execution.

        Returns:
            BackupResult: Artifact metadata, statistics and verification outcome.

        Raises:
            TransientBackupError: On I/O or network trouble.
            PermanentBackupError: On bad credentials or configuration.
            BackupCancelled: After honouring a cancellation request.
        """
        ...

    async def delete_artifacts(self, job: BackupJob, artifacts: List[ExecutionRecord]) -> None:
        """
        Remove pruned backup artifacts from the job's destination.
        """
        ...

    @staticmethod
    def supported_destinations() -> List[DestinationType]:
        """
        Return the destination types this executor can write to.
        """
        ...
