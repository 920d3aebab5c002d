import asyncio
import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from backup_scheduler.config import Settings, get_settings
from backup_scheduler.domain.execution import (
    BackupResult, Execution, ExecutionErrorInfo, ExecutionRecord, JobStatus, LogEntry, LogLevel,
    Progress, Trigger, VerificationStatus, new_execution_id,
)
from backup_scheduler.domain.job import BackupJob, format_duration
from backup_scheduler.errors import BackupCancelled, BackupError, ConflictError, NotFoundError
from backup_scheduler.executor_factory import BackupExecutorFactory
from backup_scheduler.executors.context import ExecutionContext
from backup_scheduler.notifications.protocol import NotificationDispatcher, NotificationEvent
from backup_scheduler.notifications.webhook import dispatcher_from_settings
from backup_scheduler.recurrence import next_run
from backup_scheduler.retention import PruneDecision, prune
from backup_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)

TIMEOUT = "TIMEOUT"
DEPENDENCY_UNMET = "DEPENDENCY_UNMET"
EXECUTOR_NOT_FOUND = "EXECUTOR_NOT_FOUND"
INVALID_DESTINATION = "INVALID_DESTINATION"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

# Statuses a scheduled run may claim from; manual runs may also start paused jobs.
STARTABLE = (JobStatus.SCHEDULED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# Re-reads allowed when a claim loses to a concurrent edit of the job.
CLAIM_ATTEMPTS = 3

ErrorLike = Union[BaseException, ExecutionErrorInfo, Mapping[str, Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StartResult(BaseModel):
    job_id: str
    started: bool
    status: JobStatus
    execution_id: Optional[str] = None
    started_at: Optional[datetime] = None
    reason: Optional[str] = None


class ExecutionEngine:
    """
    Drives single backup runs through scheduled -> running -> completed/failed/cancelled.

    The only contended state is the job status, which is changed exclusively
    through the store's compare-and-set, so several engines (one per scheduler
    replica) can share a store safely.
    """

    def __init__(
        self,
        store: JobStore,
        executor_factory: BackupExecutorFactory,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.store: JobStore = store
        self.executor_factory: BackupExecutorFactory = executor_factory
        self.notifier: NotificationDispatcher = notifier or dispatcher_from_settings(settings)
        self.clock: Callable[[], datetime] = clock
        self.default_max_execution_time = timedelta(seconds=settings.default_max_execution_seconds)
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_job_ids(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def _get_job(self, job_id: str) -> BackupJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Backup job {job_id} not found")
        return job

    async def _running_job(self, job_id: str, execution_id: Optional[str] = None) -> BackupJob:
        job = await self._get_job(job_id)
        if job.status != JobStatus.RUNNING:
            raise ConflictError(f"Backup job {job_id} is not running", {"status": job.status.value})
        if execution_id is not None and job.execution.execution_id != execution_id:
            raise ConflictError(
                f"Execution {execution_id} of backup job {job_id} is no longer current",
                {"current_execution_id": job.execution.execution_id},
            )
        return job

    async def start(self, job_id: str, trigger: Trigger = Trigger.SCHEDULER) -> StartResult:
        """
        Claim a job for execution.

        Losing the claim to another scheduler instance is not an error: the
        result reports ``started=False`` with reason "already running".
        """
        for _ in range(CLAIM_ATTEMPTS):
            job = await self._get_job(job_id)
            if job.status == JobStatus.RUNNING:
                return StartResult(job_id=job_id, started=False, status=job.status,
                                   execution_id=job.execution.execution_id, reason="already running")
            if not job.is_active:
                return StartResult(job_id=job_id, started=False, status=job.status, reason="disabled")
            allowed = STARTABLE + (JobStatus.PAUSED,) if trigger == Trigger.MANUAL else STARTABLE
            if job.status not in allowed:
                return StartResult(job_id=job_id, started=False, status=job.status,
                                   reason=f"cannot start from {job.status.value}")

            now = self.clock()
            claimed = job.model_copy(deep=True)
            claimed.status = JobStatus.RUNNING
            claimed.execution = Execution(
                execution_id=new_execution_id(),
                trigger=trigger,
                start_time=now,
                progress=Progress(bytes_total=job.source.total_size),
            )
            claimed.updated_at = now
            if await self.store.compare_and_set(claimed, [job.status], job.execution.execution_id):
                break
            # lost to another claimant or to a concurrent edit; re-read and decide again
            logger.debug("Claim of backup job %s raced with another write, retrying", job_id)
        else:
            logger.info("Backup job %s was claimed by another scheduler", job_id)
            return StartResult(job_id=job_id, started=False, status=JobStatus.RUNNING, reason="already running")

        await self.store.create_execution_record(ExecutionRecord(
            id=claimed.execution.execution_id,
            job_id=job_id,
            tenant_id=job.tenant_id,
            trigger=trigger,
            status=JobStatus.RUNNING,
            started_at=now,
        ))
        logger.info("Backup job %s started (execution %s, %s)", job_id, claimed.execution.execution_id, trigger.value)
        return StartResult(job_id=job_id, started=True, status=JobStatus.RUNNING,
                           execution_id=claimed.execution.execution_id, started_at=now)

    async def update_progress(
        self,
        job_id: str,
        percentage: float,
        current_step: Optional[str] = None,
        bytes_processed: Optional[int] = None,
        execution_id: Optional[str] = None,
        completed_steps: Optional[int] = None,
        total_steps: Optional[int] = None,
        bytes_total: Optional[int] = None,
    ) -> Progress:
        """
        Record progress of a running job. Percentages are clamped to 0-100
        and never move backwards.
        """
        job = await self._running_job(job_id, execution_id)
        progress = job.execution.progress
        value = min(100.0, max(0.0, float(percentage)))
        if value < progress.percentage:
            logger.debug("Ignoring progress decrease for job %s: %s -> %s", job_id, progress.percentage, value)
            value = progress.percentage
        progress.percentage = value
        if current_step is not None:
            progress.current_step = current_step
        if bytes_processed is not None:
            progress.bytes_processed = max(progress.bytes_processed, bytes_processed)
        if completed_steps is not None:
            progress.completed_steps = max(progress.completed_steps, completed_steps)
        if total_steps is not None:
            progress.total_steps = total_steps
        if bytes_total is not None:
            progress.bytes_total = bytes_total
        if not await self.store.update_execution(job_id, job.execution.execution_id, job.execution):
            raise ConflictError(f"Backup job {job_id} stopped running")
        return progress

    async def add_log(
        self,
        job_id: str,
        level: Union[LogLevel, str],
        message: str,
        details: Any = None,
        execution_id: Optional[str] = None,
    ) -> LogEntry:
        job = await self._running_job(job_id, execution_id)
        entry = LogEntry(timestamp=self.clock(), level=LogLevel(level), message=message, details=details)
        job.execution.logs.append(entry)
        if not await self.store.update_execution(job_id, job.execution.execution_id, job.execution):
            raise ConflictError(f"Backup job {job_id} stopped running")
        return entry

    async def _finish_record(self, job: BackupJob, result: Optional[BackupResult] = None) -> None:
        execution = job.execution
        record = await self.store.get_execution_record(execution.execution_id)
        if record is None:
            record = ExecutionRecord(id=execution.execution_id, job_id=job.id, tenant_id=job.tenant_id,
                                     started_at=execution.start_time or execution.end_time)
            await self.store.create_execution_record(record)
        record.status = execution.outcome
        record.trigger = execution.trigger or record.trigger
        record.ended_at = execution.end_time
        record.duration = execution.duration
        record.bytes_processed = execution.progress.bytes_processed
        record.error = execution.error
        record.result = result
        await self.store.update_execution_record(record)

    async def _transition(self, job: BackupJob, finished: BackupJob) -> None:
        if not await self.store.compare_and_set(finished, [JobStatus.RUNNING], job.execution.execution_id):
            raise ConflictError(f"Backup job {job.id} is no longer running")

    def _reschedule(self, job: BackupJob, now: datetime) -> None:
        job.schedule.next_run = next_run(job.schedule, now)

    async def complete(
        self,
        job_id: str,
        result: Optional[BackupResult] = None,
        execution_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BackupJob:
        job = await self._running_job(job_id, execution_id)
        now = now or self.clock()
        done = job.model_copy(deep=True)
        done.execution.finish(now, JobStatus.COMPLETED)
        done.execution.progress.percentage = 100
        done.result = result or BackupResult()
        done.schedule.last_run = now
        self._reschedule(done, now)
        done.status = done.settled_status() if done.is_recurring else JobStatus.COMPLETED
        done.updated_at = now
        await self._transition(job, done)
        await self._finish_record(done, done.result)
        logger.info("Backup job %s completed in %s", job_id, format_duration(done.execution.duration))

        await self.apply_retention(done, now)
        await self.notifier.dispatch(NotificationEvent.SUCCESS, done)
        if done.result.verification.status == VerificationStatus.FAILED:
            await self.notifier.dispatch(NotificationEvent.WARNING, done)
        return done

    def _error_info(self, error: ErrorLike, now: datetime, code: Optional[str] = None) -> ExecutionErrorInfo:
        if isinstance(error, ExecutionErrorInfo):
            return error
        if isinstance(error, Mapping):
            data = {"timestamp": now, **error}
            if code:
                data["code"] = code
            return ExecutionErrorInfo.model_validate(data)
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if isinstance(error, BackupError):
            return ExecutionErrorInfo(code=code or error.code, message=error.message, stack=stack,
                                      timestamp=now, transient=error.transient)
        return ExecutionErrorInfo(code=code or getattr(error, "code", None) or UNKNOWN_ERROR,
                                  message=str(error) or type(error).__name__, stack=stack, timestamp=now)

    async def fail(
        self,
        job_id: str,
        error: ErrorLike,
        execution_id: Optional[str] = None,
        code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BackupJob:
        """
        Record a failed run. There is no automatic retry; a retry is a new start.
        """
        job = await self._running_job(job_id, execution_id)
        now = now or self.clock()
        failed = job.model_copy(deep=True)
        failed.execution.finish(now, JobStatus.FAILED)
        failed.execution.error = self._error_info(error, now, code)
        self._reschedule(failed, now)
        failed.status = JobStatus.FAILED
        failed.updated_at = now
        await self._transition(job, failed)
        await self._finish_record(failed)
        logger.warning("Backup job %s failed [%s]: %s", job_id, failed.execution.error.code,
                       failed.execution.error.message)
        await self.notifier.dispatch(NotificationEvent.FAILURE, failed)
        return failed

    async def stop(self, job_id: str) -> bool:
        """
        Request cooperative cancellation of a running job.

        The executor observes the flag at its next checkpoint; the job becomes
        cancelled only once the executor acknowledges.
        """
        if not await self.store.request_cancel(job_id):
            await self._get_job(job_id)
            raise ConflictError(f"Backup job {job_id} is not currently running")
        logger.info("Cancellation requested for backup job %s", job_id)
        return True

    async def acknowledge_cancel(self, job_id: str, execution_id: Optional[str] = None) -> BackupJob:
        job = await self._running_job(job_id, execution_id)
        now = self.clock()
        cancelled = job.model_copy(deep=True)
        cancelled.execution.finish(now, JobStatus.CANCELLED)
        self._reschedule(cancelled, now)
        cancelled.status = JobStatus.CANCELLED
        cancelled.updated_at = now
        await self._transition(job, cancelled)
        await self._finish_record(cancelled)
        logger.info("Backup job %s cancelled", job_id)
        return cancelled

    async def reject(self, job_id: str, code: str, message: str, trigger: Trigger = Trigger.SCHEDULER) -> Optional[BackupJob]:
        """
        Claim a job and immediately fail it, e.g. when its prerequisites are unmet
        and its policy says to fail rather than wait.
        """
        result = await self.start(job_id, trigger)
        if not result.started:
            return None
        return await self.fail(job_id, {"code": code, "message": message}, execution_id=result.execution_id)

    async def apply_retention(self, job: BackupJob, now: datetime) -> PruneDecision:
        history = await self.store.list_artifact_records(job.id)
        decision = prune(job, history, now)
        if not decision.delete:
            return decision
        try:
            executor = self.executor_factory.get_executor(job.destination)
            await executor.delete_artifacts(job, decision.delete)
        except Exception:
            logger.exception("Could not delete %d pruned artifacts of backup job %s", len(decision.delete), job.id)
            return decision
        await self.store.mark_artifacts_deleted([record.id for record in decision.delete])
        logger.info("Pruned %d artifacts of backup job %s", len(decision.delete), job.id)
        return decision

    async def check_timeouts(self, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> List[str]:
        """
        Fail every running job that has exceeded its maximum execution time.

        Returns:
            List[str]: IDs of the jobs failed with TIMEOUT.
        """
        now = now or self.clock()
        timed_out = []
        for job in await self.store.list_running_jobs(tenant_id):
            limit = job.max_execution_time or self.default_max_execution_time
            started = job.execution.start_time
            if started is None or now - started <= limit:
                continue
            try:
                await self.fail(
                    job.id,
                    {"code": TIMEOUT, "message": f"Backup exceeded maximum execution time of {format_duration(limit)}"},
                    execution_id=job.execution.execution_id,
                    now=now,
                )
            except ConflictError:
                continue
            timed_out.append(job.id)
            task = self._tasks.get(job.id)
            if task is not None and not task.done():
                task.cancel()
        return timed_out

    async def _quietly(self, operation) -> None:
        try:
            await operation
        except (ConflictError, NotFoundError) as e:
            logger.info("Run already settled: %s", e.message)

    async def drive(self, job: BackupJob, execution_id: str) -> None:
        """
        Run the external executor for a claimed job and settle the outcome.
        """
        current = asyncio.current_task()
        if current is not None:
            self._tasks[job.id] = current
        try:
            try:
                executor = self.executor_factory.get_executor(job.destination)
            except KeyError as e:
                await self._quietly(self.fail(job.id, e, execution_id, code=EXECUTOR_NOT_FOUND))
                return
            except ValueError as e:
                await self._quietly(self.fail(job.id, e, execution_id, code=INVALID_DESTINATION))
                return

            context = ExecutionContext(self, job, execution_id)
            try:
                result = await executor.execute(context)
            except BackupCancelled:
                await self._quietly(self.acknowledge_cancel(job.id, execution_id))
                return
            except asyncio.CancelledError:
                await self._quietly(self.acknowledge_cancel(job.id, execution_id))
                raise
            except Exception as e:
                if not isinstance(e, BackupError):
                    logger.exception("Unexpected error in executor for backup job %s", job.id)
                await self._quietly(self.fail(job.id, e, execution_id))
                return
            await self._quietly(self.complete(job.id, result, execution_id=execution_id))
        finally:
            if current is not None and self._tasks.get(job.id) is current:
                del self._tasks[job.id]

    async def run(self, job_id: str, trigger: Trigger = Trigger.SCHEDULER) -> StartResult:
        """
        Claim and run a job to a terminal state in the current task.
        """
        result = await self.start(job_id, trigger)
        if result.started:
            job = await self._get_job(job_id)
            await self.drive(job, result.execution_id)
        return result

    async def launch(self, job_id: str, trigger: Trigger = Trigger.MANUAL) -> StartResult:
        """
        Claim a job now and drive it in a background task.
        """
        result = await self.start(job_id, trigger)
        if result.started:
            job = await self._get_job(job_id)
            task = asyncio.create_task(self.drive(job, result.execution_id))
            self._tasks[job_id] = task
        return result

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
