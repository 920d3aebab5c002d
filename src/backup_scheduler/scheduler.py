import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from backup_scheduler.config import Settings, get_settings
from backup_scheduler.dependencies import DependencyGraph
from backup_scheduler.domain.execution import Trigger
from backup_scheduler.domain.job import BackupJob, DependencyPolicy
from backup_scheduler.engine import DEPENDENCY_UNMET, ExecutionEngine
from backup_scheduler.recurrence import next_run

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Periodic dispatcher for the backup jobs of a single tenant.

    Several instances may poll the same store; the engine's atomic claim
    makes sure each due run starts at most once.
    """

    def __init__(self, tenant_id: str, engine: ExecutionEngine, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.tenant_id = tenant_id
        self.engine = engine
        self.store = engine.store
        self.tick_interval: float = settings.tick_interval_seconds
        self.watchdog_interval: float = settings.watchdog_interval_seconds
        self.default_freshness = timedelta(seconds=settings.default_dependency_freshness_seconds)
        self.limiter = asyncio.Semaphore(settings.max_parallel_executions)
        self.is_running: bool = False
        self.scheduler_task: Optional[asyncio.Task] = None
        self.watchdog_task: Optional[asyncio.Task] = None
        self.job_futures: Dict[str, asyncio.Task] = {}

    async def start(self):
        """
        Start the tick and watchdog loops.
        """
        if not self.is_running:
            self.is_running = True
            self.scheduler_task = asyncio.create_task(self._scheduler_loop())
            self.watchdog_task = asyncio.create_task(self._watchdog_loop())
            logger.info("Scheduler for tenant %s started", self.tenant_id)

    async def stop(self):
        """
        Stop both loops and cancel in-flight runs; the engine marks them cancelled.
        """
        if self.is_running:
            self.is_running = False
            for loop_task in (self.scheduler_task, self.watchdog_task):
                if loop_task:
                    loop_task.cancel()
                    try:
                        await loop_task
                    except asyncio.CancelledError:
                        pass
            for future in self.job_futures.values():
                if not future.done():
                    future.cancel()
            await asyncio.gather(*self.job_futures.values(), return_exceptions=True)
            self.job_futures.clear()
            logger.info("Scheduler for tenant %s stopped", self.tenant_id)

    async def _scheduler_loop(self):
        while self.is_running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in scheduler tick for tenant %s", self.tenant_id)
            await asyncio.sleep(self.tick_interval)

    async def _watchdog_loop(self):
        while self.is_running:
            try:
                timed_out = await self.engine.check_timeouts(self.tenant_id)
                if timed_out:
                    logger.warning("Watchdog failed %d timed out backup jobs: %s", len(timed_out), timed_out)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in watchdog for tenant %s", self.tenant_id)
            await asyncio.sleep(self.watchdog_interval)

    def _is_in_flight(self, job_id: str) -> bool:
        future = self.job_futures.get(job_id)
        return future is not None and not future.done()

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Dispatch every due job whose prerequisites are met.

        Returns:
            List[str]: IDs of the jobs dispatched in this tick.
        """
        now = now or self.engine.clock()
        due = await self.store.list_due_jobs(self.tenant_id, now)
        if not due:
            return []
        graph = DependencyGraph(await self.store.list_all_jobs(self.tenant_id), self.default_freshness)
        dispatched = []
        for job in sorted(due, key=lambda j: (j.priority.rank, j.schedule.next_run, j.id)):
            if self._is_in_flight(job.id):
                continue
            freshness = job.dependency_freshness or self.default_freshness
            if graph.is_satisfied(job, now, freshness):
                self._schedule_job_execution(job)
                dispatched.append(job.id)
            else:
                await self._hold_back(job, graph, now, freshness)
        return dispatched

    async def _hold_back(self, job: BackupJob, graph: DependencyGraph, now: datetime, freshness: timedelta):
        unmet = [p.name for p in graph.unmet_prerequisites(job, now, freshness)]
        policy = job.dependency_policy or DependencyPolicy.WAIT
        if policy == DependencyPolicy.WAIT:
            logger.info("Backup job %s waiting for prerequisites: %s", job.id, unmet)
        elif policy == DependencyPolicy.SKIP:
            skipped = job.model_copy(deep=True)
            skipped.schedule.next_run = next_run(skipped.schedule, now)
            if await self.store.compare_and_set(skipped, [job.status], job.execution.execution_id):
                logger.info("Backup job %s skipped this cycle, prerequisites unmet: %s", job.id, unmet)
        else:
            await self.engine.reject(
                job.id, DEPENDENCY_UNMET, f"Prerequisite backup jobs not satisfied: {', '.join(unmet)}"
            )

    def _schedule_job_execution(self, job: BackupJob):
        """
        Run a due job as an independent task, bounded by the parallelism limiter.
        """
        future = asyncio.create_task(self._run_job(job.id))
        self.job_futures[job.id] = future
        future.add_done_callback(lambda f: self._handle_job_completion(job.id, f))

    async def _run_job(self, job_id: str):
        async with self.limiter:
            result = await self.engine.run(job_id, Trigger.SCHEDULER)
            if not result.started:
                logger.debug("Backup job %s not started: %s", job_id, result.reason)
            return result

    def _handle_job_completion(self, job_id: str, future: asyncio.Future):
        if self.job_futures.get(job_id) is future:
            del self.job_futures[job_id]
        if not future.cancelled() and future.exception() is not None:
            logger.error("Backup job %s run ended with an error", job_id, exc_info=future.exception())

    async def wait_idle(self):
        """
        Wait until every dispatched run has settled.
        """
        while self.job_futures:
            await asyncio.gather(*list(self.job_futures.values()), return_exceptions=True)
