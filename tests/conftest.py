import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from backup_scheduler.config import Settings
from backup_scheduler.domain.execution import BackupFile, BackupResult, JobStatus, Verification, VerificationStatus
from backup_scheduler.domain.job import BackupJob, DestinationType
from backup_scheduler.engine import ExecutionEngine
from backup_scheduler.executor_factory import BackupExecutorFactory
from backup_scheduler.notifications.protocol import NotificationDispatcher, NotificationEvent
from backup_scheduler.service import BackupService
from backup_scheduler.storages.sqlalchemy import SqlAlchemyJobStore

TENANT = "lab-1"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def succeed(context) -> BackupResult:
    return BackupResult(
        backup_file=BackupFile(name=f"{context.execution_id}.tar.gz", path=f"/backups/{context.execution_id}.tar.gz",
                               size=1024, checksum="sha256:abc"),
        verification=Verification(status=VerificationStatus.PASSED),
    )


class ScriptedExecutor:
    """
    Local-destination executor whose behaviour each test scripts through ``script``.
    """
    script = staticmethod(succeed)
    deleted: List[str] = []

    async def execute(self, context) -> BackupResult:
        return await type(self).script(context)

    async def delete_artifacts(self, job, artifacts) -> None:
        type(self).deleted.extend(record.id for record in artifacts)

    @staticmethod
    def supported_destinations() -> List[DestinationType]:
        return [DestinationType.LOCAL]


class RecordingNotifier:
    def __init__(self):
        self.events: List[tuple] = []

    async def notify(self, event: NotificationEvent, job: BackupJob, recipients: List[str]) -> None:
        self.events.append((event, job.id, recipients))


def job_spec(**overrides: Any) -> Dict[str, Any]:
    spec = {
        "name": "Nightly lab backup",
        "type": "full",
        "schedule": {"frequency": "daily", "time": "02:00"},
        "source": {
            "databases": [{"name": "lab", "size": 2048}],
            "files": [{"path": "/var/lab/uploads", "size": 1024}],
        },
        "destination": {"type": "local", "path": "/backups/lab"},
    }
    spec.update(overrides)
    return spec


@pytest.fixture
def clock() -> FakeClock:
    # A Friday
    return FakeClock(datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, max_parallel_executions=2, tick_interval_seconds=0.01,
                    watchdog_interval_seconds=0.01, default_max_execution_seconds=3600)


@pytest.fixture
def make_spec():
    return job_spec


@pytest.fixture
def build_job(clock):
    def build(**overrides: Any) -> BackupJob:
        data = job_spec(**overrides)
        data.setdefault("tenant_id", TENANT)
        data.setdefault("created_at", clock())
        data.setdefault("updated_at", clock())
        return BackupJob.model_validate(data)
    return build


@pytest.fixture
def executor_class():
    return type("ScriptedLocalExecutor", (ScriptedExecutor,), {"script": staticmethod(succeed), "deleted": []})


@pytest.fixture
def executor_factory(executor_class) -> BackupExecutorFactory:
    factory = BackupExecutorFactory()
    factory.register(executor_class)
    return factory


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def store(tmp_path):
    store = SqlAlchemyJobStore(f"sqlite+aiosqlite:///{tmp_path / 'backup_jobs.db'}")
    await store.create_tables()
    yield store
    await store.dispose()


@pytest_asyncio.fixture
async def engine(store, executor_factory, notifier, clock, settings):
    engine = ExecutionEngine(store, executor_factory, NotificationDispatcher([notifier]), clock=clock, settings=settings)
    yield engine
    await engine.shutdown()


@pytest.fixture
def service(store, engine, settings) -> BackupService:
    return BackupService(store, engine, settings=settings)


@pytest.fixture
def wait_for_status(store):
    async def wait(job_id: str, *statuses: JobStatus, attempts: int = 300) -> BackupJob:
        job = None
        for _ in range(attempts):
            job = await store.get_job(job_id)
            if job.status in statuses:
                return job
            await asyncio.sleep(0.01)
        raise AssertionError(f"Job {job_id} stuck in {job.status if job else None}")
    return wait
