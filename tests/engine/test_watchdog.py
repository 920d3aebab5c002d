import asyncio
from datetime import timedelta

import pytest

from backup_scheduler.domain.execution import JobStatus
from backup_scheduler.engine import TIMEOUT
from backup_scheduler.errors import ConflictError


@pytest.mark.asyncio
async def test_job_limit_exceeded(engine, store, build_job, clock, notifier):
    job = build_job(max_execution_time=timedelta(hours=1))
    await store.create_job(job)
    result = await engine.start(job.id)

    clock.advance(minutes=59)
    assert await engine.check_timeouts("lab-1") == []

    clock.advance(minutes=2)
    assert await engine.check_timeouts("lab-1") == [job.id]

    stored = await store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.execution.error.code == TIMEOUT
    assert stored.execution.error.message == "Backup exceeded maximum execution time of 1h 0m 0s"
    assert stored.execution.duration == timedelta(minutes=61)
    assert (await store.get_execution_record(result.execution_id)).error.code == TIMEOUT
    assert [event for event, _, _ in notifier.events] == ["failure"]

    # a late report from the executor no longer applies
    with pytest.raises(ConflictError):
        await engine.complete(job.id, execution_id=result.execution_id)


@pytest.mark.asyncio
async def test_default_limit_from_settings(engine, store, build_job, clock):
    job = build_job()
    await store.create_job(job)
    await engine.start(job.id)

    clock.advance(minutes=61)
    assert await engine.check_timeouts() == [job.id]


@pytest.mark.asyncio
async def test_other_tenants_are_left_alone(engine, store, build_job, clock):
    job = build_job(tenant_id="lab-2")
    await store.create_job(job)
    await engine.start(job.id)
    clock.advance(hours=5)

    assert await engine.check_timeouts("lab-1") == []
    assert (await store.get_job(job.id)).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_timed_out_task_is_cancelled(engine, store, build_job, clock, executor_class):
    started = asyncio.Event()

    async def hung_backup(context):
        started.set()
        await asyncio.Event().wait()
    executor_class.script = hung_backup

    job = build_job(max_execution_time=timedelta(minutes=30))
    await store.create_job(job)
    await engine.launch(job.id)
    await asyncio.wait_for(started.wait(), timeout=5)
    assert engine.active_job_ids == [job.id]

    clock.advance(minutes=31)
    assert await engine.check_timeouts() == [job.id]
    for _ in range(100):
        if not engine.active_job_ids:
            break
        await asyncio.sleep(0.01)

    assert engine.active_job_ids == []
    stored = await store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.execution.error.code == TIMEOUT
