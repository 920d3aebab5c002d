from datetime import datetime, timedelta, timezone

from backup_scheduler.domain.execution import (
    BackupFile, BackupResult, ExecutionErrorInfo, ExecutionRecord, JobStatus,
)
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.stats import build_stats

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def job(job_id, job_type="full", status=JobStatus.SCHEDULED, enabled=True):
    return BackupJob(
        id=job_id, tenant_id="lab-1", name=f"Job {job_id}", type=job_type, status=status,
        schedule={"frequency": "daily", "time": "02:00", "enabled": enabled},
        source={"databases": [{"name": "lab"}], "files": [{"path": "/srv"}]},
        destination={"type": "local", "path": "/backups"},
    )


def run(record_id, job_id, started_at, status=JobStatus.COMPLETED, size=None, code=None, message=None):
    return ExecutionRecord(
        id=record_id, job_id=job_id, tenant_id="lab-1", status=status,
        started_at=started_at, ended_at=started_at + timedelta(minutes=2), duration=timedelta(minutes=2),
        result=BackupResult(backup_file=BackupFile(name="x", size=size)) if size is not None else None,
        error=ExecutionErrorInfo(code=code, message=message, timestamp=started_at) if code else None,
    )


def test_empty_tenant():
    stats = build_stats([], [], NOW)
    assert stats.overview.total_jobs == 0
    assert stats.overview.success_rate == 0.0
    assert stats.size_stats.total_backup_size == 0
    assert stats.recent_activity == []
    assert stats.common_failures == []


def test_overview_and_breakdowns():
    jobs = [
        job("a"),
        job("b", job_type="incremental", status=JobStatus.FAILED),
        job("c", status=JobStatus.PAUSED, enabled=False),
        job("d", status=JobStatus.RUNNING),
    ]
    day1 = datetime(2024, 3, 13, 2, 0, tzinfo=timezone.utc)
    day2 = datetime(2024, 3, 14, 2, 0, tzinfo=timezone.utc)
    records = [
        run("r1", "a", day1, size=100),
        run("r2", "b", day1, status=JobStatus.FAILED, code="TIMEOUT", message="too slow"),
        run("r3", "a", day2, size=300),
        run("r4", "b", day2, size=50),
    ]
    stats = build_stats(jobs, records, NOW)

    assert stats.overview.total_jobs == 4
    assert stats.overview.active_jobs == 3
    assert stats.overview.failed_jobs == 1
    assert stats.overview.paused_jobs == 1
    assert stats.overview.running_jobs == 1
    # mean of 50% and 100%
    assert stats.overview.success_rate == 75.0
    assert stats.status_breakdown == {"failed": 1, "paused": 1, "running": 1, "scheduled": 1}

    by_type = {t.type: t for t in stats.type_breakdown}
    assert by_type["full"].count == 3
    assert by_type["full"].total_size == 400
    assert by_type["full"].avg_size == 200
    assert by_type["incremental"].total_size == 50

    assert stats.size_stats.total_backup_size == 450
    assert stats.size_stats.max_backup_size == 300
    assert stats.size_stats.min_backup_size == 50

    assert [d.day for d in stats.recent_activity] == ["2024-03-13", "2024-03-14"]
    assert stats.recent_activity[0].failed == 1
    assert stats.recent_activity[1].total_size == 350
    assert stats.recent_activity[1].avg_duration_seconds == 120


def test_activity_window():
    records = [
        run("old", "a", NOW - timedelta(days=10), size=10),
        run("new", "a", NOW - timedelta(days=1), size=10),
    ]
    stats = build_stats([job("a")], records, NOW)
    assert [d.executions for d in stats.recent_activity] == [1]
    assert stats.size_stats.total_backup_size == 20


def test_common_failures_grouped_by_code():
    started = NOW - timedelta(hours=5)
    records = [
        run("f1", "a", started, status=JobStatus.FAILED, code="TIMEOUT", message="slow"),
        run("f2", "b", started, status=JobStatus.FAILED, code="DEPENDENCY_UNMET", message="waiting"),
        run("f3", "a", started, status=JobStatus.FAILED, code="DEPENDENCY_UNMET", message="waiting"),
        run("f4", "b", started, status=JobStatus.FAILED, code="DEPENDENCY_UNMET", message="still waiting"),
    ]
    failures = build_stats([job("a"), job("b")], records, NOW).common_failures
    assert [(f.code, f.count) for f in failures] == [("DEPENDENCY_UNMET", 3), ("TIMEOUT", 1)]
    assert failures[0].examples == ["waiting", "still waiting"]
    assert failures[0].jobs == [{"id": "b", "name": "Job b"}, {"id": "a", "name": "Job a"}]
