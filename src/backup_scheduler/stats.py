from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from backup_scheduler.domain.execution import ExecutionRecord, JobStatus
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.domain.schedule import as_utc


class Overview(BaseModel):
    total_jobs: int = 0
    active_jobs: int = 0
    running_jobs: int = 0
    failed_jobs: int = 0
    paused_jobs: int = 0
    success_rate: float = 0.0


class TypeBreakdown(BaseModel):
    type: str
    count: int
    total_size: int = 0
    avg_size: float = 0.0


class SizeStats(BaseModel):
    total_backup_size: int = 0
    avg_backup_size: float = 0.0
    max_backup_size: int = 0
    min_backup_size: int = 0


class DailyActivity(BaseModel):
    day: str
    executions: int = 0
    successful: int = 0
    failed: int = 0
    total_size: int = 0
    avg_duration_seconds: Optional[float] = None


class FailureSummary(BaseModel):
    code: str
    count: int
    examples: List[str] = Field(default_factory=list)
    jobs: List[Dict[str, str]] = Field(default_factory=list)


class BackupStats(BaseModel):
    overview: Overview
    status_breakdown: Dict[str, int]
    type_breakdown: List[TypeBreakdown]
    size_stats: SizeStats
    recent_activity: List[DailyActivity]
    common_failures: List[FailureSummary]


def _type_breakdown(jobs: List[BackupJob], records: List[ExecutionRecord]) -> List[TypeBreakdown]:
    job_types = {job.id: job.type.value for job in jobs}
    counts = Counter(job.type.value for job in jobs)
    sizes: Dict[str, List[int]] = defaultdict(list)
    for record in records:
        if record.status == JobStatus.COMPLETED and record.job_id in job_types:
            sizes[job_types[record.job_id]].append(record.backup_size)
    breakdown = []
    for job_type, count in sorted(counts.items()):
        values = sizes.get(job_type, [])
        breakdown.append(TypeBreakdown(
            type=job_type,
            count=count,
            total_size=sum(values),
            avg_size=sum(values) / len(values) if values else 0.0,
        ))
    return breakdown


def _size_stats(records: List[ExecutionRecord]) -> SizeStats:
    sizes = [r.backup_size for r in records if r.status == JobStatus.COMPLETED]
    if not sizes:
        return SizeStats()
    return SizeStats(
        total_backup_size=sum(sizes),
        avg_backup_size=sum(sizes) / len(sizes),
        max_backup_size=max(sizes),
        min_backup_size=min(sizes),
    )


def _recent_activity(records: List[ExecutionRecord], since: datetime) -> List[DailyActivity]:
    days: Dict[str, DailyActivity] = {}
    durations: Dict[str, List[float]] = defaultdict(list)
    for record in records:
        if record.started_at < since:
            continue
        key = record.started_at.strftime("%Y-%m-%d")
        day = days.setdefault(key, DailyActivity(day=key))
        day.executions += 1
        if record.status == JobStatus.COMPLETED:
            day.successful += 1
            day.total_size += record.backup_size
        elif record.status == JobStatus.FAILED:
            day.failed += 1
        if record.duration is not None:
            durations[key].append(record.duration.total_seconds())
    for key, values in durations.items():
        days[key].avg_duration_seconds = sum(values) / len(values)
    return [days[key] for key in sorted(days)]


def _common_failures(jobs: List[BackupJob], records: List[ExecutionRecord], limit: int = 10) -> List[FailureSummary]:
    names = {job.id: job.name for job in jobs}
    summaries: Dict[str, FailureSummary] = {}
    for record in records:
        if record.status != JobStatus.FAILED:
            continue
        code = record.error.code if record.error else "UNKNOWN_ERROR"
        summary = summaries.setdefault(code, FailureSummary(code=code, count=0))
        summary.count += 1
        if record.error and record.error.message not in summary.examples and len(summary.examples) < 5:
            summary.examples.append(record.error.message)
        entry = {"id": record.job_id, "name": names.get(record.job_id, record.job_id)}
        if entry not in summary.jobs:
            summary.jobs.append(entry)
    return sorted(summaries.values(), key=lambda s: (-s.count, s.code))[:limit]


def build_stats(jobs: List[BackupJob], records: List[ExecutionRecord], now: datetime,
                window: timedelta = timedelta(days=7)) -> BackupStats:
    """
    Aggregate counts, sizes, the daily success trend and common failure codes.

    The success rate is the mean of the daily success percentages over the window.
    """
    since = as_utc(now) - window
    statuses = Counter(job.status.value for job in jobs)
    activity = _recent_activity(records, since)
    daily_rates = [day.successful / day.executions * 100 for day in activity if day.executions]
    overview = Overview(
        total_jobs=len(jobs),
        active_jobs=sum(1 for job in jobs if job.is_active and job.schedule.enabled),
        running_jobs=statuses.get(JobStatus.RUNNING.value, 0),
        failed_jobs=statuses.get(JobStatus.FAILED.value, 0),
        paused_jobs=statuses.get(JobStatus.PAUSED.value, 0),
        success_rate=round(sum(daily_rates) / len(daily_rates), 2) if daily_rates else 0.0,
    )
    return BackupStats(
        overview=overview,
        status_breakdown=dict(sorted(statuses.items())),
        type_breakdown=_type_breakdown(jobs, records),
        size_stats=_size_stats(records),
        recent_activity=activity,
        common_failures=_common_failures(jobs, records),
    )
