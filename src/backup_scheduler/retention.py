"""
Retention pruning of backup artifacts.

Each tier keeps the newest artifact from each of its N most recent calendar
buckets (day, ISO week, month, year). ``days`` additionally keeps everything
younger than the window and ``max_backups`` caps the kept set.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from backup_scheduler.domain.execution import ExecutionRecord
from backup_scheduler.domain.job import BackupJob, RetentionPolicy
from backup_scheduler.domain.schedule import as_utc

BucketKey = Callable[[datetime], Hashable]

TIERS: Dict[str, BucketKey] = {
    "keep_daily": lambda ts: ts.date(),
    "keep_weekly": lambda ts: ts.isocalendar()[:2],
    "keep_monthly": lambda ts: (ts.year, ts.month),
    "keep_yearly": lambda ts: ts.year,
}


class PruneDecision(BaseModel):
    keep: List[ExecutionRecord] = Field(default_factory=list)
    delete: List[ExecutionRecord] = Field(default_factory=list)


def _keep_per_bucket(artifacts: List[ExecutionRecord], count: int, key: BucketKey) -> Set[str]:
    kept: Set[str] = set()
    seen: Set[Hashable] = set()
    for record in artifacts:
        bucket = key(record.ended_at or record.started_at)
        if bucket in seen:
            continue
        seen.add(bucket)
        kept.add(record.id)
        if len(seen) >= count:
            break
    return kept


def apply_policy(policy: RetentionPolicy, history: Iterable[ExecutionRecord], now: datetime) -> PruneDecision:
    artifacts = sorted(
        (record for record in history if record.has_artifact),
        key=lambda r: (r.ended_at or r.started_at, r.id),
        reverse=True,
    )
    if policy.is_empty:
        return PruneDecision(keep=artifacts)

    selective = policy.days or any(getattr(policy, field_name) for field_name in TIERS)
    if not selective:
        # max_backups alone: the cap applies to every artifact
        kept: Set[str] = {r.id for r in artifacts}
    else:
        kept = set()
        for field_name, key in TIERS.items():
            count: Optional[int] = getattr(policy, field_name)
            if count:
                kept |= _keep_per_bucket(artifacts, count, key)
        if policy.days:
            cutoff = as_utc(now) - timedelta(days=policy.days)
            kept |= {r.id for r in artifacts if (r.ended_at or r.started_at) >= cutoff}

    keep = [r for r in artifacts if r.id in kept]
    if policy.max_backups is not None:
        keep = keep[:policy.max_backups]
    keep_ids = {r.id for r in keep}
    return PruneDecision(keep=keep, delete=[r for r in artifacts if r.id not in keep_ids])


def prune(job: BackupJob, history: Iterable[ExecutionRecord], now: datetime) -> PruneDecision:
    """
    Decide which of a job's completed backup artifacts to keep.

    Args:
        job (BackupJob): The job whose destination retention policy applies.
        history (Iterable[ExecutionRecord]): Past executions; only completed runs with an
            undeleted artifact are considered.
        now (datetime): Reference instant for the ``days`` window.

    Returns:
        PruneDecision: Artifacts to keep and to delete, newest first.
    """
    return apply_policy(job.destination.retention, history, now)
