"""
Ordering constraints between the backup jobs of one tenant.

``before`` on job X naming Y means Y must complete before X may start.
``after`` on job X naming Y is the same relationship declared from the
other side: X must complete before Y may start.
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from backup_scheduler.config import get_settings
from backup_scheduler.domain.execution import JobStatus
from backup_scheduler.domain.job import BackupJob, DependencyRelation
from backup_scheduler.errors import DependencyCycleError, MissingDependencyError

logger = logging.getLogger(__name__)


class DependencyGraph:
    def __init__(self, jobs: Iterable[BackupJob], default_freshness: Optional[timedelta] = None):
        if default_freshness is None:
            default_freshness = timedelta(seconds=get_settings().default_dependency_freshness_seconds)
        self.default_freshness = default_freshness
        self.jobs: Dict[str, BackupJob] = {job.id: job for job in jobs}
        # prerequisite id -> ids of jobs that must wait for it
        self._edges: Dict[str, Set[str]] = {job_id: set() for job_id in self.jobs}
        self._missing: List[Dict[str, str]] = []
        for job in self.jobs.values():
            for dep in job.dependencies:
                if dep.job_id not in self.jobs:
                    self._missing.append({"job_id": job.id, "missing": dep.job_id})
                    continue
                if dep.relation == DependencyRelation.BEFORE:
                    self._edges[dep.job_id].add(job.id)
                else:
                    self._edges[job.id].add(dep.job_id)

    def validate(self) -> List[str]:
        """
        Check referential integrity and acyclicity.

        Returns:
            List[str]: Job ids in a valid execution order.

        Raises:
            MissingDependencyError: If a dependency names a job outside the graph.
            DependencyCycleError: If the before/after relations form a cycle.
        """
        if self._missing:
            raise MissingDependencyError(
                "Dependencies reference unknown backup jobs", {"references": self._missing}
            )

        indegree = {job_id: 0 for job_id in self.jobs}
        for targets in self._edges.values():
            for target in targets:
                indegree[target] += 1

        queue = deque(sorted(job_id for job_id, degree in indegree.items() if degree == 0))
        order: List[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for target in sorted(self._edges[current]):
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)

        if len(order) != len(self.jobs):
            cyclic = sorted(job_id for job_id, degree in indegree.items() if degree > 0)
            raise DependencyCycleError(
                "Backup job dependencies form a cycle",
                {"jobs": cyclic, "names": [self.jobs[job_id].name for job_id in cyclic]},
            )
        return order

    def prerequisites(self, job_id: str) -> List[BackupJob]:
        return [self.jobs[src] for src in sorted(self._edges) if job_id in self._edges[src]]

    def dependents(self, job_id: str) -> List[BackupJob]:
        """
        Jobs that reference ``job_id`` in their own dependency list.
        """
        return [
            job for job in self.jobs.values()
            if job.id != job_id and any(dep.job_id == job_id for dep in job.dependencies)
        ]

    def unmet_prerequisites(self, job: BackupJob, now: datetime, freshness: timedelta) -> List[BackupJob]:
        unmet = []
        for prerequisite in self.prerequisites(job.id):
            last_run = prerequisite.schedule.last_run
            if (
                prerequisite.status == JobStatus.RUNNING
                or prerequisite.execution.outcome != JobStatus.COMPLETED
                or last_run is None
                or now - last_run > freshness
            ):
                unmet.append(prerequisite)
        return unmet

    def is_satisfied(self, job: BackupJob, now: datetime, freshness: Optional[timedelta] = None) -> bool:
        freshness = freshness or job.dependency_freshness or self.default_freshness
        unmet = self.unmet_prerequisites(job, now, freshness)
        if unmet:
            logger.debug("Job %s waiting on %s", job.id, [p.id for p in unmet])
        return not unmet


def validate(jobs: Iterable[BackupJob]) -> List[str]:
    return DependencyGraph(jobs).validate()
