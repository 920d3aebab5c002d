from datetime import datetime, timedelta, timezone

import pytest

from backup_scheduler.config import reset_settings
from backup_scheduler.dependencies import DependencyGraph, validate
from backup_scheduler.domain.execution import JobStatus
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.errors import DependencyCycleError, MissingDependencyError

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)


def job(job_id, *deps, policy="wait"):
    dependencies = []
    for dep in deps:
        target, _, relation = dep.partition(":")
        dependencies.append({"job_id": target, "relation": relation or "before"})
    return BackupJob(
        id=job_id,
        tenant_id="lab-1",
        name=job_id,
        type="full",
        source={"databases": [{"name": "lab"}]},
        destination={"type": "local", "path": "/backups"},
        dependencies=dependencies,
        dependency_policy=policy if dependencies else None,
    )


def completed(prerequisite: BackupJob, ago: timedelta) -> BackupJob:
    prerequisite.status = JobStatus.SCHEDULED
    prerequisite.execution.outcome = JobStatus.COMPLETED
    prerequisite.schedule.last_run = NOW - ago
    return prerequisite


def test_before_orders_prerequisite_first():
    order = validate([job("b", "a"), job("a")])
    assert order.index("a") < order.index("b")


def test_after_is_the_inverse_declaration():
    # "a after b" means a must complete before b starts
    order = validate([job("b"), job("a", "b:after")])
    assert order.index("a") < order.index("b")


def test_chain_order():
    order = validate([job("c", "b"), job("b", "a"), job("a")])
    assert order == ["a", "b", "c"]


def test_cycle_is_rejected():
    with pytest.raises(DependencyCycleError) as exc_info:
        validate([job("a", "b"), job("b", "a"), job("c")])
    assert exc_info.value.details["jobs"] == ["a", "b"]
    assert exc_info.value.code == "DEPENDENCY_CYCLE"


def test_cycle_through_mixed_relations():
    # b -> a -> c -> b
    with pytest.raises(DependencyCycleError):
        validate([job("a", "b"), job("b"), job("c", "a", "b:after")])
    with pytest.raises(DependencyCycleError):
        validate([job("a", "b:after"), job("b", "a:after")])


def test_self_dependency_is_a_cycle():
    with pytest.raises(DependencyCycleError):
        validate([job("a", "a")])


def test_missing_reference():
    with pytest.raises(MissingDependencyError) as exc_info:
        validate([job("a", "ghost")])
    assert exc_info.value.details["references"] == [{"job_id": "a", "missing": "ghost"}]


def test_dependents_and_prerequisites():
    graph = DependencyGraph([job("a"), job("b", "a"), job("c", "a:after")])
    assert [j.id for j in graph.dependents("a")] == ["b", "c"]
    assert [j.id for j in graph.prerequisites("b")] == ["a"]
    assert [j.id for j in graph.prerequisites("a")] == ["c"]


def test_satisfied_by_recent_success():
    graph = DependencyGraph([completed(job("a"), timedelta(hours=2)), job("b", "a")])
    assert graph.is_satisfied(graph.jobs["b"], NOW, timedelta(hours=24))


def test_stale_success_does_not_satisfy():
    graph = DependencyGraph([completed(job("a"), timedelta(hours=30)), job("b", "a")])
    assert not graph.is_satisfied(graph.jobs["b"], NOW, timedelta(hours=24))
    assert graph.is_satisfied(graph.jobs["b"], NOW, timedelta(hours=48))


def test_failed_or_running_prerequisite_blocks():
    failed = completed(job("a"), timedelta(hours=1))
    failed.execution.outcome = JobStatus.FAILED
    graph = DependencyGraph([failed, job("b", "a")])
    assert [j.id for j in graph.unmet_prerequisites(graph.jobs["b"], NOW, timedelta(days=1))] == ["a"]

    running = completed(job("a"), timedelta(hours=1))
    running.status = JobStatus.RUNNING
    graph = DependencyGraph([running, job("b", "a")])
    assert not graph.is_satisfied(graph.jobs["b"], NOW)


def test_never_run_prerequisite_blocks():
    graph = DependencyGraph([job("a"), job("b", "a")])
    assert not graph.is_satisfied(graph.jobs["b"], NOW)


def test_job_freshness_is_used_by_default():
    b = job("b", "a")
    b.dependency_freshness = timedelta(hours=1)
    graph = DependencyGraph([completed(job("a"), timedelta(hours=2)), b])
    assert not graph.is_satisfied(b, NOW)


def test_graph_default_freshness_applies_without_a_job_setting():
    graph = DependencyGraph([completed(job("a"), timedelta(hours=2)), job("b", "a")], timedelta(hours=1))
    assert not graph.is_satisfied(graph.jobs["b"], NOW)
    assert graph.is_satisfied(graph.jobs["b"], NOW, timedelta(hours=3))


def test_default_freshness_comes_from_settings(monkeypatch):
    monkeypatch.setenv("BACKUP_SCHEDULER_DEFAULT_DEPENDENCY_FRESHNESS_SECONDS", "3600")
    reset_settings()
    try:
        graph = DependencyGraph([completed(job("a"), timedelta(hours=2)), job("b", "a")])
        assert graph.default_freshness == timedelta(hours=1)
        assert not graph.is_satisfied(graph.jobs["b"], NOW)
    finally:
        reset_settings()


def test_jobs_without_dependencies_are_satisfied():
    graph = DependencyGraph([job("a")])
    assert graph.is_satisfied(graph.jobs["a"], NOW)
