from datetime import timedelta

import pytest
from pydantic import ValidationError

from backup_scheduler.domain.execution import JobStatus
from backup_scheduler.domain.job import BackupJob, JobSpec, Priority, format_duration, status_color
from backup_scheduler.errors import ConflictError, DependencyCycleError, TransientBackupError


def spec_data(**overrides):
    data = {
        "name": "  Weekly archive  ",
        "type": "full",
        "source": {"databases": [{"name": "lab", "size": 100}], "files": [{"path": "/srv/files", "size": 50}]},
        "destination": {"type": "local", "path": "/backups"},
    }
    data.update(overrides)
    return data


def test_name_is_stripped_and_required():
    assert JobSpec(**spec_data()).name == "Weekly archive"
    with pytest.raises(ValidationError):
        JobSpec(**spec_data(name="   "))


def test_tags_are_normalised():
    spec = JobSpec(**spec_data(tags=[" Lab ", "lab", "DB", ""]))
    assert spec.tags == ["lab", "db"]


def test_source_must_not_be_empty():
    with pytest.raises(ValidationError, match="at least one source"):
        JobSpec(**spec_data(source={}))


def test_type_specific_sources():
    with pytest.raises(ValidationError, match="database_only"):
        JobSpec(**spec_data(type="database_only", source={"files": [{"path": "/srv"}]}))
    with pytest.raises(ValidationError, match="files_only"):
        JobSpec(**spec_data(type="files_only", source={"databases": [{"name": "lab"}]}))


def test_dependencies_need_a_policy():
    with pytest.raises(ValidationError, match="dependency_policy"):
        JobSpec(**spec_data(dependencies=[{"job_id": "bkp_other"}]))

    spec = JobSpec(**spec_data(dependencies=[{"job_id": "bkp_other"}], dependency_policy="skip"))
    assert spec.dependencies[0].relation.value == "before"


def test_duplicate_dependencies_rejected():
    with pytest.raises(ValidationError, match="Duplicate dependency"):
        JobSpec(**spec_data(
            dependencies=[{"job_id": "bkp_a"}, {"job_id": "bkp_a", "relation": "after"}],
            dependency_policy="wait",
        ))


def test_encryption_requires_key():
    with pytest.raises(ValidationError, match="key_id"):
        JobSpec(**spec_data(encryption={"enabled": True}))


@pytest.mark.parametrize("field", ["dependency_freshness", "max_execution_time"])
def test_durations_must_be_positive(field):
    with pytest.raises(ValidationError):
        JobSpec(**spec_data(**{field: timedelta(0)}))


@pytest.mark.parametrize("retention", [{"keep_daily": 0}, {"keep_weekly": 53}, {"keep_monthly": 13}, {"keep_yearly": 11}])
def test_retention_bounds(retention):
    with pytest.raises(ValidationError):
        JobSpec(**spec_data(destination={"type": "local", "path": "/backups", "retention": retention}))


def test_backup_job_defaults():
    job = BackupJob(**spec_data(), tenant_id="lab-1")
    assert job.id.startswith("bkp_")
    assert job.status == JobStatus.SCHEDULED
    assert job.source.total_size == 150
    assert job.notifications.on_failure.enabled
    assert not job.notifications.on_warning.enabled
    assert job.spec().name == job.name
    assert not job.is_recurring


def test_settled_status_follows_schedule():
    job = BackupJob(**spec_data(schedule={"frequency": "daily", "time": "01:00", "enabled": False}), tenant_id="lab-1")
    assert job.settled_status() == JobStatus.PAUSED
    job.schedule.enabled = True
    assert job.settled_status() == JobStatus.SCHEDULED


def test_readable_string():
    job = BackupJob(**spec_data(code="BKP20240315001"), tenant_id="lab-1")
    text = job.readable_string
    assert "'Weekly archive' (BKP20240315001)" in text
    assert "Destination: local:/backups" in text


def test_priority_rank():
    ranked = sorted(Priority, key=lambda p: p.rank)
    assert ranked == [Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW]


@pytest.mark.parametrize("duration, expected", [
    (None, "N/A"),
    (timedelta(0), "N/A"),
    (timedelta(seconds=45), "45s"),
    (timedelta(seconds=125), "2m 5s"),
    (timedelta(hours=1, minutes=2, seconds=5), "1h 2m 5s"),
])
def test_format_duration(duration, expected):
    assert format_duration(duration) == expected


def test_status_color():
    assert status_color("completed") == "#10B981"
    assert status_color(JobStatus.FAILED) == "#EF4444"
    assert status_color("unknown") == "#6B7280"


def test_error_payloads():
    error = DependencyCycleError("cycle", {"jobs": ["a", "b"]})
    assert error.to_dict() == {"code": "DEPENDENCY_CYCLE", "message": "cycle", "details": {"jobs": ["a", "b"]}}
    assert ConflictError("busy").to_dict()["details"] == {}

    transient = TransientBackupError("network down")
    assert transient.transient
    assert transient.code == "TRANSIENT_ERROR"
