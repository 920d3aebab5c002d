from datetime import datetime, timezone

import pytest

from backup_scheduler import destination_check
from backup_scheduler.domain.job import Destination

TESTED_AT = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("path", ["/backups/lab", "D:\\backups", "C:/lab"])
def test_absolute_local_paths(path):
    assert destination_check.destination_problems(Destination(type="local", path=path)) == []


def test_relative_local_path():
    problems = destination_check.destination_problems(Destination(type="local", path="backups"))
    assert problems == ["Local destination path must be absolute"]


def test_s3_requires_credentials():
    problems = destination_check.destination_problems(
        Destination(type="s3", path="lab/", credentials={"credential_ref": "vault:s3"})
    )
    assert problems == ["s3 destination requires credentials.bucket", "s3 destination requires credentials.region"]


@pytest.mark.parametrize("endpoint, valid", [
    ("backup.lab.example", True),
    ("10.0.0.4:2222", True),
    ("bad host!", False),
])
def test_sftp_endpoint(endpoint, valid):
    destination = Destination(type="sftp", path="/srv/backups",
                              credentials={"credential_ref": "vault:sftp", "endpoint": endpoint})
    assert (destination_check.destination_problems(destination) == []) is valid


def test_config_report_for_valid_settings():
    report = destination_check.test_destination_config(
        {"type": "local", "path": "/backups"},
        {"enabled": True, "algorithm": "zstd", "level": 3},
        None,
        now=TESTED_AT,
    )
    assert report.overall_valid
    assert report.tested_at == TESTED_AT
    assert report.results["destination"].message == "Local destination configuration is valid"
    assert report.results["compression"].message == "Compression algorithm 'zstd' level 3 is supported"
    assert report.results["encryption"].message == "Encryption disabled"


def test_remote_destination_is_only_checked_for_shape():
    report = destination_check.test_destination_config(
        {"type": "azure", "path": "lab", "credentials": {"credential_ref": "vault:az", "bucket": "labs"}}
    )
    assert report.overall_valid
    assert "full test requires connection" in report.results["destination"].message


def test_config_report_collects_every_problem():
    report = destination_check.test_destination_config(
        {"type": "gcp", "path": "lab"},
        {"algorithm": "rar"},
        {"enabled": True},
    )
    assert not report.overall_valid
    assert "credentials.credential_ref" in report.results["destination"].message
    assert not report.results["compression"].valid
    assert "key_id" in report.results["encryption"].message


def test_missing_destination():
    report = destination_check.test_destination_config(None)
    assert not report.overall_valid
    assert report.results["destination"].message == "Destination is required"
