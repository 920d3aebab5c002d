import posixpath
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from backup_scheduler.domain.job import Compression, Destination, DestinationType, Encryption

# Required credential fields per remote destination type.
REQUIRED_CREDENTIALS: Dict[DestinationType, List[str]] = {
    DestinationType.LOCAL: [],
    DestinationType.S3: ["credential_ref", "bucket", "region"],
    DestinationType.AZURE: ["credential_ref", "bucket"],
    DestinationType.GCP: ["credential_ref", "bucket"],
    DestinationType.FTP: ["credential_ref", "endpoint"],
    DestinationType.SFTP: ["credential_ref", "endpoint"],
}

ENDPOINT = re.compile(r"^[A-Za-z0-9.-]+(:\d{1,5})?$")
WINDOWS_PATH = re.compile(r"^[A-Za-z]:[\\/]")


class FieldCheck(BaseModel):
    valid: bool
    message: str


class ConfigTestReport(BaseModel):
    overall_valid: bool
    results: Dict[str, FieldCheck]
    tested_at: datetime


def destination_problems(destination: Destination) -> List[str]:
    problems = []
    if destination.type == DestinationType.LOCAL:
        if not (posixpath.isabs(destination.path) or WINDOWS_PATH.match(destination.path)):
            problems.append("Local destination path must be absolute")
    for field_name in REQUIRED_CREDENTIALS[destination.type]:
        if not getattr(destination.credentials, field_name):
            problems.append(f"{destination.type.value} destination requires credentials.{field_name}")
    endpoint = destination.credentials.endpoint
    if endpoint and destination.type in (DestinationType.FTP, DestinationType.SFTP) and not ENDPOINT.match(endpoint):
        problems.append(f"Invalid endpoint '{endpoint}', expected host or host:port")
    return problems


def _errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in error['loc']) or 'value'}: {error['msg']}" for error in exc.errors()
    )


def check_destination(destination: Union[Destination, Dict[str, Any], None]) -> FieldCheck:
    if destination is None:
        return FieldCheck(valid=False, message="Destination is required")
    try:
        model = Destination.model_validate(destination)
    except ValidationError as e:
        return FieldCheck(valid=False, message=_errors(e))
    problems = destination_problems(model)
    if problems:
        return FieldCheck(valid=False, message="; ".join(problems))
    if model.type == DestinationType.LOCAL:
        return FieldCheck(valid=True, message="Local destination configuration is valid")
    return FieldCheck(
        valid=True,
        message=f"{model.type.value} destination configuration appears valid (full test requires connection)",
    )


def check_compression(compression: Union[Compression, Dict[str, Any], None]) -> FieldCheck:
    try:
        model = Compression.model_validate(compression or {"enabled": False})
    except ValidationError as e:
        return FieldCheck(valid=False, message=_errors(e))
    if not model.enabled:
        return FieldCheck(valid=True, message="Compression disabled")
    return FieldCheck(
        valid=True, message=f"Compression algorithm '{model.algorithm.value}' level {model.level} is supported"
    )


def check_encryption(encryption: Union[Encryption, Dict[str, Any], None]) -> FieldCheck:
    try:
        model = Encryption.model_validate(encryption or {"enabled": False})
    except ValidationError as e:
        return FieldCheck(valid=False, message=_errors(e))
    if not model.enabled:
        return FieldCheck(valid=True, message="Encryption disabled")
    return FieldCheck(valid=True, message=f"Encryption algorithm '{model.algorithm.value}' is supported")


def test_destination_config(
    destination: Union[Destination, Dict[str, Any], None],
    compression: Union[Compression, Dict[str, Any], None] = None,
    encryption: Union[Encryption, Dict[str, Any], None] = None,
    now: Optional[datetime] = None,
) -> ConfigTestReport:
    """
    Validate destination, compression and encryption settings without touching any state.
    """
    results = {
        "destination": check_destination(destination),
        "compression": check_compression(compression),
        "encryption": check_encryption(encryption),
    }
    return ConfigTestReport(
        overall_valid=all(check.valid for check in results.values()),
        results=results,
        tested_at=now or datetime.now(timezone.utc),
    )


# Not a test case for pytest collection.
test_destination_config.__test__ = False
