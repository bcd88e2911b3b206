from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from clusterdeck.core.errors import ValidationError

BACKUP_STORAGE = "backup_storage"
MONITORING = "monitoring"

_RFC1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
NAME_MAX_LENGTH = 63

_HTTP_URL = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class KindSpec:
    kind: str
    family: str
    # request field -> key inside the mirrored cluster Secret
    secret_fields: Mapping[str, str]
    plural: str
    resource_kind: str
    requires_bucket: bool = False
    requires_region: bool = False
    requires_endpoint: bool = False
    # bucket must answer HeadBucket with the supplied keys before it is stored
    verifies_access: bool = False
    # api_key may be minted from an admin login on the endpoint
    mints_api_key: bool = False


KINDS: dict[str, KindSpec] = {
    "s3": KindSpec(
        kind="s3",
        family=BACKUP_STORAGE,
        secret_fields={"access_key": "AWS_ACCESS_KEY_ID", "secret_key": "AWS_SECRET_ACCESS_KEY"},
        plural="backupstorages",
        resource_kind="BackupStorage",
        requires_bucket=True,
        requires_region=True,
        verifies_access=True,
    ),
    "azure": KindSpec(
        kind="azure",
        family=BACKUP_STORAGE,
        secret_fields={"access_key": "AZURE_STORAGE_ACCOUNT_NAME", "secret_key": "AZURE_STORAGE_ACCOUNT_KEY"},
        plural="backupstorages",
        resource_kind="BackupStorage",
        requires_bucket=True,
    ),
    "pmm": KindSpec(
        kind="pmm",
        family=MONITORING,
        secret_fields={"api_key": "apiKey"},
        plural="monitoringconfigs",
        resource_kind="MonitoringConfig",
        requires_endpoint=True,
        mints_api_key=True,
    ),
}


def kind_spec(kind: str) -> KindSpec:
    spec = KINDS.get(kind)
    if spec is None:
        raise ValidationError(f"Unsupported resource kind '{kind}'", details={"supported": sorted(KINDS)})
    return spec


def kinds_in_family(family: str) -> list[str]:
    return [k for k, spec in KINDS.items() if spec.family == family]


def validate_name(name: str, field_name: str = "name") -> str:
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(f"'{field_name}' can be at most {NAME_MAX_LENGTH} characters long")
    if not _RFC1123_LABEL.match(name):
        raise ValidationError(
            f"'{field_name}' is not RFC 1123 compatible. The name should contain only lowercase "
            "alphanumeric characters or '-', and start and end with an alphanumeric character"
        )
    return name


def validate_url(value: Optional[str], field_name: str) -> Optional[str]:
    if value is None:
        return None
    try:
        _HTTP_URL.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"'{field_name}' is an invalid URL") from exc
    return value


def validate_fields(spec: KindSpec, fields: Mapping[str, Optional[str]]) -> None:
    """Kind-specific required plain fields, checked on the merged record."""
    if spec.requires_bucket and not fields.get("bucket_name"):
        raise ValidationError(f"'bucket_name' is required for {spec.kind} resources")
    if spec.requires_region and not fields.get("region"):
        raise ValidationError(f"'region' is required for {spec.kind} resources")
    if spec.requires_endpoint and not fields.get("endpoint"):
        raise ValidationError(f"'endpoint' is required for {spec.kind} resources")
    validate_url(fields.get("endpoint"), "endpoint")
