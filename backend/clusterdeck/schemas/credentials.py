from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

SECRET_FIELDS = ("access_key", "secret_key", "api_key")
PLAIN_FIELDS = ("description", "endpoint", "bucket_name", "region")


class CredentialResourceCreate(BaseModel):
    """Kind-agnostic create request handled by the coordinator."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=63)
    kind: str
    description: str | None = None
    endpoint: str | None = None
    bucket_name: str | None = None
    region: str | None = None
    access_key: SecretStr | None = None
    secret_key: SecretStr | None = None
    api_key: SecretStr | None = None
    # admin login used to mint api_key when none is supplied
    pmm_user: str | None = None
    pmm_password: SecretStr | None = None


class CredentialResourceUpdate(BaseModel):
    """Only the fields that are set are applied; name and kind never change."""

    model_config = ConfigDict(extra="forbid")

    description: str | None = None
    endpoint: str | None = None
    bucket_name: str | None = None
    region: str | None = None
    access_key: SecretStr | None = None
    secret_key: SecretStr | None = None
    api_key: SecretStr | None = None
    pmm_user: str | None = None
    pmm_password: SecretStr | None = None


class BackupStorageCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=63)
    type: Literal["s3", "azure"]
    bucket_name: str = Field(min_length=1)
    region: str | None = None
    url: str | None = None
    description: str | None = None
    access_key: SecretStr
    secret_key: SecretStr

    def to_resource(self) -> CredentialResourceCreate:
        return CredentialResourceCreate(
            name=self.name,
            kind=self.type,
            description=self.description,
            endpoint=self.url,
            bucket_name=self.bucket_name,
            region=self.region,
            access_key=self.access_key,
            secret_key=self.secret_key,
        )


class BackupStorageUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bucket_name: str | None = None
    region: str | None = None
    url: str | None = None
    description: str | None = None
    access_key: SecretStr | None = None
    secret_key: SecretStr | None = None

    def to_resource(self) -> CredentialResourceUpdate:
        data = self.model_dump(exclude_unset=True)
        if "url" in data:
            data["endpoint"] = data.pop("url")
        return CredentialResourceUpdate(**data)


def _admin_login(data: dict) -> dict:
    if "user" in data:
        data["pmm_user"] = data.pop("user")
    if "password" in data:
        data["pmm_password"] = data.pop("password")
    return data


class MonitoringInstanceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=63)
    type: Literal["pmm"] = "pmm"
    url: str
    api_key: SecretStr | None = None
    user: str | None = None
    password: SecretStr | None = None

    @model_validator(mode="after")
    def _require_key_or_login(self) -> "MonitoringInstanceCreate":
        if self.api_key is None and not (self.user and self.password):
            raise ValueError("either api_key or user and password are required")
        return self

    def to_resource(self) -> CredentialResourceCreate:
        return CredentialResourceCreate(
            name=self.name,
            kind=self.type,
            endpoint=self.url,
            api_key=self.api_key,
            pmm_user=self.user,
            pmm_password=self.password,
        )


class MonitoringInstanceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    api_key: SecretStr | None = None
    user: str | None = None
    password: SecretStr | None = None

    def to_resource(self) -> CredentialResourceUpdate:
        data = _admin_login(self.model_dump(exclude_unset=True))
        if "url" in data:
            data["endpoint"] = data.pop("url")
        return CredentialResourceUpdate(**data)


class BackupStorageResponse(BaseModel):
    id: str
    name: str
    type: str
    bucket_name: str | None = None
    region: str | None = None
    url: str | None = None
    description: str | None = None
    created_at: datetime
    updated_at: datetime


class MonitoringInstanceResponse(BaseModel):
    id: str
    name: str
    type: str
    url: str | None = None
    created_at: datetime
    updated_at: datetime
