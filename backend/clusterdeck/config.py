import uuid
from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables.

    Built once by the entrypoint and handed to ``create_app``; nothing in the
    package reads it from module state.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERDECK_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    database_url: str = "sqlite+aiosqlite:///./clusterdeck.db"
    # Master key used to initialize and unseal the secret vault.
    vault_master_key: str = Field(default="changeme-in-prod", min_length=8)
    vault_kdf_iterations: int = 390_000
    # Routing of the external resource surface onto the remote custom-resource API
    api_prefix: str = "/v1"
    remote_api_group: str = "everest.percona.com"
    remote_api_version: str = "v1alpha1"
    default_namespace: str = "percona-everest"
    kube_request_timeout_seconds: float = 15.0
    proxy_timeout_seconds: float = 30.0
    # HeadBucket check on s3 backup storages before they are stored
    verify_storage_access: bool = True
    pmm_request_timeout_seconds: float = 15.0
    # Shared credential check against a secret living in each remote cluster
    auth_enabled: bool = True
    password_secret_name: str = "everest-password"
    password_secret_key: str = "password"
    password_cache_ttl_seconds: float = 3.0
    # Periodic telemetry; disabled when no URL is configured
    telemetry_url: str | None = None
    telemetry_interval_seconds: int = 24 * 3600
    telemetry_initial_delay_seconds: int = 300
    telemetry_product_family: str = "PRODUCT_FAMILY_EVEREST"
    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"

    @computed_field
    @property
    def remote_api_root(self) -> str:
        return f"/apis/{self.remote_api_group}/{self.remote_api_version}"

    @computed_field
    @property
    def kubernetes_prefix(self) -> str:
        return f"{self.api_prefix.rstrip('/')}/kubernetes"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
