from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class KubernetesClusterCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=63)
    namespace: str | None = Field(default=None, max_length=63)
    # base64-encoded kubeconfig
    kubeconfig: SecretStr


class KubernetesClusterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    namespace: str
    created_at: datetime
    updated_at: datetime
