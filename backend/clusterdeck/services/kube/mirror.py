"""
Remote representation of a credential resource.

A mirror is two objects in the registration namespace: an Opaque Secret named
``<name>-secret`` holding the credential values, and the custom resource
``<name>`` (BackupStorage or MonitoringConfig) that points at it.
"""

from __future__ import annotations

from typing import Any, Mapping

import structlog

from clusterdeck.models.credential_resource import CredentialResource
from clusterdeck.services.kinds import BACKUP_STORAGE, kind_spec
from clusterdeck.services.kube.client_factory import ClusterClient

logger = structlog.get_logger(__name__)

PMM_CLIENT_IMAGE = "percona/pmm-client:2"


def mirror_secret_name(name: str) -> str:
    return f"{name}-secret"


def build_secret_data(resource: CredentialResource, values: Mapping[str, str]) -> dict[str, str]:
    spec = kind_spec(resource.kind)
    return {secret_key: values[field] for field, secret_key in spec.secret_fields.items()}


def build_custom_resource(resource: CredentialResource, namespace: str, api_version: str) -> dict[str, Any]:
    spec = kind_spec(resource.kind)
    body: dict[str, Any] = {
        "apiVersion": api_version,
        "kind": spec.resource_kind,
        "metadata": {"name": resource.name, "namespace": namespace},
    }
    if spec.family == BACKUP_STORAGE:
        body["spec"] = {
            "type": resource.kind,
            "bucket": resource.bucket_name,
            "region": resource.region or "",
            "endpointURL": resource.endpoint or "",
            "credentialsSecretName": mirror_secret_name(resource.name),
            "description": resource.description or "",
        }
    else:
        body["spec"] = {
            "type": resource.kind,
            "credentialsSecretName": mirror_secret_name(resource.name),
            "pmm": {"url": resource.endpoint, "image": PMM_CLIENT_IMAGE},
        }
    return body


class MirrorService:
    def __init__(self, api_version: str) -> None:
        self._api_version = api_version

    async def exists(self, kube: ClusterClient, resource: CredentialResource) -> bool:
        spec = kind_spec(resource.kind)
        return await kube.get_object(spec.plural, resource.name) is not None

    async def apply_secret(self, kube: ClusterClient, resource: CredentialResource, values: Mapping[str, str]) -> None:
        await kube.apply_secret(mirror_secret_name(resource.name), build_secret_data(resource, values))

    async def apply_object(self, kube: ClusterClient, resource: CredentialResource) -> None:
        spec = kind_spec(resource.kind)
        await kube.apply_object(spec.plural, build_custom_resource(resource, kube.namespace, self._api_version))

    async def delete_secret(self, kube: ClusterClient, resource: CredentialResource) -> None:
        await kube.delete_secret(mirror_secret_name(resource.name))

    async def delete_object(self, kube: ClusterClient, resource: CredentialResource) -> None:
        spec = kind_spec(resource.kind)
        await kube.delete_object(spec.plural, resource.name)

    async def sync(self, kube: ClusterClient, resource: CredentialResource, values: Mapping[str, str]) -> None:
        """Bring both mirror objects in line with ``resource`` and ``values``."""
        await self.apply_secret(kube, resource, values)
        await self.apply_object(kube, resource)
        logger.info("mirror.synced", cluster=kube.cluster_name, resource=resource.name)

    async def remove(self, kube: ClusterClient, resource: CredentialResource) -> None:
        await self.delete_object(kube, resource)
        await self.delete_secret(kube, resource)
        logger.info("mirror.removed", cluster=kube.cluster_name, resource=resource.name)
