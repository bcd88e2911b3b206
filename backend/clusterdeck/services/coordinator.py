"""
Lifecycle of credential resources across the metadata store, the secret vault
and the registered clusters.

The three stores share no transaction, so every mutating flow is a ``Saga``:
secrets are provisioned before a record points at them, and a record stops
pointing at secrets before they are deleted. Any step failure rolls back the
steps that already ran.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Mapping, Optional

import structlog
from pydantic import SecretStr

from clusterdeck.core.errors import ConflictError, ValidationError
from clusterdeck.core.saga import Saga
from clusterdeck.core.vault import SecretVault
from clusterdeck.models.credential_resource import CredentialResource
from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.schemas.credentials import (
    PLAIN_FIELDS,
    SECRET_FIELDS,
    CredentialResourceCreate,
    CredentialResourceUpdate,
)
from clusterdeck.services.kinds import KindSpec, kind_spec, kinds_in_family, validate_fields, validate_name
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.kube.mirror import MirrorService
from clusterdeck.services.kube.usage import UsageChecker, WorkloadReference
from clusterdeck.services.metadata_store import CredentialResourceStore, KubernetesClusterStore, snapshot
from clusterdeck.services.pmm import PMMKeyClient
from clusterdeck.services.storage_access import S3AccessChecker

logger = structlog.get_logger(__name__)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _in_use_message(resource: CredentialResource, refs: list[WorkloadReference]) -> str:
    spec = kind_spec(resource.kind)
    listed = ", ".join(f"{r.workload} (cluster {r.cluster})" for r in refs)
    return f"The {spec.resource_kind} '{resource.name}' is used in following database clusters: {listed}"


class ResourceCoordinator:
    def __init__(
        self,
        vault: SecretVault,
        resources: CredentialResourceStore,
        clusters: KubernetesClusterStore,
        factory: ClusterClientFactory,
        mirror: MirrorService,
        usage: UsageChecker,
        *,
        id_factory: Callable[[], str] = _new_uuid,
        storage_access: Optional[S3AccessChecker] = None,
        pmm_keys: Optional[PMMKeyClient] = None,
    ) -> None:
        self._vault = vault
        self._resources = resources
        self._clusters = clusters
        self._factory = factory
        self._mirror = mirror
        self._usage = usage
        self._new_id = id_factory
        self._storage_access = storage_access
        self._pmm_keys = pmm_keys or PMMKeyClient()

    async def get(self, resource_id: str) -> CredentialResource:
        return await self._resources.get(resource_id)

    async def list(self, family: Optional[str] = None) -> list[CredentialResource]:
        if family is None:
            return await self._resources.list()
        return await self._resources.list_kinds(kinds_in_family(family))

    async def secret_values(self, resource: CredentialResource) -> dict[str, str]:
        return {field: await self._vault.get(secret_id) for field, secret_id in resource.secret_refs.items()}

    async def create(self, params: CredentialResourceCreate) -> CredentialResource:
        spec = kind_spec(params.kind)
        validate_name(params.name)
        plain = {field: getattr(params, field) for field in PLAIN_FIELDS}
        validate_fields(spec, plain)

        if await self._resources.get_by_name(params.name) is not None:
            raise ConflictError(f"Resource with name '{params.name}' already exists")

        params = await self._mint_api_key(spec, params, name=params.name, url=plain["endpoint"])
        values = self._secret_values_from(spec, params, require_all=True)
        if self._checks_access(spec):
            await self._verify_access(plain, values)

        resource_id = self._new_id()
        refs = {field: self._secret_id(field) for field in spec.secret_fields}

        saga = Saga("credential_resource.create", resource=params.name)
        for field, secret_id in refs.items():
            self._add_create_secret(saga, field, secret_id, values[field])

        async def insert_record() -> CredentialResource:
            record = CredentialResource(
                id=resource_id,
                name=params.name,
                kind=spec.kind,
                secret_refs=dict(refs),
                **plain,
            )
            return await self._resources.create(record)

        saga.add("insert record", insert_record, ids=(resource_id,))
        results = await saga.run()
        logger.info("coordinator.created", resource=params.name, kind=spec.kind, id=resource_id)
        return results[-1]

    async def update(self, resource_id: str, params: CredentialResourceUpdate) -> CredentialResource:
        current = await self._resources.get(resource_id)
        spec = kind_spec(current.kind)

        plain_changes = {field: getattr(params, field) for field in params.model_fields_set if field in PLAIN_FIELDS}
        before = snapshot(current)
        merged = {**{f: before[f] for f in PLAIN_FIELDS}, **plain_changes}
        validate_fields(spec, merged)

        params = await self._mint_api_key(spec, params, name=current.name, url=merged["endpoint"])
        rotations = self._secret_values_from(spec, params, require_all=False)
        if not plain_changes and not rotations:
            return current
        if self._checks_access(spec):
            await self._verify_access(merged, {**await self.secret_values(current), **rotations})

        new_ids = {field: self._secret_id(field) for field in rotations}
        new_refs = {**current.secret_refs, **new_ids}

        mirrored = await self._mirrored_clusters(current)
        previous_values = await self.secret_values(current) if mirrored else {}

        saga = Saga("credential_resource.update", resource=current.name)
        for field, new_id in new_ids.items():
            self._add_rotate_secret(saga, field, current.secret_refs[field], new_id, rotations[field])

        restore = {k: v for k, v in before.items() if k != "id"}

        async def update_record() -> CredentialResource:
            return await self._resources.update(resource_id, {**plain_changes, "secret_refs": dict(new_refs)})

        async def restore_record(_: Any) -> None:
            await self._resources.update(resource_id, restore)

        saga.add("update record", update_record, restore_record, ids=(resource_id, *new_ids.values()))

        if mirrored:
            updated = CredentialResource(**{**before, **plain_changes, "secret_refs": dict(new_refs)})
            previous = CredentialResource(**before)
            new_values = {**previous_values, **rotations}
            for cluster in mirrored:
                self._add_sync_mirror(saga, cluster, updated, new_values, previous, previous_values)

        results = await saga.run()
        logger.info(
            "coordinator.updated",
            resource=current.name,
            rotated=sorted(new_ids),
            fields=sorted(plain_changes),
            mirrors=[c.name for c in mirrored],
        )
        return results[len(new_ids)]

    async def delete(self, resource_id: str) -> None:
        current = await self._resources.get(resource_id)
        spec = kind_spec(current.kind)

        refs = await self._usage.references(current.name, spec.family)
        if refs:
            raise ConflictError(
                _in_use_message(current, refs),
                details={
                    "clusters": sorted({r.cluster for r in refs}),
                    "references": [{"cluster": r.cluster, "workload": r.workload} for r in refs],
                },
            )

        mirrored = await self._mirrored_clusters(current)
        values = await self.secret_values(current) if mirrored else {}
        before = snapshot(current)

        saga = Saga("credential_resource.delete", resource=current.name)
        for cluster in mirrored:
            self._add_remove_mirror(saga, cluster, current, values)

        async def delete_record() -> None:
            await self._resources.delete(resource_id)

        async def reinsert_record(_: Any) -> None:
            await self._resources.restore(before)

        saga.add("delete record", delete_record, reinsert_record, ids=(resource_id,))
        for field, secret_id in current.secret_refs.items():
            self._add_delete_secret(saga, field, secret_id)

        await saga.run()
        logger.info("coordinator.deleted", resource=current.name, id=resource_id)

    async def apply_to_cluster(self, resource_id: str, cluster_id: str) -> None:
        """Create or refresh the mirror of a resource inside one registered cluster."""
        resource = await self._resources.get(resource_id)
        cluster = await self._clusters.get(cluster_id)
        values = await self.secret_values(resource)

        async with self._factory.connect(cluster) as kube:
            saga = Saga("credential_resource.apply", resource=resource.name)

            async def apply_secret() -> None:
                await self._mirror.apply_secret(kube, resource, values)

            async def drop_secret(_: Any) -> None:
                await self._mirror.delete_secret(kube, resource)

            async def apply_object() -> None:
                await self._mirror.apply_object(kube, resource)

            saga.add("apply mirror secret", apply_secret, drop_secret, ids=(cluster.id,))
            saga.add("apply mirror object", apply_object, ids=(cluster.id,))
            await saga.run()
        logger.info("coordinator.applied", resource=resource.name, cluster=cluster.name)

    async def remove_from_cluster(self, resource_id: str, cluster_id: str) -> None:
        resource = await self._resources.get(resource_id)
        cluster = await self._clusters.get(cluster_id)
        spec = kind_spec(resource.kind)

        refs = await self._usage.references_in(cluster, resource.name, spec.family)
        if refs:
            raise ConflictError(
                _in_use_message(resource, refs),
                details={"clusters": [cluster.name], "references": [{"cluster": r.cluster, "workload": r.workload} for r in refs]},
            )
        async with self._factory.connect(cluster) as kube:
            await self._mirror.remove(kube, resource)

    def _checks_access(self, spec: KindSpec) -> bool:
        return spec.verifies_access and self._storage_access is not None

    async def _verify_access(self, plain: Mapping[str, Optional[str]], values: Mapping[str, str]) -> None:
        checker = self._storage_access
        if checker is None:
            return
        await checker.check(
            bucket=plain["bucket_name"] or "",
            endpoint=plain["endpoint"],
            region=plain["region"],
            access_key=values["access_key"],
            secret_key=values["secret_key"],
        )

    async def _mint_api_key(
        self,
        spec: KindSpec,
        params: CredentialResourceCreate | CredentialResourceUpdate,
        *,
        name: str,
        url: Optional[str],
    ) -> Any:
        """Replace a missing api_key with one minted from the admin login, if one was given."""
        user = params.pmm_user
        password = params.pmm_password.get_secret_value() if params.pmm_password is not None else ""
        if user is None and not password:
            return params
        if not spec.mints_api_key:
            raise ValidationError(f"{spec.kind} resources do not accept an admin login")
        if params.api_key is not None and params.api_key.get_secret_value():
            return params
        if not user or not password or not url:
            raise ValidationError("'pmm_user' and 'pmm_password' are both required to create an API key")
        key = await self._pmm_keys.create_api_key(url, f"clusterdeck-{name}-{self._new_id()}", user, password)
        return params.model_copy(update={"api_key": SecretStr(key)})

    def _secret_id(self, field: str) -> str:
        return f"{field.replace('_', '-')}-{self._new_id()}"

    @staticmethod
    def _secret_values_from(
        spec: KindSpec,
        params: CredentialResourceCreate | CredentialResourceUpdate,
        *,
        require_all: bool,
    ) -> dict[str, str]:
        values: dict[str, str] = {}
        for field in SECRET_FIELDS:
            secret = getattr(params, field)
            if field not in spec.secret_fields:
                if secret is not None:
                    raise ValidationError(f"{spec.kind} resources do not accept {field}")
                continue
            if secret is None or not secret.get_secret_value():
                if require_all:
                    raise ValidationError(f"'{field}' is required for {spec.kind} resources")
                continue
            values[field] = secret.get_secret_value()
        return values

    async def _mirrored_clusters(self, resource: CredentialResource) -> list[KubernetesCluster]:
        found: list[KubernetesCluster] = []
        for cluster in await self._clusters.list():
            async with self._factory.connect(cluster) as kube:
                if await self._mirror.exists(kube, resource):
                    found.append(cluster)
        return found

    def _add_create_secret(self, saga: Saga, field: str, secret_id: str, value: str) -> None:
        async def action() -> None:
            await self._vault.create(secret_id, value)

        async def compensate(_: Any) -> None:
            await self._vault.delete(secret_id)

        saga.add(f"create {field} secret", action, compensate, ids=(secret_id,))

    def _add_rotate_secret(self, saga: Saga, field: str, old_id: str, new_id: str, value: str) -> None:
        async def action() -> str:
            return await self._vault.replace(old_id, new_id, value)

        async def compensate(old_value: str) -> None:
            await self._vault.replace(new_id, old_id, old_value)

        saga.add(f"rotate {field} secret", action, compensate, ids=(old_id, new_id))

    def _add_delete_secret(self, saga: Saga, field: str, secret_id: str) -> None:
        async def action() -> str:
            return await self._vault.delete(secret_id)

        async def compensate(deleted_value: str) -> None:
            await self._vault.create(secret_id, deleted_value)

        saga.add(f"delete {field} secret", action, compensate, ids=(secret_id,))

    def _add_sync_mirror(
        self,
        saga: Saga,
        cluster: KubernetesCluster,
        updated: CredentialResource,
        values: Mapping[str, str],
        previous: CredentialResource,
        previous_values: Mapping[str, str],
    ) -> None:
        async def action() -> None:
            async with self._factory.connect(cluster) as kube:
                await self._mirror.sync(kube, updated, values)

        async def compensate(_: Any) -> None:
            async with self._factory.connect(cluster) as kube:
                await self._mirror.sync(kube, previous, previous_values)

        saga.add(f"sync mirror in {cluster.name}", action, compensate, ids=(cluster.id,))

    def _add_remove_mirror(
        self,
        saga: Saga,
        cluster: KubernetesCluster,
        resource: CredentialResource,
        values: Mapping[str, str],
    ) -> None:
        async def action() -> None:
            async with self._factory.connect(cluster) as kube:
                await self._mirror.remove(kube, resource)

        async def compensate(_: Any) -> None:
            async with self._factory.connect(cluster) as kube:
                await self._mirror.sync(kube, resource, values)

        saga.add(f"remove mirror from {cluster.name}", action, compensate, ids=(cluster.id,))
