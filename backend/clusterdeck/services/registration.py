from __future__ import annotations

import uuid
from typing import Any, Callable

import structlog

from clusterdeck.config import Settings
from clusterdeck.core.errors import ClusterUnavailableError, ConflictError, NotFoundError, ValidationError
from clusterdeck.core.saga import Saga
from clusterdeck.core.vault import SecretVault
from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.schemas.kubernetes import KubernetesClusterCreate
from clusterdeck.services.cluster_auth import ClusterPasswordValidators
from clusterdeck.services.kinds import validate_name
from clusterdeck.services.kube.client_factory import ClusterClientFactory, decode_profile
from clusterdeck.services.kube.usage import DATABASE_CLUSTERS
from clusterdeck.services.metadata_store import KubernetesClusterStore, snapshot

logger = structlog.get_logger(__name__)


class ClusterRegistrar:
    """Registers and unregisters remote clusters together with their connection profile."""

    def __init__(
        self,
        vault: SecretVault,
        clusters: KubernetesClusterStore,
        factory: ClusterClientFactory,
        validators: ClusterPasswordValidators,
        settings: Settings,
        *,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._vault = vault
        self._clusters = clusters
        self._factory = factory
        self._validators = validators
        self._settings = settings
        self._new_id = id_factory

    async def list(self) -> list[KubernetesCluster]:
        return await self._clusters.list()

    async def get(self, cluster_id: str) -> KubernetesCluster:
        return await self._clusters.get(cluster_id)

    async def register(self, params: KubernetesClusterCreate) -> KubernetesCluster:
        name = validate_name(params.name)
        namespace = params.namespace or self._settings.default_namespace
        if await self._clusters.get_by_name(name) is not None:
            raise ConflictError(f"Kubernetes cluster '{name}' is already registered")

        encoded = params.kubeconfig.get_secret_value()
        profile = decode_profile(encoded)
        async with self._factory.connect_profile(profile, name=name, namespace=namespace) as kube:
            try:
                uid = await kube.namespace_uid()
            except NotFoundError as exc:
                raise ValidationError(f"Namespace '{namespace}' does not exist in cluster '{name}'") from exc

        cluster_id = self._new_id()
        saga = Saga("kubernetes_cluster.register", resource=name)

        async def store_profile() -> None:
            await self._vault.create(cluster_id, encoded)

        async def drop_profile(_: Any) -> None:
            await self._vault.delete(cluster_id)

        async def insert_record() -> KubernetesCluster:
            return await self._clusters.create(
                KubernetesCluster(id=cluster_id, name=name, namespace=namespace, uid=uid)
            )

        saga.add("store connection profile", store_profile, drop_profile, ids=(cluster_id,))
        saga.add("insert record", insert_record, ids=(cluster_id,))
        results = await saga.run()
        logger.info("registration.registered", cluster=name, id=cluster_id, namespace=namespace)
        return results[-1]

    async def unregister(self, cluster_id: str, *, force: bool = False, ignore_unavailable: bool = False) -> None:
        cluster = await self._clusters.get(cluster_id)

        if not force:
            try:
                async with self._factory.connect(cluster) as kube:
                    db_clusters = await kube.list_objects(DATABASE_CLUSTERS)
            except ClusterUnavailableError:
                if not ignore_unavailable:
                    raise
                logger.warning("registration.unregister_unavailable", cluster=cluster.name)
                db_clusters = []
            if db_clusters:
                names = sorted((c.get("metadata") or {}).get("name", "") for c in db_clusters)
                raise ConflictError(
                    f"Kubernetes cluster '{cluster.name}' still has database clusters: {', '.join(names)}",
                    details={"clusters": [cluster.name], "database_clusters": names},
                )

        before = snapshot(cluster)
        saga = Saga("kubernetes_cluster.unregister", resource=cluster.name)

        async def delete_record() -> None:
            await self._clusters.delete(cluster_id)

        async def reinsert_record(_: Any) -> None:
            await self._clusters.restore(before)

        async def delete_profile() -> str:
            return await self._vault.delete(cluster.connection_secret_ref)

        async def restore_profile(encoded: str) -> None:
            await self._vault.create(cluster.connection_secret_ref, encoded)

        saga.add("delete record", delete_record, reinsert_record, ids=(cluster_id,))
        saga.add("delete connection profile", delete_profile, restore_profile, ids=(cluster.connection_secret_ref,))
        await saga.run()
        self._validators.invalidate(cluster_id)
        logger.info("registration.unregistered", cluster=cluster.name, id=cluster_id, forced=force)
