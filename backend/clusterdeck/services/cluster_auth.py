from __future__ import annotations

import structlog

from clusterdeck.config import Settings
from clusterdeck.core.errors import UpstreamError
from clusterdeck.core.password import PasswordValidator
from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.metadata_store import KubernetesClusterStore

logger = structlog.get_logger(__name__)


class ClusterPasswordValidators:
    """One cached password validator per registered cluster.

    The hash lives in a Secret inside the cluster; the namespace UID read at
    registration time is the salt.
    """

    def __init__(self, clusters: KubernetesClusterStore, factory: ClusterClientFactory, settings: Settings) -> None:
        self._clusters = clusters
        self._factory = factory
        self._settings = settings
        self._validators: dict[str, PasswordValidator] = {}

    async def validate(self, cluster_id: str, password: str) -> bool:
        cluster = await self._clusters.get(cluster_id)
        return await self._validator(cluster).valid(password)

    def invalidate(self, cluster_id: str) -> None:
        self._validators.pop(cluster_id, None)

    def _validator(self, cluster: KubernetesCluster) -> PasswordValidator:
        validator = self._validators.get(cluster.id)
        if validator is None:
            validator = PasswordValidator(
                self._fetcher(cluster),
                cluster.uid.encode("utf-8"),
                ttl=self._settings.password_cache_ttl_seconds,
            )
            self._validators[cluster.id] = validator
        return validator

    def _fetcher(self, cluster: KubernetesCluster):
        secret_name = self._settings.password_secret_name
        secret_key = self._settings.password_secret_key

        async def fetch() -> bytes:
            async with self._factory.connect(cluster) as kube:
                data = await kube.read_secret(secret_name)
            if not data or secret_key not in data:
                logger.warning("auth.password_hash_missing", cluster=cluster.name, secret=secret_name)
                raise UpstreamError(
                    f"Could not get stored password hash from cluster '{cluster.name}'",
                    details={"cluster": cluster.name},
                )
            return data[secret_key]

        return fetch
