from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import structlog

from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.services.kinds import BACKUP_STORAGE, MONITORING
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.metadata_store import KubernetesClusterStore

logger = structlog.get_logger(__name__)

DATABASE_CLUSTERS = "databaseclusters"


@dataclass(frozen=True, order=True)
class WorkloadReference:
    cluster: str
    workload: str


def _storage_names(db_cluster: dict[str, Any]) -> set[str]:
    spec = db_cluster.get("spec") or {}
    names: set[str] = set()

    data_source = spec.get("dataSource") or {}
    for key in ("objectStorageName", "backupStorageName"):
        if data_source.get(key):
            names.add(data_source[key])
    backup_source = data_source.get("backupSource") or {}
    if backup_source.get("backupStorageName"):
        names.add(backup_source["backupStorageName"])

    for schedule in (spec.get("backup") or {}).get("schedules") or []:
        for key in ("backupStorageName", "objectStorageName"):
            if schedule.get(key):
                names.add(schedule[key])
    return names


def _monitoring_names(db_cluster: dict[str, Any]) -> set[str]:
    monitoring = (db_cluster.get("spec") or {}).get("monitoring") or {}
    name = monitoring.get("monitoringConfigName")
    return {name} if name else set()


def referencing_workloads(db_clusters: Iterable[dict[str, Any]], name: str, family: str) -> list[str]:
    """Names of the database clusters that reference ``name``."""
    extract = _monitoring_names if family == MONITORING else _storage_names
    found = {
        (c.get("metadata") or {}).get("name", "")
        for c in db_clusters
        if name in extract(c)
    }
    return sorted(found)


class UsageChecker:
    """Finds workloads in registered clusters that reference a credential resource by name."""

    def __init__(self, factory: ClusterClientFactory, clusters: KubernetesClusterStore) -> None:
        self._factory = factory
        self._clusters = clusters

    async def references_in(self, cluster: KubernetesCluster, name: str, family: str = BACKUP_STORAGE) -> list[WorkloadReference]:
        async with self._factory.connect(cluster) as kube:
            db_clusters = await kube.list_objects(DATABASE_CLUSTERS)
        return [WorkloadReference(cluster.name, w) for w in referencing_workloads(db_clusters, name, family)]

    async def references(self, name: str, family: str = BACKUP_STORAGE) -> list[WorkloadReference]:
        refs: list[WorkloadReference] = []
        for cluster in await self._clusters.list():
            refs.extend(await self.references_in(cluster, name, family))
        if refs:
            logger.info("usage.references_found", resource=name, references=[f"{r.cluster}/{r.workload}" for r in refs])
        return sorted(set(refs))
