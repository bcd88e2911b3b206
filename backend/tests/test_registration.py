from __future__ import annotations

import base64

import pytest
from pydantic import SecretStr

from clusterdeck.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    MalformedConnectionProfileError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from clusterdeck.schemas.kubernetes import KubernetesClusterCreate
from clusterdeck.services.cluster_auth import ClusterPasswordValidators
from clusterdeck.services.registration import ClusterRegistrar
from tests.fakes import count_secrets, encoded_kubeconfig


@pytest.fixture
def validators(cluster_store, factory, settings) -> ClusterPasswordValidators:
    return ClusterPasswordValidators(cluster_store, factory, settings)


@pytest.fixture
def registrar(vault, cluster_store, factory, validators, settings) -> ClusterRegistrar:
    ids = iter(f"cluster-{n}" for n in range(1, 100))
    return ClusterRegistrar(vault, cluster_store, factory, validators, settings, id_factory=lambda: next(ids))


def _params(name: str = "prod", **overrides) -> KubernetesClusterCreate:
    data = {"name": name, "kubeconfig": SecretStr(encoded_kubeconfig())}
    data.update(overrides)
    return KubernetesClusterCreate(**data)


async def test_register_stores_profile_and_record(registrar, vault, factory):
    factory.state("prod").uid = "uid-123"

    cluster = await registrar.register(_params())

    assert cluster.id == "cluster-1"
    assert cluster.namespace == "percona-everest"
    assert cluster.uid == "uid-123"
    assert await vault.get(cluster.connection_secret_ref) == encoded_kubeconfig()
    assert [c.name for c in await registrar.list()] == ["prod"]


async def test_register_uses_requested_namespace(registrar):
    cluster = await registrar.register(_params(namespace="dbaas"))
    assert cluster.namespace == "dbaas"


async def test_register_duplicate_name_conflicts(registrar, session_factory):
    await registrar.register(_params())
    with pytest.raises(ConflictError):
        await registrar.register(_params())
    assert await count_secrets(session_factory) == 1


async def test_register_rejects_malformed_profile(registrar, session_factory):
    garbage = SecretStr(base64.b64encode(b"not: [a kubeconfig").decode())
    with pytest.raises(MalformedConnectionProfileError):
        await registrar.register(_params(kubeconfig=garbage))
    assert await count_secrets(session_factory) == 0


async def test_register_requires_existing_namespace(registrar, factory, session_factory):
    factory.state("prod").failures["namespace_uid"] = NotFoundError("namespace missing")

    with pytest.raises(ValidationError):
        await registrar.register(_params())
    assert await registrar.list() == []
    assert await count_secrets(session_factory) == 0


async def test_register_unreachable_cluster(registrar, factory):
    factory.state("prod").unavailable = True
    with pytest.raises(ClusterUnavailableError):
        await registrar.register(_params())


async def test_register_drops_profile_when_record_insert_fails(registrar, cluster_store, monkeypatch, session_factory):
    async def fail(_record):
        raise ConflictError("taken")

    monkeypatch.setattr(cluster_store, "create", fail)

    with pytest.raises(ConflictError):
        await registrar.register(_params())
    assert await count_secrets(session_factory) == 0


async def test_unregister_refuses_cluster_with_databases(registrar, factory):
    cluster = await registrar.register(_params())
    factory.state("prod").add_database_cluster("db-1", {})

    with pytest.raises(ConflictError) as exc_info:
        await registrar.unregister(cluster.id)
    assert exc_info.value.details["database_clusters"] == ["db-1"]
    assert (await registrar.get(cluster.id)).name == "prod"


async def test_unregister_force_skips_database_check(registrar, factory, vault):
    cluster = await registrar.register(_params())
    factory.state("prod").add_database_cluster("db-1", {})

    await registrar.unregister(cluster.id, force=True)

    with pytest.raises(NotFoundError):
        await registrar.get(cluster.id)
    assert await vault.exists(cluster.id) is False


async def test_unregister_unreachable_cluster(registrar, factory):
    cluster = await registrar.register(_params())
    factory.state("prod").unavailable = True

    with pytest.raises(ClusterUnavailableError):
        await registrar.unregister(cluster.id)

    await registrar.unregister(cluster.id, ignore_unavailable=True)
    assert await registrar.list() == []


async def test_unregister_restores_record_when_profile_delete_fails(registrar, vault, monkeypatch):
    cluster = await registrar.register(_params())

    async def fail(_secret_id):
        raise RuntimeError("locked")

    monkeypatch.setattr(vault, "delete", fail)

    with pytest.raises(UpstreamError):
        await registrar.unregister(cluster.id)

    restored = await registrar.get(cluster.id)
    assert restored.uid == cluster.uid
    assert await vault.exists(cluster.id) is True
