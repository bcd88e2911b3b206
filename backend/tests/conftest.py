from __future__ import annotations

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from clusterdeck.config import Settings
from clusterdeck.core.vault import SecretVault
from clusterdeck.db import create_engine, create_session_factory, init_db
from clusterdeck.dependencies import build_services
from clusterdeck.main import create_app
from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.services.coordinator import ResourceCoordinator
from clusterdeck.services.kube.mirror import MirrorService
from clusterdeck.services.kube.usage import UsageChecker
from clusterdeck.services.metadata_store import CredentialResourceStore, KubernetesClusterStore
from tests.fakes import MASTER_KEY, FakeClusterFactory, FakePMMServer, encoded_kubeconfig


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        database_url="sqlite+aiosqlite:///:memory:",
        vault_master_key=MASTER_KEY,
        vault_kdf_iterations=1_000,
        auth_enabled=False,
        verify_storage_access=False,
        telemetry_url=None,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):
    eng = create_engine(settings)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def vault(session_factory) -> SecretVault:
    v = SecretVault(session_factory, kdf_iterations=1_000)
    await v.initialize(MASTER_KEY)
    await v.unseal(MASTER_KEY)
    return v


@pytest.fixture
def cluster_store(session_factory) -> KubernetesClusterStore:
    return KubernetesClusterStore(session_factory)


@pytest.fixture
def resource_store(session_factory) -> CredentialResourceStore:
    return CredentialResourceStore(session_factory)


@pytest.fixture
def factory() -> FakeClusterFactory:
    return FakeClusterFactory()


@pytest.fixture
def pmm_server() -> FakePMMServer:
    return FakePMMServer()


@pytest.fixture
def coordinator(vault, resource_store, cluster_store, factory, pmm_server) -> ResourceCoordinator:
    mirror = MirrorService("everest.percona.com/v1alpha1")
    usage = UsageChecker(factory, cluster_store)  # type: ignore[arg-type]
    return ResourceCoordinator(  # type: ignore[arg-type]
        vault, resource_store, cluster_store, factory, mirror, usage, pmm_keys=pmm_server.client()
    )


@pytest.fixture
def add_cluster(vault, cluster_store):
    """Stores a cluster row and its profile without touching the network."""

    async def _add(name: str, *, namespace: str = "percona-everest", uid: str = "ns-uid-1") -> KubernetesCluster:
        cluster_id = f"{name}-id"
        await vault.create(cluster_id, encoded_kubeconfig())
        return await cluster_store.create(KubernetesCluster(id=cluster_id, name=name, namespace=namespace, uid=uid))

    return _add


@pytest.fixture
def api_client(settings, factory, pmm_server):
    """App wired to fake clusters; the lifespan runs for the duration of the test."""
    services = build_services(settings, factory=factory, pmm_keys=pmm_server.client())  # type: ignore[arg-type]
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def registered(api_client):
    """Registers cluster ``prod`` through the API and returns its id."""
    resp = api_client.post("/v1/kubernetes", json={"name": "prod", "kubeconfig": encoded_kubeconfig()})
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]
