from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request, Path
from sqlalchemy.ext.asyncio import AsyncEngine

from clusterdeck.config import Settings
from clusterdeck.core.errors import AppException
from clusterdeck.core.vault import SecretVault
from clusterdeck.db import create_engine, create_session_factory
from clusterdeck.services.cluster_auth import ClusterPasswordValidators
from clusterdeck.services.coordinator import ResourceCoordinator
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.kube.mirror import MirrorService
from clusterdeck.services.kube.usage import UsageChecker
from clusterdeck.services.metadata_store import CredentialResourceStore, KubernetesClusterStore
from clusterdeck.services.pmm import PMMKeyClient
from clusterdeck.services.proxy import PASSWORD_HEADER, ProxyTranslator
from clusterdeck.services.registration import ClusterRegistrar
from clusterdeck.services.storage_access import S3AccessChecker


@dataclass
class AppServices:
    settings: Settings
    engine: AsyncEngine
    vault: SecretVault
    clusters: KubernetesClusterStore
    resources: CredentialResourceStore
    factory: ClusterClientFactory
    coordinator: ResourceCoordinator
    registrar: ClusterRegistrar
    validators: ClusterPasswordValidators
    proxy: ProxyTranslator


def build_services(
    settings: Settings,
    *,
    factory: Optional[ClusterClientFactory] = None,
    pmm_keys: Optional[PMMKeyClient] = None,
) -> AppServices:
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    vault = SecretVault(session_factory, kdf_iterations=settings.vault_kdf_iterations)
    clusters = KubernetesClusterStore(session_factory)
    resources = CredentialResourceStore(session_factory)
    factory = factory or ClusterClientFactory(vault, settings)
    mirror = MirrorService(f"{settings.remote_api_group}/{settings.remote_api_version}")
    usage = UsageChecker(factory, clusters)
    validators = ClusterPasswordValidators(clusters, factory, settings)
    coordinator = ResourceCoordinator(
        vault,
        resources,
        clusters,
        factory,
        mirror,
        usage,
        storage_access=S3AccessChecker() if settings.verify_storage_access else None,
        pmm_keys=pmm_keys or PMMKeyClient(timeout=settings.pmm_request_timeout_seconds),
    )
    return AppServices(
        settings=settings,
        engine=engine,
        vault=vault,
        clusters=clusters,
        resources=resources,
        factory=factory,
        coordinator=coordinator,
        registrar=ClusterRegistrar(vault, clusters, factory, validators, settings),
        validators=validators,
        proxy=ProxyTranslator(clusters, factory, settings),
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_coordinator(services: AppServices = Depends(get_services)) -> ResourceCoordinator:
    return services.coordinator


def get_registrar(services: AppServices = Depends(get_services)) -> ClusterRegistrar:
    return services.registrar


def get_proxy(services: AppServices = Depends(get_services)) -> ProxyTranslator:
    return services.proxy


async def require_cluster_password(
    kubernetes_id: str = Path(...),
    password: Optional[str] = Header(default=None, alias=PASSWORD_HEADER),
    services: AppServices = Depends(get_services),
) -> None:
    """Gate cluster-scoped routes on the password stored in that cluster."""
    if not services.settings.auth_enabled:
        return
    if not await services.validators.validate(kubernetes_id, password or ""):
        raise AppException("Invalid cluster password", status_code=401, code="UNAUTHORIZED")
