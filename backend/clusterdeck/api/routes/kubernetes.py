from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from clusterdeck.dependencies import get_coordinator, get_registrar, require_cluster_password
from clusterdeck.schemas.kubernetes import KubernetesClusterCreate, KubernetesClusterResponse
from clusterdeck.services.coordinator import ResourceCoordinator
from clusterdeck.services.registration import ClusterRegistrar

router = APIRouter(prefix="/kubernetes", tags=["kubernetes"])


@router.get("", response_model=list[KubernetesClusterResponse], summary="List registered clusters")
async def list_kubernetes_clusters(
    registrar: ClusterRegistrar = Depends(get_registrar),
) -> list[KubernetesClusterResponse]:
    return [KubernetesClusterResponse.model_validate(c) for c in await registrar.list()]


@router.post(
    "",
    response_model=KubernetesClusterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a cluster from a base64 kubeconfig",
)
async def register_kubernetes_cluster(
    payload: KubernetesClusterCreate,
    registrar: ClusterRegistrar = Depends(get_registrar),
) -> KubernetesClusterResponse:
    cluster = await registrar.register(payload)
    return KubernetesClusterResponse.model_validate(cluster)


@router.get("/{kubernetes_id}", response_model=KubernetesClusterResponse, summary="Get a registered cluster")
async def get_kubernetes_cluster(
    kubernetes_id: str,
    registrar: ClusterRegistrar = Depends(get_registrar),
) -> KubernetesClusterResponse:
    return KubernetesClusterResponse.model_validate(await registrar.get(kubernetes_id))


@router.delete(
    "/{kubernetes_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unregister a cluster",
)
async def unregister_kubernetes_cluster(
    kubernetes_id: str,
    force: bool = Query(False, description="Skip the database cluster check"),
    ignore_kubernetes_unavailable: bool = Query(False, alias="ignoreKubernetesUnavailable"),
    registrar: ClusterRegistrar = Depends(get_registrar),
) -> Response:
    await registrar.unregister(kubernetes_id, force=force, ignore_unavailable=ignore_kubernetes_unavailable)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{kubernetes_id}/credential-resources/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Mirror a credential resource into the cluster",
    dependencies=[Depends(require_cluster_password)],
)
async def apply_credential_resource(
    kubernetes_id: str,
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.apply_to_cluster(resource_id, kubernetes_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/{kubernetes_id}/credential-resources/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove the mirror of a credential resource from the cluster",
    dependencies=[Depends(require_cluster_password)],
)
async def remove_credential_resource(
    kubernetes_id: str,
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.remove_from_cluster(resource_id, kubernetes_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
