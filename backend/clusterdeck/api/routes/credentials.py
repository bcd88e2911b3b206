from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from clusterdeck.core.errors import NotFoundError
from clusterdeck.dependencies import get_coordinator
from clusterdeck.models.credential_resource import CredentialResource
from clusterdeck.schemas.credentials import (
    BackupStorageCreate,
    BackupStorageResponse,
    BackupStorageUpdate,
    MonitoringInstanceCreate,
    MonitoringInstanceResponse,
    MonitoringInstanceUpdate,
)
from clusterdeck.services.coordinator import ResourceCoordinator
from clusterdeck.services.kinds import BACKUP_STORAGE, MONITORING, kind_spec

backup_router = APIRouter(prefix="/backup-storages", tags=["backup-storages"])
monitoring_router = APIRouter(prefix="/monitoring-instances", tags=["monitoring-instances"])


def _backup_storage(resource: CredentialResource) -> BackupStorageResponse:
    return BackupStorageResponse(
        id=resource.id,
        name=resource.name,
        type=resource.kind,
        bucket_name=resource.bucket_name,
        region=resource.region,
        url=resource.endpoint,
        description=resource.description,
        created_at=resource.created_at,
        updated_at=resource.updated_at,
    )


def _monitoring_instance(resource: CredentialResource) -> MonitoringInstanceResponse:
    return MonitoringInstanceResponse(
        id=resource.id,
        name=resource.name,
        type=resource.kind,
        url=resource.endpoint,
        created_at=resource.created_at,
        updated_at=resource.updated_at,
    )


async def _get_in_family(coordinator: ResourceCoordinator, resource_id: str, family: str) -> CredentialResource:
    resource = await coordinator.get(resource_id)
    if kind_spec(resource.kind).family != family:
        raise NotFoundError(f"Resource '{resource_id}' not found")
    return resource


@backup_router.get("", response_model=list[BackupStorageResponse], summary="List backup storages")
async def list_backup_storages(
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> list[BackupStorageResponse]:
    return [_backup_storage(r) for r in await coordinator.list(BACKUP_STORAGE)]


@backup_router.post(
    "", response_model=BackupStorageResponse, status_code=status.HTTP_201_CREATED, summary="Create a backup storage"
)
async def create_backup_storage(
    payload: BackupStorageCreate,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> BackupStorageResponse:
    return _backup_storage(await coordinator.create(payload.to_resource()))


@backup_router.get("/{resource_id}", response_model=BackupStorageResponse, summary="Get a backup storage")
async def get_backup_storage(
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> BackupStorageResponse:
    return _backup_storage(await _get_in_family(coordinator, resource_id, BACKUP_STORAGE))


@backup_router.patch("/{resource_id}", response_model=BackupStorageResponse, summary="Update a backup storage")
async def update_backup_storage(
    resource_id: str,
    payload: BackupStorageUpdate,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> BackupStorageResponse:
    await _get_in_family(coordinator, resource_id, BACKUP_STORAGE)
    return _backup_storage(await coordinator.update(resource_id, payload.to_resource()))


@backup_router.delete("/{resource_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a backup storage")
async def delete_backup_storage(
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> Response:
    await _get_in_family(coordinator, resource_id, BACKUP_STORAGE)
    await coordinator.delete(resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@monitoring_router.get("", response_model=list[MonitoringInstanceResponse], summary="List monitoring instances")
async def list_monitoring_instances(
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> list[MonitoringInstanceResponse]:
    return [_monitoring_instance(r) for r in await coordinator.list(MONITORING)]


@monitoring_router.post(
    "",
    response_model=MonitoringInstanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a monitoring instance",
)
async def create_monitoring_instance(
    payload: MonitoringInstanceCreate,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> MonitoringInstanceResponse:
    return _monitoring_instance(await coordinator.create(payload.to_resource()))


@monitoring_router.get(
    "/{resource_id}", response_model=MonitoringInstanceResponse, summary="Get a monitoring instance"
)
async def get_monitoring_instance(
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> MonitoringInstanceResponse:
    return _monitoring_instance(await _get_in_family(coordinator, resource_id, MONITORING))


@monitoring_router.patch(
    "/{resource_id}", response_model=MonitoringInstanceResponse, summary="Update a monitoring instance"
)
async def update_monitoring_instance(
    resource_id: str,
    payload: MonitoringInstanceUpdate,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> MonitoringInstanceResponse:
    await _get_in_family(coordinator, resource_id, MONITORING)
    return _monitoring_instance(await coordinator.update(resource_id, payload.to_resource()))


@monitoring_router.delete(
    "/{resource_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a monitoring instance"
)
async def delete_monitoring_instance(
    resource_id: str,
    coordinator: ResourceCoordinator = Depends(get_coordinator),
) -> Response:
    await _get_in_family(coordinator, resource_id, MONITORING)
    await coordinator.delete(resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
