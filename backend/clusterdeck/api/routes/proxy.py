from __future__ import annotations

import enum

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from clusterdeck.dependencies import get_proxy, require_cluster_password
from clusterdeck.services.proxy import ProxyTranslator

router = APIRouter(prefix="/kubernetes", tags=["proxy"], dependencies=[Depends(require_cluster_password)])


class ProxiedKind(str, enum.Enum):
    database_clusters = "database-clusters"
    database_cluster_backups = "database-cluster-backups"
    database_cluster_restores = "database-cluster-restores"
    database_engines = "database-engines"


@router.api_route("/{kubernetes_id}/{kind}", methods=["GET", "POST"], summary="Proxy a resource collection")
async def proxy_collection(
    kubernetes_id: str,
    kind: ProxiedKind,
    request: Request,
    proxy: ProxyTranslator = Depends(get_proxy),
) -> StreamingResponse:
    return await proxy.forward(request, kubernetes_id)


@router.api_route(
    "/{kubernetes_id}/{kind}/{name}",
    methods=["GET", "PUT", "PATCH", "DELETE"],
    summary="Proxy a named resource",
)
async def proxy_resource(
    kubernetes_id: str,
    kind: ProxiedKind,
    name: str,
    request: Request,
    proxy: ProxyTranslator = Depends(get_proxy),
) -> StreamingResponse:
    return await proxy.forward(request, kubernetes_id, name)
