"""
Reverse proxy from the external resource surface onto a cluster's custom
resource API.

``/v1/kubernetes/<id>/database-cluster-restores/my-name`` with registration
namespace ``ns1`` is forwarded to
``/apis/everest.percona.com/v1alpha1/namespaces/ns1/databaseclusterrestores/my-name``.
The upstream response (status, headers, body) is streamed back as is; only
transport failures are translated into errors.
"""

from __future__ import annotations

import httpx
import structlog
from fastapi import Request
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from clusterdeck.config import Settings
from clusterdeck.core.errors import ClusterUnavailableError, UpstreamError
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.metadata_store import KubernetesClusterStore

logger = structlog.get_logger(__name__)

CLUSTER_NAME_HEADER = "X-Clusterdeck-Kubernetes-Name"
PASSWORD_HEADER = "X-Cluster-Password"

DEFAULT_KUBERNETES_PREFIX = "/v1/kubernetes"
DEFAULT_REMOTE_API_ROOT = "/apis/everest.percona.com/v1alpha1"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
# never forwarded: the cluster credentials replace them
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization", "cookie", "content-length", PASSWORD_HEADER.lower()}


def translate_path(
    uri: str,
    registration_id: str,
    resource_name: str,
    namespace: str,
    *,
    kubernetes_prefix: str = DEFAULT_KUBERNETES_PREFIX,
    remote_api_root: str = DEFAULT_REMOTE_API_ROOT,
) -> str:
    path = uri.removeprefix(f"{kubernetes_prefix}/{registration_id}")
    if resource_name:
        path = path.removesuffix(resource_name)
    path = path.replace("-", "")
    return f"{remote_api_root}/namespaces/{namespace}{path}{resource_name}"


class ProxyTranslator:
    def __init__(self, clusters: KubernetesClusterStore, factory: ClusterClientFactory, settings: Settings) -> None:
        self._clusters = clusters
        self._factory = factory
        self._settings = settings

    async def forward(self, request: Request, kubernetes_id: str, resource_name: str = "") -> StreamingResponse:
        cluster = await self._clusters.get(kubernetes_id)
        path = translate_path(
            request.url.path,
            kubernetes_id,
            resource_name,
            cluster.namespace,
            kubernetes_prefix=self._settings.kubernetes_prefix,
            remote_api_root=self._settings.remote_api_root,
        )
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _DROPPED_REQUEST_HEADERS}
        headers[CLUSTER_NAME_HEADER] = cluster.name
        body = await request.body()

        http = await self._factory.open_transport(cluster)
        upstream_request = http.build_request(
            request.method,
            path,
            params=str(request.query_params) or None,
            content=body or None,
            headers=headers,
        )
        try:
            upstream = await http.send(upstream_request, stream=True)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            await http.aclose()
            logger.warning("proxy.cluster_unavailable", cluster=cluster.name, path=path, error=str(exc))
            raise ClusterUnavailableError(cluster.name, reason=exc.__class__.__name__) from exc
        except httpx.TransportError as exc:
            await http.aclose()
            logger.warning("proxy.upstream_failed", cluster=cluster.name, path=path, error=str(exc))
            raise UpstreamError(
                f"Proxying the request to cluster '{cluster.name}' failed",
                details={"cluster": cluster.name},
            ) from exc
        except BaseException:
            await http.aclose()
            raise

        async def close() -> None:
            await upstream.aclose()
            await http.aclose()

        logger.debug("proxy.forwarded", cluster=cluster.name, method=request.method, path=path, status=upstream.status_code)
        response_headers = {k: v for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=response_headers,
            background=BackgroundTask(close),
        )
