"""
Per-request clients for registered remote clusters.

Nothing here outlives the call that asked for it: each ``connect`` reads the
connection profile from the vault again and builds a fresh ``ApiClient`` (or
``httpx.AsyncClient`` for the proxy), so a rotated profile is picked up by the
next request without any invalidation.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import ssl
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

import httpx
import structlog
import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from clusterdeck.config import Settings
from clusterdeck.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    MalformedConnectionProfileError,
    NotFoundError,
    UpstreamError,
)
from clusterdeck.core.vault import SecretVault
from clusterdeck.models.kubernetes_cluster import KubernetesCluster

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UNAVAILABLE_ERRORS = (
    urllib3.exceptions.MaxRetryError,
    urllib3.exceptions.NewConnectionError,
    urllib3.exceptions.TimeoutError,
    ConnectionError,
    TimeoutError,
)


def decode_profile(encoded: str) -> dict[str, Any]:
    """base64 kubeconfig -> dict, or MalformedConnectionProfileError."""
    try:
        raw = base64.b64decode(encoded.strip(), validate=True)
        data = yaml.safe_load(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedConnectionProfileError("Connection profile is not valid base64") from exc
    except yaml.YAMLError as exc:
        raise MalformedConnectionProfileError("Connection profile is not a valid kubeconfig document") from exc
    if not isinstance(data, dict) or not data.get("clusters"):
        raise MalformedConnectionProfileError("Connection profile does not describe any cluster")
    return data


class ClusterClient:
    """Thin async facade over the kubernetes client for one namespace of one cluster."""

    def __init__(
        self,
        cluster_name: str,
        namespace: str,
        api_client: client.ApiClient,
        *,
        group: str,
        version: str,
        timeout: float,
    ) -> None:
        self.cluster_name = cluster_name
        self.namespace = namespace
        self._api_client = api_client
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)
        self._group = group
        self._version = version
        self._timeout = timeout

    async def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"{op}: not found in cluster '{self.cluster_name}'") from exc
            if exc.status == 409:
                raise ConflictError(f"{op}: conflict in cluster '{self.cluster_name}'") from exc
            logger.warning("kubernetes.api_error", cluster=self.cluster_name, op=op, status=exc.status)
            raise UpstreamError(
                f"Kubernetes API call '{op}' failed on cluster '{self.cluster_name}'",
                details={"cluster": self.cluster_name, "status": exc.status},
            ) from exc
        except _UNAVAILABLE_ERRORS as exc:
            logger.warning("kubernetes.unavailable", cluster=self.cluster_name, op=op, error=str(exc))
            raise ClusterUnavailableError(self.cluster_name, reason=exc.__class__.__name__) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise UpstreamError(
                f"Kubernetes API call '{op}' failed on cluster '{self.cluster_name}'",
                details={"cluster": self.cluster_name},
            ) from exc

    async def list_objects(self, plural: str) -> list[dict[str, Any]]:
        def _do() -> list[dict[str, Any]]:
            data = self._custom.list_namespaced_custom_object(
                self._group, self._version, self.namespace, plural, _request_timeout=self._timeout
            )
            return list((data or {}).get("items") or [])

        return await self._call(f"list {plural}", _do)

    async def get_object(self, plural: str, name: str) -> Optional[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            return self._custom.get_namespaced_custom_object(
                self._group, self._version, self.namespace, plural, name, _request_timeout=self._timeout
            )

        try:
            return await self._call(f"get {plural}/{name}", _do)
        except NotFoundError:
            return None

    async def apply_object(self, plural: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create the object, or replace it keeping the live resourceVersion."""
        name = body["metadata"]["name"]
        existing = await self.get_object(plural, name)
        if existing is None:
            def _create() -> dict[str, Any]:
                return self._custom.create_namespaced_custom_object(
                    self._group, self._version, self.namespace, plural, body, _request_timeout=self._timeout
                )

            return await self._call(f"create {plural}/{name}", _create)

        merged = {**body, "metadata": {**body["metadata"], "resourceVersion": existing["metadata"].get("resourceVersion")}}

        def _replace() -> dict[str, Any]:
            return self._custom.replace_namespaced_custom_object(
                self._group, self._version, self.namespace, plural, name, merged, _request_timeout=self._timeout
            )

        return await self._call(f"replace {plural}/{name}", _replace)

    async def delete_object(self, plural: str, name: str) -> bool:
        def _do() -> None:
            self._custom.delete_namespaced_custom_object(
                self._group, self._version, self.namespace, plural, name, _request_timeout=self._timeout
            )

        try:
            await self._call(f"delete {plural}/{name}", _do)
        except NotFoundError:
            return False
        return True

    async def read_secret(self, name: str) -> Optional[dict[str, bytes]]:
        def _do() -> dict[str, bytes]:
            secret = self._core.read_namespaced_secret(name, self.namespace, _request_timeout=self._timeout)
            return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

        try:
            return await self._call(f"read secret/{name}", _do)
        except NotFoundError:
            return None

    async def apply_secret(self, name: str, string_data: dict[str, str]) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": self.namespace},
            "type": "Opaque",
            "stringData": string_data,
        }

        def _do() -> None:
            try:
                self._core.replace_namespaced_secret(name, self.namespace, body, _request_timeout=self._timeout)
            except ApiException as exc:
                if exc.status != 404:
                    raise
                self._core.create_namespaced_secret(self.namespace, body, _request_timeout=self._timeout)

        await self._call(f"apply secret/{name}", _do)

    async def delete_secret(self, name: str) -> bool:
        def _do() -> None:
            self._core.delete_namespaced_secret(name, self.namespace, _request_timeout=self._timeout)

        try:
            await self._call(f"delete secret/{name}", _do)
        except NotFoundError:
            return False
        return True

    async def namespace_uid(self) -> str:
        def _do() -> str:
            ns = self._core.read_namespace(self.namespace, _request_timeout=self._timeout)
            return str(ns.metadata.uid)

        return await self._call(f"read namespace/{self.namespace}", _do)

    def close(self) -> None:
        self._api_client.close()


class ClusterClientFactory:
    def __init__(self, vault: SecretVault, settings: Settings) -> None:
        self._vault = vault
        self._settings = settings

    async def load_profile(self, cluster: KubernetesCluster) -> dict[str, Any]:
        encoded = await self._vault.get(cluster.connection_secret_ref)
        return decode_profile(encoded)

    @asynccontextmanager
    async def connect(self, cluster: KubernetesCluster) -> AsyncIterator[ClusterClient]:
        profile = await self.load_profile(cluster)
        async with self.connect_profile(profile, name=cluster.name, namespace=cluster.namespace) as kube:
            yield kube

    @asynccontextmanager
    async def connect_profile(
        self, profile: dict[str, Any], *, name: str, namespace: str
    ) -> AsyncIterator[ClusterClient]:
        try:
            api_client = config.new_client_from_config_dict(profile, persist_config=False)
        except (ConfigException, KeyError, TypeError, ValueError) as exc:
            raise MalformedConnectionProfileError(f"Could not build a client for cluster '{name}': {exc}") from exc
        kube = ClusterClient(
            name,
            namespace,
            api_client,
            group=self._settings.remote_api_group,
            version=self._settings.remote_api_version,
            timeout=self._settings.kube_request_timeout_seconds,
        )
        try:
            yield kube
        finally:
            await asyncio.to_thread(kube.close)

    async def open_transport(self, cluster: KubernetesCluster) -> httpx.AsyncClient:
        """HTTP client pointed at the cluster API server; the caller closes it."""
        profile = await self.load_profile(cluster)
        cfg = client.Configuration()
        try:
            config.load_kube_config_from_dict(profile, client_configuration=cfg, persist_config=False)
        except (ConfigException, KeyError, TypeError, ValueError) as exc:
            raise MalformedConnectionProfileError(
                f"Could not build a transport for cluster '{cluster.name}': {exc}"
            ) from exc

        try:
            context = ssl.create_default_context(cafile=cfg.ssl_ca_cert or None)
            if cfg.cert_file:
                context.load_cert_chain(cfg.cert_file, cfg.key_file or None)
        except (OSError, ssl.SSLError) as exc:
            raise MalformedConnectionProfileError(
                f"Connection profile for cluster '{cluster.name}' carries unusable TLS material"
            ) from exc
        if not cfg.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        headers: dict[str, str] = {}
        authorization = (cfg.api_key or {}).get("authorization")
        if authorization:
            headers["Authorization"] = authorization
        auth = (cfg.username, cfg.password) if cfg.username and cfg.password else None

        return httpx.AsyncClient(
            base_url=cfg.host,
            verify=context,
            headers=headers,
            auth=auth,
            timeout=self._settings.proxy_timeout_seconds,
        )
