from __future__ import annotations

import base64
from unittest import mock

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from clusterdeck.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    MalformedConnectionProfileError,
    NotFoundError,
    UpstreamError,
)
from clusterdeck.services.kube.client_factory import ClusterClient, decode_profile
from tests.fakes import KUBECONFIG, encoded_kubeconfig


def test_decode_profile_accepts_base64_kubeconfig():
    assert decode_profile(encoded_kubeconfig()) == KUBECONFIG


@pytest.mark.parametrize(
    "encoded",
    [
        "%%% not base64 %%%",
        base64.b64encode(b"\xff\xfe\xfd").decode(),
        base64.b64encode(b"clusters: [unterminated").decode(),
        base64.b64encode(b"- just\n- a\n- list\n").decode(),
        base64.b64encode(b"apiVersion: v1\nkind: Config\n").decode(),
    ],
)
def test_decode_profile_rejects_malformed_input(encoded):
    with pytest.raises(MalformedConnectionProfileError):
        decode_profile(encoded)


@pytest.fixture
def kube() -> ClusterClient:
    return ClusterClient(
        "prod",
        "percona-everest",
        mock.MagicMock(),
        group="everest.percona.com",
        version="v1alpha1",
        timeout=1.0,
    )


def _raises(exc: Exception):
    def fn():
        raise exc

    return fn


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ApiException(status=404), NotFoundError),
        (ApiException(status=409), ConflictError),
        (ApiException(status=500), UpstreamError),
        (ApiException(status=403), UpstreamError),
        (urllib3.exceptions.MaxRetryError(None, "/api", reason="refused"), ClusterUnavailableError),
        (ConnectionRefusedError("refused"), ClusterUnavailableError),
        (urllib3.exceptions.ProtocolError("reset"), UpstreamError),
    ],
)
async def test_call_maps_client_errors(kube, exc, expected):
    with pytest.raises(expected):
        await kube._call("read_namespace", _raises(exc))


async def test_unavailable_error_names_the_cluster(kube):
    with pytest.raises(ClusterUnavailableError) as exc_info:
        await kube._call("read_namespace", _raises(urllib3.exceptions.MaxRetryError(None, "/api", reason="refused")))
    assert exc_info.value.message == "prod kubernetes cluster is unavailable"
    assert exc_info.value.status_code == 503


async def test_get_object_returns_none_when_missing(kube):
    kube._custom = mock.MagicMock()
    kube._custom.get_namespaced_custom_object.side_effect = ApiException(status=404)

    assert await kube.get_object("backupstorages", "missing") is None


async def test_apply_object_creates_when_absent(kube):
    kube._custom = mock.MagicMock()
    kube._custom.get_namespaced_custom_object.side_effect = ApiException(status=404)
    kube._custom.create_namespaced_custom_object.return_value = {"metadata": {"name": "s1"}}

    body = {"metadata": {"name": "s1"}, "spec": {}}
    await kube.apply_object("backupstorages", body)

    kube._custom.create_namespaced_custom_object.assert_called_once()
    kube._custom.replace_namespaced_custom_object.assert_not_called()


async def test_apply_object_replaces_with_live_resource_version(kube):
    kube._custom = mock.MagicMock()
    kube._custom.get_namespaced_custom_object.return_value = {"metadata": {"name": "s1", "resourceVersion": "42"}}

    await kube.apply_object("backupstorages", {"metadata": {"name": "s1"}, "spec": {"bucket": "b"}})

    args = kube._custom.replace_namespaced_custom_object.call_args.args
    assert args[5]["metadata"]["resourceVersion"] == "42"
    assert args[5]["spec"] == {"bucket": "b"}


async def test_apply_secret_falls_back_to_create(kube):
    kube._core = mock.MagicMock()
    kube._core.replace_namespaced_secret.side_effect = ApiException(status=404)

    await kube.apply_secret("s1-secret", {"AWS_ACCESS_KEY_ID": "a"})

    kube._core.create_namespaced_secret.assert_called_once()
    body = kube._core.create_namespaced_secret.call_args.args[1]
    assert body["stringData"] == {"AWS_ACCESS_KEY_ID": "a"}
    assert body["type"] == "Opaque"


async def test_delete_secret_reports_missing(kube):
    kube._core = mock.MagicMock()
    kube._core.delete_namespaced_secret.side_effect = ApiException(status=404)

    assert await kube.delete_secret("gone") is False
