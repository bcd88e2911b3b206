from __future__ import annotations

import httpx
import pytest

from clusterdeck.services.proxy import CLUSTER_NAME_HEADER, PASSWORD_HEADER, translate_path

API_ROOT = "/apis/everest.percona.com/v1alpha1"


@pytest.mark.parametrize(
    ("uri", "name", "expected"),
    [
        (
            "/v1/kubernetes/abc/database-cluster-restores/my-name",
            "my-name",
            f"{API_ROOT}/namespaces/ns1/databaseclusterrestores/my-name",
        ),
        (
            "/v1/kubernetes/abc/database-clusters",
            "",
            f"{API_ROOT}/namespaces/ns1/databaseclusters",
        ),
        (
            "/v1/kubernetes/abc/database-engines/percona-xtradb-cluster-operator",
            "percona-xtradb-cluster-operator",
            f"{API_ROOT}/namespaces/ns1/databaseengines/percona-xtradb-cluster-operator",
        ),
    ],
)
def test_translate_path(uri, name, expected):
    assert translate_path(uri, "abc", name, "ns1") == expected


def test_translate_path_honours_prefixes():
    path = translate_path(
        "/api/kubernetes/abc/database-clusters",
        "abc",
        "",
        "dbaas",
        kubernetes_prefix="/api/kubernetes",
        remote_api_root="/apis/example.com/v2",
    )
    assert path == "/apis/example.com/v2/namespaces/dbaas/databaseclusters"


def test_get_is_forwarded_to_remote_path(api_client, registered, factory):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": []}, headers={"X-Remote": "yes"})

    factory.state("prod").http_handler = handler

    resp = api_client.get(
        f"/v1/kubernetes/{registered}/database-clusters",
        params={"limit": "5"},
        headers={PASSWORD_HEADER: "whatever"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"items": []}
    assert resp.headers["X-Remote"] == "yes"
    (request,) = seen
    assert request.url.path == f"{API_ROOT}/namespaces/percona-everest/databaseclusters"
    assert request.url.params["limit"] == "5"
    assert request.headers[CLUSTER_NAME_HEADER] == "prod"
    assert PASSWORD_HEADER.lower() not in {k.lower() for k in request.headers}


def test_body_and_method_are_forwarded(api_client, registered, factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, content=request.method.encode() + b" " + request.content)

    factory.state("prod").http_handler = handler

    resp = api_client.put(
        f"/v1/kubernetes/{registered}/database-clusters/db-1",
        content=b'{"spec": {}}',
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 201
    assert resp.content == b'PUT {"spec": {}}'


def test_upstream_errors_pass_through_unchanged(api_client, registered, factory):
    factory.state("prod").http_handler = lambda request: httpx.Response(
        500, json={"kind": "Status", "message": "admission webhook denied"}
    )

    resp = api_client.get(f"/v1/kubernetes/{registered}/database-clusters/db-1")

    assert resp.status_code == 500
    assert resp.json() == {"kind": "Status", "message": "admission webhook denied"}


def test_connect_failure_is_cluster_unavailable(api_client, registered, factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    factory.state("prod").http_handler = handler

    resp = api_client.get(f"/v1/kubernetes/{registered}/database-clusters")

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "CLUSTER_UNAVAILABLE"
    assert body["error"]["message"] == "prod kubernetes cluster is unavailable"


def test_other_transport_failure_is_upstream_error(api_client, registered, factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadError("connection reset", request=request)

    factory.state("prod").http_handler = handler

    resp = api_client.get(f"/v1/kubernetes/{registered}/database-cluster-backups")

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "UPSTREAM_ERROR"


def test_unknown_kind_is_rejected(api_client, registered):
    resp = api_client.get(f"/v1/kubernetes/{registered}/pods")
    assert resp.status_code == 422


def test_unknown_cluster_is_not_found(api_client):
    resp = api_client.get("/v1/kubernetes/missing/database-clusters")
    assert resp.status_code == 404
