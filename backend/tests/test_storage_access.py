from __future__ import annotations

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from botocore.stub import Stubber

from clusterdeck.core.errors import ValidationError
from clusterdeck.services.storage_access import S3AccessChecker, _s3_client

CHECK = {
    "bucket": "bucket",
    "endpoint": None,
    "region": "us-east-1",
    "access_key": "AK-1",
    "secret_key": "SK-1",
}


@pytest.fixture
def s3():
    client = boto3.session.Session().client(
        "s3", region_name="us-east-1", aws_access_key_id="AK-1", aws_secret_access_key="SK-1"
    )
    with Stubber(client) as stubber:
        yield client, stubber


async def test_reachable_bucket_passes(s3):
    client, stubber = s3
    stubber.add_response("head_bucket", {}, {"Bucket": "bucket"})
    seen: list[dict] = []

    def factory(**kwargs):
        seen.append(kwargs)
        return client

    await S3AccessChecker(client_factory=factory).check(**CHECK)

    stubber.assert_no_pending_responses()
    assert seen == [{"endpoint": None, "region": "us-east-1", "access_key": "AK-1", "secret_key": "SK-1"}]


async def test_denied_bucket_is_validation_error(s3):
    client, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="403", http_status_code=403)

    with pytest.raises(ValidationError) as exc_info:
        await S3AccessChecker(client_factory=lambda **_: client).check(**CHECK)

    assert exc_info.value.details == {"code": "403"}
    assert "SK-1" not in exc_info.value.message


async def test_unreachable_endpoint_is_validation_error():
    class Unreachable:
        def head_bucket(self, **_):
            raise EndpointConnectionError(endpoint_url="https://minio.example.com")

    with pytest.raises(ValidationError):
        await S3AccessChecker(client_factory=lambda **_: Unreachable()).check(
            **{**CHECK, "endpoint": "https://minio.example.com"}
        )


def test_client_uses_custom_endpoint_and_region():
    client = _s3_client(endpoint="https://minio.example.com", region="eu-west-1", access_key="AK", secret_key="SK")

    assert client.meta.endpoint_url == "https://minio.example.com"
    assert client.meta.region_name == "eu-west-1"
