"""Bucket reachability check run before a backup storage is persisted."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from clusterdeck.core.errors import ValidationError

logger = structlog.get_logger(__name__)


def _s3_client(
    *,
    endpoint: Optional[str],
    region: Optional[str],
    access_key: str,
    secret_key: str,
) -> Any:
    session = boto3.session.Session()
    client_args: dict[str, Optional[str]] = {"endpoint_url": endpoint, "region_name": region}
    return session.client(
        "s3",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        **{k: v for k, v in client_args.items() if v},
    )


class S3AccessChecker:
    """Issues HeadBucket with the supplied credentials; any failure is a validation error."""

    def __init__(self, *, client_factory: Callable[..., Any] = _s3_client) -> None:
        self._client_factory = client_factory

    async def check(
        self,
        *,
        bucket: str,
        endpoint: Optional[str],
        region: Optional[str],
        access_key: str,
        secret_key: str,
    ) -> None:
        try:
            client = self._client_factory(
                endpoint=endpoint, region=region, access_key=access_key, secret_key=secret_key
            )
            await asyncio.to_thread(client.head_bucket, Bucket=bucket)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            logger.warning("storage_access.denied", bucket=bucket, endpoint=endpoint, code=code)
            raise ValidationError(
                f"Could not access bucket '{bucket}' with the provided credentials",
                details={"code": code},
            ) from exc
        except BotoCoreError as exc:
            logger.warning("storage_access.failed", bucket=bucket, endpoint=endpoint, error=type(exc).__name__)
            raise ValidationError(f"Could not reach bucket '{bucket}'") from exc
        logger.debug("storage_access.ok", bucket=bucket, endpoint=endpoint)
