"""
Periodic telemetry report.

Counts database clusters per engine type across registered clusters and posts
a generic report. Runs on its own timer next to the request path; failures
are logged and the loop keeps going until the stop event is set.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import structlog

from clusterdeck.config import Settings
from clusterdeck.core.errors import AppException
from clusterdeck.services.kube.client_factory import ClusterClientFactory
from clusterdeck.services.kube.usage import DATABASE_CLUSTERS
from clusterdeck.services.metadata_store import KubernetesClusterStore

logger = structlog.get_logger(__name__)


async def collect_metrics(clusters: KubernetesClusterStore, factory: ClusterClientFactory) -> list[dict[str, str]]:
    counts: Counter[str] = Counter()
    for cluster in await clusters.list():
        try:
            async with factory.connect(cluster) as kube:
                items = await kube.list_objects(DATABASE_CLUSTERS)
        except AppException as exc:
            logger.warning("telemetry.cluster_skipped", cluster=cluster.name, error=exc.message)
            continue
        for item in items:
            engine = ((item.get("spec") or {}).get("engine") or {}).get("type") or "unknown"
            counts[engine] += 1
    return [{"key": key, "value": str(value)} for key, value in sorted(counts.items())]


def build_report(metrics: list[dict[str, str]], settings: Settings) -> dict[str, Any]:
    return {
        "reports": [
            {
                "id": str(uuid.uuid4()),
                "createTime": datetime.now(timezone.utc).isoformat(),
                "instanceId": settings.instance_id,
                "productFamily": settings.telemetry_product_family,
                "metrics": metrics,
            }
        ]
    }


async def send_report(http: httpx.AsyncClient, base_url: str, report: dict[str, Any]) -> None:
    resp = await http.post(
        f"{base_url.rstrip('/')}/v1/telemetry/GenericReport",
        json=report,
        headers={"Accept": "application/json"},
    )
    if resp.status_code != 200:
        logger.info("telemetry.unexpected_status", status=resp.status_code)


async def telemetry_worker(
    stop_event: asyncio.Event,
    *,
    settings: Settings,
    clusters: KubernetesClusterStore,
    factory: ClusterClientFactory,
    http_factory: Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(timeout=10),
) -> None:
    """Background loop: wait the initial delay, then report every interval."""
    if not settings.telemetry_url:
        logger.info("telemetry.disabled")
        return

    delay = max(0, settings.telemetry_initial_delay_seconds)
    interval = max(1, settings.telemetry_interval_seconds)
    logger.info("telemetry.started", initial_delay=delay, interval=interval)

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            break
        except asyncio.TimeoutError:
            pass
        delay = interval

        try:
            metrics = await collect_metrics(clusters, factory)
            async with http_factory() as http:
                await send_report(http, settings.telemetry_url, build_report(metrics, settings))
            logger.info("telemetry.reported", metrics=len(metrics))
        except Exception as e:
            logger.exception("telemetry.failed", error=str(e))

    logger.info("telemetry.stopped")
