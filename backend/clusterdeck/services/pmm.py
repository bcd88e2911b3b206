"""API keys for PMM monitoring instances minted from admin credentials."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import structlog

from clusterdeck.core.errors import ValidationError

logger = structlog.get_logger(__name__)

API_KEY_ROLE = "Admin"


def _json_field(resp: httpx.Response, name: str) -> Any:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get(name) if isinstance(body, dict) else None


class PMMKeyClient:
    def __init__(
        self,
        *,
        timeout: float = 15.0,
        http_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._http_factory = http_factory or (lambda: httpx.AsyncClient(timeout=timeout))

    async def create_api_key(self, url: str, key_name: str, user: str, password: str) -> str:
        """Create an Admin API key on the PMM server at ``url`` and return it."""
        endpoint = f"{url.rstrip('/')}/graph/api/auth/keys"
        async with self._http_factory() as http:
            try:
                resp = await http.post(
                    endpoint,
                    json={"name": key_name, "role": API_KEY_ROLE},
                    auth=(user, password),
                )
            except httpx.HTTPError as exc:
                logger.warning("pmm.api_key_request_failed", url=url, error=type(exc).__name__)
                raise ValidationError("Could not create an API key in PMM") from exc

        if resp.status_code >= 400:
            reason = _json_field(resp, "message")
            logger.warning("pmm.api_key_rejected", url=url, status=resp.status_code, reason=reason)
            raise ValidationError(
                "Could not create an API key in PMM",
                details={"status_code": resp.status_code, "reason": reason},
            )

        key = _json_field(resp, "key")
        if not isinstance(key, str) or not key:
            logger.warning("pmm.api_key_missing", url=url)
            raise ValidationError("PMM did not return an API key")
        logger.info("pmm.api_key_created", url=url, key_name=key_name)
        return key
