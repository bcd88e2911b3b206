from __future__ import annotations

import hmac
import time
from typing import Awaitable, Callable

import structlog
from cachetools import TTLCache
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from clusterdeck.core.locks import ReadWriteLock

logger = structlog.get_logger(__name__)

PBKDF2_ITERATIONS = 4096
HASH_LENGTH = 32
DEFAULT_TTL_SECONDS = 3.0
_HASH_KEY = "hash"


def derive_password_hash(password: str, salt: bytes) -> bytes:
    """PBKDF2-HMAC-SHA256 of ``password``, the format stored in the cluster secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=HASH_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


class PasswordValidator:
    """Checks passwords against a hash fetched from a remote cluster.

    The fetched hash is kept for ``ttl`` seconds. Fresh reads share a read
    lock; once the entry has expired a single writer refetches while other
    callers wait, and callers that queued behind it reuse its result.
    """

    def __init__(
        self,
        fetch_hash: Callable[[], Awaitable[bytes]],
        salt: bytes,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_hash = fetch_hash
        self._salt = salt
        self._lock = ReadWriteLock()
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl, timer=clock)

    async def valid(self, password: str) -> bool:
        if not password:
            return False
        stored = await self._stored_hash()
        return hmac.compare_digest(derive_password_hash(password, self._salt), stored)

    async def _stored_hash(self) -> bytes:
        async with self._lock.read():
            stored = self._cache.get(_HASH_KEY)
            if stored is not None:
                logger.debug("password.cached_hash")
                return stored

        async with self._lock.write():
            stored = self._cache.get(_HASH_KEY)
            if stored is not None:
                return stored
            logger.debug("password.fetch_hash")
            stored = await self._fetch_hash()
            self._cache[_HASH_KEY] = stored
            return stored
