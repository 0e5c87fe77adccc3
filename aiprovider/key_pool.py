"""
Short-TTL cache of the shared API key pool.

The pool row holds an enabled flag and an encrypted JSON list of keys.
A disabled or missing pool is cached too, so an empty pool costs one query
per TTL window rather than one per request.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

from aiprovider.config import get_config
from aiprovider.models import KeyPool
from aiprovider.vault import decrypt_json

logger = logging.getLogger(__name__)


class KeyPoolCache:
    def __init__(
        self,
        store,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        decrypt: Callable[[str], object] = decrypt_json,
    ):
        self._store = store
        self._ttl = ttl_seconds if ttl_seconds is not None else get_config().provider.pool_ttl_seconds
        self._clock = clock
        self._decrypt = decrypt
        self._cached: KeyPool | None = None

    def _fresh(self) -> bool:
        return self._cached is not None and self._clock() - self._cached.fetched_at < self._ttl

    async def get_pool(self) -> KeyPool | None:
        """Enabled, non-empty pool or None. Hits the store at most once per TTL."""
        if not self._fresh():
            self._cached = await self._fetch()
        pool = self._cached
        if not pool.enabled or not pool.keys:
            return None
        return pool

    async def _fetch(self) -> KeyPool:
        now = self._clock()
        row = await self._store.get_key_pool_row()
        if not row or not row.get("enabled"):
            logger.debug("Shared key pool absent or disabled")
            return KeyPool(keys=[], enabled=False, fetched_at=now)

        keys = self._decrypt(row["api_keys_encrypted"])
        if not isinstance(keys, list):
            logger.warning("Shared key pool payload is not a list; treating as empty")
            keys = []
        keys = [k for k in keys if isinstance(k, str) and k]
        logger.info("Loaded shared key pool (%d keys)", len(keys))
        return KeyPool(keys=keys, enabled=True, fetched_at=now)

    async def pick_random_key(self) -> tuple[str, int, int] | None:
        """Uniform-random key from the pool as ``(key, index, pool_size)``."""
        pool = await self.get_pool()
        if pool is None:
            return None
        index = random.randrange(len(pool.keys))
        return pool.keys[index], index, len(pool.keys)

    def clear(self) -> None:
        self._cached = None

    def status(self) -> dict[str, object]:
        if self._cached is None:
            return {"loaded": False, "enabled": False, "keys": 0}
        return {
            "loaded": True,
            "enabled": self._cached.enabled,
            "keys": len(self._cached.keys),
            "age_seconds": round(self._clock() - self._cached.fetched_at, 1),
        }
