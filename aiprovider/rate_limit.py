"""
Concurrency limit and retry wrapper for outbound vendor calls.

Transient failures (5xx from the SDK, timeouts) are retried with exponential
backoff. Anything else passes straight through.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from google.genai import errors as genai_errors

from aiprovider.config import get_config
from aiprovider.errors import TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError | TimeoutError):
        return True
    if isinstance(exc, genai_errors.ServerError):
        return True
    if isinstance(exc, genai_errors.APIError):
        return getattr(exc, "code", None) in TRANSIENT_STATUS_CODES
    return False


class RateLimiter:
    def __init__(
        self,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ):
        cfg = get_config().provider
        self.max_concurrent = max_concurrent or cfg.max_concurrent_calls
        self.max_retries = cfg.max_retries if max_retries is None else max_retries
        self.base_delay = cfg.retry_base_delay if base_delay is None else base_delay
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the limiter can be built outside a running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    async def call(self, fn: Callable[[], Awaitable[T]], context: str = "") -> T:
        """Await ``fn()`` under the concurrency limit, retrying transient errors."""
        attempt = 0
        while True:
            try:
                async with self.semaphore:
                    return await fn()
            except Exception as e:
                if not is_transient(e):
                    raise
                if attempt >= self.max_retries:
                    logger.warning(
                        "%s: giving up after %d retries: %s", context or "vendor call", attempt, e
                    )
                    raise TransientBackendError(
                        f"{context or 'Vendor call'} failed after {attempt} retries: {e}"
                    ) from e
                delay = self.base_delay * (2**attempt)
                attempt += 1
                logger.info(
                    "%s: transient error (%s), retry %d/%d in %.1fs",
                    context or "vendor call",
                    e,
                    attempt,
                    self.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)


_default_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter
