"""
Token-usage recording.

``track`` never raises and never blocks the caller: the insert runs as a
detached task and a failure is only logged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiprovider.models import UsageRecord
from aiprovider.store import ProviderStore, spawn_background

logger = logging.getLogger(__name__)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def usage_counts(usage: Any) -> dict[str, int]:
    """Token counts from a vendor usage block (object or dict, either spelling).

    Missing fields count as 0, including a missing total.
    """
    if usage is None:
        return {"input": 0, "output": 0, "cached": 0, "thinking": 0, "total": 0}

    def pick(snake: str, camel: str) -> int:
        if isinstance(usage, dict):
            return _int(usage.get(snake, usage.get(camel)))
        value = getattr(usage, snake, None)
        if value is None:
            value = getattr(usage, camel, None)
        return _int(value)

    return {
        "input": pick("prompt_token_count", "promptTokenCount"),
        "output": pick("candidates_token_count", "candidatesTokenCount"),
        "cached": pick("cached_content_token_count", "cachedContentTokenCount"),
        "thinking": pick("thoughts_token_count", "thoughtsTokenCount"),
        "total": pick("total_token_count", "totalTokenCount"),
    }


class TokenUsageRecorder:
    def __init__(self, store: ProviderStore | None = None):
        self._store = store or ProviderStore()

    async def record(self, record: UsageRecord) -> None:
        """Insert one usage row; failures are logged."""
        try:
            await self._store.insert_token_usage(record)
        except Exception as e:
            logger.warning(
                "Failed to record token usage for %s (%s): %s",
                record.consultant_id,
                record.feature,
                e,
            )

    def track(self, record: UsageRecord) -> asyncio.Task | None:
        """Fire-and-forget ``record``. Returns the task, or None outside a loop."""
        coro = self.record(record)
        try:
            return spawn_background(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; dropping usage record for %s", record.feature)
            return None


_default_recorder: TokenUsageRecorder | None = None


def get_usage_recorder() -> TokenUsageRecorder:
    global _default_recorder
    if _default_recorder is None:
        _default_recorder = TokenUsageRecorder()
    return _default_recorder
