"""
PostgreSQL DAL for provider configuration — backend settings, access grants,
the shared key pool, AI profiles and token usage.

The sync functions each borrow one pooled connection. ``ProviderStore``
wraps them for async callers via ``run_in_executor`` so a slow query never
blocks the event loop. Read errors propagate: the selector decides what a
failed lookup means. Usage-metric bumps only log failures and are meant to
be scheduled with ``spawn_background``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from psycopg2.extras import RealDictCursor

from aiprovider.db.connection import get_connection
from aiprovider.models import (
    AIProfile,
    BackendSetting,
    ManagedBy,
    SharedBackendConfig,
    UsageRecord,
)

logger = logging.getLogger(__name__)

_SETTING_COLUMNS = """
    id, owner_id, project_id, location, service_account_json, managed_by,
    enabled, activated_at, expires_at, usage_scope, usage_count, last_used_at
"""

# Strong references for fire-and-forget tasks; asyncio only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


# ─── Backend settings ────────────────────────────────────────────────


def get_self_managed_setting(owner_id: str) -> BackendSetting | None:
    """The enabled, self-managed backend setting owned by ``owner_id``."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            f"""
            SELECT {_SETTING_COLUMNS}
            FROM ai_backend_settings
            WHERE owner_id = %s AND managed_by = %s AND enabled = TRUE
            ORDER BY activated_at DESC
            LIMIT 1
            """,
            (owner_id, ManagedBy.SELF.value),
        )
        row = cur.fetchone()
    return BackendSetting.from_row(row) if row else None


def list_backend_settings(owner_id: str) -> list[BackendSetting]:
    """All enabled settings owned by ``owner_id``, admin-managed first."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            f"""
            SELECT {_SETTING_COLUMNS}
            FROM ai_backend_settings
            WHERE owner_id = %s AND enabled = TRUE
            ORDER BY managed_by ASC, activated_at DESC
            """,
            (owner_id,),
        )
        rows = cur.fetchall()
    return [BackendSetting.from_row(r) for r in rows]


def get_client_access(settings_id: str, client_id: str) -> bool | None:
    """Explicit grant for ``client_id`` on a setting, or None if no record."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT has_access FROM ai_backend_client_access
            WHERE settings_id = %s AND client_id = %s
            """,
            (settings_id, client_id),
        )
        row = cur.fetchone()
    return bool(row["has_access"]) if row else None


def bump_usage_metrics(settings_id: str) -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE ai_backend_settings
            SET usage_count = usage_count + 1, last_used_at = NOW()
            WHERE id = %s
            """,
            (settings_id,),
        )


# ─── Shared backend & key pool ───────────────────────────────────────


def get_shared_backend_config() -> SharedBackendConfig | None:
    """The single enabled platform-wide Vertex AI configuration, if any."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT id, project_id, location, service_account_json, enabled
            FROM shared_backend_config
            WHERE enabled = TRUE
            ORDER BY updated_at DESC
            LIMIT 1
            """
        )
        row = cur.fetchone()
    return SharedBackendConfig.from_row(row) if row else None


def get_shared_backend_access(consultant_id: str) -> bool | None:
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            "SELECT has_access FROM shared_backend_access WHERE consultant_id = %s",
            (consultant_id,),
        )
        row = cur.fetchone()
    return bool(row["has_access"]) if row else None


def get_key_pool_row() -> dict[str, Any] | None:
    """Latest shared key pool row: ``{"enabled", "api_keys_encrypted"}``."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT enabled, api_keys_encrypted
            FROM shared_key_pool
            ORDER BY updated_at DESC
            LIMIT 1
            """
        )
        row = cur.fetchone()
    return dict(row) if row else None


# ─── Profiles ────────────────────────────────────────────────────────


def get_profile(user_id: str) -> AIProfile | None:
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT user_id, preferred_provider, use_shared_keys, use_shared_backend,
                   api_keys, api_key_index
            FROM ai_profiles
            WHERE user_id = %s
            """,
            (user_id,),
        )
        row = cur.fetchone()
    return AIProfile.from_row(row) if row else None


# ─── Token usage ─────────────────────────────────────────────────────


def insert_token_usage(record: UsageRecord) -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO ai_token_usage (
                consultant_id, client_id, model, feature, request_type, key_source,
                input_tokens, output_tokens, cached_tokens, thinking_tokens,
                total_tokens, duration_ms, has_tools, has_file_search, error,
                caller_role, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.consultant_id,
                record.client_id,
                record.model,
                record.feature,
                record.request_type,
                record.key_source,
                record.input_tokens,
                record.output_tokens,
                record.cached_tokens,
                record.thinking_tokens,
                record.total_tokens,
                record.duration_ms,
                record.has_tools,
                record.has_file_search,
                record.error,
                record.caller_role,
                record.created_at,
            ),
        )


def count_token_usage(consultant_id: str) -> dict[str, int]:
    """Totals for one consultant, for operator inspection."""
    with get_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT COUNT(*) AS calls,
                   COALESCE(SUM(total_tokens), 0) AS total_tokens,
                   COALESCE(SUM(CASE WHEN error THEN 1 ELSE 0 END), 0) AS errors
            FROM ai_token_usage
            WHERE consultant_id = %s
            """,
            (consultant_id,),
        )
        row = cur.fetchone()
    if not row:
        return {"calls": 0, "total_tokens": 0, "errors": 0}
    return {k: int(v) for k, v in row.items()}


# ─── Async facade ────────────────────────────────────────────────────


class ProviderStore:
    """Async view of the DAL, handed to the selector and caches.

    Every method runs the matching sync function on the default executor.
    """

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    async def get_profile(self, user_id: str) -> AIProfile | None:
        return await self._run(get_profile, user_id)

    async def get_self_managed_setting(self, owner_id: str) -> BackendSetting | None:
        return await self._run(get_self_managed_setting, owner_id)

    async def list_backend_settings(self, owner_id: str) -> list[BackendSetting]:
        return await self._run(list_backend_settings, owner_id)

    async def get_client_access(self, settings_id: str, client_id: str) -> bool | None:
        return await self._run(get_client_access, settings_id, client_id)

    async def get_shared_backend_config(self) -> SharedBackendConfig | None:
        return await self._run(get_shared_backend_config)

    async def get_shared_backend_access(self, consultant_id: str) -> bool | None:
        return await self._run(get_shared_backend_access, consultant_id)

    async def get_key_pool_row(self) -> dict[str, Any] | None:
        return await self._run(get_key_pool_row)

    async def insert_token_usage(self, record: UsageRecord) -> None:
        await self._run(insert_token_usage, record)

    async def bump_usage_metrics(self, settings_id: str) -> None:
        """Non-blocking wrapper around bump_usage_metrics."""
        try:
            await self._run(bump_usage_metrics, settings_id)
        except Exception as e:
            logger.warning("Failed to update usage metrics for setting %s: %s", settings_id, e)


def spawn_background(coro) -> asyncio.Task:
    """Run ``coro`` as a detached task, keeping a reference until it finishes."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
