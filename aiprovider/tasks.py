"""
Task-specific entry points built on the provider selector.

- ``quick_generate``: resolve, generate once, clean up, return the text.
- ``get_api_key_for_classifier``: any usable AI Studio key, no identity.
- ``get_studio_key_for_live`` / ``get_vertex_token_for_live``: credentials
  for the Live API, which the SDK clients here do not drive.
- ``get_file_search_client`` / ``get_raw_file_search_client``: AI Studio only.
  File search is unavailable on Vertex, so these skip the tier walk.
- ``tracked_generate_content``: usage tracking around a raw SDK call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import google.auth.transport.requests

from aiprovider.adapters import StudioClientAdapter
from aiprovider.config import get_config
from aiprovider.errors import ExtractionError
from aiprovider.extraction import extract_answer_text, field_of, unwrap
from aiprovider.model_registry import get_model_for_provider, thinking_config
from aiprovider.models import (
    GenerateRequest,
    KeySource,
    ProviderMetadata,
    TrackingContext,
    UsageRecord,
)
from aiprovider.resolver import ProviderSelector, StudioKey, get_selector
from aiprovider.usage import get_usage_recorder, usage_counts

logger = logging.getLogger(__name__)


# ─── One-shot generation ─────────────────────────────────────────────


@dataclass
class QuickResult:
    text: str
    usage_metadata: Any = None
    candidates: list[Any] = field(default_factory=list)


async def quick_generate(
    consultant_id: str,
    contents: list[dict[str, Any]],
    feature: str,
    *,
    model: str | None = None,
    system_instruction: str | None = None,
    generation_config: dict[str, Any] | None = None,
    thinking_level: str | None = None,
    tools: list[Any] | None = None,
    tool_config: dict[str, Any] | None = None,
    selector: ProviderSelector | None = None,
) -> QuickResult:
    """Resolve a provider for the consultant, generate once and return the answer text."""
    selector = selector or get_selector()
    provider = await selector.resolve(consultant_id, consultant_id)
    provider.set_feature(feature)

    config = dict(generation_config or {})
    if thinking_level:
        config["thinking_config"] = thinking_config(thinking_level)

    request = GenerateRequest(
        model=model or get_model_for_provider("studio"),
        contents=contents,
        generation_config=config,
        tools=tools,
        tool_config=tool_config,
        system_instruction=(
            {"role": "user", "parts": [{"text": system_instruction}]} if system_instruction else None
        ),
    )
    try:
        result = await provider.client.generate(request)
    finally:
        await provider.cleanup()

    try:
        text = extract_answer_text(result.raw)
    except ExtractionError as e:
        logger.warning("quick_generate(%s) got no usable text: %s", feature, e)
        text = ""

    return QuickResult(
        text=text,
        usage_metadata=field_of(result.raw, "usage_metadata")
        or field_of(unwrap(result.raw), "usage_metadata"),
        candidates=result.candidates,
    )


# ─── Key helpers ─────────────────────────────────────────────────────


async def get_api_key_for_classifier(selector: ProviderSelector | None = None) -> str | None:
    """A random shared-pool key, else GEMINI_API_KEY, else None."""
    selector = selector or get_selector()
    try:
        picked = await selector.key_pool.pick_random_key()
    except Exception as e:
        logger.warning("Shared key pool unavailable for classifier: %s", e)
        picked = None
    if picked is not None:
        key, index, size = picked
        logger.debug("Classifier using shared key %d/%d", index + 1, size)
        return key

    env_key = get_config().provider.env_api_key
    if env_key:
        return env_key
    logger.warning("No Gemini API key available for classifier")
    return None


async def get_studio_key_for_live(
    consultant_id: str, selector: ProviderSelector | None = None
) -> dict[str, str] | None:
    """``{"api_key", "model_id"}`` for the Live API on AI Studio, or None."""
    selector = selector or get_selector()
    try:
        key = await selector.find_studio_key(consultant_id)
    except Exception as e:
        logger.error("Failed to get AI Studio key for Live API: %s", e)
        return None
    if key is None:
        return None
    logger.info("Live API (AI Studio) for %s using %s key %s", consultant_id, key.key_source, key.position)
    return {"api_key": key.api_key, "model_id": get_config().provider.live_studio_model}


def _mint_access_token(credentials) -> str | None:
    credentials.refresh(google.auth.transport.requests.Request())
    return credentials.token


async def get_vertex_token_for_live(
    client_id: str, consultant_id: str, selector: ProviderSelector | None = None
) -> dict[str, str] | None:
    """Short-lived OAuth2 token from the first usable consultant backend, or None.

    Applies the same validity and usage-scope checks as the tier walk.
    """
    selector = selector or get_selector()
    try:
        settings = await selector.store.list_backend_settings(consultant_id)
    except Exception as e:
        logger.error("Failed to list backends for Live API (%s): %s", consultant_id, e)
        return None

    is_owner = client_id == consultant_id
    loop = asyncio.get_running_loop()
    for setting in settings:
        try:
            if not selector.is_valid(setting):
                continue
            if not await selector.access.can_use(setting, client_id, is_owner):
                continue
            creds = selector.credentials.get_or_parse(
                setting.id, setting.service_account_json, setting.activated_at
            )
            if creds is None:
                continue
            sa_credentials = selector.factory.service_account_credentials(creds)
            token = await loop.run_in_executor(None, _mint_access_token, sa_credentials)
        except Exception as e:
            logger.warning("Live API token from setting %s failed: %s", setting.id, e)
            continue
        if not token:
            logger.warning("Setting %s returned no access token", setting.id)
            continue
        logger.info("Live API (Vertex) token minted from setting %s", setting.id)
        return {
            "access_token": token,
            "project_id": setting.project_id,
            "location": setting.location,
            "model_id": get_config().provider.live_vertex_model,
        }
    return None


# ─── File search ─────────────────────────────────────────────────────


async def _file_search_key(selector: ProviderSelector, user_id: str) -> StudioKey | None:
    env_key = get_config().provider.env_api_key
    if env_key:
        return StudioKey(env_key, KeySource.ENV, "env")
    profile = await selector.store.get_profile(user_id)
    if profile is None:
        logger.error("User %s not found for file search", user_id)
        return None
    return await selector.find_studio_key(user_id, use_env=False)


@dataclass
class FileSearchClient:
    """AI Studio adapter with tracking already attached."""

    client: StudioClientAdapter
    metadata: ProviderMetadata

    def set_feature(self, feature: str, caller_role: str | None = None) -> None:
        ctx = self.client.tracking_context
        if ctx is None:
            return
        ctx.feature = feature
        if caller_role:
            ctx.caller_role = caller_role

    def set_client_id(self, client_id: str) -> None:
        if self.client.tracking_context is not None:
            self.client.tracking_context.client_id = client_id


async def get_file_search_client(
    user_id: str, selector: ProviderSelector | None = None
) -> FileSearchClient | None:
    """AI Studio client for file search: env key, then pool (if opted in), then own keys."""
    selector = selector or get_selector()
    try:
        key = await _file_search_key(selector, user_id)
        if key is None:
            logger.error("No Gemini API key available for file search (%s)", user_id)
            return None
        adapter = selector.factory.studio(key.api_key)
    except Exception as e:
        logger.error("Failed to create file search client for %s: %s", user_id, e)
        return None

    adapter.set_tracking_context(TrackingContext(consultant_id=user_id, key_source=key.key_source))
    return FileSearchClient(client=adapter, metadata=ProviderMetadata(display_name="Google AI Studio"))


async def get_raw_file_search_client(
    user_id: str, selector: ProviderSelector | None = None
) -> dict[str, Any] | None:
    """Raw ``genai.Client`` for file search, with metadata and key source."""
    selector = selector or get_selector()
    try:
        key = await _file_search_key(selector, user_id)
        if key is None:
            logger.error("No Gemini API key available for raw file search client (%s)", user_id)
            return None
        client = selector.factory.studio_client(key.api_key)
    except Exception as e:
        logger.error("Failed to create raw file search client for %s: %s", user_id, e)
        return None
    return {
        "client": client,
        "metadata": ProviderMetadata(display_name="Google AI Studio"),
        "key_source": key.key_source,
    }


# ─── Tracked raw calls ───────────────────────────────────────────────


async def tracked_generate_content(
    client: Any,
    request: dict[str, Any],
    context: TrackingContext,
    *,
    has_file_search: bool = False,
) -> Any:
    """``client.aio.models.generate_content(**request)`` with usage recorded.

    A failed call is recorded with ``error=True`` and zero tokens, then re-raised.
    """
    started = time.monotonic()
    recorder = get_usage_recorder()
    model = request.get("model", "")

    def _record(usage: dict[str, int], error: bool) -> None:
        recorder.track(
            UsageRecord(
                consultant_id=context.consultant_id,
                client_id=context.client_id,
                model=model,
                feature=context.feature,
                request_type="generate",
                key_source=context.key_source or KeySource.ENV,
                input_tokens=usage["input"],
                output_tokens=usage["output"],
                cached_tokens=usage["cached"],
                thinking_tokens=usage["thinking"],
                total_tokens=usage["total"],
                duration_ms=int((time.monotonic() - started) * 1000),
                has_file_search=has_file_search,
                error=error,
                caller_role=context.caller_role,
            )
        )

    try:
        result = await client.aio.models.generate_content(**request)
    except Exception:
        _record(usage_counts(None), error=True)
        raise

    usage = field_of(result, "usage_metadata")
    if usage is not None:
        _record(usage_counts(usage), error=False)
    return result
