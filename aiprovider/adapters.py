"""
Backend client adapters — one uniform generate/stream interface over the
two Gemini backend families.

Both families are driven through ``google-genai``: AI Studio with an API
key, Vertex AI with a project, location and service-account credentials.
The adapters differ in how they assemble the request config and in whether
the bound model can change between calls. Response shape quirks are
absorbed by ``aiprovider.extraction``.

Every call goes through the rate limiter. When a tracking context is
attached, each call emits one usage record via the usage recorder.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from google import genai
from google.oauth2 import service_account

from aiprovider.config import get_config
from aiprovider.extraction import extract_text, field_of, split_parts, unwrap
from aiprovider.models import (
    GenerateRequest,
    ServiceAccountCredentials,
    TrackingContext,
    UsageRecord,
)
from aiprovider.rate_limit import RateLimiter, get_rate_limiter
from aiprovider.usage import TokenUsageRecorder, get_usage_recorder, usage_counts

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


@dataclass
class GenerateResult:
    """A normalized generate response. ``raw`` is the vendor object."""

    raw: Any
    model: str
    usage: dict[str, int] | None = None

    def text(self) -> str:
        return extract_text(self.raw)

    @property
    def candidates(self) -> list[Any]:
        return list(field_of(unwrap(self.raw), "candidates") or [])


@dataclass
class StreamChunk:
    text: str = ""
    thinking: str = ""
    candidates: list[Any] = field(default_factory=list)
    usage_metadata: Any = None
    raw: Any = None


def _usage_block(raw: Any) -> Any:
    return field_of(raw, "usage_metadata") or field_of(unwrap(raw), "usage_metadata")


def _chunk_text(chunk: Any) -> str:
    text = field_of(chunk, "text")
    if callable(text):
        text = text()
    if isinstance(text, str):
        return text
    parts_text, _ = split_parts(chunk)
    return parts_text


class BaseClientAdapter:
    """Uniform client over one ``genai.Client``."""

    label = "Gemini"

    def __init__(
        self,
        client: genai.Client,
        model: str,
        rate_limiter: RateLimiter | None = None,
        recorder: TokenUsageRecorder | None = None,
    ):
        self.client = client
        self.current_model = model
        self.tracking_context: TrackingContext | None = None
        self._rate_limiter = rate_limiter
        self._recorder = recorder

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter or get_rate_limiter()

    @property
    def recorder(self) -> TokenUsageRecorder:
        return self._recorder or get_usage_recorder()

    def set_tracking_context(self, ctx: TrackingContext) -> None:
        self.tracking_context = ctx

    def _model_for(self, request: GenerateRequest) -> str:
        return request.model or self.current_model

    def _build_config(self, request: GenerateRequest) -> dict[str, Any]:
        raise NotImplementedError

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        started = time.monotonic()
        model = self._model_for(request)
        config = self._build_config(request)

        async def _call():
            return await self.client.aio.models.generate_content(
                model=model, contents=request.contents, config=config
            )

        raw = await self.rate_limiter.call(_call, context=f"{self.label}.generate({model})")
        usage = usage_counts(_usage_block(raw))
        self._track("generate", model, usage, started, request.has_tools)
        return GenerateResult(raw=raw, model=model, usage=usage)

    async def generate_stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        """Yield chunks in order. Usage is recorded only after full consumption."""
        started = time.monotonic()
        model = self._model_for(request)
        config = self._build_config(request)

        async def _open():
            return await self.client.aio.models.generate_content_stream(
                model=model, contents=request.contents, config=config
            )

        stream = await self.rate_limiter.call(_open, context=f"{self.label}.stream({model})")
        last_usage = None
        async for chunk in stream:
            usage = _usage_block(chunk)
            if usage is not None:
                last_usage = usage
            _, thinking = split_parts(chunk)
            yield StreamChunk(
                text=_chunk_text(chunk),
                thinking=thinking,
                candidates=list(field_of(chunk, "candidates") or []),
                usage_metadata=usage,
                raw=chunk,
            )

        if last_usage is not None:
            self._track("stream", model, usage_counts(last_usage), started, request.has_tools)

    def _track(
        self,
        request_type: str,
        model: str,
        usage: dict[str, int],
        started: float,
        has_tools: bool,
    ) -> None:
        ctx = self.tracking_context
        if ctx is None:
            return
        try:
            self.recorder.track(
                UsageRecord(
                    consultant_id=ctx.consultant_id,
                    client_id=ctx.client_id,
                    model=model,
                    feature=ctx.feature or "unknown",
                    request_type=request_type,
                    key_source=ctx.key_source,
                    input_tokens=usage["input"],
                    output_tokens=usage["output"],
                    cached_tokens=usage["cached"],
                    thinking_tokens=usage["thinking"],
                    total_tokens=usage["total"],
                    duration_ms=int((time.monotonic() - started) * 1000),
                    has_tools=has_tools,
                    caller_role=ctx.caller_role,
                )
            )
        except Exception as e:
            logger.warning("%s usage tracking failed: %s", self.label, e)


class VertexClientAdapter(BaseClientAdapter):
    """Vertex AI adapter bound to one model, switchable per request.

    ``backend`` is the live top-level Vertex client. Without it the adapter
    stays on its bound model whatever the request asks for.
    """

    label = "VertexAI"

    def __init__(self, client: genai.Client, model: str, backend: Any = None, **kwargs):
        super().__init__(client, model, **kwargs)
        self.backend = backend

    def _model_for(self, request: GenerateRequest) -> str:
        if request.model and request.model != self.current_model and self.backend is not None:
            logger.info("Switching Vertex model from %s to %s", self.current_model, request.model)
            self.current_model = request.model
        return self.current_model

    def _build_config(self, request: GenerateRequest) -> dict[str, Any]:
        config = dict(request.generation_config or {})
        legacy = config.pop("system_instruction", None)
        legacy_camel = config.pop("systemInstruction", None)
        system_instruction = request.system_instruction or legacy or legacy_camel
        if system_instruction:
            config["system_instruction"] = system_instruction
        if request.tools:
            config["tools"] = request.tools
        if request.tool_config:
            config["tool_config"] = request.tool_config
        return config


class StudioClientAdapter(BaseClientAdapter):
    """Google AI Studio adapter. The request model is used as given."""

    label = "GoogleAIStudio"

    def _build_config(self, request: GenerateRequest) -> dict[str, Any]:
        config = dict(request.generation_config or {})
        if request.tools:
            config["tools"] = request.tools
        if request.system_instruction:
            config["system_instruction"] = request.system_instruction
        if request.tool_config:
            config["tool_config"] = request.tool_config
        return config


# ─── Construction ────────────────────────────────────────────────────


class ClientFactory:
    """Builds SDK clients and wraps them in adapters."""

    def studio_client(self, api_key: str) -> genai.Client:
        return genai.Client(api_key=api_key)

    def service_account_credentials(
        self, creds: ServiceAccountCredentials
    ) -> service_account.Credentials:
        return service_account.Credentials.from_service_account_info(
            creds.to_info(), scopes=[CLOUD_PLATFORM_SCOPE]
        )

    def vertex_client(
        self, project_id: str, location: str, creds: ServiceAccountCredentials
    ) -> genai.Client:
        return genai.Client(
            vertexai=True,
            project=project_id,
            location=location,
            credentials=self.service_account_credentials(creds),
        )

    def studio(self, api_key: str, model: str | None = None) -> StudioClientAdapter:
        model = model or get_config().provider.default_model
        return StudioClientAdapter(self.studio_client(api_key), model)

    def vertex(
        self,
        project_id: str,
        location: str,
        creds: ServiceAccountCredentials,
        model: str | None = None,
    ) -> VertexClientAdapter:
        model = model or get_config().provider.vertex_model
        client = self.vertex_client(project_id, location, creds)
        return VertexClientAdapter(client, model, backend=client)
