"""
Data models for the AI provider layer.

Plain dataclasses and ``StrEnum`` tags. Store rows (``RealDictCursor`` dicts)
become models through each class's ``from_row``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from aiprovider.adapters import GenerateResult

logger = logging.getLogger(__name__)


class UsageScope(StrEnum):
    BOTH = "both"
    CONSULTANT_ONLY = "consultant_only"
    CLIENTS_ONLY = "clients_only"
    SELECTIVE = "selective"


class ManagedBy(StrEnum):
    SELF = "self"
    ADMIN = "admin"


class PreferredProvider(StrEnum):
    VERTEX_ADMIN = "vertex_admin"
    GOOGLE_STUDIO = "google_studio"
    CUSTOM = "custom"


class ProviderSource(StrEnum):
    POOL_PRIMARY = "pool-primary"
    SHARED_DEDICATED = "shared-dedicated"
    CLIENT_OWNED = "client-owned"
    CONSULTANT_MANAGED = "consultant-managed"
    STUDIO_FALLBACK = "studio-fallback"
    CUSTOM = "custom"


class KeySource(StrEnum):
    SUPERADMIN = "superadmin"
    USER = "user"
    ENV = "env"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ─── Credentials ─────────────────────────────────────────────────────


@dataclass
class ServiceAccountCredentials:
    """A parsed Google service-account key file."""

    type: str = "service_account"
    project_id: str = ""
    private_key_id: str = ""
    private_key: str = ""
    client_email: str = ""
    client_id: str = ""
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"
    auth_provider_x509_cert_url: str = ""
    client_x509_cert_url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceAccountCredentials:
        known = {k for k in cls.__dataclass_fields__ if k != "extra"}
        kwargs = {k: data[k] for k in known if data.get(k) is not None}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs, extra=extra)

    @property
    def is_usable(self) -> bool:
        return bool(self.private_key) and bool(self.client_email)

    def to_info(self) -> dict[str, Any]:
        """Return the key-file dict google-auth expects."""
        info = dict(self.extra)
        for name in self.__dataclass_fields__:
            if name != "extra":
                info[name] = getattr(self, name)
        return info


# ─── Stored configuration ────────────────────────────────────────────


@dataclass
class BackendSetting:
    """One dedicated Vertex AI configuration owned by some identity."""

    id: str
    owner_id: str
    project_id: str
    location: str
    service_account_json: str
    managed_by: str = ManagedBy.SELF
    enabled: bool = True
    activated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
    usage_scope: str | None = UsageScope.BOTH
    usage_count: int = 0
    last_used_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BackendSetting:
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            project_id=row["project_id"],
            location=row["location"],
            service_account_json=row["service_account_json"],
            managed_by=row.get("managed_by") or ManagedBy.SELF,
            enabled=bool(row.get("enabled", True)),
            activated_at=_as_utc(row["activated_at"]),
            expires_at=_as_utc(row.get("expires_at")),
            usage_scope=row.get("usage_scope"),
            usage_count=row.get("usage_count") or 0,
            last_used_at=_as_utc(row.get("last_used_at")),
        )

    def is_valid(self, now: datetime | None = None, validity_days: int = 90) -> bool:
        """Enabled, and either before ``expires_at`` or within the default validity window."""
        if not self.enabled:
            return False
        now = now or datetime.now(UTC)
        if self.expires_at is not None:
            return self.expires_at > now
        return self.activated_at + timedelta(days=validity_days) > now


@dataclass
class SharedBackendConfig:
    """The single platform-wide dedicated Vertex AI configuration."""

    id: str
    project_id: str
    location: str
    service_account_json: str
    enabled: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SharedBackendConfig:
        return cls(
            id=str(row["id"]),
            project_id=row["project_id"],
            location=row["location"],
            service_account_json=row["service_account_json"],
            enabled=bool(row.get("enabled", True)),
        )


@dataclass
class AIProfile:
    """Per-identity AI preferences and own API keys.

    The opt-in flags are tri-state: ``None`` means "never set" and is read as
    opted in.
    """

    user_id: str
    preferred_provider: str = PreferredProvider.VERTEX_ADMIN
    use_shared_keys: bool | None = None
    use_shared_backend: bool | None = None
    api_keys: list[str] = field(default_factory=list)
    api_key_index: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AIProfile:
        return cls(
            user_id=str(row["user_id"]),
            preferred_provider=row.get("preferred_provider") or PreferredProvider.VERTEX_ADMIN,
            use_shared_keys=row.get("use_shared_keys"),
            use_shared_backend=row.get("use_shared_backend"),
            api_keys=list(row.get("api_keys") or []),
            api_key_index=row.get("api_key_index") or 0,
        )

    @property
    def opted_into_shared_keys(self) -> bool:
        return self.use_shared_keys is not False

    @property
    def opted_into_shared_backend(self) -> bool:
        return self.use_shared_backend is not False

    def current_api_key(self) -> tuple[str, int] | None:
        """Own key selected by rotation index, with its position."""
        if not self.api_keys:
            return None
        index = self.api_key_index % len(self.api_keys)
        return self.api_keys[index], index


@dataclass
class KeyPool:
    """Snapshot of the shared API key pool."""

    keys: list[str] = field(default_factory=list)
    enabled: bool = False
    fetched_at: float = 0.0


# ─── Requests, tracking, results ─────────────────────────────────────


@dataclass
class GenerateRequest:
    """Uniform generate/stream request understood by every adapter."""

    model: str = ""
    contents: list[dict[str, Any]] = field(default_factory=list)
    generation_config: dict[str, Any] | None = None
    tools: list[Any] | None = None
    tool_config: dict[str, Any] | None = None
    system_instruction: Any = None

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)


@dataclass
class TrackingContext:
    """Attribution attached to an adapter so its usage can be billed later."""

    consultant_id: str
    client_id: str | None = None
    key_source: str = KeySource.ENV
    feature: str = "unknown"
    caller_role: str | None = None


@dataclass
class UsageRecord:
    """One token-usage row."""

    consultant_id: str
    model: str
    feature: str
    request_type: str
    key_source: str
    client_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    thinking_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0
    has_tools: bool = False
    has_file_search: bool = False
    error: bool = False
    caller_role: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ProviderMetadata:
    """Human-facing description of the backend that won resolution."""

    display_name: str
    managed_by: str | None = None
    expires_at: datetime | None = None


@dataclass
class ProviderResult:
    """What the selector hands back to callers.

    ``cleanup`` should be awaited after use when set; it drops cached
    credentials tied to the winning setting.
    """

    client: Any
    metadata: ProviderMetadata
    source: ProviderSource
    key_source: str = KeySource.ENV
    backend_handle: Any = None
    cleanup_fn: Callable[[], Awaitable[None]] | None = None

    @property
    def tracking_context(self) -> TrackingContext | None:
        return getattr(self.client, "tracking_context", None)

    def set_feature(self, feature: str, caller_role: str | None = None) -> None:
        ctx = self.tracking_context
        if ctx is None:
            return
        ctx.feature = feature
        if caller_role:
            ctx.caller_role = caller_role

    async def tracked_generate(
        self,
        request: GenerateRequest,
        *,
        feature: str,
        client_id: str | None = None,
        caller_role: str | None = None,
    ) -> GenerateResult:
        """Tag the tracking context for this call, then generate."""
        ctx = self.tracking_context
        if ctx is not None:
            ctx.feature = feature
            ctx.caller_role = caller_role
            if client_id:
                ctx.client_id = client_id
        return await self.client.generate(request)

    async def cleanup(self) -> None:
        if self.cleanup_fn is None:
            return
        try:
            await self.cleanup_fn()
        except Exception as e:
            logger.warning("Provider cleanup failed (%s): %s", self.source, e)
