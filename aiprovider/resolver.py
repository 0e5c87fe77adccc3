"""
Provider selector — picks a working Gemini backend for one request.

Resolution walks an ordered list of tiers and stops at the first one that
produces a client:

    Tier 0    shared key pool (AI Studio)         consultant required
    Tier 0.5  shared dedicated Vertex backend     consultant required
    Tier 1    client's own Vertex backend
    Tier 2    consultant's Vertex backends        consultant required
    Tier 3    AI Studio fallback (pool → own keys → GEMINI_API_KEY)

A client whose profile prefers ``custom`` or ``google_studio`` skips the
walk and gets a single dedicated tier instead. Errors inside a tier are
logged and demoted to "try the next one"; only exhausting the terminal tier
raises, always as ``TerminalConfigurationError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from aiprovider.access import AccessPolicy
from aiprovider.adapters import ClientFactory
from aiprovider.config import get_config
from aiprovider.credentials import CredentialCache, parse_service_account_json
from aiprovider.errors import (
    CredentialParseError,
    CredentialValidationError,
    TerminalConfigurationError,
)
from aiprovider.key_pool import KeyPoolCache
from aiprovider.models import (
    AIProfile,
    BackendSetting,
    KeySource,
    ManagedBy,
    PreferredProvider,
    ProviderMetadata,
    ProviderResult,
    ProviderSource,
    TrackingContext,
)
from aiprovider.store import ProviderStore, spawn_background

logger = logging.getLogger(__name__)

CUSTOM_FAILURE = (
    "Failed to initialize custom AI provider. "
    "Client has custom provider configured but no valid API keys. "
    "Please add Gemini API keys or switch to vertex_admin/google_studio."
)
STUDIO_FAILURE = (
    "Failed to initialize Google AI Studio provider. "
    "No valid Gemini API keys found. "
    "Please add API keys or configure Vertex AI."
)
FALLBACK_FAILURE = (
    "Failed to initialize AI provider. "
    "No valid Vertex AI configuration found and Google AI Studio fallback failed. "
    "Please configure Vertex AI or add Gemini API keys."
)

STUDIO_DISPLAY_NAMES = {
    KeySource.SUPERADMIN: "Google AI Studio (SuperAdmin)",
    KeySource.USER: "Google AI Studio (User Keys)",
    KeySource.ENV: "Google AI Studio",
}


@dataclass
class ResolutionContext:
    client_id: str
    consultant_id: str | None = None

    @property
    def is_owner(self) -> bool:
        return self.client_id == self.consultant_id

    @property
    def fallback_user_id(self) -> str:
        return self.consultant_id or self.client_id


@dataclass
class StudioKey:
    api_key: str
    key_source: KeySource
    position: str = ""


# ─── Tiers ───────────────────────────────────────────────────────────


class Tier:
    """One candidate source of a client. ``try_resolve`` returns None to skip."""

    name = "tier"
    requires_consultant = False

    def __init__(self, selector: ProviderSelector):
        self.selector = selector

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        raise NotImplementedError


class SharedPoolTier(Tier):
    name = "TIER 0 (shared key pool)"
    requires_consultant = True

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        sel = self.selector
        profile = await sel.store.get_profile(ctx.consultant_id)
        if profile is not None and not profile.opted_into_shared_keys:
            logger.info("%s: consultant %s opted out", self.name, ctx.consultant_id)
            return None

        picked = await sel.key_pool.pick_random_key()
        if picked is None:
            logger.info("%s: no shared keys available", self.name)
            return None

        key, index, size = picked
        logger.info("%s: using shared key %d/%d", self.name, index + 1, size)
        return ProviderResult(
            client=sel.factory.studio(key),
            metadata=ProviderMetadata(display_name="Google AI Studio"),
            source=ProviderSource.POOL_PRIMARY,
            key_source=KeySource.SUPERADMIN,
        )


class SharedDedicatedTier(Tier):
    name = "TIER 0.5 (shared dedicated backend)"
    requires_consultant = True

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        sel = self.selector
        if not await sel.access.can_use_shared_backend(ctx.consultant_id):
            return None

        config = await sel.store.get_shared_backend_config()
        if config is None:
            logger.info("%s: no enabled shared backend configured", self.name)
            return None

        try:
            creds = parse_service_account_json(config.service_account_json)
        except (CredentialParseError, CredentialValidationError) as e:
            logger.error("%s: shared backend credentials unusable: %s", self.name, e)
            return None

        client = sel.factory.vertex(config.project_id, config.location, creds)
        logger.info("%s: created shared Vertex client (%s/%s)", self.name, config.project_id, config.location)
        return ProviderResult(
            client=client,
            metadata=ProviderMetadata(display_name="Vertex AI (SuperAdmin)", managed_by=ManagedBy.ADMIN),
            source=ProviderSource.SHARED_DEDICATED,
            key_source=KeySource.SUPERADMIN,
            backend_handle=getattr(client, "backend", None),
        )


class ClientOwnedTier(Tier):
    name = "TIER 1 (client-owned backend)"

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        sel = self.selector
        setting = await sel.store.get_self_managed_setting(ctx.client_id)
        if setting is None:
            logger.info("%s: no self-managed setting for %s", self.name, ctx.client_id)
            return None
        if not sel.is_valid(setting):
            logger.info("%s: setting %s expired or disabled", self.name, setting.id)
            return None

        result = sel.vertex_from_setting(setting, ProviderSource.CLIENT_OWNED, KeySource.USER)
        if result is not None:
            sel.bump_usage(setting)
        return result


class ConsultantManagedTier(Tier):
    name = "TIER 2 (consultant-managed backends)"
    requires_consultant = True

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        sel = self.selector
        settings = await sel.store.list_backend_settings(ctx.consultant_id)
        if not settings:
            logger.info("%s: no settings for consultant %s", self.name, ctx.consultant_id)
            return None

        for setting in settings:
            try:
                if not sel.is_valid(setting):
                    logger.info("%s: setting %s expired or disabled, skipping", self.name, setting.id)
                    continue
                if not await sel.access.can_use(setting, ctx.client_id, ctx.is_owner):
                    logger.info(
                        "%s: usage scope %r of setting %s excludes %s",
                        self.name,
                        setting.usage_scope,
                        setting.id,
                        ctx.client_id,
                    )
                    continue
                result = sel.vertex_from_setting(
                    setting, ProviderSource.CONSULTANT_MANAGED, KeySource.SUPERADMIN
                )
            except Exception as e:
                logger.warning("%s: setting %s failed: %s", self.name, setting.id, e)
                continue
            if result is not None:
                sel.bump_usage(setting)
                return result

        logger.info("%s: no usable setting for %s", self.name, ctx.client_id)
        return None


class StudioFallbackTier(Tier):
    """AI Studio with the first available key: pool, own keys, environment."""

    name = "TIER 3 (AI Studio fallback)"

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        user_id = ctx.fallback_user_id
        key = await self.selector.find_studio_key(user_id)
        if key is None:
            return None
        logger.info("%s: using %s key %s for %s", self.name, key.key_source, key.position, user_id)
        return self.selector.studio_result(key, ProviderSource.STUDIO_FALLBACK)


class CustomKeysTier(Tier):
    """The client's own API keys and nothing else."""

    name = "CUSTOM (own API keys)"

    async def try_resolve(self, ctx: ResolutionContext) -> ProviderResult | None:
        key = await self.selector.find_studio_key(
            ctx.client_id, use_pool=False, use_env=False
        )
        if key is None:
            return None
        return self.selector.studio_result(key, ProviderSource.CUSTOM)


# ─── Selector ────────────────────────────────────────────────────────


class ProviderSelector:
    """Tier walker plus the collaborators the tiers share."""

    def __init__(
        self,
        store: ProviderStore | None = None,
        key_pool: KeyPoolCache | None = None,
        credentials: CredentialCache | None = None,
        access: AccessPolicy | None = None,
        factory: ClientFactory | None = None,
        validity_days: int | None = None,
    ):
        self.store = store or ProviderStore()
        self.key_pool = key_pool or KeyPoolCache(self.store)
        self.credentials = credentials or CredentialCache()
        self.access = access or AccessPolicy(self.store)
        self.factory = factory or ClientFactory()
        self.validity_days = validity_days or get_config().provider.credential_validity_days

        self.tiers: list[Tier] = [
            SharedPoolTier(self),
            SharedDedicatedTier(self),
            ClientOwnedTier(self),
            ConsultantManagedTier(self),
        ]
        self.fallback_tier = StudioFallbackTier(self)
        self.custom_tier = CustomKeysTier(self)

    # ── Shared helpers ──

    def is_valid(self, setting: BackendSetting, now: datetime | None = None) -> bool:
        return setting.is_valid(now or datetime.now(UTC), self.validity_days)

    def vertex_from_setting(
        self, setting: BackendSetting, source: ProviderSource, key_source: KeySource
    ) -> ProviderResult | None:
        creds = self.credentials.get_or_parse(
            setting.id, setting.service_account_json, setting.activated_at
        )
        if creds is None:
            return None

        client = self.factory.vertex(setting.project_id, setting.location, creds)
        name = "Vertex AI (own)" if setting.managed_by == ManagedBy.SELF else "Vertex AI (admin)"
        logger.info("Created Vertex AI client (%s) from setting %s", name, setting.id)

        async def _cleanup() -> None:
            self.credentials.invalidate(setting.id)

        return ProviderResult(
            client=client,
            metadata=ProviderMetadata(
                display_name=name,
                managed_by=setting.managed_by,
                expires_at=setting.expires_at,
            ),
            source=source,
            key_source=key_source,
            backend_handle=getattr(client, "backend", None),
            cleanup_fn=_cleanup,
        )

    def bump_usage(self, setting: BackendSetting) -> None:
        spawn_background(self.store.bump_usage_metrics(setting.id))

    async def load_profile(self, user_id: str) -> AIProfile | None:
        """Profile lookup where a failure reads as "no profile"."""
        try:
            return await self.store.get_profile(user_id)
        except Exception as e:
            logger.warning("Profile lookup failed for %s: %s", user_id, e)
            return None

    async def find_studio_key(
        self,
        user_id: str,
        *,
        use_pool: bool = True,
        use_own: bool = True,
        use_env: bool = True,
    ) -> StudioKey | None:
        """First available AI Studio key for ``user_id``, or None."""
        profile = await self.load_profile(user_id)

        if use_pool and (profile is None or profile.opted_into_shared_keys):
            try:
                picked = await self.key_pool.pick_random_key()
            except Exception as e:
                logger.warning("Shared key pool unavailable: %s", e)
                picked = None
            if picked is not None:
                key, index, size = picked
                return StudioKey(key, KeySource.SUPERADMIN, f"{index + 1}/{size}")

        if use_own and profile is not None:
            own = profile.current_api_key()
            if own is not None:
                key, index = own
                return StudioKey(key, KeySource.USER, f"{index + 1}/{len(profile.api_keys)}")

        if use_env:
            env_key = get_config().provider.env_api_key
            if env_key:
                return StudioKey(env_key, KeySource.ENV, "env")

        logger.warning("No Gemini API key available for %s", user_id)
        return None

    def studio_result(self, key: StudioKey, source: ProviderSource) -> ProviderResult:
        return ProviderResult(
            client=self.factory.studio(key.api_key),
            metadata=ProviderMetadata(display_name=STUDIO_DISPLAY_NAMES[key.key_source]),
            source=source,
            key_source=key.key_source,
        )

    # ── Resolution ──

    async def _preference(self, client_id: str) -> str:
        profile = await self.load_profile(client_id)
        if profile is None:
            return PreferredProvider.VERTEX_ADMIN
        return profile.preferred_provider

    async def _run_terminal(self, tier: Tier, ctx: ResolutionContext, message: str) -> ProviderResult:
        try:
            result = await tier.try_resolve(ctx)
        except Exception as e:
            logger.error("%s failed for %s: %s", tier.name, ctx.client_id, e)
            raise TerminalConfigurationError(message) from e
        if result is None:
            logger.error("%s produced no client for %s", tier.name, ctx.client_id)
            raise TerminalConfigurationError(message)
        return result

    async def _walk(self, ctx: ResolutionContext) -> ProviderResult:
        for tier in self.tiers:
            if tier.requires_consultant and not ctx.consultant_id:
                logger.debug("%s: skipped (no consultant)", tier.name)
                continue
            try:
                result = await tier.try_resolve(ctx)
            except Exception as e:
                logger.warning("%s failed for %s: %s", tier.name, ctx.client_id, e)
                continue
            if result is not None:
                logger.info("%s: resolved %s (%s)", tier.name, ctx.client_id, result.metadata.display_name)
                return result

        logger.info("No dedicated backend for %s, falling back to AI Studio", ctx.client_id)
        return await self._run_terminal(self.fallback_tier, ctx, FALLBACK_FAILURE)

    async def resolve(self, client_id: str, consultant_id: str | None = None) -> ProviderResult:
        """Resolve a provider for ``client_id``, optionally acting under ``consultant_id``.

        Raises:
            TerminalConfigurationError: no tier could produce a client.
        """
        ctx = ResolutionContext(client_id=client_id, consultant_id=consultant_id)
        logger.info("Finding AI provider for client %s (consultant: %s)", client_id, consultant_id or "none")

        preference = await self._preference(client_id)
        if preference == PreferredProvider.CUSTOM:
            result = await self._run_terminal(self.custom_tier, ctx, CUSTOM_FAILURE)
        elif preference == PreferredProvider.GOOGLE_STUDIO:
            result = await self._run_terminal(self.fallback_tier, ctx, STUDIO_FAILURE)
        else:
            result = await self._walk(ctx)

        self._attach_tracking(result, ctx)
        return result

    def _attach_tracking(self, result: ProviderResult, ctx: ResolutionContext) -> None:
        set_ctx = getattr(result.client, "set_tracking_context", None)
        if set_ctx is None:
            return
        consultant = ctx.fallback_user_id
        set_ctx(
            TrackingContext(
                consultant_id=consultant,
                client_id=ctx.client_id if ctx.client_id != consultant else None,
                key_source=result.key_source,
            )
        )


_default_selector: ProviderSelector | None = None


def get_selector() -> ProviderSelector:
    """Process-wide selector sharing one credential cache and key pool."""
    global _default_selector
    if _default_selector is None:
        _default_selector = ProviderSelector()
    return _default_selector


def reset_selector() -> None:
    """Drop the process-wide selector (for testing)."""
    global _default_selector
    _default_selector = None


async def get_ai_provider(client_id: str, consultant_id: str | None = None) -> ProviderResult:
    return await get_selector().resolve(client_id, consultant_id)


def clear_credentials_cache() -> None:
    get_selector().credentials.clear()


def get_cache_stats() -> dict:
    """Size and ``(settings_id, activated_at)`` entries of the credential cache."""
    return get_selector().credentials.stats()
