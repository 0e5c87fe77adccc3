"""
Who may use a backend setting or the shared dedicated backend.

Both checks answer with a bool. A lookup that raises is logged and read as
"no", never propagated.
"""

from __future__ import annotations

import logging

from aiprovider.models import BackendSetting, UsageScope

logger = logging.getLogger(__name__)


class AccessPolicy:
    def __init__(self, store):
        self._store = store

    async def can_use(self, setting: BackendSetting, requester_id: str, is_owner: bool) -> bool:
        """Apply the setting's usage scope to one requester.

        ``both`` allows everyone, ``consultant_only`` only the owner,
        ``clients_only`` everyone but the owner. ``selective`` allows the
        owner plus requesters holding an explicit grant. Unknown scopes deny.
        """
        scope = setting.usage_scope or UsageScope.BOTH
        if scope == UsageScope.BOTH:
            return True
        if scope == UsageScope.CONSULTANT_ONLY:
            return is_owner
        if scope == UsageScope.CLIENTS_ONLY:
            return not is_owner
        if scope == UsageScope.SELECTIVE:
            if is_owner:
                return True
            try:
                granted = await self._store.get_client_access(setting.id, requester_id)
            except Exception as e:
                logger.warning(
                    "Access lookup failed for setting %s / %s, denying: %s",
                    setting.id,
                    requester_id,
                    e,
                )
                return False
            return granted is True

        logger.warning("Setting %s has unknown usage scope %r, denying", setting.id, scope)
        return False

    async def can_use_shared_backend(self, consultant_id: str) -> bool:
        """Opt-in flag (default on) and per-consultant grant (default allow)."""
        try:
            profile = await self._store.get_profile(consultant_id)
            if profile is not None and not profile.opted_into_shared_backend:
                logger.info("Consultant %s opted out of the shared backend", consultant_id)
                return False
            granted = await self._store.get_shared_backend_access(consultant_id)
        except Exception as e:
            logger.warning("Shared backend access check failed for %s, denying: %s", consultant_id, e)
            return False
        if granted is False:
            logger.info("Consultant %s has no shared backend access", consultant_id)
            return False
        return True
