"""
Service-account credential parsing and the per-setting credential cache.

Stored blobs are plaintext JSON today; rows written before that are
AES-GCM ciphertext and still go through the vault codec. A cache entry is
tied to the setting's ``activated_at`` so rotating a key reparses it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aiprovider.errors import (
    CredentialParseError,
    CredentialValidationError,
    DecryptError,
)
from aiprovider.models import ServiceAccountCredentials
from aiprovider.vault import decrypt_json

logger = logging.getLogger(__name__)


def _load_blob(blob: str) -> dict[str, Any]:
    try:
        data = json.loads(blob)
        if isinstance(data, dict):
            return data
    except (TypeError, json.JSONDecodeError):
        pass

    try:
        data = decrypt_json(blob)
    except (DecryptError, ValueError, OSError) as e:
        logger.error("Credential blob is neither JSON nor legacy ciphertext: %s", e)
        raise CredentialParseError(f"Unreadable credential blob: {e}") from e
    if not isinstance(data, dict):
        raise CredentialParseError("Decrypted credential is not a JSON object")
    logger.warning("Credential stored in legacy encrypted format; re-save to migrate")
    return data


def parse_service_account_json(blob: str) -> ServiceAccountCredentials:
    """Parse a stored blob into validated credentials.

    Raises:
        CredentialParseError: neither plaintext JSON nor legacy ciphertext.
        CredentialValidationError: parsed, but without a private key or client email.
    """
    data = _load_blob(blob)
    creds = ServiceAccountCredentials.from_dict(data)
    if "\\n" in creds.private_key:
        creds.private_key = creds.private_key.replace("\\n", "\n")
    if not creds.is_usable:
        raise CredentialValidationError("Service account is missing private_key or client_email")
    return creds


@dataclass
class CachedCredential:
    settings_id: str
    credentials: ServiceAccountCredentials
    activated_at: datetime


class CredentialCache:
    """Process-wide map of settings id → parsed credentials.

    Entries are never evicted; the key space is the set of real settings.
    """

    def __init__(self, parser: Callable[[str], ServiceAccountCredentials] | None = None):
        self._parser = parser or parse_service_account_json
        self._entries: dict[str, CachedCredential] = {}

    def get_or_parse(
        self, settings_id: str, blob: str, activated_at: datetime
    ) -> ServiceAccountCredentials | None:
        """Cached credentials for a setting, or None if the blob is unusable."""
        entry = self._entries.get(settings_id)
        if entry is not None and entry.activated_at == activated_at:
            logger.debug("Credential cache hit for setting %s", settings_id)
            return entry.credentials

        try:
            creds = self._parser(blob)
        except (CredentialParseError, CredentialValidationError) as e:
            logger.warning("Setting %s has unusable credentials: %s", settings_id, e)
            return None

        self._entries[settings_id] = CachedCredential(settings_id, creds, activated_at)
        return creds

    def invalidate(self, settings_id: str) -> None:
        self._entries.pop(settings_id, None)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Credential cache cleared")

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "entries": [(e.settings_id, e.activated_at) for e in self._entries.values()],
        }

    def __len__(self) -> int:
        return len(self._entries)
