"""
Secret codec for values stored encrypted in the database.

Public API:
    decrypt_text(token)   → plaintext
    decrypt_json(token)   → parsed JSON
    encrypt_text(value)   → base64 token for storage
"""

from __future__ import annotations

from aiprovider.vault.crypto import (
    decrypt_json,
    decrypt_text,
    encrypt_text,
    get_master_key,
    init_master_key,
    reset_key_cache,
)

__all__ = [
    "decrypt_json",
    "decrypt_text",
    "encrypt_text",
    "get_master_key",
    "init_master_key",
    "reset_key_cache",
]
