"""
AES-256-GCM encryption for secrets stored in the database.

Stored values are base64 text of nonce (12 bytes) + ciphertext + tag (16 bytes).
The master key is 32 bytes, taken from AIPROVIDER_ENCRYPTION_KEY (base64 or hex)
or from the key file at $AIPROVIDER_WORKSPACE/.vault-key (chmod 600).
"""

from __future__ import annotations

import base64
import binascii
import json
import secrets
import stat
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from aiprovider.config import get_config
from aiprovider.errors import DecryptError

_cached_key: bytes | None = None


def init_master_key(key_path: Path | str) -> Path:
    """Generate a new master key file. Idempotent — skips if it exists."""
    key_path = Path(key_path)
    if key_path.exists():
        return key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(secrets.token_bytes(32))
    key_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return key_path


def _decode_key(raw: str) -> bytes:
    raw = raw.strip()
    if len(raw) == 64:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    try:
        return base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise ValueError("AIPROVIDER_ENCRYPTION_KEY must be base64 or hex") from e


def get_master_key() -> bytes:
    """Load the master key (cached after first read)."""
    global _cached_key
    if _cached_key is not None:
        return _cached_key

    cfg = get_config().vault
    if cfg.encryption_key:
        key = _decode_key(cfg.encryption_key)
    else:
        if not cfg.key_file.exists():
            raise FileNotFoundError(
                f"Vault master key not found at {cfg.key_file}. "
                "Set AIPROVIDER_ENCRYPTION_KEY or create the key file."
            )
        key = cfg.key_file.read_bytes()
    if len(key) != 32:
        raise ValueError(f"Vault master key must be 32 bytes, got {len(key)}")
    _cached_key = key
    return _cached_key


def reset_key_cache() -> None:
    """Clear the cached master key (for testing)."""
    global _cached_key
    _cached_key = None


def encrypt(plaintext: str, master_key: bytes) -> bytes:
    """Encrypt plaintext with AES-256-GCM. Returns nonce + ciphertext + tag."""
    nonce = secrets.token_bytes(12)
    aesgcm = AESGCM(master_key)
    return nonce + aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)


def decrypt(data: bytes, master_key: bytes) -> str:
    """Decrypt nonce + ciphertext + tag back to plaintext."""
    if len(data) < 28:  # 12 nonce + 16 tag minimum
        raise DecryptError("Encrypted data too short")
    aesgcm = AESGCM(master_key)
    try:
        plaintext = aesgcm.decrypt(data[:12], data[12:], None)
    except InvalidTag as e:
        raise DecryptError("Ciphertext failed authentication (wrong key or tampered)") from e
    return plaintext.decode("utf-8")


def encrypt_text(plaintext: str, master_key: bytes | None = None) -> str:
    """Encrypt to the base64 text form kept in the database."""
    key = master_key or get_master_key()
    return base64.b64encode(encrypt(plaintext, key)).decode("ascii")


def decrypt_text(token: str, master_key: bytes | None = None) -> str:
    """Decrypt the base64 text form kept in the database."""
    key = master_key or get_master_key()
    try:
        data = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError("Ciphertext is not valid base64") from e
    return decrypt(data, key)


def decrypt_json(token: str, master_key: bytes | None = None) -> Any:
    """Decrypt and parse a JSON document."""
    plaintext = decrypt_text(token, master_key)
    try:
        return json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise DecryptError(f"Decrypted payload is not JSON: {e}") from e
