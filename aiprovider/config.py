"""
Centralized configuration for the AI provider layer.

All configuration is loaded from environment variables with sensible defaults.

Usage:
    from aiprovider.config import get_config
    cfg = get_config()
    print(cfg.db.name)                  # "aiprovider"
    print(cfg.provider.pool_ttl_seconds)  # 60
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters."""

    host: str = ""  # empty = Unix socket (peer auth); set to 127.0.0.1 for TCP
    port: int = 5432
    name: str = "aiprovider"
    user: str = "aiprovider"
    password: str = ""

    @property
    def dsn(self) -> str:
        """Return a psycopg2-compatible DSN string."""
        parts = [f"dbname={self.name}"]
        if self.host:
            parts.append(f"host={self.host}")
        parts.append(f"port={self.port}")
        if self.user:
            parts.append(f"user={self.user}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    @property
    def dict(self) -> dict[str, str | int]:
        """Return a psycopg2.connect() kwargs dict."""
        d: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
        }
        if self.host:
            d["host"] = self.host
        if self.user:
            d["user"] = self.user
        if self.password:
            d["password"] = self.password
        return d


@dataclass(frozen=True)
class VaultConfig:
    """Where the master key for stored secrets comes from.

    ``encryption_key`` (base64 or hex of 32 bytes) wins over the key file.
    """

    encryption_key: str = ""
    key_file: Path = field(default_factory=lambda: Path.home() / "aiprovider" / ".vault-key")


@dataclass(frozen=True)
class ProviderConfig:
    """Model ids, cache lifetimes and call limits for the provider selector."""

    env_api_key: str = ""
    default_model: str = "gemini-3-flash-preview"
    vertex_model: str = "gemini-3-flash-preview"
    pool_ttl_seconds: float = 60.0
    credential_validity_days: int = 90
    max_concurrent_calls: int = 10
    max_retries: int = 3
    retry_base_delay: float = 1.0
    live_vertex_model: str = "gemini-live-2.5-flash-native-audio"
    live_studio_model: str = "gemini-2.5-flash-native-audio-preview-12-2025"


@dataclass(frozen=True)
class Config:
    """Top-level configuration."""

    workspace: Path = field(default_factory=lambda: Path.home() / "aiprovider")
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    workspace = Path(os.environ.get("AIPROVIDER_WORKSPACE", Path.home() / "aiprovider"))

    db = DatabaseConfig(
        host=os.environ.get("AIPROVIDER_DB_HOST", ""),
        port=int(os.environ.get("AIPROVIDER_DB_PORT", "5432")),
        name=os.environ.get("AIPROVIDER_DB_NAME", "aiprovider"),
        user=os.environ.get("AIPROVIDER_DB_USER", os.environ.get("USER", "aiprovider")),
        password=os.environ.get("AIPROVIDER_DB_PASSWORD", ""),
    )

    vault = VaultConfig(
        encryption_key=os.environ.get("AIPROVIDER_ENCRYPTION_KEY", ""),
        key_file=Path(os.environ.get("AIPROVIDER_VAULT_KEY_FILE", workspace / ".vault-key")),
    )

    default_model = os.environ.get("AIPROVIDER_DEFAULT_MODEL", "gemini-3-flash-preview")
    provider = ProviderConfig(
        env_api_key=os.environ.get("GEMINI_API_KEY", ""),
        default_model=default_model,
        vertex_model=os.environ.get("AIPROVIDER_VERTEX_MODEL", default_model),
        pool_ttl_seconds=float(os.environ.get("AIPROVIDER_POOL_TTL_SECONDS", "60")),
        credential_validity_days=int(os.environ.get("AIPROVIDER_CREDENTIAL_VALIDITY_DAYS", "90")),
        max_concurrent_calls=int(os.environ.get("AIPROVIDER_MAX_CONCURRENT_CALLS", "10")),
        max_retries=int(os.environ.get("AIPROVIDER_MAX_RETRIES", "3")),
        retry_base_delay=float(os.environ.get("AIPROVIDER_RETRY_BASE_DELAY", "1.0")),
        live_vertex_model=os.environ.get(
            "AIPROVIDER_LIVE_VERTEX_MODEL", "gemini-live-2.5-flash-native-audio"
        ),
        live_studio_model=os.environ.get(
            "AIPROVIDER_LIVE_STUDIO_MODEL", "gemini-2.5-flash-native-audio-preview-12-2025"
        ),
    )

    return Config(workspace=workspace, db=db, vault=vault, provider=provider)


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
