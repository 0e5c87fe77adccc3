"""
Root-level shared test fixtures.

Every test starts from a fresh config, vault key cache and process-wide
selector so environment changes made with monkeypatch take effect.
"""

from __future__ import annotations

import uuid

import pytest

from aiprovider.config import reset_config
from aiprovider.resolver import reset_selector
from aiprovider.vault import reset_key_cache


@pytest.fixture
def test_prefix():
    """Unique prefix for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove env vars that leak between tests and reset singletons."""
    for key in [
        "AIPROVIDER_DB_HOST",
        "AIPROVIDER_DB_PORT",
        "AIPROVIDER_DB_NAME",
        "AIPROVIDER_DB_USER",
        "AIPROVIDER_DB_PASSWORD",
        "AIPROVIDER_ENCRYPTION_KEY",
        "AIPROVIDER_VAULT_KEY_FILE",
        "AIPROVIDER_DEFAULT_MODEL",
        "AIPROVIDER_VERTEX_MODEL",
        "AIPROVIDER_POOL_TTL_SECONDS",
        "GEMINI_API_KEY",
    ]:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    reset_key_cache()
    reset_selector()
    yield
    reset_config()
    reset_key_cache()
    reset_selector()
