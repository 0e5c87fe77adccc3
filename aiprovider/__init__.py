"""
aiprovider — tiered Gemini backend selection with failover.

Public API:
    get_ai_provider(client_id, consultant_id=None) → ProviderResult
    quick_generate(consultant_id, contents, feature) → QuickResult
"""

__version__ = "0.1.0"

from aiprovider.errors import (
    AIProviderError,
    ExtractionError,
    TerminalConfigurationError,
)
from aiprovider.models import GenerateRequest, ProviderResult, ProviderSource
from aiprovider.resolver import (
    ProviderSelector,
    clear_credentials_cache,
    get_ai_provider,
    get_cache_stats,
)
from aiprovider.tasks import quick_generate

__all__ = [
    "AIProviderError",
    "ExtractionError",
    "GenerateRequest",
    "ProviderResult",
    "ProviderSelector",
    "ProviderSource",
    "TerminalConfigurationError",
    "__version__",
    "clear_credentials_cache",
    "get_ai_provider",
    "get_cache_stats",
    "quick_generate",
]
