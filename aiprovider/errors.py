"""
Exceptions raised by the AI provider layer.

Only ``ExtractionError`` (during generation) and ``TerminalConfigurationError``
(resolution exhausted) are meant to reach application code. Everything else is
caught inside the selector and demoted to "try the next tier".
"""

from __future__ import annotations

from typing import Any


class AIProviderError(Exception):
    """Base class for all provider-layer errors."""


class DecryptError(AIProviderError):
    """Ciphertext is malformed, truncated, or was encrypted with another key."""


class CredentialParseError(AIProviderError):
    """A service-account blob is unreadable as plaintext JSON and as legacy ciphertext."""


class CredentialValidationError(AIProviderError):
    """A service-account blob parsed but lacks ``private_key`` or ``client_email``."""


class TransientBackendError(AIProviderError):
    """The vendor stayed unavailable after every retry."""


class ExtractionError(AIProviderError):
    """No text could be extracted from a vendor response.

    Attributes:
        structure: A JSON-safe summary of the response shape, for diagnosis.
    """

    def __init__(self, message: str, structure: dict[str, Any] | None = None):
        super().__init__(message)
        self.structure = structure or {}


class TerminalConfigurationError(AIProviderError):
    """Every tier, including the guaranteed fallback, failed to produce a client."""
