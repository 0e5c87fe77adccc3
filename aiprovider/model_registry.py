"""Model registry — which Gemini model each backend family runs, and thinking budgets.

AI Studio gets the newest model with thinking enabled; Vertex backends run
the configured Vertex model without it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from aiprovider.config import get_config

logger = logging.getLogger(__name__)

STUDIO_KINDS = frozenset({"studio", "google"})
VERTEX_KINDS = frozenset({"vertex", "superadmin", "client", "admin"})

DEFAULT_THINKING_LEVEL = "low"


@dataclass(frozen=True)
class ModelChoice:
    model: str
    use_thinking: bool
    thinking_level: str


# ─── Thinking budgets ────────────────────────────────────────────────

_THINKING_BUDGETS: dict[str, int] = {
    "minimal": 1_024,
    "low": 4_096,
    "medium": 8_192,
    "high": 16_384,
}


def thinking_config(level: str = DEFAULT_THINKING_LEVEL) -> dict[str, Any]:
    """``thinking_config`` block for a generation config."""
    budget = _THINKING_BUDGETS.get(level)
    if budget is None:
        logger.warning("Unknown thinking level %r, using %s", level, DEFAULT_THINKING_LEVEL)
        budget = _THINKING_BUDGETS[DEFAULT_THINKING_LEVEL]
    return {"thinking_budget": budget, "include_thoughts": True}


# ─── Model selection ─────────────────────────────────────────────────


def get_model_for_provider(kind: str) -> str:
    """Model id for a backend kind (``studio``, ``vertex``, ``admin`` ...)."""
    cfg = get_config().provider
    if kind in STUDIO_KINDS:
        return cfg.default_model
    if kind not in VERTEX_KINDS:
        logger.debug("Unknown provider kind %r, using Vertex model", kind)
    return cfg.vertex_model


def is_studio_name(display_name: str | None) -> bool:
    return bool(display_name) and "studio" in display_name.lower()


def get_model_for_provider_name(display_name: str | None) -> str:
    return get_model_for_provider("studio" if is_studio_name(display_name) else "vertex")


def get_model_with_thinking(display_name: str | None) -> ModelChoice:
    """Model plus thinking settings for a provider's display name."""
    if is_studio_name(display_name):
        return ModelChoice(get_model_for_provider("studio"), True, DEFAULT_THINKING_LEVEL)
    return ModelChoice(get_model_for_provider("vertex"), False, DEFAULT_THINKING_LEVEL)
