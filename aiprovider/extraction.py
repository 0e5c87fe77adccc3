"""
Text extraction from vendor responses.

Responses arrive as SDK objects or plain dicts, sometimes wrapped in an
outer ``response`` field, with snake_case or camelCase keys. Every accessor
here accepts all of those.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aiprovider.errors import ExtractionError

logger = logging.getLogger(__name__)

_MISSING = object()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """``obj.name`` / ``obj["name"]``, also trying the camelCase spelling."""
    if obj is None:
        return default
    for key in (name, _camel(name)):
        if isinstance(obj, dict):
            value = obj.get(key, _MISSING)
        else:
            value = getattr(obj, key, _MISSING)
        if value is not _MISSING and value is not None:
            return value
    return default


def unwrap(result: Any) -> Any:
    """The inner response object if ``result`` wraps one, else ``result``."""
    inner = field_of(result, "response")
    return inner if inner is not None else result


def first_candidate(response: Any) -> Any:
    candidates = field_of(response, "candidates") or []
    return candidates[0] if candidates else None


def candidate_parts(candidate: Any) -> list[Any]:
    content = field_of(candidate, "content")
    return list(field_of(content, "parts") or [])


def _finish_reason(candidate: Any) -> str | None:
    reason = field_of(candidate, "finish_reason")
    if reason is None:
        return None
    return str(getattr(reason, "value", reason))


def _safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


def describe_structure(result: Any) -> dict[str, Any]:
    """A JSON-safe summary of a response's shape, for error reports."""
    response = field_of(result, "response")
    target = response if response is not None else result
    text = field_of(target, "text")
    candidates = field_of(target, "candidates")
    candidate = first_candidate(target)
    return {
        "has_response": response is not None,
        "response_type": type(target).__name__,
        "has_text": bool(text),
        "text_type": type(text).__name__,
        "has_candidates": bool(candidates),
        "candidates_length": len(candidates) if candidates is not None else None,
        "candidate_content": _safe(field_of(candidate, "content")),
        "candidate_parts": [_safe(p) for p in candidate_parts(candidate)],
        "finish_reason": _finish_reason(candidate),
    }


def _answer_text(part: Any) -> str | None:
    """Text of a part unless it is model reasoning."""
    if field_of(part, "thought"):
        return None
    return field_of(part, "text")


def extract_text(result: Any) -> str:
    """Best-effort text of a generate response.

    Returns an empty string for function-call-only and max-token-truncated
    responses. Raises ExtractionError when no strategy recognises the shape.
    """
    response = unwrap(result)

    text = field_of(response, "text")
    if callable(text):
        try:
            value = text()
        except Exception as e:
            logger.debug("text() accessor raised, trying other shapes: %s", e)
        else:
            return "" if value is None else str(value)
    elif isinstance(text, str):
        return text

    candidate = first_candidate(response)
    parts = candidate_parts(candidate)
    if parts and _answer_text(parts[0]):
        return _answer_text(parts[0])

    outer_text = field_of(result, "text")
    if isinstance(outer_text, str) and outer_text:
        return outer_text

    for part in parts:
        part_text = _answer_text(part)
        if part_text:
            return part_text

    if parts and field_of(parts[0], "function_call") is not None:
        logger.info("Response holds a function call, not text")
        return ""

    if _finish_reason(candidate) == "MAX_TOKENS":
        logger.warning("Response truncated at MAX_TOKENS; raise max_output_tokens")
        return ""

    structure = describe_structure(result)
    logger.error("Failed to extract text. Response structure: %s", json.dumps(structure, indent=2))
    raise ExtractionError("Failed to extract text from model response", structure)


def split_parts(result: Any) -> tuple[str, str]:
    """``(text, thinking)`` joined from the first candidate's parts."""
    text: list[str] = []
    thinking: list[str] = []
    for part in candidate_parts(first_candidate(unwrap(result))):
        value = field_of(part, "text")
        if not value:
            continue
        if field_of(part, "thought"):
            thinking.append(value)
        else:
            text.append(value)
    return "".join(text), "".join(thinking)


def extract_answer_text(result: Any) -> str:
    """Non-thought text of a response.

    A response whose parts are all reasoning answers with "". Only a
    response without parts goes on to ``extract_text``.
    """
    if candidate_parts(first_candidate(unwrap(result))):
        text, _ = split_parts(result)
        return text
    return extract_text(result)
