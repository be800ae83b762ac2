"""JSON extraction from free-form model output."""

import json
import re
from typing import Any

# Greedy: first opening bracket to last closing bracket, tolerating prose around it.
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")


class JSONExtractionError(ValueError):
    """Raised when no JSON value of the expected shape can be recovered."""


def _extract(text: str, pattern: re.Pattern[str], expected: type) -> Any:
    if not text or not text.strip():
        raise JSONExtractionError("empty response text")
    match = pattern.search(text)
    candidate = match.group(0) if match else text
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise JSONExtractionError(f"invalid JSON: {exc}") from exc
    if not isinstance(value, expected):
        raise JSONExtractionError(f"expected a JSON {expected.__name__}, got {type(value).__name__}")
    return value


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first brace-delimited JSON object found in ``text``."""
    return _extract(text, JSON_OBJECT_PATTERN, dict)


def extract_json_array(text: str) -> list[Any]:
    """Return the first bracket-delimited JSON array found in ``text``."""
    return _extract(text, JSON_ARRAY_PATTERN, list)
