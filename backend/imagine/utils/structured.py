"""Lenient parsing of the JSON answers returned by structured model calls."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL)


class StructuredResponseError(ValueError):
    """The model answer did not contain a JSON object."""


def _strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text


def _outermost_object(text: str) -> str | None:
    """Slice the first balanced {...} out of free-form text, honouring strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from a model answer.

    Accepts pure JSON, fenced JSON, or JSON wrapped in prose. Raises
    StructuredResponseError when no object can be recovered.
    """
    cleaned = _strip_code_fence(text.strip())
    if not cleaned:
        raise StructuredResponseError("Empty structured response")

    candidates = [cleaned]
    sliced = _outermost_object(cleaned)
    if sliced is not None and sliced != cleaned:
        candidates.append(sliced)

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
        # Some models wrap the object in a one-element list
        if isinstance(value, list) and value and isinstance(value[0], dict):
            return value[0]
    raise StructuredResponseError(f"No JSON object in response: {cleaned[:200]}")


def coerce_float(value: Any) -> float | None:
    """Best-effort float from a JSON scalar ("2.7", 2.7, "2,7 m"), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:[.,]\d+)?", value)
        if match:
            return float(match.group(0).replace(",", "."))
    return None
