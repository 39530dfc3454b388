"""Best-effort structured-output parsing for model responses."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_BLOCK = re.compile(r"```(?:json)?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the stripped text."""

    match = _FENCED_BLOCK.search(text)
    if match is not None:
        return match.group(1).strip()
    return text.strip()


def sanitize_text(text: str) -> str:
    """Drop NUL and other control characters that databases reject."""

    return _CONTROL_CHARS.sub("", text).strip()


def parse_json_array(text: str) -> list[Any] | None:
    """Parse a model response expected to be a JSON array.

    `None` signals a parse failure; every handler owns its fallback value.
    """

    parsed = _try_load(strip_code_fences(text))
    if isinstance(parsed, list):
        return parsed
    return None


def parse_json_object(text: str) -> dict[str, Any] | None:
    parsed = _try_load(strip_code_fences(text))
    if isinstance(parsed, dict):
        return parsed

    # Models sometimes wrap the object in prose.
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    parsed = _try_load(text[start : end + 1])
    return parsed if isinstance(parsed, dict) else None


def _try_load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
