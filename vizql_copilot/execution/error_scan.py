"""
Best-effort detection of errors embedded in successful-looking payloads.

The connector sometimes reports failures as ordinary tool output. This
module is a deliberately fuzzy heuristic kept behind one function so it
can be replaced once the connector exposes a proper error contract:

- only error-bearing keys are inspected (ERROR_KEYS), never row values;
- a truthy `isError` flag counts as an error;
- string values that parse as JSON are walked as structure;
- other strings match when they contain one of ERROR_KEYWORDS;
- nesting deeper than MAX_DEPTH is ignored.
"""

import json
import re
from typing import Any, Optional


ERROR_KEYS = ("error", "errors", "message", "errorMessage", "detail", "text")
ERROR_KEYWORDS = ("error", "exception", "invalid", "denied", "failed")
MAX_DEPTH = 8

_KEYWORD_RE = re.compile("|".join(ERROR_KEYWORDS), re.IGNORECASE)


def _parse_json_text(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "[{":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def _describe(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        texts = [i["text"].strip() for i in value if isinstance(i, dict) and isinstance(i.get("text"), str)]
        if texts:
            return " ".join(texts)
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _scan_value(value: Any, depth: int, key: str) -> Optional[str]:
    """Scan a value found under an error-bearing key."""
    if isinstance(value, str):
        parsed = _parse_json_text(value)
        if parsed is not None:
            return _scan(parsed, depth + 1)
        if _KEYWORD_RE.search(value):
            return value.strip()
        return None
    if key in ("error", "errors", "errorMessage") and value:
        # Structured error objects count regardless of wording.
        nested = _scan(value, depth + 1)
        return nested or _describe(value)
    return _scan(value, depth + 1)


def _scan(payload: Any, depth: int) -> Optional[str]:
    if depth > MAX_DEPTH:
        return None
    if isinstance(payload, list):
        for item in payload:
            found = _scan(item, depth + 1)
            if found:
                return found
        return None
    if not isinstance(payload, dict):
        return None

    if payload.get("isError") is True:
        content = payload.get("content")
        nested = _scan(content, depth + 1) if content is not None else None
        return nested or _describe(content if content is not None else "isError")

    for key in ERROR_KEYS:
        if key in payload and payload[key] is not None:
            found = _scan_value(payload[key], depth, key)
            if found:
                return found
    return None


def find_embedded_error(payload: Any) -> Optional[str]:
    """
    Return a description of an error embedded in `payload`, or None.

    Plain strings are treated as text content.
    """
    if isinstance(payload, str):
        return _scan_value(payload, 0, "text")
    return _scan(payload, 0)
