from __future__ import annotations

import json
import re
from typing import Any


class JSONExtractionError(ValueError):
    pass


_FENCE_RE = re.compile(r"```(?:json)?\s*(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)


def _scan_object(text: str, start: int) -> str | None:
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_first_json_object(text: str) -> dict[str, Any]:
    """Extract and parse the first balanced JSON object from an LLM response.

    Markdown code fences are unwrapped first. Trailing prose after the object is ignored.
    """
    fenced = _FENCE_RE.search(text or "")
    body = fenced.group("body") if fenced else (text or "")

    start = body.find("{")
    if start == -1:
        raise JSONExtractionError("No JSON object found in response.")
    candidate = _scan_object(body, start)
    if candidate is None:
        raise JSONExtractionError("Unterminated JSON object in response.")

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise JSONExtractionError("Top-level JSON value is not an object.")
    return parsed
