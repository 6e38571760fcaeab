from __future__ import annotations

import json
import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+(?:\.[a-zA-Z0-9_]+)*)\s*\}\}")


def _lookup(variables: dict[str, Any], dotted: str) -> Any:
    value: Any = variables
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return ""
        value = value[part]
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Render `{{name}}` / `{{settings.context}}` placeholders.

    Missing keys render as "". Dicts and lists are embedded as JSON so prompts can carry prior agent output.
    """

    def _replace(match: re.Match[str]) -> str:
        return _stringify(_lookup(variables, match.group("key")))

    return _VAR_RE.sub(_replace, template)
