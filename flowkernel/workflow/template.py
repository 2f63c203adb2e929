"""``{{ .path }}`` substitution over step inputs and prompts."""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from flowkernel.workflow.expression import evaluate

_TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}", re.DOTALL)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_string(template: str, context: Mapping[str, Any]) -> Any:
    """Render one string.

    A string that is exactly one ``{{ expr }}`` keeps the value's type, so
    ``"{{ .steps.fetch.data }}"`` passes a mapping through unchanged.
    """
    matches = list(_TEMPLATE_RE.finditer(template))
    if not matches:
        return template
    if len(matches) == 1 and matches[0].span() == (0, len(template)):
        return evaluate(matches[0].group(1), context)
    return _TEMPLATE_RE.sub(lambda m: to_text(evaluate(m.group(1), context)), template)


def render(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively render strings inside mappings and lists."""
    if isinstance(value, str):
        return render_string(value, context)
    if isinstance(value, Mapping):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    return value
