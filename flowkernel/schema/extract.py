from __future__ import annotations

import json
import re
from typing import Any, Optional, Tuple

from flowkernel.errors import ValidationError

_JSON_FENCE = re.compile(r"```json[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_PLAIN_FENCE = re.compile(r"```[ \t]*\r?\n(.*?)```", re.DOTALL)

_OPENERS = {"{": "}", "[": "]"}


def _try_parse(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, TypeError):
        return False, None


def _balanced_span_end(text: str, start: int) -> Optional[int]:
    """Return the index one past the bracket closing ``text[start]``."""
    stack = [_OPENERS[text[start]]]
    in_string = False
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in ("}", "]"):
            if not stack or char != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return index + 1
    return None


def extract_json(response: str) -> Any:
    """Recover a JSON value from free-form model output.

    Tries, in order: the whole trimmed text, the first ```json fenced block,
    the first unlabeled fenced block, then the first balanced ``{...}`` or
    ``[...]`` span.
    """
    text = (response or "").strip()

    ok, data = _try_parse(text)
    if ok and text:
        return data

    match = _JSON_FENCE.search(text)
    if match:
        ok, data = _try_parse(match.group(1).strip())
        if ok:
            return data

    match = _PLAIN_FENCE.search(text)
    if match:
        ok, data = _try_parse(match.group(1).strip())
        if ok:
            return data

    for start, char in enumerate(text):
        if char not in _OPENERS:
            continue
        end = _balanced_span_end(text, start)
        if end is None:
            continue
        ok, data = _try_parse(text[start:end])
        if ok:
            return data

    raise ValidationError("could not extract valid JSON from response")
