from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class RedactionPattern:
    name: str
    regex: re.Pattern
    replacement: str


def _pattern(name: str, expr: str, replacement: str = REDACTED, flags: int = 0) -> RedactionPattern:
    return RedactionPattern(name=name, regex=re.compile(expr, flags), replacement=replacement)


# Applied in order; key=value forms normalise to key=[REDACTED]
DEFAULT_PATTERNS: List[RedactionPattern] = [
    _pattern("aws_access_key", r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
    _pattern(
        "aws_secret_key",
        r"\b(aws_secret_access_key|aws_secret_key|aws_secret|secret_access_key|secret_key)"
        r"\s*[:=]\s*[\"']?[A-Za-z0-9/+=]{40}[\"']?",
        r"\1=" + REDACTED,
        re.IGNORECASE,
    ),
    _pattern(
        "bearer_token",
        r"\bbearer\s+[A-Za-z0-9\-._~+/]{10,}=*",
        "Bearer " + REDACTED,
        re.IGNORECASE,
    ),
    _pattern(
        "api_key",
        r"\b(api[_-]?key)\s*[:=]\s*[\"']?[A-Za-z0-9_\-]{20,}[\"']?",
        r"\1=" + REDACTED,
        re.IGNORECASE,
    ),
    _pattern(
        "token",
        r"\b([a-z_]*token)\s*[:=]\s*[\"']?[A-Za-z0-9_\-.]{20,}[\"']?",
        r"\1=" + REDACTED,
        re.IGNORECASE,
    ),
    _pattern(
        "url_password",
        r"\b([a-zA-Z][a-zA-Z0-9+.\-]*://[^:/\s@]+:)[^@\s/]+(@)",
        r"\1" + REDACTED + r"\2",
    ),
    _pattern(
        "password",
        r"\b(password|passwd|pwd|pass)\s*[:=]\s*(?:\"[^\"]*\"|'[^']*'|[^;\s]+)",
        r"\1=" + REDACTED,
        re.IGNORECASE,
    ),
    _pattern(
        "generic_secret",
        r"\b([a-z_\-]*(?:secret|private[_-]key)[a-z_\-]*)\s*[:=]\s*[\"']?[A-Za-z0-9_\-/+=.]{20,}[\"']?",
        r"\1=" + REDACTED,
        re.IGNORECASE,
    ),
]


class Redactor:
    """Masks credentials in text before it leaves a tool.

    Safe to share between threads; ``redact`` works on one line-buffered
    chunk at a time so pattern boundaries stay stable.
    """

    def __init__(self, patterns: Optional[Sequence[RedactionPattern]] = None) -> None:
        self._patterns: List[RedactionPattern] = list(patterns if patterns is not None else DEFAULT_PATTERNS)
        self._lock = threading.Lock()

    def add_pattern(self, name: str, expr: str, replacement: str = REDACTED) -> None:
        compiled = _pattern(name, expr, replacement)
        with self._lock:
            self._patterns.append(compiled)

    def redact(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            patterns = list(self._patterns)
        for pattern in patterns:
            text = pattern.regex.sub(pattern.replacement, text)
        return text
