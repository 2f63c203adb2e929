from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from flowkernel.errors import SecurityBlockedError
from flowkernel.logging import get_logger

logger = get_logger(__name__)

BLOCKED_MESSAGE = "command execution blocked by policy"

DEFAULT_BLOCKED_METACHARACTERS = (";", "|", "&", "$", "`", ">", "<", "\n", "(", ")")

SAFE_ENV_VARS = (
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM", "TMPDIR", "TZ",
    "LANG", "LANGUAGE", "LC_ALL", "LC_CTYPE", "LC_MESSAGES",
)


@dataclass(frozen=True)
class ShellSecurityConfig:
    """Command allowlist and execution limits for the shell tool.

    An empty ``allowed_commands`` list permits any command that passes the
    path checks.
    """

    allowed_commands: List[str] = field(default_factory=list)
    blocked_metacharacters: Tuple[str, ...] = DEFAULT_BLOCKED_METACHARACTERS
    max_output_size: int = 1024 * 1024
    sanitize_env: bool = True
    env_allowlist: List[str] = field(default_factory=list)
    allow_shell_expand: bool = False

    def _block(self, reason: str, command: str) -> SecurityBlockedError:
        logger.warning("shell_command_blocked", reason=reason, command=command)
        return SecurityBlockedError(BLOCKED_MESSAGE)

    def validate_command(self, command: str) -> None:
        if not command or not command.strip():
            raise self._block("invalid_command", command)

        normalized = command.replace("\\", "/")
        if normalized.startswith("./") or normalized.startswith("../"):
            raise self._block("path_traversal", command)
        if ".." in normalized.split("/"):
            raise self._block("path_traversal", command)

        base = os.path.basename(normalized.rstrip("/")) if "/" in normalized else normalized
        if base in ("", ".", ".."):
            raise self._block("invalid_command", command)

        if not self.allow_shell_expand and any(ch in command for ch in self.blocked_metacharacters):
            raise self._block("metacharacter", command)

        if not self.allowed_commands:
            return

        if command in self.allowed_commands:
            return
        if "/" not in normalized:
            for allowed in self.allowed_commands:
                if os.path.basename(allowed) == command:
                    return
        raise self._block("not_in_allowlist", command)

    def validate_args(self, args: Sequence[str]) -> None:
        if self.allow_shell_expand:
            return
        for arg in args:
            if any(ch in arg for ch in self.blocked_metacharacters):
                logger.warning("shell_command_blocked", reason="metacharacter_in_args")
                raise SecurityBlockedError(BLOCKED_MESSAGE)

    def build_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        source = dict(os.environ if base is None else base)
        if not self.sanitize_env:
            return source
        keep = set(SAFE_ENV_VARS) | set(self.env_allowlist)
        return {key: value for key, value in source.items() if key in keep}
