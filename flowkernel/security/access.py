"""Workflow-level access rules, checked before each tool call.

A workflow's ``security:`` block lists filesystem globs, network patterns and
shell command patterns. Deny rules win; an empty allow list leaves that kind of
resource unrestricted.
"""
from __future__ import annotations

import fnmatch
import ipaddress
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from flowkernel.errors import SecurityBlockedError
from flowkernel.logging import get_logger
from flowkernel.scope import current_step_id, current_workflow_id
from flowkernel.tools.base import Tool
from flowkernel.tools.registry import Interceptor

logger = get_logger(__name__)

_GLOB_CHARS = ("*", "?", "[")


@dataclass
class FilesystemAccess:
    read: List[str] = field(default_factory=list)
    write: List[str] = field(default_factory=list)
    deny: List[str] = field(default_factory=list)


@dataclass
class NetworkAccess:
    allow: List[str] = field(default_factory=list)
    deny: List[str] = field(default_factory=list)


@dataclass
class ShellAccess:
    commands: List[str] = field(default_factory=list)
    deny_patterns: List[str] = field(default_factory=list)


@dataclass
class AccessConfig:
    filesystem: FilesystemAccess = field(default_factory=FilesystemAccess)
    network: NetworkAccess = field(default_factory=NetworkAccess)
    shell: ShellAccess = field(default_factory=ShellAccess)


@dataclass
class AccessResult:
    allowed: bool
    reason: str
    denied_by: str = ""


def command_base(command: str) -> str:
    parts = command.strip().split()
    if not parts:
        return ""
    return os.path.basename(parts[0]) if "/" in parts[0] else parts[0]


def _split_host_port(pattern: str) -> Tuple[str, int]:
    host, sep, port = pattern.rpartition(":")
    if not sep or not port.isdigit():
        return pattern, 0
    return host, int(port)


class AccessChecker:
    def __init__(
        self,
        config: Optional[AccessConfig] = None,
        *,
        cwd: Optional[str] = None,
        temp_dir: Optional[str] = None,
    ) -> None:
        self.config = config or AccessConfig()
        self.cwd = cwd or os.getcwd()
        self.temp_dir = temp_dir or tempfile.gettempdir()
        self._read = [self._resolve_pattern(p) for p in self.config.filesystem.read]
        self._write = [self._resolve_pattern(p) for p in self.config.filesystem.write]
        self._deny = [self._resolve_pattern(p) for p in self.config.filesystem.deny]

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def _expand(self, path: str) -> str:
        path = path.replace("$cwd", self.cwd).replace("$temp", self.temp_dir)
        if path.startswith("~"):
            path = os.path.expanduser(path)
        return path

    def _resolve_pattern(self, pattern: str) -> str:
        expanded = self._expand(pattern)
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.cwd, expanded)
        cut = min((expanded.find(c) for c in _GLOB_CHARS if c in expanded), default=-1)
        if cut < 0:
            return os.path.normpath(expanded)
        sep = expanded.rfind(os.sep, 0, cut)
        if sep <= 0:
            return expanded
        return os.path.normpath(expanded[:sep]) + expanded[sep:]

    def canonicalize(self, path: str) -> str:
        expanded = self._expand(path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.cwd, expanded)
        return os.path.realpath(expanded)

    @staticmethod
    def _matches(path: str, patterns: List[str]) -> bool:
        for pattern in patterns:
            if any(c in pattern for c in _GLOB_CHARS):
                if fnmatch.fnmatchcase(path, pattern):
                    return True
            elif path == pattern or path.startswith(pattern.rstrip(os.sep) + os.sep):
                return True
        return False

    def _check_path(self, path: str, allowed: List[str], action: str) -> AccessResult:
        canonical = self.canonicalize(path)
        if self._matches(canonical, self._deny):
            return AccessResult(False, "path matches deny pattern", "filesystem.deny")
        if not allowed:
            return AccessResult(True, f"no filesystem {action} restrictions declared")
        if self._matches(canonical, allowed):
            return AccessResult(True, f"path matches allowed {action} pattern")
        return AccessResult(False, f"path does not match any allowed {action} pattern", "no_match")

    def check_filesystem_read(self, path: str) -> AccessResult:
        return self._check_path(path, self._read, "read")

    def check_filesystem_write(self, path: str) -> AccessResult:
        return self._check_path(path, self._write, "write")

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    @staticmethod
    def _matches_network(host: str, port: int, pattern: str) -> bool:
        pattern = pattern.strip().lower()
        if "/" in pattern:
            try:
                return ipaddress.ip_address(host) in ipaddress.ip_network(pattern, strict=False)
            except ValueError:
                return False
        pattern_host, pattern_port = _split_host_port(pattern)
        if pattern_port and pattern_port != port:
            return False
        if pattern_host == host:
            return True
        return pattern_host.startswith("*.") and host.endswith(pattern_host[1:])

    def check_network(self, host: str, port: int) -> AccessResult:
        host = host.strip().lower()
        for pattern in self.config.network.deny:
            if self._matches_network(host, port, pattern):
                return AccessResult(False, "host matches deny pattern", "network.deny")
        if not self.config.network.allow:
            return AccessResult(True, "no network restrictions declared")
        for pattern in self.config.network.allow:
            if self._matches_network(host, port, pattern):
                return AccessResult(True, "host matches allowed pattern")
        return AccessResult(False, f"host {host}:{port} not in allowed list", "no_match")

    # ------------------------------------------------------------------
    # Shell
    # ------------------------------------------------------------------

    @staticmethod
    def _matches_shell(command: str, pattern: str) -> bool:
        pattern = pattern.strip()
        command = command.strip()
        base = command_base(pattern)
        if pattern == base:
            return command_base(command) == base
        if command.startswith(pattern):
            return len(command) == len(pattern) or command[len(pattern)] == " "
        return False

    def check_shell(self, command: str) -> AccessResult:
        command = command.strip()
        if not command:
            return AccessResult(False, "empty command", "invalid_command")
        for pattern in self.config.shell.deny_patterns:
            if self._matches_shell(command, pattern):
                return AccessResult(False, "command matches deny pattern", "shell.deny_patterns")
        if not self.config.shell.commands:
            return AccessResult(True, "no shell restrictions declared")
        for pattern in self.config.shell.commands:
            if self._matches_shell(command, pattern):
                return AccessResult(True, "command matches allowed pattern")
        return AccessResult(False, f"command '{command_base(command)}' not in allowed list", "no_match")


class AccessInterceptor(Interceptor):
    """Applies an ``AccessChecker`` to the built-in file, http and shell tools."""

    def __init__(self, checker: AccessChecker) -> None:
        self.checker = checker

    def _check(self, tool: Tool, inputs: Dict[str, Any]) -> Optional[AccessResult]:
        if tool.name == "file":
            path = inputs.get("path")
            if not isinstance(path, str):
                return None
            if inputs.get("operation") == "write":
                return self.checker.check_filesystem_write(path)
            return self.checker.check_filesystem_read(path)
        if tool.name == "http":
            url = inputs.get("url")
            if not isinstance(url, str):
                return None
            try:
                parts = urlsplit(url)
                port = parts.port or (443 if parts.scheme == "https" else 80)
            except ValueError:
                return AccessResult(False, "invalid URL", "invalid_url")
            return self.checker.check_network(parts.hostname or "", port)
        if tool.name == "shell":
            command = inputs.get("command")
            if not isinstance(command, str):
                return None
            args = [a for a in inputs.get("args") or [] if isinstance(a, str)]
            return self.checker.check_shell(" ".join([command, *args]))
        return None

    def intercept(self, tool: Tool, inputs: Dict[str, Any]) -> None:
        result = self._check(tool, inputs)
        if result is None or result.allowed:
            return
        logger.warning(
            "security_access_denied",
            tool=tool.name,
            reason=result.reason,
            denied_by=result.denied_by,
            workflow_id=current_workflow_id(),
            step_id=current_step_id(),
        )
        raise SecurityBlockedError(f"access denied: {result.reason}")

    def post_execute(self, tool: Tool, outputs: Optional[Dict[str, Any]], error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("tool_execution_failed", tool=tool.name, error=str(error))
