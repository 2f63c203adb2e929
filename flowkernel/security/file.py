"""Filesystem access policy for the built-in file tool."""
from __future__ import annotations

import os
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from flowkernel.errors import SecurityBlockedError, ValidationError
from flowkernel.logging import get_logger

logger = get_logger(__name__)

ACTION_READ = "read"
ACTION_WRITE = "write"

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

# Basename fragments that mark a file as sensitive (owner-only permissions)
SENSITIVE_NAME_PATTERNS = (
    "config", "settings", "conf", ".cfg", ".ini", "secret", "credential",
    "password", "auth", "key", ".pem", ".p12", ".jks", "private", ".env",
    "token", "bearer", "api_key",
)


def _expand_home(paths: List[str]) -> List[str]:
    return [os.path.expanduser(p) if p.startswith("~") else p for p in paths]


def _within(path: str, root: str) -> bool:
    try:
        rel = os.path.relpath(path, root)
    except ValueError:
        return False
    if os.path.isabs(rel):
        return False
    return rel != ".." and not rel.startswith(".." + os.sep)


def is_sensitive_name(path: str | Path) -> bool:
    base = os.path.basename(str(path)).lower()
    return any(pattern in base for pattern in SENSITIVE_NAME_PATTERNS)


def determine_permissions(path: str | Path) -> Tuple[int, int]:
    """Return ``(file_mode, dir_mode)`` for a file about to be written."""
    if is_sensitive_name(path):
        return 0o600, 0o700
    return 0o640, 0o750


@dataclass(frozen=True)
class FileSecurityConfig:
    """Read/write allowlists and limits for file access.

    An empty allowlist leaves that action unrestricted. ``denied_paths`` is
    checked first and always wins.
    """

    allowed_read_paths: List[str] = field(default_factory=list)
    allowed_write_paths: List[str] = field(default_factory=list)
    denied_paths: List[str] = field(default_factory=list)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    resolve_symlinks: bool = True
    verbose_errors: bool = False
    atomic_writes: bool = True

    def _resolve(self, path: str) -> str:
        if not self.resolve_symlinks:
            return os.path.abspath(path)
        # realpath resolves every existing component, so a symlink inside an
        # allowed directory is compared by its target
        return os.path.realpath(path)

    def _deny(self, verbose: str) -> SecurityBlockedError:
        if self.verbose_errors:
            return SecurityBlockedError(verbose)
        return SecurityBlockedError("file access denied")

    def validate_path(self, path: str, action: str) -> str:
        """Return the resolved absolute path or raise ``SecurityBlockedError``."""
        if not path:
            raise ValidationError("path cannot be empty")
        if os.path.normpath(path) != path:
            raise SecurityBlockedError("invalid path: directory traversal detected")

        resolved = self._resolve(os.path.abspath(path))

        for denied in _expand_home(self.denied_paths):
            if _within(resolved, self._resolve(os.path.abspath(denied))):
                logger.warning("file_access_denied", reason="denied_path", action=action)
                raise self._deny(f"path explicitly denied: {path}")

        if action == ACTION_READ:
            allowlist = self.allowed_read_paths
        elif action == ACTION_WRITE:
            allowlist = self.allowed_write_paths
        else:
            raise ValidationError(f"unknown action for file access: {action}")

        if not allowlist:
            return resolved

        for allowed in _expand_home(allowlist):
            if _within(resolved, self._resolve(os.path.abspath(allowed))):
                return resolved

        logger.warning("file_access_denied", reason="not_in_allowlist", action=action)
        raise self._deny(f"path not in allowlist: {path}")

    def write_file_atomic(self, path: str, content: bytes, mode: int) -> None:
        """Write via a temp file in the target directory, then rename over it."""
        target = self.validate_path(path, ACTION_WRITE)
        if self.max_file_size > 0 and len(content) > self.max_file_size:
            raise ValidationError(
                f"content size ({len(content)} bytes) exceeds maximum allowed ({self.max_file_size} bytes)"
            )

        directory = os.path.dirname(target)
        fd, tmp_path = tempfile.mkstemp(prefix=".flowkernel-tmp-", dir=directory)
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("file_written", path=target, permissions=oct(mode), size=len(content))


def check_config_permissions(path: str | Path) -> List[str]:
    """Warn about world-readable or writable config files and directories."""
    warnings: List[str] = []
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return warnings
    except OSError as exc:
        return [f"unable to check permissions for {path}: {exc}"]

    perm = stat.S_IMODE(info.st_mode)
    if stat.S_ISDIR(info.st_mode):
        if perm & 0o004:
            warnings.append(f"directory {path} is world-readable (permissions: {perm:o}), recommend chmod 0700 or 0750")
        if perm & 0o002:
            warnings.append(f"directory {path} is world-writable (permissions: {perm:o}), recommend chmod 0700 or 0750")
        if perm & 0o020:
            warnings.append(f"directory {path} is group-writable (permissions: {perm:o}), recommend chmod 0700")
    else:
        if perm & 0o004:
            warnings.append(f"file {path} is world-readable (permissions: {perm:o}), recommend chmod 0600 or 0640")
        if perm & 0o002:
            warnings.append(f"file {path} is world-writable (permissions: {perm:o}), recommend chmod 0600 or 0640")
        if perm & 0o020 and is_sensitive_name(path):
            warnings.append(f"sensitive file {path} is group-writable (permissions: {perm:o}), recommend chmod 0600")
    return warnings
