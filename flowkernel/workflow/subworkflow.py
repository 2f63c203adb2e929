"""Loading of nested workflow files with path checks, cycle detection and caching."""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from flowkernel.errors import ConfigError, SecurityBlockedError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.workflow.definition import Definition, load_definition

logger = get_logger(__name__)

MAX_NESTING_DEPTH = 5


@dataclass
class _CacheEntry:
    definition: Definition
    mtime_ns: int


def validate_workflow_path(path: str) -> None:
    if not path:
        raise ValidationError("workflow path cannot be empty")
    if os.path.isabs(path):
        raise ValidationError(f"workflow path must be relative: {path}")
    if ".." in path.replace("\\", "/").split("/"):
        raise ValidationError(f"workflow path must not contain '..': {path}")


def _format_stack(stack: Sequence[str]) -> str:
    return " -> ".join(os.path.basename(item) for item in stack)


def _check_no_symlinks(base_dir: str, rel_path: str) -> None:
    current = base_dir
    for component in os.path.normpath(rel_path).split(os.sep):
        if component in ("", "."):
            continue
        current = os.path.join(current, component)
        if os.path.islink(current):
            raise SecurityBlockedError(f"workflow path contains symlink: {current}")


class SubworkflowLoader:
    """Loads workflow files relative to their parent's directory.

    ``stack`` holds the absolute paths of the workflows currently being
    loaded or executed, outermost first; a path already on it is a cycle.
    Every nested ``workflow`` step is loaded eagerly, so a cycle anywhere
    below a file is reported before any of its steps run.
    """

    def __init__(self, *, max_depth: int = MAX_NESTING_DEPTH) -> None:
        self.max_depth = max_depth
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.RLock()

    def load(self, parent_dir: str, path: str, stack: Sequence[str] = ()) -> Definition:
        validate_workflow_path(path)
        abs_parent = os.path.abspath(parent_dir)
        abs_path = os.path.normpath(os.path.join(abs_parent, path))
        if os.path.commonpath([abs_parent, abs_path]) != abs_parent:
            raise SecurityBlockedError(f"workflow path escapes parent directory: {path}")
        _check_no_symlinks(abs_parent, os.path.relpath(abs_path, abs_parent))
        return self._load(abs_path, tuple(stack))

    def load_root(self, path: str) -> Definition:
        """Load a top-level workflow file given by any path."""
        return self._load(os.path.abspath(path), ())

    def preload(self, definition: Definition, base_dir: str, stack: Sequence[str] = ()) -> None:
        """Load every sub-workflow ``definition`` references, checking for cycles."""
        for step in definition.iter_steps():
            if step.type == "workflow" and step.workflow:
                self.load(base_dir, step.workflow, stack)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _load(self, abs_path: str, stack: tuple) -> Definition:
        if len(stack) > self.max_depth:
            raise ConfigError(
                f"maximum nesting depth ({self.max_depth}) exceeded: {os.path.basename(abs_path)}"
            )
        if abs_path in stack:
            cycle = _format_stack([*stack, abs_path])
            logger.warning("subworkflow_recursion_detected", cycle=cycle)
            raise ConfigError(f"recursion detected: {cycle}")

        cached = self._from_cache(abs_path)
        if cached is not None:
            return cached

        definition = load_definition(abs_path)
        self.preload(definition, os.path.dirname(abs_path), (*stack, abs_path))
        self._store(abs_path, definition)
        logger.debug("subworkflow_loaded", path=abs_path, workflow=definition.name)
        return definition

    def _from_cache(self, abs_path: str) -> Optional[Definition]:
        with self._lock:
            entry = self._cache.get(abs_path)
        if entry is None:
            return None
        try:
            mtime_ns = os.stat(abs_path).st_mtime_ns
        except OSError:
            mtime_ns = None
        if mtime_ns != entry.mtime_ns:
            with self._lock:
                self._cache.pop(abs_path, None)
            return None
        return entry.definition

    def _store(self, abs_path: str, definition: Definition) -> None:
        try:
            mtime_ns = os.stat(abs_path).st_mtime_ns
        except OSError:
            return
        with self._lock:
            self._cache[abs_path] = _CacheEntry(definition, mtime_ns)
