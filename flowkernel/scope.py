"""Execution scope shared by the executor, tool registry and tools.

Identifiers of the running workflow and step travel in context variables so
tools and event emitters can read them without extra parameters.
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

workflow_id_var: ContextVar[Optional[str]] = ContextVar("workflow_id", default=None)
step_id_var: ContextVar[Optional[str]] = ContextVar("step_id", default=None)


def current_workflow_id() -> str:
    return workflow_id_var.get() or ""


def current_step_id() -> str:
    return step_id_var.get() or ""


@contextmanager
def execution_scope(
    *, workflow_id: Optional[str] = None, step_id: Optional[str] = None
) -> Iterator[None]:
    """Bind workflow/step identifiers for the duration of the block."""

    tokens = []
    if workflow_id is not None:
        tokens.append((workflow_id_var, workflow_id_var.set(workflow_id)))
    if step_id is not None:
        tokens.append((step_id_var, step_id_var.set(step_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
