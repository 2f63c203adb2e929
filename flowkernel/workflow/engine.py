"""Runs a whole workflow definition: inputs, steps, declared outputs."""
from __future__ import annotations

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from flowkernel.config import Settings
from flowkernel.errors import (
    DeadlineExceededError,
    FlowError,
    StepExecutionError,
    error_code_of,
    find_error,
)
from flowkernel.logging import get_logger, set_run_id
from flowkernel.scope import execution_scope
from flowkernel.security.access import AccessChecker, AccessInterceptor
from flowkernel.security.http import Resolver
from flowkernel.tools.builtin import register_builtin_tools
from flowkernel.tools.registry import ToolRegistry
from flowkernel.workflow.context import (
    STATUS_FAILURE,
    STATUS_SUCCESS,
    STATUS_TIMEOUT,
    bind_inputs,
    evaluate_outputs,
    new_context,
)
from flowkernel.workflow.definition import Definition
from flowkernel.workflow.executor import StepExecutor
from flowkernel.workflow.providers import ProviderRegistry
from flowkernel.workflow.subworkflow import SubworkflowLoader

logger = get_logger(__name__)


@dataclass
class WorkflowResult:
    status: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: int = 0
    run_id: str = ""
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


class WorkflowEngine:
    """Executes workflow definitions against a tool registry and LLM providers."""

    DEFAULT_TOOL_WORKERS = 8
    MAX_TOOL_WORKERS = 16

    def __init__(
        self,
        providers: Optional[ProviderRegistry] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        settings: Optional[Settings] = None,
        loader: Optional[SubworkflowLoader] = None,
        tool_workers: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.providers = providers or ProviderRegistry()
        self.loader = loader or SubworkflowLoader()
        workers = min(max(1, tool_workers or self.settings.tool_workers), self.MAX_TOOL_WORKERS)
        self._tool_executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
        self._executor_shutdown = False
        if registry is None:
            registry = register_builtin_tools(
                ToolRegistry(),
                self.settings,
                executor=self._tool_executor,
                transport=transport,
                resolver=resolver,
            )
        self.registry = registry

    def shutdown(self, wait: bool = True) -> None:
        """Release the thread pool used for blocking tool work."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._tool_executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("workflow_engine_shutdown", wait=wait)

    def _registry_for(self, definition: Definition, base_dir: Optional[str]) -> ToolRegistry:
        if definition.security is None:
            return self.registry
        names = self.registry.names()
        if not names:
            return self.registry
        scoped = self.registry.filter(names)
        checker = AccessChecker(definition.security.to_access_config())
        scoped.set_interceptor(AccessInterceptor(checker))
        logger.debug("workflow_access_policy_installed", workflow=definition.name, base_dir=base_dir)
        return scoped

    async def run_file(
        self, path: str, inputs: Optional[Mapping[str, Any]] = None, *, run_id: Optional[str] = None
    ) -> WorkflowResult:
        start = time.monotonic()
        try:
            definition = self.loader.load_root(path)
        except FlowError as exc:
            rid = set_run_id(run_id)
            logger.error("workflow_load_failed", path=path, error=str(exc))
            return WorkflowResult(
                status=STATUS_FAILURE,
                error=exc.user_message(),
                error_code=exc.error_code,
                duration_ms=int((time.monotonic() - start) * 1000),
                run_id=rid,
                exception=exc,
            )
        return await self.run(definition, inputs, run_id=run_id)

    async def run(
        self,
        definition: Definition,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        base_dir: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> WorkflowResult:
        rid = set_run_id(run_id)
        start = time.monotonic()
        base_dir = base_dir or definition.base_dir
        ancestors = (definition.source_path,) if definition.source_path else ()
        context: Dict[str, Any] = new_context()
        outputs: Dict[str, Any] = {}
        timeout = self.settings.default_workflow_timeout_s

        logger.info("workflow_started", workflow=definition.name, steps=len(definition.steps))
        with execution_scope(workflow_id=rid):
            try:
                context = new_context(bind_inputs(definition, inputs or {}, strict=True))
                if base_dir:
                    self.loader.preload(definition, base_dir, ancestors)
                executor = StepExecutor(
                    self._registry_for(definition, base_dir),
                    self.providers,
                    settings=self.settings,
                    loader=self.loader,
                    definition=definition,
                    base_dir=base_dir,
                    ancestors=ancestors,
                )
                await asyncio.wait_for(executor.run_steps(definition.steps, context), timeout)
                outputs = evaluate_outputs(definition, context)
            except asyncio.TimeoutError:
                exc = DeadlineExceededError(f"workflow exceeded its timeout of {timeout:g}s")
                return self._failed(definition, context, exc, start, rid)
            except FlowError as exc:
                return self._failed(definition, context, exc, start, rid)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("workflow_completed", workflow=definition.name, duration_ms=duration_ms)
        return WorkflowResult(
            status=STATUS_SUCCESS,
            outputs=outputs,
            steps=dict(context.get("steps") or {}),
            duration_ms=duration_ms,
            run_id=rid,
        )

    def _failed(
        self,
        definition: Definition,
        context: Mapping[str, Any],
        exc: FlowError,
        start: float,
        run_id: str,
    ) -> WorkflowResult:
        timed_out = find_error(exc, DeadlineExceededError) is not None
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            "workflow_failed",
            workflow=definition.name,
            error=str(exc),
            error_code=error_code_of(exc),
            failed_step=exc.step_id if isinstance(exc, StepExecutionError) else None,
            duration_ms=duration_ms,
        )
        return WorkflowResult(
            status=STATUS_TIMEOUT if timed_out else STATUS_FAILURE,
            steps=dict(context.get("steps") or {}),
            error=exc.user_message(),
            error_code=error_code_of(exc),
            duration_ms=duration_ms,
            run_id=run_id,
            exception=exc,
        )
