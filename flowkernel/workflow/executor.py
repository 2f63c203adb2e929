"""Step executor: guard conditions, per-type dispatch, timeouts and ``on_error``."""
from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from flowkernel.config import Settings
from flowkernel.errors import (
    ConfigError,
    DeadlineExceededError,
    ExpressionError,
    InternalError,
    SchemaValidationError,
    StepExecutionError,
    ToolExecutionError,
    ValidationError,
    error_code_of,
    find_error,
)
from flowkernel.logging import get_logger, mask_sensitive
from flowkernel.schema.extract import extract_json
from flowkernel.schema.prompt import build_prompt_with_schema
from flowkernel.schema.validator import Validator
from flowkernel.scope import execution_scope
from flowkernel.tools.registry import ToolRegistry
from flowkernel.workflow.context import (
    STATUS_FAILURE,
    STATUS_SKIPPED,
    STATUS_TIMEOUT,
    StepOutput,
    bind,
    bind_inputs,
    evaluate_outputs,
    new_context,
)
from flowkernel.workflow.definition import (
    BUILTIN_TOOL_STEPS,
    Definition,
    ErrorHandlingDefinition,
    StepDefinition,
)
from flowkernel.workflow.expression import evaluate_bool
from flowkernel.workflow.loop import LoopDriver
from flowkernel.workflow.providers import Completion, CompletionOptions, ProviderRegistry, complete
from flowkernel.workflow.subworkflow import SubworkflowLoader
from flowkernel.workflow.template import render, to_text

logger = get_logger(__name__)

MAX_SCHEMA_RESPONSE_CHARS = 500
SKIP_REASON = "condition evaluated to false"
# tool output fields promoted to the step's textual response, in order
RESPONSE_FIELDS = ("text", "result", "content", "body", "stdout")

Handler = Callable[[StepDefinition, Dict[str, Any]], Awaitable[StepOutput]]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def promote_response(outputs: Mapping[str, Any]) -> str:
    for name in RESPONSE_FIELDS:
        value = outputs.get(name)
        if value is not None:
            return to_text(value)
    return ""


def _tool_failure_message(name: str, outputs: Mapping[str, Any]) -> str:
    error = outputs.get("error")
    if error:
        return f"tool {name} failed: {error}"
    if outputs.get("status") == "timeout":
        return f"tool {name} timed out"
    if "exit_code" in outputs:
        return f"tool {name} failed: exit code {outputs['exit_code']}"
    if "status_code" in outputs:
        return f"tool {name} failed: HTTP {outputs['status_code']}"
    return f"tool {name} reported failure"


class StepExecutor:
    """Runs steps of one workflow against a mutable context.

    Re-entrant: the loop driver and sub-workflow steps call back into it.
    A step whose error is not recovered by ``on_error`` raises
    ``StepExecutionError`` after its failure output has been bound.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        providers: Optional[ProviderRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        loader: Optional[SubworkflowLoader] = None,
        definition: Optional[Definition] = None,
        base_dir: Optional[str] = None,
        ancestors: Sequence[str] = (),
    ) -> None:
        self.registry = registry
        self.providers = providers
        self.settings = settings or Settings()
        self.loader = loader
        self.definition = definition
        self.base_dir = base_dir
        self.ancestors: Tuple[str, ...] = tuple(ancestors)
        self._validator = Validator()
        self._loop_driver = LoopDriver(self, max_history_bytes=self.settings.loop_max_history_bytes)
        self._handlers: Dict[str, Handler] = {
            "llm": self._run_llm,
            "tool": self._run_tool,
            "condition": self._run_condition,
            "loop": self._loop_driver.run,
            "workflow": self._run_workflow,
        }
        for name in BUILTIN_TOOL_STEPS:
            self._handlers[name] = self._run_tool

    def child(self, definition: Definition) -> "StepExecutor":
        """Executor for a loaded sub-workflow, sharing tools and providers."""
        ancestors = self.ancestors
        if definition.source_path:
            ancestors = ancestors + (definition.source_path,)
        return StepExecutor(
            self.registry,
            self.providers,
            settings=self.settings,
            loader=self.loader,
            definition=definition,
            base_dir=definition.base_dir,
            ancestors=ancestors,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_steps(
        self, steps: Sequence[StepDefinition], context: Dict[str, Any]
    ) -> Optional[StepOutput]:
        last: Optional[StepOutput] = None
        for step in steps:
            last = await self.execute(step, context)
        return last

    async def execute(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        with execution_scope(step_id=step.id):
            start = time.monotonic()
            logger.debug(
                "step_started",
                step=step.id,
                type=step.type,
                inputs=mask_sensitive(step.inputs or {}),
            )
            try:
                guard_passed = self._check_guard(step, context)
            except ExpressionError as exc:
                return self._fail(step, exc, context, start, attempts=0)
            if not guard_passed:
                logger.debug("step_skipped", step=step.id, condition=step.condition.expression)
                output = StepOutput(
                    step.id,
                    status=STATUS_SKIPPED,
                    data={"content": "", "skipped": True, "reason": SKIP_REASON},
                )
                return self._finish(output, context, start)

            policy = step.on_error or ErrorHandlingDefinition()
            # loops keep their own history; re-running one would restart at iteration 0
            retries = policy.retries() if step.type != "loop" else 0
            attempt = 0
            while True:
                attempt += 1
                try:
                    output = await self._attempt(step, context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if attempt > retries:
                        return await self._recover(step, policy, exc, context, start, attempt)
                    delay_ms = policy.delay_ms(attempt - 1, self.settings.retry_backoff_ms)
                    logger.warning(
                        "step_retry",
                        step=step.id,
                        attempt=attempt,
                        max_retries=retries,
                        backoff_ms=delay_ms,
                        error=str(exc),
                    )
                    await asyncio.sleep(delay_ms / 1000.0)
                    continue
                if attempt > 1:
                    output.metadata["step_attempts"] = attempt
                return self._finish(output, context, start)

    # ------------------------------------------------------------------
    # Outcome handling
    # ------------------------------------------------------------------

    def _check_guard(self, step: StepDefinition, context: Dict[str, Any]) -> bool:
        if step.type == "condition" or step.condition is None or not step.condition.expression:
            return True
        return evaluate_bool(step.condition.expression, context)

    def _timeout_for(self, step: StepDefinition) -> Optional[float]:
        if step.type == "loop":
            return None
        if step.timeout:
            return float(step.timeout)
        if step.type == "llm":
            return self.settings.default_llm_timeout_s
        if step.type == "tool" or step.type in BUILTIN_TOOL_STEPS:
            return self.settings.default_tool_timeout_s
        return None

    async def _attempt(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise ValidationError(f"unsupported step type: {step.type}")
        timeout = self._timeout_for(step)
        if timeout is None:
            return await handler(step, context)
        try:
            return await asyncio.wait_for(handler(step, context), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("step_timeout", step=step.id, timeout_s=timeout)
            raise DeadlineExceededError() from exc

    def _finish(self, output: StepOutput, context: Dict[str, Any], start: float) -> StepOutput:
        output.metadata.setdefault("duration_ms", _elapsed_ms(start))
        loop_state = context.get("loop")
        if isinstance(loop_state, Mapping) and "iteration" in loop_state:
            output.metadata.setdefault("iteration", loop_state["iteration"])
        bind(context, output)
        logger.debug(
            "step_completed",
            step=output.step_id,
            status=output.status,
            duration_ms=output.metadata["duration_ms"],
        )
        return output

    def _failure_output(
        self, step: StepDefinition, exc: BaseException, attempts: int
    ) -> StepOutput:
        partial = exc.output if isinstance(exc, StepExecutionError) else None
        timed_out = find_error(exc, DeadlineExceededError) is not None
        if isinstance(partial, StepOutput) and partial.step_id == step.id:
            output = partial
        else:
            tool_error = find_error(exc, ToolExecutionError)
            output = StepOutput(step.id, data=dict(tool_error.outputs) if tool_error else {})
        output.status = STATUS_TIMEOUT if timed_out else STATUS_FAILURE
        output.error = "deadline exceeded" if timed_out else str(exc)
        output.metadata["error_code"] = error_code_of(exc)
        if attempts > 1:
            output.metadata["step_attempts"] = attempts
        return output

    def _fail(
        self,
        step: StepDefinition,
        exc: BaseException,
        context: Dict[str, Any],
        start: float,
        attempts: int,
    ) -> StepOutput:
        output = self._finish(self._failure_output(step, exc, attempts), context, start)
        if isinstance(exc, StepExecutionError):
            cause, breadcrumb = exc.cause, [step.id, *exc.breadcrumb]
        else:
            cause, breadcrumb = exc, [step.id]
        logger.warning(
            "step_failed",
            step=step.id,
            error=str(cause),
            error_code=error_code_of(cause),
            attempts=attempts,
        )
        raise StepExecutionError(step.id, cause, breadcrumb=breadcrumb, output=output) from exc

    async def _recover(
        self,
        step: StepDefinition,
        policy: ErrorHandlingDefinition,
        exc: BaseException,
        context: Dict[str, Any],
        start: float,
        attempts: int,
    ) -> StepOutput:
        if policy.strategy == "ignore":
            output = self._failure_output(step, exc, attempts)
            output.metadata["ignored"] = True
            logger.info("step_error_ignored", step=step.id, error=str(exc))
            return self._finish(output, context, start)
        if policy.strategy == "fallback" and policy.fallback_step:
            return await self._fallback(step, policy.fallback_step, exc, context, start)
        if policy.strategy == "retry":
            logger.error("step_retries_exhausted", step=step.id, attempts=attempts, error=str(exc))
        return self._fail(step, exc, context, start, attempts)

    async def _fallback(
        self,
        step: StepDefinition,
        target_id: str,
        exc: BaseException,
        context: Dict[str, Any],
        start: float,
    ) -> StepOutput:
        if self.definition is None:
            raise ConfigError(f"fallback step {target_id} cannot be resolved without a workflow")
        target = self.definition.find_step(target_id)
        logger.warning("step_fallback", step=step.id, fallback_step=target.id, error=str(exc))
        result = await self.execute(target, context)
        output = StepOutput(
            step.id,
            status=result.status,
            response=result.response,
            data=result.data,
            error=result.error,
            metadata={
                **result.metadata,
                "fallback_from": step.id,
                "fallback_step": target.id,
                "original_error": str(exc),
            },
        )
        output.metadata["duration_ms"] = _elapsed_ms(start)
        return self._finish(output, context, start)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _run_llm(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        if self.providers is None:
            raise ConfigError("LLM provider not configured for workflow executor")
        prompt = to_text(render(step.prompt, context))
        options = CompletionOptions(
            model=step.model,
            system=to_text(render(step.system, context)) if step.system else "",
            max_tokens=step.max_tokens,
            temperature=step.temperature,
        )
        provider, options = self.providers.resolve(step.model, options)

        if not step.output_schema:
            completion = await complete(provider, prompt, options)
            return StepOutput(step.id, response=completion.text, data={}, metadata=self._usage([completion]))

        schema = step.output_schema
        max_attempts = self.settings.llm_schema_max_attempts
        completions: List[Completion] = []
        last_error: Optional[ValidationError] = None
        for attempt in range(max_attempts):
            completion = await complete(
                provider, build_prompt_with_schema(prompt, schema, attempt), options
            )
            completions.append(completion)
            try:
                parsed = extract_json(completion.text)
                self._validator.validate(schema, parsed)
            except ValidationError as exc:
                last_error = exc
                logger.info(
                    "llm_schema_mismatch",
                    step=step.id,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    error=exc.message,
                )
                continue
            metadata = self._usage(completions)
            metadata["attempts"] = attempt + 1
            return StepOutput(step.id, response=completion.text, data=parsed, metadata=metadata)

        response = completions[-1].text[:MAX_SCHEMA_RESPONSE_CHARS] if completions else ""
        reason = last_error.message if last_error is not None else "no response"
        raise SchemaValidationError(
            f"LLM output did not match the schema after {max_attempts} attempts: {reason}",
            path=getattr(last_error, "path", "$"),
            keyword=getattr(last_error, "keyword", ""),
            response=response,
            attempts=max_attempts,
            detail={"response": response, "attempts": max_attempts},
        )

    @staticmethod
    def _usage(completions: Sequence[Completion]) -> Dict[str, Any]:
        usage: Dict[str, Any] = {
            "tokens_used": sum(c.tokens_used for c in completions),
            "cost": sum(c.cost for c in completions),
        }
        request_id = completions[-1].request_id if completions else None
        if request_id:
            usage["request_id"] = request_id
        return usage

    async def _run_tool(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        name = step.tool_name()
        inputs = render(step.inputs or {}, context)
        if not isinstance(inputs, dict):
            raise ValidationError(f"inputs of step {step.id} must render to a mapping")
        logger.debug("step_tool_call", step=step.id, tool=name, inputs=mask_sensitive(inputs))
        outputs = await self.registry.execute(name, inputs)
        if not isinstance(outputs, Mapping):
            raise InternalError(f"tool {name} returned {type(outputs).__name__}, expected a mapping")
        outputs = dict(outputs)
        if outputs.get("success") is False:
            raise ToolExecutionError(_tool_failure_message(name, outputs), outputs=outputs)
        return StepOutput(step.id, response=promote_response(outputs), data=outputs)

    async def _run_condition(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        if step.condition is None or not step.condition.expression:
            raise ValidationError(f"condition step {step.id} has no expression")
        taken = evaluate_bool(step.condition.expression, context)
        branch_name = "then" if taken else "else"
        branch = step.condition.then if taken else step.condition.else_
        logger.debug("condition_evaluated", step=step.id, result=taken, branch=branch_name)
        last = await self.run_steps(branch, context)
        if last is None:
            return StepOutput(
                step.id,
                status=STATUS_SKIPPED,
                data={"content": "", "skipped": True, "reason": f"{branch_name} branch is empty"},
                metadata={"branch": branch_name},
            )
        return StepOutput(
            step.id,
            status=last.status,
            response=last.response,
            data=last.data,
            error=last.error,
            metadata={"branch": branch_name, "last_step": last.step_id},
        )

    async def _run_workflow(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        if self.loader is None:
            raise ConfigError("sub-workflow loader not configured for workflow executor")
        if not self.base_dir:
            raise ConfigError(
                "workflow directory not configured for sub-workflow execution",
                suggestion="Run the parent workflow from a file or pass base_dir.",
            )
        definition = self.loader.load(self.base_dir, step.workflow, self.ancestors)
        inputs = render(step.inputs or {}, context)
        if not isinstance(inputs, dict):
            raise ValidationError(f"inputs of step {step.id} must render to a mapping")
        child_context = new_context(bind_inputs(definition, inputs, strict=False))

        logger.info(
            "subworkflow_started",
            step=step.id,
            workflow=definition.name,
            path=step.workflow,
            breadcrumb=f"{step.id} → {definition.name}",
        )
        try:
            await self.child(definition).run_steps(definition.steps, child_context)
        except StepExecutionError as exc:
            raise StepExecutionError(
                exc.step_id,
                exc.cause,
                breadcrumb=[definition.name, *exc.breadcrumb],
            ) from exc
        outputs = evaluate_outputs(definition, child_context)
        logger.info("subworkflow_completed", step=step.id, workflow=definition.name)
        return StepOutput(
            step.id,
            response=promote_response(outputs),
            data=outputs,
            metadata={"workflow": definition.name},
        )


__all__ = [
    "StepExecutor",
    "StepOutput",
    "promote_response",
]
