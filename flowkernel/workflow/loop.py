"""Bounded do-while loops over nested steps."""
from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from flowkernel.errors import StepExecutionError, ValidationError
from flowkernel.logging import MASK_SENTINEL, get_logger
from flowkernel.workflow.context import STATUS_FAILURE, STATUS_SUCCESS, StepOutput
from flowkernel.workflow.definition import MAX_LOOP_ITERATIONS, StepDefinition
from flowkernel.workflow.expression import evaluate_bool

if TYPE_CHECKING:
    from flowkernel.workflow.executor import StepExecutor

logger = get_logger(__name__)

TERMINATED_BY_CONDITION = "condition"
TERMINATED_BY_MAX_ITERATIONS = "max_iterations"
TERMINATED_BY_TIMEOUT = "timeout"
TERMINATED_BY_ERROR = "error"

DEFAULT_MAX_HISTORY_BYTES = 1024 * 1024

HISTORY_MASKED_KEYS = frozenset({"api_key", "apikey", "token", "secret", "password", "authorization"})


def mask_history_value(value: Any, _depth: int = 0) -> Any:
    """Copy ``value`` with sensitive keys masked; the live context is untouched."""
    if _depth > 20 or not isinstance(value, Mapping):
        return value
    masked: Dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(key, str) and key.lower() in HISTORY_MASKED_KEYS:
            masked[key] = MASK_SENTINEL
        else:
            masked[key] = mask_history_value(item, _depth + 1)
    return masked


def history_size(history: List[Dict[str, Any]]) -> int:
    return len(json.dumps(history, default=str))


class LoopDriver:
    def __init__(self, executor: "StepExecutor", *, max_history_bytes: int = DEFAULT_MAX_HISTORY_BYTES) -> None:
        self.executor = executor
        self.max_history_bytes = max_history_bytes

    @staticmethod
    def validate(step: StepDefinition) -> None:
        if not step.steps:
            raise ValidationError(
                f"loop step {step.id} has no nested steps",
                suggestion="Add at least one nested step to execute in the loop.",
            )
        if step.max_iterations is None or step.max_iterations < 1:
            raise ValidationError(
                f"loop step {step.id} requires max_iterations >= 1",
                suggestion=f"Set max_iterations to a value between 1 and {MAX_LOOP_ITERATIONS}.",
            )
        if not step.until:
            raise ValidationError(
                f"loop step {step.id} requires an until expression",
                suggestion="Add an until expression to define when the loop terminates.",
            )

    def _truncate(self, history: List[Dict[str, Any]], step_id: str) -> bool:
        if self.max_history_bytes <= 0:
            return False
        truncated = False
        while len(history) > 1 and history_size(history) > self.max_history_bytes:
            history.pop(0)
            truncated = True
        if truncated:
            logger.info("loop_history_truncated", step=step_id, retained_iterations=len(history))
        return truncated

    async def run(self, step: StepDefinition, context: Dict[str, Any]) -> StepOutput:
        self.validate(step)
        max_iterations = int(step.max_iterations or 0)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + step.timeout if step.timeout else None
        start = time.monotonic()

        history: List[Dict[str, Any]] = []
        step_outputs: Dict[str, Any] = {}
        history_truncated = False
        terminated_by = TERMINATED_BY_MAX_ITERATIONS
        iteration_count = 0
        last_response = ""
        failure: Optional[StepExecutionError] = None

        logger.debug(
            "loop_started",
            step=step.id,
            max_iterations=max_iterations,
            until=step.until,
            nested_steps=len(step.steps),
        )

        for iteration in range(max_iterations):
            iteration_start = time.monotonic()
            iter_context = dict(context)
            iter_context["steps"] = dict(context.get("steps") or {})
            iter_context["loop"] = {
                "iteration": iteration,
                "max_iterations": max_iterations,
                "history": list(history),
            }
            record_steps: Dict[str, Any] = {}
            record: Dict[str, Any] = {"iteration": iteration, "steps": record_steps}
            iteration_count = iteration + 1

            for nested in step.steps:
                try:
                    if deadline is None:
                        output = await self.executor.execute(nested, iter_context)
                    else:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            raise asyncio.TimeoutError()
                        output = await asyncio.wait_for(
                            self.executor.execute(nested, iter_context), remaining
                        )
                except asyncio.TimeoutError:
                    terminated_by = TERMINATED_BY_TIMEOUT
                    break
                except StepExecutionError as exc:
                    failure = exc
                    terminated_by = TERMINATED_BY_ERROR
                    record_steps[nested.id] = mask_history_value(
                        iter_context["steps"].get(nested.id)
                        or {"status": STATUS_FAILURE, "error": str(exc)}
                    )
                    break
                record_steps[nested.id] = mask_history_value(output.to_context())
                step_outputs[nested.id] = output.to_context()
                last_response = output.response

            record["duration_ms"] = int((time.monotonic() - iteration_start) * 1000)
            if terminated_by in (TERMINATED_BY_TIMEOUT, TERMINATED_BY_ERROR):
                record["terminated_by"] = terminated_by
            history.append(record)
            history_truncated = self._truncate(history, step.id) or history_truncated
            if terminated_by in (TERMINATED_BY_TIMEOUT, TERMINATED_BY_ERROR):
                break

            iter_context["loop"]["history"] = list(history)
            met = evaluate_bool(step.until, iter_context)
            logger.debug("loop_until_evaluated", step=step.id, iteration=iteration, result=met)
            if met:
                terminated_by = TERMINATED_BY_CONDITION
                record["terminated_by"] = terminated_by
                break
            if deadline is not None and loop.time() >= deadline and iteration + 1 < max_iterations:
                terminated_by = TERMINATED_BY_TIMEOUT
                record["terminated_by"] = terminated_by
                break

        data: Dict[str, Any] = {
            "iteration_count": iteration_count,
            "terminated_by": terminated_by,
            "history": history,
            "step_outputs": step_outputs,
        }
        if history_truncated:
            data["history_truncated"] = True
            data["retained_iterations"] = len(history)
            data["total_iterations"] = iteration_count

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "loop_terminated",
            step=step.id,
            terminated_by=terminated_by,
            iterations=iteration_count,
            duration_ms=duration_ms,
        )
        output = StepOutput(
            step.id,
            status=STATUS_FAILURE if failure is not None else STATUS_SUCCESS,
            response=last_response,
            data=data,
            metadata={"iterations": iteration_count, "terminated_by": terminated_by},
        )
        if failure is not None:
            output.error = str(failure)
            raise StepExecutionError(
                failure.step_id, failure.cause, breadcrumb=failure.breadcrumb, output=output
            ) from failure
        return output
