"""Step outputs and the execution context shared by expressions and templates."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from flowkernel.errors import SchemaValidationError, ValidationError
from flowkernel.schema.validator import Validator
from flowkernel.workflow.definition import Definition
from flowkernel.workflow.expression import evaluate
from flowkernel.workflow.template import render_string

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_SKIPPED = "skipped"
STATUS_TIMEOUT = "timeout"

_INPUT_TYPES = ("string", "number", "integer", "boolean", "object", "array")

_validator = Validator()


@dataclass
class StepOutput:
    """Outcome of one step, bound into the context under ``steps.<id>``."""

    step_id: str
    status: str = STATUS_SUCCESS
    response: str = ""
    data: Any = field(default_factory=dict)
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_SKIPPED)

    def to_context(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "response": self.response,
            "data": self.data,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


def new_context(inputs: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    return {"inputs": dict(inputs or {}), "steps": {}}


def bind(context: Dict[str, Any], output: StepOutput) -> None:
    context.setdefault("steps", {})[output.step_id] = output.to_context()


def bind_inputs(
    definition: Definition, provided: Mapping[str, Any], *, strict: bool = True
) -> Dict[str, Any]:
    """Apply defaults and check declared inputs.

    With ``strict`` set, names the workflow does not declare are rejected;
    otherwise they are dropped so a sub-workflow only sees what it declares.
    """
    declared = {item.name: item for item in definition.inputs}
    if strict:
        unknown = sorted(name for name in provided if name not in declared)
        if unknown:
            raise ValidationError(
                f"unknown input for workflow {definition.name}: {', '.join(unknown)}"
            )

    bound: Dict[str, Any] = {}
    for name, item_def in declared.items():
        if name in provided:
            value = provided[name]
        elif item_def.default is not None:
            value = item_def.default
        elif item_def.required:
            raise ValidationError(
                f"required input {name!r} not provided to workflow {definition.name}",
                suggestion="Pass the input when running the workflow.",
            )
        else:
            continue

        schema: Dict[str, Any] = {}
        if item_def.type in _INPUT_TYPES:
            schema["type"] = item_def.type
        if item_def.enum:
            schema["enum"] = list(item_def.enum)
        try:
            _validator.validate(schema, value)
        except SchemaValidationError as exc:
            raise ValidationError(f"input {name}: {exc.message}") from exc
        bound[name] = value
    return bound


def evaluate_outputs(definition: Definition, context: Mapping[str, Any]) -> Dict[str, Any]:
    """Evaluate declared outputs; without declarations every step output is returned."""
    if not definition.outputs:
        return dict(context.get("steps") or {})
    outputs: Dict[str, Any] = {}
    for item in definition.outputs:
        if "{{" in item.value:
            outputs[item.name] = render_string(item.value, context)
        else:
            outputs[item.name] = evaluate(item.value, context)
    return outputs
