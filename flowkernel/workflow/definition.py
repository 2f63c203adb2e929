"""Workflow YAML files: structural schema, pydantic models and semantic checks."""
from __future__ import annotations

import os
from typing import Any, Dict, Iterator, List, Literal, Optional

import yaml
from jsonschema import Draft202012Validator
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from flowkernel.errors import ConfigError, ExpressionError, NotFoundError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.security.access import AccessConfig, FilesystemAccess, NetworkAccess, ShellAccess
from flowkernel.workflow.expression import parse as parse_expression

logger = get_logger(__name__)

STEP_TYPES = ("llm", "tool", "http", "file", "shell", "condition", "loop", "workflow")
BUILTIN_TOOL_STEPS = ("http", "file", "shell")
MODEL_TIERS = ("fast", "balanced", "strategic")
DEFAULT_MODEL_TIER = "balanced"
MAX_LOOP_ITERATIONS = 100
DEFAULT_RETRY_COUNT = 2

StepType = Literal["llm", "tool", "http", "file", "shell", "condition", "loop", "workflow"]

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "version": {"type": ["string", "number"]},
        "inputs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "type": {"type": "string"},
                    "required": {"type": "boolean"},
                    "description": {"type": "string"},
                    "enum": _STRING_LIST,
                },
            },
        },
        "outputs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "value"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "type": {"type": "string"},
                    "value": {"type": "string"},
                    "description": {"type": "string"},
                },
            },
        },
        "security": {
            "type": "object",
            "properties": {
                "filesystem": {
                    "type": "object",
                    "properties": {"read": _STRING_LIST, "write": _STRING_LIST, "deny": _STRING_LIST},
                },
                "network": {
                    "type": "object",
                    "properties": {"allow": _STRING_LIST, "deny": _STRING_LIST},
                },
                "shell": {
                    "type": "object",
                    "properties": {"commands": _STRING_LIST, "deny_patterns": _STRING_LIST},
                },
            },
        },
        "integrations": {"type": "object"},
        "tools": {"type": ["object", "array"]},
        "agents": {"type": "object"},
        "steps": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/step"}},
    },
    "$defs": {
        "step": {
            "type": "object",
            "required": ["id", "type"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "name": {"type": "string"},
                "type": {"enum": list(STEP_TYPES)},
                "inputs": {"type": "object"},
                "model": {"type": "string"},
                "system": {"type": "string"},
                "prompt": {"type": "string"},
                "output_schema": {"type": "object"},
                "tool": {"type": "string"},
                "workflow": {"type": "string"},
                "condition": {
                    "anyOf": [
                        {"type": "string"},
                        {
                            "type": "object",
                            "required": ["expression"],
                            "properties": {
                                "expression": {"type": "string"},
                                "then": {"type": "array", "items": {"$ref": "#/$defs/step"}},
                                "else": {"type": "array", "items": {"$ref": "#/$defs/step"}},
                            },
                        },
                    ]
                },
                "on_error": {
                    "type": "object",
                    "properties": {
                        "strategy": {"enum": ["fail", "ignore", "retry", "fallback"]},
                        "retry_count": {"type": "integer", "minimum": 0},
                        "backoff_ms": {"type": "integer", "minimum": 0},
                        "backoff": {"enum": ["fixed", "exponential"]},
                        "backoff_multiplier": {"type": "number", "exclusiveMinimum": 0},
                        "fallback_step": {"type": "string"},
                    },
                },
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "max_tokens": {"type": "integer", "minimum": 1},
                "temperature": {"type": "number", "minimum": 0},
                "steps": {"type": "array", "items": {"$ref": "#/$defs/step"}},
                "max_iterations": {"type": "integer"},
                "until": {"type": "string"},
            },
        }
    },
}


class InputDefinition(BaseModel):
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""
    enum: List[str] = Field(default_factory=list)


class OutputDefinition(BaseModel):
    name: str
    type: str = "string"
    value: str
    description: str = ""


class ErrorHandlingDefinition(BaseModel):
    """``on_error`` block. ``backoff_ms`` unset means the configured default."""

    strategy: Literal["fail", "ignore", "retry", "fallback"] = "fail"
    retry_count: Optional[int] = Field(default=None, ge=0)
    backoff_ms: Optional[int] = Field(default=None, ge=0)
    backoff: Literal["fixed", "exponential"] = "fixed"
    backoff_multiplier: float = Field(default=2.0, gt=0)
    fallback_step: Optional[str] = None

    def retries(self) -> int:
        if self.strategy != "retry":
            return 0
        return DEFAULT_RETRY_COUNT if self.retry_count is None else self.retry_count

    def delay_ms(self, retry_index: int, default_ms: int) -> float:
        base = default_ms if self.backoff_ms is None else self.backoff_ms
        if self.backoff == "exponential":
            return base * (self.backoff_multiplier ** retry_index)
        return float(base)


class ConditionDefinition(BaseModel):
    expression: str
    then: List["StepDefinition"] = Field(default_factory=list)
    else_: List["StepDefinition"] = Field(default_factory=list, alias="else")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def has_branches(self) -> bool:
        return bool(self.then or self.else_)


class StepDefinition(BaseModel):
    id: str
    name: str = ""
    type: StepType
    agent: str = ""
    inputs: Optional[Dict[str, Any]] = None
    model: str = DEFAULT_MODEL_TIER
    system: str = ""
    prompt: str = ""
    output_schema: Optional[Dict[str, Any]] = None
    tool: str = ""
    workflow: str = ""
    condition: Optional[ConditionDefinition] = None
    on_error: Optional[ErrorHandlingDefinition] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0)
    steps: List["StepDefinition"] = Field(default_factory=list)
    max_iterations: Optional[int] = None
    until: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("condition", mode="before")
    @classmethod
    def _condition_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"expression": value}
        return value

    def children(self) -> List["StepDefinition"]:
        nested = list(self.steps)
        if self.condition is not None:
            nested.extend(self.condition.then)
            nested.extend(self.condition.else_)
        return nested

    def tool_name(self) -> str:
        """Registry name this step dispatches to, for tool-like steps."""
        if self.type in BUILTIN_TOOL_STEPS:
            return self.type
        return self.tool


ConditionDefinition.model_rebuild()
StepDefinition.model_rebuild()


class FilesystemAccessDefinition(BaseModel):
    read: List[str] = Field(default_factory=list)
    write: List[str] = Field(default_factory=list)
    deny: List[str] = Field(default_factory=list)


class NetworkAccessDefinition(BaseModel):
    allow: List[str] = Field(default_factory=list)
    deny: List[str] = Field(default_factory=list)


class ShellAccessDefinition(BaseModel):
    commands: List[str] = Field(default_factory=list)
    deny_patterns: List[str] = Field(default_factory=list)


class SecurityAccessConfig(BaseModel):
    filesystem: FilesystemAccessDefinition = Field(default_factory=FilesystemAccessDefinition)
    network: NetworkAccessDefinition = Field(default_factory=NetworkAccessDefinition)
    shell: ShellAccessDefinition = Field(default_factory=ShellAccessDefinition)

    def to_access_config(self) -> AccessConfig:
        return AccessConfig(
            filesystem=FilesystemAccess(**self.filesystem.model_dump()),
            network=NetworkAccess(**self.network.model_dump()),
            shell=ShellAccess(**self.shell.model_dump()),
        )


class AgentDefinition(BaseModel):
    prefers: str = ""
    capabilities: List[str] = Field(default_factory=list)


class Definition(BaseModel):
    name: str
    description: str = ""
    version: str = ""
    inputs: List[InputDefinition] = Field(default_factory=list)
    outputs: List[OutputDefinition] = Field(default_factory=list)
    security: Optional[SecurityAccessConfig] = None
    integrations: Dict[str, Any] = Field(default_factory=dict)
    tools: Any = None
    agents: Dict[str, AgentDefinition] = Field(default_factory=dict)
    steps: List[StepDefinition]
    source_path: Optional[str] = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="ignore")

    @field_validator("version", mode="before")
    @classmethod
    def _version_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @property
    def base_dir(self) -> Optional[str]:
        return os.path.dirname(self.source_path) if self.source_path else None

    def iter_steps(self) -> Iterator[StepDefinition]:
        """Depth-first walk over every step, nested ones included."""
        stack = list(reversed(self.steps))
        while stack:
            step = stack.pop()
            yield step
            stack.extend(reversed(step.children()))

    def find_step(self, step_id: str) -> StepDefinition:
        for step in self.iter_steps():
            if step.id == step_id:
                return step
        raise NotFoundError(f"step not found: {step_id}")

    def semantic_problems(self) -> List[str]:
        problems: List[str] = []

        for label, names in (
            ("input", [i.name for i in self.inputs]),
            ("output", [o.name for o in self.outputs]),
        ):
            seen: set[str] = set()
            for name in names:
                if name in seen:
                    problems.append(f"duplicate {label} name: {name}")
                seen.add(name)

        step_ids: set[str] = set()
        for step in self.iter_steps():
            if step.id in step_ids:
                problems.append(f"duplicate step id: {step.id}")
            step_ids.add(step.id)

        for step in self.iter_steps():
            problems.extend(_step_problems(step, step_ids))
        return problems


def _check_expression(step_id: str, field: str, expr: str) -> List[str]:
    try:
        parse_expression(expr)
    except ExpressionError as exc:
        return [f"step {step_id}: invalid {field} expression: {exc.message}"]
    return []


def _step_problems(step: StepDefinition, step_ids: set[str]) -> List[str]:
    problems: List[str] = []
    prefix = f"step {step.id}"

    if step.type == "llm" and not step.prompt:
        problems.append(f"{prefix}: llm steps require a prompt")
    if step.type == "tool":
        if not step.tool:
            problems.append(f"{prefix}: tool steps require a tool name")
        if step.inputs is None:
            problems.append(f"{prefix}: tool steps require inputs")
    if step.type == "workflow":
        path = step.workflow
        if not path:
            problems.append(f"{prefix}: workflow steps require a workflow path")
        elif os.path.isabs(path):
            problems.append(f"{prefix}: workflow path must be relative: {path}")
        elif ".." in path.replace("\\", "/").split("/"):
            problems.append(f"{prefix}: workflow path must not contain '..': {path}")

    if step.type == "loop":
        if not step.steps:
            problems.append(f"{prefix}: loop steps require nested steps")
        if not step.until:
            problems.append(f"{prefix}: loop steps require an until condition")
        else:
            problems.extend(_check_expression(step.id, "until", step.until))
        if step.max_iterations is None:
            problems.append(f"{prefix}: loop steps require max_iterations")
        elif not 1 <= step.max_iterations <= MAX_LOOP_ITERATIONS:
            problems.append(
                f"{prefix}: max_iterations must be between 1 and {MAX_LOOP_ITERATIONS}, got {step.max_iterations}"
            )
    elif step.steps:
        problems.append(f"{prefix}: nested steps are only allowed on loop steps")

    if step.type == "condition":
        if step.condition is None or not step.condition.expression:
            problems.append(f"{prefix}: condition steps require condition.expression")
        elif not step.condition.has_branches:
            problems.append(f"{prefix}: condition steps require then or else steps")
    elif step.condition is not None and step.condition.has_branches:
        problems.append(f"{prefix}: then/else branches are only allowed on condition steps")

    if step.condition is not None and step.condition.expression:
        problems.extend(_check_expression(step.id, "condition", step.condition.expression))

    if step.on_error is not None and step.on_error.strategy == "fallback":
        target = step.on_error.fallback_step
        if not target:
            problems.append(f"{prefix}: fallback strategy requires fallback_step")
        elif target == step.id:
            problems.append(f"{prefix}: fallback_step cannot reference the step itself")
        elif target not in step_ids:
            problems.append(f"{prefix}: fallback_step references unknown step: {target}")
    return problems


def _format_pydantic_errors(exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg', '')}")
    return messages


def parse_definition(text: str, *, source: Optional[str] = None) -> Definition:
    """Parse and validate a workflow document.

    Raises ``ValidationError`` when the document does not match the workflow
    schema and ``ConfigError`` for semantic problems such as duplicate ids.
    """
    label = source or "<string>"
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"invalid workflow YAML in {label}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"workflow {label} must be a mapping")

    validator = Draft202012Validator(WORKFLOW_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        messages = [
            f"{'/'.join(str(p) for p in e.absolute_path) or '(root)'}: {e.message}" for e in errors
        ]
        logger.warning("workflow_schema_invalid", source=label, errors=messages)
        raise ValidationError(
            f"workflow {label} failed schema validation: {messages[0]}",
            detail={"errors": messages},
        )

    try:
        definition = Definition.model_validate(data)
    except PydanticValidationError as exc:
        messages = _format_pydantic_errors(exc)
        raise ValidationError(
            f"workflow {label} is invalid: {messages[0] if messages else exc}",
            detail={"errors": messages},
        ) from exc

    definition.source_path = os.path.abspath(source) if source else None
    problems = definition.semantic_problems()
    if problems:
        raise ConfigError(
            f"invalid workflow {definition.name}: {'; '.join(problems)}",
            detail={"problems": problems},
        )
    return definition


def load_definition(path: str) -> Definition:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()
    except FileNotFoundError as exc:
        raise NotFoundError(f"workflow file not found: {path}") from exc
    return parse_definition(text, source=path)
