from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

E = TypeVar("E", bound="FlowError")


class FlowError(Exception):
    """Base class for errors surfaced by the workflow runtime.

    Each subclass carries a stable ``error_code`` naming its kind:
    - validation
    - not_found
    - security_blocked
    - invalid_url, network, timeout
    - config
    - provider
    - deadline_exceeded
    - tool_failed
    - internal
    """

    error_code: str = "internal"
    default_suggestion: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.suggestion = suggestion or self.default_suggestion

    def user_message(self) -> str:
        return self.message


class ValidationError(FlowError):
    """Input does not match schema or type constraints."""
    error_code = "validation"


class SchemaValidationError(ValidationError):
    """Structured LLM output never matched the requested JSON shape."""

    default_suggestion = "Simplify the output schema or make the prompt more specific."

    def __init__(
        self,
        message: str,
        *,
        path: str = "$",
        keyword: str = "",
        response: str = "",
        attempts: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.path = path
        self.keyword = keyword
        self.response = response
        self.attempts = attempts


class ExpressionError(ValidationError):
    """A condition or output expression could not be evaluated."""

    def user_message(self) -> str:
        return f"condition error: {self.message}"


class NotFoundError(FlowError):
    """Referenced tool, sub-workflow, step, or input is missing."""
    error_code = "not_found"


class SecurityBlockedError(FlowError):
    """Policy denied the operation."""
    error_code = "security_blocked"
    default_suggestion = "Check the workflow security settings for this resource."


class InvalidURLError(FlowError):
    error_code = "invalid_url"


class NetworkError(FlowError):
    error_code = "network"


class RequestTimeoutError(FlowError):
    error_code = "timeout"


class ConfigError(FlowError):
    """Workflow structure is semantically invalid."""
    error_code = "config"


class ProviderError(FlowError):
    """Upstream LLM provider failed."""

    error_code = "provider"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        detail: Optional[dict] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail, suggestion=suggestion)
        self.status_code = status_code
        self.request_id = request_id

    def user_message(self) -> str:
        if self.status_code:
            return f"LLM provider error (HTTP {self.status_code}): {self.message}"
        return f"LLM provider error: {self.message}"


class DeadlineExceededError(FlowError):
    """Execution was cancelled because its deadline passed."""

    error_code = "deadline_exceeded"
    default_suggestion = "Increase the step timeout or reduce the work done in this step."

    def __init__(self, message: str = "deadline exceeded", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ToolExecutionError(FlowError):
    """A tool ran but reported ``success: false``; ``outputs`` keeps its map."""

    error_code = "tool_failed"

    def __init__(self, message: str, *, outputs: Optional[dict] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.outputs = outputs or {}


class InternalError(FlowError):
    """Invariant violation; always a bug."""

    error_code = "internal"

    def user_message(self) -> str:
        return f"internal error (please report this as a bug): {self.message}"


class StepExecutionError(FlowError):
    """A step failed; keeps the kind of the underlying cause."""

    def __init__(
        self,
        step_id: str,
        cause: BaseException,
        *,
        breadcrumb: Optional[list[str]] = None,
        output: Any = None,
    ) -> None:
        self.step_id = step_id
        self.output = output
        self.breadcrumb = breadcrumb or [step_id]
        path = " → ".join(self.breadcrumb)
        super().__init__(
            f"step {path} failed: {cause}",
            error_code=error_code_of(cause),
            suggestion=getattr(cause, "suggestion", None),
        )
        self.cause = cause

    def user_message(self) -> str:
        inner = self.cause.user_message() if isinstance(self.cause, FlowError) else str(self.cause)
        return f"step {' → '.join(self.breadcrumb)} failed: {inner}"


def _chain(exc: Optional[BaseException]):
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        if isinstance(exc, StepExecutionError):
            exc = exc.cause
        else:
            exc = exc.__cause__ or exc.__context__


def find_error(exc: Optional[BaseException], cls: Type[E]) -> Optional[E]:
    """Return the first error of type ``cls`` in the cause chain of ``exc``."""
    for item in _chain(exc):
        if isinstance(item, cls):
            return item
    return None


def error_code_of(exc: Optional[BaseException]) -> str:
    """Return the kind of ``exc``, looking through wrapped causes."""
    for item in _chain(exc):
        if isinstance(item, FlowError):
            return item.error_code
    return "internal"


__all__ = [
    "FlowError",
    "ValidationError",
    "SchemaValidationError",
    "ExpressionError",
    "NotFoundError",
    "SecurityBlockedError",
    "InvalidURLError",
    "NetworkError",
    "RequestTimeoutError",
    "ConfigError",
    "ProviderError",
    "DeadlineExceededError",
    "ToolExecutionError",
    "InternalError",
    "StepExecutionError",
    "find_error",
    "error_code_of",
]
