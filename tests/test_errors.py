from flowkernel.errors import (
    ConfigError,
    DeadlineExceededError,
    ExpressionError,
    FlowError,
    InternalError,
    NotFoundError,
    ProviderError,
    SchemaValidationError,
    SecurityBlockedError,
    StepExecutionError,
    ToolExecutionError,
    ValidationError,
    error_code_of,
    find_error,
)


def test_error_codes_are_stable():
    assert ValidationError("x").error_code == "validation"
    assert SchemaValidationError("x").error_code == "validation"
    assert ExpressionError("x").error_code == "validation"
    assert NotFoundError("x").error_code == "not_found"
    assert SecurityBlockedError("x").error_code == "security_blocked"
    assert ConfigError("x").error_code == "config"
    assert ProviderError("x").error_code == "provider"
    assert DeadlineExceededError().error_code == "deadline_exceeded"
    assert ToolExecutionError("x").error_code == "tool_failed"
    assert InternalError("x").error_code == "internal"


def test_user_messages_carry_kind_prefixes():
    assert ExpressionError("bad token").user_message() == "condition error: bad token"
    assert ProviderError("rate limited", status_code=429).user_message() == (
        "LLM provider error (HTTP 429): rate limited"
    )
    assert ProviderError("boom").user_message() == "LLM provider error: boom"
    assert InternalError("broken").user_message().startswith("internal error (please report this as a bug)")


def test_suggestions_default_per_kind_and_can_be_overridden():
    assert SecurityBlockedError("denied").suggestion
    assert ValidationError("x").suggestion is None
    assert ValidationError("x", suggestion="fix it").suggestion == "fix it"


def test_step_execution_error_keeps_cause_kind_and_breadcrumb():
    cause = SecurityBlockedError("host not in allowed list")
    exc = StepExecutionError("fetch", cause, breadcrumb=["parent", "child", "fetch"])

    assert exc.error_code == "security_blocked"
    assert exc.step_id == "fetch"
    assert exc.cause is cause
    assert "parent → child → fetch" in str(exc)
    assert exc.user_message() == "step parent → child → fetch failed: host not in allowed list"
    assert exc.suggestion == cause.suggestion


def test_step_execution_error_defaults_breadcrumb_to_step():
    exc = StepExecutionError("only", ValueError("plain"))
    assert exc.breadcrumb == ["only"]
    assert exc.error_code == "internal"


def test_find_error_walks_explicit_causes():
    inner = DeadlineExceededError()
    try:
        try:
            raise inner
        except DeadlineExceededError as exc:
            raise ValidationError("wrapped") from exc
    except ValidationError as outer:
        wrapped = StepExecutionError("s1", outer)

    assert find_error(wrapped, DeadlineExceededError) is inner
    assert find_error(wrapped, NotFoundError) is None
    assert error_code_of(wrapped) == "validation"


def test_error_code_of_foreign_exception_is_internal():
    assert error_code_of(RuntimeError("x")) == "internal"
    assert error_code_of(None) == "internal"


def test_tool_execution_error_keeps_outputs():
    exc = ToolExecutionError("tool shell failed: exit code 2", outputs={"exit_code": 2})
    assert isinstance(exc, FlowError)
    assert exc.outputs == {"exit_code": 2}
    assert ToolExecutionError("x").outputs == {}


def test_detail_is_attached():
    exc = ConfigError("invalid", detail={"problems": ["a", "b"]})
    assert exc.detail["problems"] == ["a", "b"]
