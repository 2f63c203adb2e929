"""Step executor tests: LLM schema retries, tool dispatch, guards, on_error
strategies and timeouts."""

import asyncio
from typing import Any, List

import pytest

from flowkernel.config import Settings
from flowkernel.errors import (
    ConfigError,
    DeadlineExceededError,
    SchemaValidationError,
    StepExecutionError,
    ToolExecutionError,
)
from flowkernel.tools.base import ParameterSchema, Property, Tool, ToolSchema
from flowkernel.tools.registry import ToolRegistry
from flowkernel.workflow.context import StepOutput, new_context
from flowkernel.workflow.definition import StepDefinition, parse_definition
from flowkernel.workflow.executor import (
    MAX_SCHEMA_RESPONSE_CHARS,
    StepExecutor,
    promote_response,
)
from flowkernel.workflow.providers import Completion, ProviderRegistry


# =============================================================================
# Mock providers and tools
# =============================================================================


class MockProvider:
    """Returns scripted responses in order; the last one repeats."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.options: List[Any] = []

    async def complete(self, prompt, options):
        self.prompts.append(prompt)
        self.options.append(options)
        value = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(value, Exception):
            raise value
        return value


class EchoTool(Tool):
    name = "echo"

    def schema(self):
        return ToolSchema(
            inputs=ParameterSchema(properties={"message": Property(type="string")}, required=["message"])
        )

    async def execute(self, inputs):
        return {"success": True, "result": inputs["message"]}


class FlakyTool(Tool):
    """Raises for the first ``failures`` calls, then succeeds."""

    name = "flaky"

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def schema(self):
        return ToolSchema(inputs=ParameterSchema())

    async def execute(self, inputs):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"success": True, "result": f"ok after {self.calls}"}


class SlowTool(Tool):
    name = "slow"

    def schema(self):
        return ToolSchema(inputs=ParameterSchema(properties={"seconds": Property(type="number")}))

    async def execute(self, inputs):
        await asyncio.sleep(inputs.get("seconds", 1))
        return {"success": True, "result": "done"}


class ReportsFailureTool(Tool):
    name = "quota"

    def schema(self):
        return ToolSchema(inputs=ParameterSchema())

    async def execute(self, inputs):
        return {"success": False, "error": "quota exceeded", "status_code": 429}


def make_registry(*extra: Tool) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EchoTool())
    for tool in extra:
        registry.register(tool)
    return registry


def make_executor(registry=None, provider=None, definition=None, **settings) -> StepExecutor:
    settings.setdefault("retry_backoff_ms", 0)
    return StepExecutor(
        registry or make_registry(),
        ProviderRegistry(provider) if provider is not None else None,
        settings=Settings(**settings),
        definition=definition,
    )


def step(**fields) -> StepDefinition:
    return StepDefinition.model_validate(fields)


CATEGORY_SCHEMA = {
    "type": "object",
    "properties": {"category": {"type": "string", "enum": ["bug", "feature"]}},
    "required": ["category"],
}


# =============================================================================
# LLM steps
# =============================================================================


class TestLLMStep:
    async def test_schema_second_attempt_succeeds(self):
        provider = MockProvider("The category is bug.", '{"category":"bug"}')
        executor = make_executor(provider=provider)
        context = new_context()

        output = await executor.execute(
            step(id="classify", type="llm", prompt="Classify it", output_schema=CATEGORY_SCHEMA),
            context,
        )

        assert output.status == "success"
        assert output.data == {"category": "bug"}
        assert output.response == '{"category":"bug"}'
        assert output.metadata["attempts"] == 2
        assert len(provider.prompts) == 2
        assert "IMPORTANT" in provider.prompts[1]
        assert context["steps"]["classify"]["data"] == {"category": "bug"}

    async def test_schema_exhaustion_is_validation_error(self):
        long_text = "no json here " * 100
        provider = MockProvider(long_text)
        executor = make_executor(provider=provider)
        context = new_context()

        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(
                step(id="classify", type="llm", prompt="p", output_schema=CATEGORY_SCHEMA), context
            )

        exc = exc_info.value
        assert exc.error_code == "validation"
        assert isinstance(exc.cause, SchemaValidationError)
        assert exc.cause.attempts == 3
        assert len(exc.cause.response) == MAX_SCHEMA_RESPONSE_CHARS
        assert len(provider.prompts) == 3
        assert "CRITICAL" in provider.prompts[2]
        assert context["steps"]["classify"]["status"] == "failure"

    async def test_attempt_count_is_configurable(self):
        provider = MockProvider("nope")
        executor = make_executor(provider=provider, llm_schema_max_attempts=1)
        with pytest.raises(StepExecutionError):
            await executor.execute(
                step(id="c", type="llm", prompt="p", output_schema=CATEGORY_SCHEMA), new_context()
            )
        assert len(provider.prompts) == 1

    async def test_plain_completion_renders_prompt_and_records_usage(self):
        provider = MockProvider(Completion(text="Hi Ada", tokens_used=9, cost=0.01, request_id="r1"))
        executor = make_executor(provider=provider)
        context = new_context({"name": "Ada"})

        output = await executor.execute(
            step(
                id="greet",
                type="llm",
                prompt="Say hi to {{ .inputs.name }}",
                system="Be brief",
                model="fast",
                max_tokens=20,
            ),
            context,
        )

        assert provider.prompts == ["Say hi to Ada"]
        options = provider.options[0]
        assert (options.system, options.max_tokens, options.model) == ("Be brief", 20, "fast")
        assert output.response == "Hi Ada"
        assert output.data == {}
        assert output.metadata["tokens_used"] == 9
        assert output.metadata["request_id"] == "r1"

    async def test_provider_failure_keeps_kind(self):
        executor = make_executor(provider=MockProvider(RuntimeError("upstream 503")))
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(step(id="a", type="llm", prompt="p"), new_context())
        assert exc_info.value.error_code == "provider"

    async def test_missing_provider(self):
        with pytest.raises(StepExecutionError) as exc_info:
            await make_executor().execute(step(id="a", type="llm", prompt="p"), new_context())
        assert isinstance(exc_info.value.cause, ConfigError)


# =============================================================================
# Tool steps
# =============================================================================


class TestToolStep:
    async def test_inputs_are_rendered_and_response_promoted(self):
        executor = make_executor()
        context = new_context({"who": "world"})
        output = await executor.execute(
            step(id="say", type="tool", tool="echo", inputs={"message": "hello {{ .inputs.who }}"}),
            context,
        )
        assert output.response == "hello world"
        assert output.data == {"success": True, "result": "hello world"}
        assert context["steps"]["say"]["response"] == "hello world"

    async def test_reported_failure_fails_step(self):
        executor = make_executor(make_registry(ReportsFailureTool()))
        context = new_context()
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(step(id="q", type="tool", tool="quota", inputs={}), context)

        assert exc_info.value.error_code == "tool_failed"
        assert isinstance(exc_info.value.cause, ToolExecutionError)
        assert "quota exceeded" in str(exc_info.value)
        bound = context["steps"]["q"]
        assert bound["status"] == "failure"
        assert bound["data"]["status_code"] == 429

    async def test_unknown_tool(self):
        with pytest.raises(StepExecutionError) as exc_info:
            await make_executor().execute(step(id="x", type="tool", tool="nope", inputs={}), new_context())
        assert exc_info.value.error_code == "not_found"

    def test_promote_response_order(self):
        assert promote_response({"stdout": "out", "body": "b"}) == "b"
        assert promote_response({"content": {"a": 1}}) == '{"a": 1}'
        assert promote_response({"exit_code": 0}) == ""


# =============================================================================
# Guards and condition steps
# =============================================================================


class TestConditions:
    async def test_false_guard_skips_step(self):
        context = new_context({"run": False})
        output = await make_executor().execute(
            step(id="s", type="tool", tool="echo", inputs={"message": "x"}, condition="inputs.run == true"),
            context,
        )
        assert output.status == "skipped"
        assert output.data["skipped"] is True
        assert output.data["content"] == ""
        assert context["steps"]["s"]["status"] == "skipped"

    async def test_guard_error_fails_step(self):
        with pytest.raises(StepExecutionError) as exc_info:
            await make_executor().execute(
                step(id="s", type="tool", tool="echo", inputs={"message": "x"}, condition="inputs.missing"),
                new_context(),
            )
        assert exc_info.value.error_code == "validation"
        assert "condition error" in exc_info.value.user_message()

    async def test_condition_step_runs_selected_branch(self):
        definition = parse_definition(
            """
name: branching
inputs:
  - name: kind
steps:
  - id: route
    type: condition
    condition:
      expression: 'inputs.kind == "bug"'
      then:
        - {id: bug_path, type: tool, tool: echo, inputs: {message: bug}}
      else:
        - {id: other_path, type: tool, tool: echo, inputs: {message: other}}
"""
        )
        executor = make_executor(definition=definition)

        context = new_context({"kind": "feature"})
        output = await executor.execute(definition.steps[0], context)

        assert output.response == "other"
        assert output.metadata["branch"] == "else"
        assert output.metadata["last_step"] == "other_path"
        assert "bug_path" not in context["steps"]
        assert context["steps"]["other_path"]["status"] == "success"

    async def test_empty_branch_is_skipped(self):
        definition = parse_definition(
            """
name: branching
steps:
  - id: route
    type: condition
    condition:
      expression: "false"
      then:
        - {id: only, type: tool, tool: echo, inputs: {message: x}}
"""
        )
        output = await make_executor(definition=definition).execute(definition.steps[0], new_context())
        assert output.status == "skipped"
        assert output.metadata["branch"] == "else"


# =============================================================================
# on_error strategies
# =============================================================================


class TestErrorStrategies:
    async def test_retry_until_success_records_attempts(self):
        flaky = FlakyTool(failures=1)
        executor = make_executor(make_registry(flaky))
        output = await executor.execute(
            step(id="f", type="tool", tool="flaky", inputs={}, on_error={"strategy": "retry", "retry_count": 2}),
            new_context(),
        )
        assert output.response == "ok after 2"
        assert output.metadata["step_attempts"] == 2
        assert flaky.calls == 2

    async def test_retries_exhausted(self):
        flaky = FlakyTool(failures=10)
        executor = make_executor(make_registry(flaky))
        context = new_context()
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(
                step(id="f", type="tool", tool="flaky", inputs={}, on_error={"strategy": "retry", "retry_count": 2}),
                context,
            )
        assert flaky.calls == 3
        assert exc_info.value.error_code == "internal"
        assert context["steps"]["f"]["metadata"]["step_attempts"] == 3

    async def test_backoff_delays_between_attempts(self, monkeypatch):
        flaky = FlakyTool(failures=2)
        executor = make_executor(make_registry(flaky))
        sleeps = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay):
            sleeps.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        policy = {"strategy": "retry", "retry_count": 3, "backoff_ms": 100, "backoff": "exponential"}
        await executor.execute(step(id="f", type="tool", tool="flaky", inputs={}, on_error=policy), new_context())
        assert sleeps == [0.1, 0.2]

    async def test_default_strategy_fails_without_retry(self):
        flaky = FlakyTool(failures=1)
        with pytest.raises(StepExecutionError):
            await make_executor(make_registry(flaky)).execute(
                step(id="f", type="tool", tool="flaky", inputs={}), new_context()
            )
        assert flaky.calls == 1

    async def test_ignore_continues_with_failure_output(self):
        executor = make_executor(make_registry(FlakyTool(failures=5)))
        context = new_context()
        output = await executor.execute(
            step(id="f", type="tool", tool="flaky", inputs={}, on_error={"strategy": "ignore"}), context
        )
        assert output.status == "failure"
        assert output.metadata["ignored"] is True
        assert "transient failure" in output.error
        assert context["steps"]["f"]["metadata"]["ignored"] is True

    async def test_fallback_runs_named_step(self):
        definition = parse_definition(
            """
name: with-fallback
steps:
  - id: primary
    type: tool
    tool: flaky
    inputs: {}
    on_error: {strategy: fallback, fallback_step: backup}
  - id: backup
    type: tool
    tool: echo
    inputs: {message: from backup}
"""
        )
        executor = make_executor(make_registry(FlakyTool(failures=5)), definition=definition)
        context = new_context()

        output = await executor.execute(definition.steps[0], context)

        assert output.step_id == "primary"
        assert output.response == "from backup"
        assert output.metadata["fallback_step"] == "backup"
        assert "transient failure" in output.metadata["original_error"]
        assert context["steps"]["primary"]["response"] == "from backup"
        assert context["steps"]["backup"]["status"] == "success"


# =============================================================================
# Timeouts
# =============================================================================


class TestTimeouts:
    async def test_step_timeout_binds_timeout_status(self):
        executor = make_executor(make_registry(SlowTool()))
        context = new_context()
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(
                step(id="s", type="tool", tool="slow", inputs={"seconds": 5}, timeout=0.05), context
            )
        assert exc_info.value.error_code == "deadline_exceeded"
        assert isinstance(exc_info.value.cause, DeadlineExceededError)
        assert context["steps"]["s"]["status"] == "timeout"
        assert context["steps"]["s"]["error"] == "deadline exceeded"

    async def test_default_tool_timeout_applies(self):
        executor = make_executor(make_registry(SlowTool()), default_tool_timeout_s=0.05)
        with pytest.raises(StepExecutionError) as exc_info:
            await executor.execute(step(id="s", type="tool", tool="slow", inputs={"seconds": 5}), new_context())
        assert exc_info.value.error_code == "deadline_exceeded"

    async def test_ignored_timeout_keeps_timeout_status(self):
        executor = make_executor(make_registry(SlowTool()))
        context = new_context()
        output = await executor.execute(
            step(
                id="s",
                type="tool",
                tool="slow",
                inputs={"seconds": 5},
                timeout=0.05,
                on_error={"strategy": "ignore"},
            ),
            context,
        )
        assert output.status == "timeout"
        assert output.metadata["error_code"] == "deadline_exceeded"


def test_step_output_context_shape():
    output = StepOutput("a", response="r", data={"k": 1}, metadata={"m": 2})
    assert output.to_context() == {
        "status": "success",
        "response": "r",
        "data": {"k": 1},
        "error": None,
        "metadata": {"m": 2},
    }
    assert output.ok
