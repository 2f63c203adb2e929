import pytest

from flowkernel.errors import ExpressionError
from flowkernel.workflow.expression import evaluate, evaluate_bool, parse, path_segments
from flowkernel.workflow.template import render, render_string, to_text


@pytest.fixture
def context():
    return {
        "inputs": {"name": "Ada", "limit": 3, "flags": {"debug": True}},
        "steps": {
            "review": {"status": "success", "response": '{"approved":true}', "data": {"score": 7}},
            "fetch": {"status": "failure", "response": "", "data": {"items": ["a", "b"]}},
        },
        "loop": {"iteration": 2, "max_iterations": 5},
    }


class TestEvaluate:
    def test_paths_with_and_without_prefix(self, context):
        assert evaluate("inputs.name", context) == "Ada"
        assert evaluate(".inputs.name", context) == "Ada"
        assert evaluate("$.inputs.limit", context) == 3

    def test_step_shorthand_resolves_through_steps(self, context):
        assert evaluate("review.data.score", context) == 7
        assert evaluate("steps.review.data.score", context) == 7

    def test_list_index_segments(self, context):
        assert evaluate("steps.fetch.data.items.1", context) == "b"
        assert evaluate("steps.fetch.data.items.9", context) is None

    def test_missing_path_is_null(self, context):
        assert evaluate("inputs.absent.deeper", context) is None
        assert evaluate_bool("inputs.absent == null", context) is True

    def test_comparisons(self, context):
        assert evaluate_bool('steps.review.status == "success"', context)
        assert evaluate_bool("loop.iteration < loop.max_iterations", context)
        assert evaluate_bool("inputs.limit >= 3", context)
        assert evaluate_bool("'b' > 'a'", context)

    def test_escaped_json_literal(self, context):
        assert evaluate_bool('steps.review.response == "{\\"approved\\":true}"', context)

    def test_boolean_operators_and_grouping(self, context):
        expr = '!(steps.fetch.status == "success") && (inputs.flags.debug || false)'
        assert evaluate_bool(expr, context) is True

    def test_short_circuit_skips_right_operand(self, context):
        assert evaluate_bool("false && inputs.name", context) is False
        assert evaluate_bool("true || inputs.name", context) is True

    def test_literals(self):
        assert evaluate("null", {}) is None
        assert evaluate("-2.5", {}) == -2.5
        assert evaluate("'it\\'s'", {}) == "it's"


class TestEvaluateErrors:
    def test_non_boolean_condition(self, context):
        with pytest.raises(ExpressionError, match="must evaluate to a boolean"):
            evaluate_bool("inputs.name", context)

    def test_type_mismatch_in_equality(self, context):
        with pytest.raises(ExpressionError, match="cannot compare"):
            evaluate_bool('inputs.limit == "3"', context)

    def test_ordering_requires_same_scalar_type(self, context):
        with pytest.raises(ExpressionError, match="cannot order"):
            evaluate_bool("inputs.flags > 1", context)

    def test_logical_operators_require_booleans(self, context):
        with pytest.raises(ExpressionError, match="requires a boolean"):
            evaluate_bool("inputs.limit && true", context)

    @pytest.mark.parametrize("expr", ["", "a ==", "(a == b", "a # b", "a == b c", "a..b"])
    def test_syntax_errors(self, expr):
        with pytest.raises(ExpressionError):
            parse(expr)

    def test_user_message_prefix(self):
        with pytest.raises(ExpressionError) as exc_info:
            parse("a ==")
        assert exc_info.value.user_message().startswith("condition error:")


def test_path_segments():
    assert path_segments(".steps.a.response") == ("steps", "a", "response")
    assert path_segments("a == b") is None
    assert path_segments("a ==") is None


class TestTemplates:
    def test_single_expression_keeps_type(self, context):
        assert render_string("{{ .steps.fetch.data }}", context) == {"items": ["a", "b"]}
        assert render_string("{{ inputs.limit }}", context) == 3

    def test_mixed_text_is_stringified(self, context):
        assert render_string("Hello {{ .inputs.name }}, limit={{ .inputs.limit }}", context) == (
            "Hello Ada, limit=3"
        )
        assert render_string("data: {{ .steps.fetch.data }}", context) == 'data: {"items": ["a", "b"]}'

    def test_missing_value_renders_empty(self, context):
        assert render_string("[{{ .inputs.nope }}]", context) == "[]"

    def test_render_walks_nested_structures(self, context):
        value = {"url": "https://x/{{ .inputs.name }}", "args": ["{{ .loop.iteration }}", 1], "flag": True}
        assert render(value, context) == {"url": "https://x/Ada", "args": [2, 1], "flag": True}

    def test_plain_strings_untouched(self, context):
        assert render_string("no templates here", context) == "no templates here"

    def test_to_text(self):
        assert to_text(None) == ""
        assert to_text(True) == "true"
        assert to_text(1.5) == "1.5"
        assert to_text([1, "a"]) == '[1, "a"]'
