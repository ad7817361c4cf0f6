"""Tests for the condition expression language."""

import pytest

from prompt_chain.errors import ConditionEvaluationError
from prompt_chain.pipelines import evaluate, parse_condition, referenced_variables
from prompt_chain.pipelines.conditions import BoolOp, Compare, MethodCall, Variable


CONTEXT = {
    "sentiment": "Mostly positive feedback",
    "score": "8",
    "category": "bug",
    "empty": "",
    "flag": "false",
    "status": "done",
}


@pytest.mark.parametrize("expression, expected", [
    ("sentiment.includes('positive')", True),
    ("sentiment.includes(\"negative\")", False),
    ("sentiment.toLowerCase().startsWith('mostly')", True),
    ("score >= 7 && category == 'bug'", True),
    ("score > 9 || category === 'bug'", True),
    ("score < 10 and not (status == 'open')", True),
    ("!(score == 8)", False),
    ("score == 8.0", True),
    ("score != '8'", False),
    ("'pos' in sentiment", True),
    ("'neg' not in sentiment", True),
    ("sentiment.length > 5", True),
    ("empty", False),
    ("flag", False),
    ("status", True),
    ("true", True),
    ("False || score >= -1", True),
    ("category.trim().toUpperCase() == 'BUG'", True),
])
def test_evaluate(expression, expected):
    assert evaluate(expression, CONTEXT) is expected


class TestEvaluationErrors:

    def test_unknown_variable(self):
        with pytest.raises(ConditionEvaluationError, match="Unknown variable 'missing'"):
            evaluate("missing == 'x'", CONTEXT)

    def test_numeric_comparison_of_text(self):
        with pytest.raises(ConditionEvaluationError, match="non-numeric"):
            evaluate("category > 3", CONTEXT)

    def test_unsupported_method(self):
        with pytest.raises(ConditionEvaluationError, match="Unsupported method"):
            evaluate("sentiment.__class__()", CONTEXT)

    @pytest.mark.parametrize("expression", [
        "score >",
        "(score > 1",
        "score > 1 extra",
        "__import__('os')",
        "score ; 1",
    ])
    def test_malformed_expressions(self, expression):
        with pytest.raises(ConditionEvaluationError):
            evaluate(expression, CONTEXT)


def test_parse_builds_ast():
    node = parse_condition("a.includes('x') && b == 'y'")

    assert isinstance(node, BoolOp)
    assert node.op == "and"
    assert isinstance(node.operands[0], MethodCall)
    assert isinstance(node.operands[1], Compare)
    assert node.operands[1].left == Variable("b")


def test_referenced_variables():
    assert referenced_variables("a.includes(b) || not c > 2 || 'lit' in d") == {
        "a", "b", "c", "d"
    }


class TestNestingLimit:

    @pytest.mark.parametrize("expression", [
        "(" * 1500 + "x" + ")" * 1500,
        "!" * 3000 + "x",
        "not " * 500 + "x",
        "x" + ".trim()" * 200,
        "x.includes(" * 300 + "'a'" + ")" * 300,
    ])
    def test_deep_nesting_is_rejected(self, expression):
        with pytest.raises(ConditionEvaluationError, match="nested too deeply"):
            parse_condition(expression)

    def test_chained_calls_and_arguments_add_up(self):
        inner = "x" + ".trim()" * 40
        expression = "x.includes(" + inner + ")" + ".trim()" * 30

        with pytest.raises(ConditionEvaluationError, match="nested too deeply"):
            parse_condition(expression)

    def test_moderate_nesting_still_evaluates(self):
        expression = "(" * 20 + "!" * 10 + "x.trim().toLowerCase() == 'ok'" + ")" * 20

        assert evaluate(expression, {"x": " OK "}) is True

    def test_long_flat_chains_are_not_nesting(self):
        expression = " && ".join(["x == 'ok'"] * 500)

        assert evaluate(expression, {"x": "ok"}) is True
