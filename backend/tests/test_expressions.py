"""Tests for the restricted condition expression evaluator."""

import pytest

from core.exceptions import ExpressionError
from workflow.expressions import SafeExpressionEvaluator, evaluate_expression, normalize_expression


@pytest.fixture
def variables():
    return {
        "count": 7,
        "name": "alice",
        "user-name": "bob",
        "order": {"items": [{"price": 12.5}, {"price": 3}], "status": "open"},
        "tags": ["new", "vip"],
    }


@pytest.mark.unit
class TestNormalize:
    @pytest.mark.parametrize("source, expected", [
        ("a === 1", "a  ==  1"),
        ("a !== 1 && b", "a  !=  1  and  b"),
        ("!done || retry", "~done  or  retry"),
        ("{{ count > 1 }}", "count > 1"),
    ])
    def test_js_operators(self, source, expected):
        assert normalize_expression(source) == expected

    def test_string_literals_untouched(self):
        assert normalize_expression("msg == 'a && b'") == "msg == 'a && b'"


@pytest.mark.unit
class TestEvaluate:
    @pytest.mark.parametrize("expression, expected", [
        ("count > 5", True),
        ("count >= 8", False),
        ("1 < count < 10", True),
        ("variables.count == 7", True),
        ("variables['user-name'] == 'bob'", True),
        ("user_name == 'bob'", False),
        ("order.items[0].price >= 10", True),
        ("order.status == 'open' and len(tags) == 2", True),
        ("'vip' in tags", True),
        ("'gold' not in tags", True),
        ("name === 'alice' && !missing", True),
        ("!count == true", False),
        ("!count == false", True),
        ("!(count > 5) || name == 'bob'", False),
        ("!!name", True),
        ("count > 10 || name == 'alice'", True),
        ("missing == null", True),
    ])
    def test_expressions(self, variables, expression, expected):
        assert evaluate_expression(expression, variables) is expected

    def test_hyphenated_attribute(self, variables):
        variables["profile"] = {"first-name": "Ann"}
        assert evaluate_expression("profile.first_name", variables) == "Ann"

    def test_extra_names(self, variables):
        step = {"id": "s2", "index": 1}
        assert evaluate_expression("step.index == 1", variables, extra={"step": step}) is True

    def test_safe_builtins(self, variables):
        assert evaluate_expression("abs(-3) == 3", variables) is True
        assert evaluate_expression("int('4') > 3", variables) is True
        assert evaluate_expression("str(count)", variables) == "7"


@pytest.mark.unit
class TestRejects:
    @pytest.mark.parametrize("expression", [
        "__import__('os').system('true')",
        "open('/etc/passwd')",
        "name.__class__",
        "(lambda: 1)()",
        "[x for x in tags]",
        "count.bit_length()",
        "count + 1 > 2",
        "len(tags, key=1)",
    ])
    def test_forbidden_constructs(self, variables, expression):
        with pytest.raises(ExpressionError):
            evaluate_expression(expression, variables)

    @pytest.mark.parametrize("expression", ["", "   ", None])
    def test_empty(self, variables, expression):
        with pytest.raises(ExpressionError):
            evaluate_expression(expression, variables)

    def test_malformed(self, variables):
        with pytest.raises(ExpressionError, match="Malformed expression"):
            evaluate_expression("count >>> (", variables)

    def test_length_limit(self, variables):
        evaluator = SafeExpressionEvaluator(max_length=10)
        with pytest.raises(ExpressionError, match="longer than 10"):
            evaluator.evaluate("count > 1 and count < 100", variables)
