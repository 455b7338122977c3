"""Restricted expression evaluator for ``custom`` step conditions.

Expressions are parsed with ``ast`` and walked node by node; only a small
whitelist of constructs is evaluated, so a condition can read workflow
variables but never execute arbitrary code.

Supports:
- Variable references: ``count > 5``, ``variables.count > 5``,
  ``context.variables.count > 5``,
  ``variables["user-name"] == "bob"``
- Nested data: ``order.items[0].price >= 10``
- Boolean logic: ``and``, ``or``, ``not`` (also ``&&``, ``||``, ``!``).
  ``!`` binds to its operand as in JavaScript, so ``!a == b`` is
  ``(not a) == b``; ``~`` is logical not, never bitwise
- Comparisons: ``== != < <= > >= in not in`` (also ``===``, ``!==``)
- Literals: numbers, strings, ``True/False/None`` (also ``true/false/null``),
  lists and tuples
- Builtins: len, str, int, float, bool, abs, min, max
"""

import ast
import operator
import re
from typing import Any, Optional

from core.exceptions import ExpressionError


def _lookup_key(data: dict, name: str) -> Any:
    """Attribute-style key lookup. Handles key mismatches: user_name vs user-name."""
    if name in data:
        return data[name]
    alt = name.replace('_', '-')
    if alt in data:
        return data[alt]
    raise ExpressionError(f"No key '{name}' or '{alt}'")


_COMPARATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_UNARY = {
    ast.Not: operator.not_,
    # JavaScript `!` is rewritten to `~` so it binds tighter than comparisons
    ast.Invert: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_SAFE_FUNCTIONS = {
    "len": len, "str": str, "int": int, "float": float,
    "bool": bool, "abs": abs, "min": min, "max": max,
}

_LITERAL_NAMES = {
    "True": True, "False": False, "None": None,
    "true": True, "false": False, "null": None,
}

# JavaScript spellings found in recorded workflows
_JS_OPERATORS = re.compile(r"===|!==|&&|\|\||!(?!=)")
_JS_REPLACEMENTS = {
    "===": " == ", "!==": " != ", "&&": " and ", "||": " or ", "!": "~",
}
_STRING_LITERAL = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript operators to their Python equivalents.

    String literals are left untouched.
    """
    expr = expression.strip()
    if expr.startswith("{{") and expr.endswith("}}"):
        expr = expr[2:-2].strip()
    parts = _STRING_LITERAL.split(expr)
    for i in range(0, len(parts), 2):
        parts[i] = _JS_OPERATORS.sub(lambda m: _JS_REPLACEMENTS[m.group(0)], parts[i])
    return "".join(parts).strip()


class SafeExpressionEvaluator:
    """Evaluates an expression string against a variable namespace."""

    def __init__(self, max_length: int = 2000):
        self.max_length = max_length

    def evaluate(self, expression: str, variables: dict[str, Any], extra: Optional[dict[str, Any]] = None) -> Any:
        """Evaluate ``expression``; raises ExpressionError on anything unsupported."""
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Expression must be a non-empty string")
        if len(expression) > self.max_length:
            raise ExpressionError(f"Expression longer than {self.max_length} characters")

        source = normalize_expression(expression)
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Malformed expression {expression!r}: {e.msg}")

        namespace = dict(variables)
        namespace["variables"] = dict(variables)
        for key, value in (extra or {}).items():
            namespace[key] = value

        return self._eval(tree.body, namespace)

    def _eval(self, node: ast.AST, namespace: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in namespace:
                return namespace[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            # Unknown variables read as None, like a missing context variable
            return None

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value = True
                for operand in node.values:
                    value = self._eval(operand, namespace)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval(operand, namespace)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            op = _UNARY.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
            return op(self._eval(node.operand, namespace))

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, namespace)
            for op_node, comparator in zip(node.ops, node.comparators):
                op = _COMPARATORS.get(type(op_node))
                if op is None:
                    raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
                right = self._eval(comparator, namespace)
                if not op(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionError(f"Access to private attribute '{node.attr}' is not allowed")
            base = self._eval(node.value, namespace)
            if not isinstance(base, dict):
                raise ExpressionError(f"Attribute access is only allowed on variable data: '{node.attr}'")
            return _lookup_key(base, node.attr)

        if isinstance(node, ast.Subscript):
            base = self._eval(node.value, namespace)
            key = self._eval(node.slice, namespace)
            if not isinstance(base, (dict, list, tuple, str)):
                raise ExpressionError("Subscript is only allowed on variable data")
            return base[key]

        if isinstance(node, (ast.List, ast.Tuple)):
            items = [self._eval(elt, namespace) for elt in node.elts]
            return items if isinstance(node, ast.List) else tuple(items)

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _SAFE_FUNCTIONS:
                raise ExpressionError("Only len, str, int, float, bool, abs, min and max may be called")
            if node.keywords:
                raise ExpressionError("Keyword arguments are not allowed")
            args = [self._eval(arg, namespace) for arg in node.args]
            return _SAFE_FUNCTIONS[node.func.id](*args)

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")


_evaluator = SafeExpressionEvaluator()


def evaluate_expression(expression: str, variables: dict[str, Any], extra: Optional[dict[str, Any]] = None) -> Any:
    """Module-level shortcut used by the step executor."""
    return _evaluator.evaluate(expression, variables, extra)
