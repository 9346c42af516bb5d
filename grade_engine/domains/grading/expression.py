"""Closed-grammar formula expressions.

Expression text is parsed once, at activation time, into a small tree of
frozen nodes. Python's own ``ast`` module does the tokenizing; every node it
produces is then checked against a whitelist and converted, so anything
outside the grammar (attribute access, subscripts, strings, keyword
arguments, ``**``...) is rejected before it can be stored. Evaluation walks
the converted tree with ``Decimal`` arithmetic and never executes code.

Grammar::

    expr     := expr ('+' | '-') term | term
    term     := term ('*' | '/') unary | unary
    unary    := ('+' | '-') unary | atom
    atom     := NUMBER | NAME | '(' expr ')' | call
    call     := MIN '(' expr {',' expr} ')'
              | MAX '(' expr {',' expr} ')'
              | IF '(' compare ',' expr ',' expr ')'
    compare  := expr ('<' | '<=' | '>' | '>=' | '==' | '!=') expr
"""

import ast
import re
from dataclasses import dataclass
from decimal import Decimal, DecimalException, InvalidOperation
from typing import Mapping, Union

from grade_engine.core.errors import (
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    UnresolvedComponentError,
)
from grade_engine.domains.grading.aggregator import MissingData

MAX_EXPRESSION_LENGTH = 2000
MAX_NODES = 500

FUNCTIONS = frozenset({"MIN", "MAX", "IF"})

# Lowercase "if" is a Python keyword; rewrite the call form so ast accepts it.
# Same length, so error offsets still point into the author's text.
_LOWER_IF_CALL = re.compile(r"\bif(?=\s*\()")


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Name:
    key: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expression"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class Call:
    func: str
    args: tuple


Expression = Union[Number, Name, UnaryOp, BinaryOp, Compare, Call]

_BIN_OPS = {ast.Add: "+", ast.Sub: "-", ast.Mult: "*", ast.Div: "/"}
_UNARY_OPS = {ast.UAdd: "+", ast.USub: "-"}
_CMP_OPS = {
    ast.Lt: "<", ast.LtE: "<=", ast.Gt: ">", ast.GtE: ">=", ast.Eq: "==", ast.NotEq: "!=",
}


# ── Parsing ───────────────────────────────────────────────────────


class _Converter:
    """Whitelisting translation from ``ast`` nodes to expression nodes."""

    def __init__(self, source: str):
        self.source = source
        self.count = 0

    def fail(self, message: str, node: ast.AST | None = None):
        position = getattr(node, "col_offset", None)
        raise ExpressionSyntaxError(message, self.source, position)

    def convert(self, node: ast.AST, allow_compare: bool = False) -> Expression:
        self.count += 1
        if self.count > MAX_NODES:
            self.fail(f"Expression is too complex (more than {MAX_NODES} nodes)")

        if isinstance(node, ast.Constant):
            return self._number(node)

        if isinstance(node, ast.Name):
            if node.id.upper() in FUNCTIONS:
                self.fail(f"'{node.id}' is a function and must be called", node)
            return Name(node.id)

        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return UnaryOp(_UNARY_OPS[type(node.op)], self.convert(node.operand))

        if isinstance(node, ast.BinOp):
            if type(node.op) not in _BIN_OPS:
                self.fail("Only + - * / operators are allowed", node)
            return BinaryOp(_BIN_OPS[type(node.op)], self.convert(node.left), self.convert(node.right))

        if isinstance(node, ast.Compare):
            if not allow_compare:
                self.fail("Comparisons are only allowed as the first argument of IF", node)
            if len(node.ops) != 1 or type(node.ops[0]) not in _CMP_OPS:
                self.fail("Chained or unsupported comparison", node)
            return Compare(
                _CMP_OPS[type(node.ops[0])],
                self.convert(node.left),
                self.convert(node.comparators[0]),
            )

        if isinstance(node, ast.Call):
            return self._call(node)

        if isinstance(node, ast.BoolOp):
            self.fail("Compound conditions (and/or) are not supported", node)

        self.fail(f"Unsupported syntax: {type(node).__name__}", node)

    def _number(self, node: ast.Constant) -> Number:
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            self.fail(f"Unsupported literal: {node.value!r}", node)
        # Use the literal text, not the float, so 0.1 stays exactly 0.1
        literal = ast.get_source_segment(self.source, node) or repr(node.value)
        try:
            value = Decimal(literal)
        except InvalidOperation:
            self.fail(f"Unsupported numeric literal: {literal}", node)
        if not value.is_finite():
            self.fail(f"Numeric literal must be finite: {literal}", node)
        return Number(value)

    def _call(self, node: ast.Call) -> Call:
        if not isinstance(node.func, ast.Name):
            self.fail("Only MIN, MAX and IF may be called", node)
        func = node.func.id.upper()
        if func not in FUNCTIONS:
            self.fail(f"Unknown function '{node.func.id}'. Allowed: IF, MAX, MIN", node)
        if node.keywords:
            self.fail(f"{func} does not take keyword arguments", node)
        if func == "IF":
            if len(node.args) != 3:
                self.fail("IF takes exactly 3 arguments: IF(condition, then, else)", node)
            condition = self.convert(node.args[0], allow_compare=True)
            if not isinstance(condition, Compare):
                self.fail("The first argument of IF must be a comparison", node)
            return Call(func, (condition, self.convert(node.args[1]), self.convert(node.args[2])))
        if not node.args:
            self.fail(f"{func} needs at least one argument", node)
        return Call(func, tuple(self.convert(arg) for arg in node.args))


def parse_expression(text: str) -> Expression:
    """Parse expression text into a tree, or raise ExpressionSyntaxError."""
    source = (text or "").strip()
    if not source:
        raise ExpressionSyntaxError("Expression is empty", text or "")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSyntaxError(
            f"Expression is longer than {MAX_EXPRESSION_LENGTH} characters", source,
        )
    source = _LOWER_IF_CALL.sub("IF", source)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionSyntaxError(f"Invalid expression: {e.msg}", source, e.offset) from None
    except (ValueError, RecursionError, MemoryError):
        raise ExpressionSyntaxError("Invalid expression", source) from None
    return _Converter(source).convert(tree.body)


def referenced_names(node: Expression) -> set[str]:
    """All binding keys an expression reads (in any branch)."""
    if isinstance(node, Name):
        return {node.key}
    if isinstance(node, Number):
        return set()
    if isinstance(node, UnaryOp):
        return referenced_names(node.operand)
    if isinstance(node, (BinaryOp, Compare)):
        return referenced_names(node.left) | referenced_names(node.right)
    names: set[str] = set()
    for arg in node.args:
        names |= referenced_names(arg)
    return names


# ── Evaluation ────────────────────────────────────────────────────


Binding = Union[Decimal, MissingData]


def _lookup(key: str, bindings: Mapping[str, Binding], defaults: Mapping[str, Decimal]) -> Decimal:
    if key not in bindings:
        raise ExpressionEvaluationError(f"Unknown binding '{key}'")
    value = bindings[key]
    if isinstance(value, MissingData):
        if key in defaults:
            return Decimal(defaults[key])
        raise UnresolvedComponentError(key)
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float)):
        raise ExpressionEvaluationError(f"Binding '{key}' is not numeric: {value!r}")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _compare(node: Compare, bindings, defaults) -> bool:
    left = _eval(node.left, bindings, defaults)
    right = _eval(node.right, bindings, defaults)
    return {
        "<": left < right,
        "<=": left <= right,
        ">": left > right,
        ">=": left >= right,
        "==": left == right,
        "!=": left != right,
    }[node.op]


def _eval(node: Expression, bindings, defaults) -> Decimal:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Name):
        return _lookup(node.key, bindings, defaults)
    if isinstance(node, UnaryOp):
        value = _eval(node.operand, bindings, defaults)
        return -value if node.op == "-" else +value
    if isinstance(node, BinaryOp):
        left = _eval(node.left, bindings, defaults)
        right = _eval(node.right, bindings, defaults)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if right == 0:
            raise ExpressionEvaluationError("Division by zero")
        return left / right
    if isinstance(node, Call):
        if node.func == "IF":
            condition, then_branch, else_branch = node.args
            # Only the taken branch is evaluated
            chosen = then_branch if _compare(condition, bindings, defaults) else else_branch
            return _eval(chosen, bindings, defaults)
        values = [_eval(arg, bindings, defaults) for arg in node.args]
        return min(values) if node.func == "MIN" else max(values)
    raise ExpressionEvaluationError(f"Comparison used as a value: {node!r}")


def evaluate(
    expression: Expression,
    bindings: Mapping[str, Binding],
    defaults: Mapping[str, Decimal] | None = None,
) -> Decimal:
    """Evaluate a parsed expression against component bindings.

    ``defaults`` supplies fallback values for components whose aggregation
    produced ``MissingData``.
    """
    try:
        result = _eval(expression, bindings, defaults or {})
    except DecimalException as e:
        raise ExpressionEvaluationError(f"Arithmetic error: {type(e).__name__}") from e
    if not result.is_finite():
        raise ExpressionEvaluationError(f"Expression produced a non-finite result: {result}")
    return result
