"""Ordered override rules evaluated before a formula's main expression.

Each condition pairs a single predicate with a replacement expression, e.g.
``uas < 60`` → ``uas``. Conditions are tried strictly in declaration order and
the first whose predicate holds wins; nothing after it is consulted.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from grade_engine.core.errors import ExpressionEvaluationError, ExpressionSyntaxError
from grade_engine.domains.grading.aggregator import MissingData
from grade_engine.domains.grading.expression import Binding, Expression, parse_expression

_COMPARISON_RE = re.compile(
    r"(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*(?P<op><|>)\s*(?P<literal>[-+]?\d+(?:\.\d+)?)"
)
# "is null" / "== null" are the spellings older formula payloads use
_MISSING_RE = re.compile(
    r"(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*(?:==\s*null|\s(?:is_missing|is\s+null))",
    re.IGNORECASE,
)

IS_MISSING = "is_missing"


@dataclass(frozen=True)
class Predicate:
    key: str
    op: str  # "<", ">" or "is_missing"
    literal: Decimal | None = None

    def holds(self, bindings: Mapping[str, Binding]) -> bool:
        if self.key not in bindings:
            raise ExpressionEvaluationError(f"Unknown binding '{self.key}' in condition")
        value = bindings[self.key]
        if self.op == IS_MISSING:
            return isinstance(value, MissingData)
        if isinstance(value, MissingData):
            # A missing component never satisfies a numeric comparison
            return False
        value = value if isinstance(value, Decimal) else Decimal(str(value))
        return value < self.literal if self.op == "<" else value > self.literal

    def __str__(self) -> str:
        if self.op == IS_MISSING:
            return f"{self.key} is_missing"
        return f"{self.key} {self.op} {self.literal}"


@dataclass(frozen=True)
class CompiledCondition:
    index: int
    predicate: Predicate
    expression: Expression
    expression_text: str
    description: str | None = None

    @property
    def label(self) -> str:
        return self.description or f"condition {self.index + 1}: {self.predicate}"


def parse_predicate(text: str) -> Predicate:
    source = (text or "").strip()
    match = _COMPARISON_RE.fullmatch(source)
    if match:
        return Predicate(match["key"], match["op"], Decimal(match["literal"]))
    match = _MISSING_RE.fullmatch(source)
    if match:
        return Predicate(match["key"], IS_MISSING)
    raise ExpressionSyntaxError(
        f"Unsupported condition '{source}'. Use 'key < number', 'key > number' or 'key is_missing'",
        source,
    )


def compile_conditions(raw_conditions: Iterable[Mapping]) -> tuple[CompiledCondition, ...]:
    """Parse stored ``{predicate, expression, description}`` dicts, keeping order."""
    compiled = []
    for index, raw in enumerate(raw_conditions):
        try:
            predicate = parse_predicate(raw["predicate"])
            expression = parse_expression(raw["expression"])
        except ExpressionSyntaxError as e:
            raise ExpressionSyntaxError(
                f"Condition {index + 1}: {e.message}", e.expression, e.position,
            ) from None
        compiled.append(CompiledCondition(
            index=index,
            predicate=predicate,
            expression=expression,
            expression_text=raw["expression"].strip(),
            description=raw.get("description"),
        ))
    return tuple(compiled)


def evaluate_conditions(
    conditions: Iterable[CompiledCondition],
    bindings: Mapping[str, Binding],
) -> Optional[CompiledCondition]:
    """Return the first condition whose predicate holds, or None."""
    for condition in conditions:
        if condition.predicate.holds(bindings):
            return condition
    return None
