"""Pure final-grade computation: scores + components + formula in, result out.

No database access and no shared state; the recompute service and the
formula preview both call straight into ``compute_final_grade``.
"""

from dataclasses import dataclass, field
from decimal import Decimal, DecimalException
from typing import Iterable, Mapping

from grade_engine.core.errors import ExpressionEvaluationError, UnresolvedComponentError
from grade_engine.domains.grading.aggregator import MissingData, MissingPolicy, ScoreEntry, aggregate
from grade_engine.domains.grading.compiled import CompiledComponent, CompiledFormula
from grade_engine.domains.grading.conditions import evaluate_conditions
from grade_engine.domains.grading.expression import Binding, evaluate
from grade_engine.domains.grading.rounding import MAX_GRADE_MAGNITUDE, classify, is_passing, round_grade

STANDARD_RULE = "standard"


@dataclass
class GradeResult:
    numeric_grade: Decimal
    letter_grade: str | None
    is_passing: bool | None
    raw_value: Decimal
    applied_rule: str
    expression_used: str
    bindings: dict[str, Binding]
    steps: list[str] = field(default_factory=list)

    def breakdown(self, formula: CompiledFormula | None = None) -> dict:
        """JSON-safe component breakdown stored on the FinalGrade."""
        data = {
            "components": {
                key: None if isinstance(value, MissingData) else str(value)
                for key, value in sorted(self.bindings.items())
            },
            "formula_used": self.expression_used,
            "applied_rule": self.applied_rule,
            "raw_value": str(self.raw_value),
        }
        if formula is not None:
            data["formula_id"] = formula.formula_id
            data["formula_version"] = formula.version
        return data


def build_bindings(
    scores: Iterable[ScoreEntry],
    components: Iterable[CompiledComponent],
) -> dict[str, Binding]:
    """Aggregate each component over the scores its source filter selects.

    A ``fail_validation`` component with missing data raises
    UnresolvedComponentError here, before any default or condition can
    paper over it. Component rounding, when configured, applies to the
    aggregated value before the formula sees it.
    """
    scores = list(scores)
    bindings: dict[str, Binding] = {}
    for component in components:
        value = aggregate(
            component.source_filter.apply(scores),
            component.strategy,
            component.missing_policy,
        )
        if isinstance(value, MissingData):
            if component.missing_policy is MissingPolicy.FAIL_VALIDATION:
                raise UnresolvedComponentError(component.key, value.reason)
        elif component.rounding is not None:
            value = round_grade(value, component.rounding, component.decimal_places)
        bindings[component.key] = value
    return bindings


def _defaults(components: Iterable[CompiledComponent]) -> dict[str, Decimal]:
    return {c.key: c.default_value for c in components if c.default_value is not None}


def grade_outcome(formula: CompiledFormula, numeric: Decimal) -> tuple[str | None, bool | None]:
    """Letter and pass/fail for an already rounded grade."""
    return (
        classify(numeric, formula.boundaries, formula.failing_letter),
        is_passing(numeric, formula.pass_threshold),
    )


def evaluate_formula(
    formula: CompiledFormula,
    bindings: Mapping[str, Binding],
    defaults: Mapping[str, Decimal] | None = None,
) -> GradeResult:
    """Conditions first, in order; the main expression only if none matched."""
    steps = []
    matched = evaluate_conditions(formula.conditions, bindings)
    if matched is not None:
        expression, expression_text, rule = matched.expression, matched.expression_text, matched.label
        steps.append(f"Condition matched: {matched.predicate} -> {expression_text}")
    else:
        expression, expression_text, rule = formula.expression, formula.expression_text, STANDARD_RULE
        if formula.conditions:
            steps.append(f"No condition matched ({len(formula.conditions)} checked)")

    raw_value = evaluate(expression, bindings, defaults)
    steps.append(f"Evaluated {expression_text} = {raw_value}")

    try:
        numeric = round_grade(raw_value, formula.rounding_rule, formula.decimal_places)
    except DecimalException:
        raise ExpressionEvaluationError(f"Result of {expression_text} is too large to round") from None
    if abs(numeric) >= MAX_GRADE_MAGNITUDE:
        raise ExpressionEvaluationError(
            f"Result of {expression_text} ({numeric}) is out of range; grades must be below {MAX_GRADE_MAGNITUDE}"
        )
    steps.append(f"Rounded {formula.rounding_rule.value} to {formula.decimal_places} places: {numeric}")

    letter, passing = grade_outcome(formula, numeric)
    steps.append(f"Letter grade: {letter}, passing: {passing}")

    return GradeResult(
        numeric_grade=numeric,
        letter_grade=letter,
        is_passing=passing,
        raw_value=raw_value,
        applied_rule=rule,
        expression_used=expression_text,
        bindings=dict(bindings),
        steps=steps,
    )


def compute_final_grade(
    scores: Iterable[ScoreEntry],
    components: Iterable[CompiledComponent],
    formula: CompiledFormula,
) -> GradeResult:
    """Aggregate components, apply overrides or the main expression, round, classify."""
    scores = list(scores)
    components = list(components)
    bindings = build_bindings(scores, components)
    result = evaluate_formula(formula, bindings, _defaults(components))
    result.steps.insert(0, f"Input scores: {len(scores)}, components: {len(components)}")
    return result
