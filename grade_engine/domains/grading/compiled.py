"""Activation-time compilation of formula and component rows.

Parsing and validation happen here once per (row id, version); the compiled
objects are immutable and cached, so per-student computation never touches
expression text or JSON payloads.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from grade_engine.core.config import settings
from grade_engine.domains.grading.aggregator import AggregatorStrategy, MissingPolicy, SourceFilter
from grade_engine.domains.grading.conditions import CompiledCondition, compile_conditions
from grade_engine.domains.grading.expression import Expression, parse_expression
from grade_engine.domains.grading.rounding import GradeBoundary, RoundingRule, parse_boundaries
from grade_engine.models.grading import GradingComponent, GradingFormula


@dataclass(frozen=True)
class CompiledFormula:
    expression_text: str
    expression: Expression
    conditions: tuple[CompiledCondition, ...]
    rounding_rule: RoundingRule
    decimal_places: int
    pass_threshold: Decimal | None
    boundaries: tuple[GradeBoundary, ...]
    failing_letter: str | None
    formula_id: int | None = None
    version: int | None = None

    @classmethod
    def build(
        cls,
        expression: str,
        conditions: Iterable[Mapping] = (),
        rounding_rule: RoundingRule | str = RoundingRule.HALF_UP,
        decimal_places: int = 2,
        pass_threshold=None,
        grade_boundaries=None,
        failing_letter: str | None = None,
        formula_id: int | None = None,
        version: int | None = None,
    ) -> "CompiledFormula":
        """Parse and validate; raises ExpressionSyntaxError / FormulaConfigError."""
        return cls(
            expression_text=expression.strip(),
            expression=parse_expression(expression),
            conditions=compile_conditions(conditions),
            rounding_rule=RoundingRule(rounding_rule),
            decimal_places=decimal_places,
            pass_threshold=Decimal(str(pass_threshold)) if pass_threshold is not None else None,
            boundaries=parse_boundaries(grade_boundaries),
            failing_letter=failing_letter or settings.default_failing_letter,
            formula_id=formula_id,
            version=version,
        )


@dataclass(frozen=True)
class CompiledComponent:
    key: str
    strategy: AggregatorStrategy
    missing_policy: MissingPolicy
    source_filter: SourceFilter
    default_value: Decimal | None = None
    display_label: str | None = None
    component_id: int | None = None
    version: int | None = None
    # Applied to the aggregated value; None leaves it unrounded
    rounding: RoundingRule | None = None
    decimal_places: int = 2


def compile_formula(formula: GradingFormula) -> CompiledFormula:
    return CompiledFormula.build(
        expression=formula.expression,
        conditions=formula.conditions_config,
        rounding_rule=formula.rounding_rule,
        decimal_places=formula.decimal_places,
        pass_threshold=formula.pass_threshold,
        grade_boundaries=formula.boundaries_config,
        failing_letter=formula.failing_letter,
        formula_id=formula.id,
        version=formula.version,
    )


def compile_component(component: GradingComponent) -> CompiledComponent:
    # Imported here: the schemas module imports the domain types defined above
    from grade_engine.schemas.grading import parse_aggregator, parse_source_filter

    aggregator = parse_aggregator(component.aggregator_config)
    return CompiledComponent(
        key=component.key,
        strategy=aggregator.to_strategy(),
        missing_policy=MissingPolicy(component.missing_policy),
        source_filter=parse_source_filter(component.source_filter_config),
        default_value=component.default_value,
        display_label=component.display_label,
        component_id=component.id,
        version=component.version,
        rounding=aggregator.rounding,
        decimal_places=aggregator.decimal_places if aggregator.decimal_places is not None else 2,
    )


class CompiledConfigCache:
    """Compiled formulas and components keyed by (id, version).

    Rows are immutable once versioned, so entries never go stale; a new
    version simply gets a new key.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._formulas: dict[tuple[int, int], CompiledFormula] = {}
        self._components: dict[tuple[int, int], CompiledComponent] = {}

    def formula(self, row: GradingFormula) -> CompiledFormula:
        key = (row.id, row.version)
        with self._lock:
            cached = self._formulas.get(key)
        if cached is None:
            cached = compile_formula(row)
            with self._lock:
                self._formulas[key] = cached
        return cached

    def component(self, row: GradingComponent) -> CompiledComponent:
        key = (row.id, row.version)
        with self._lock:
            cached = self._components.get(key)
        if cached is None:
            cached = compile_component(row)
            with self._lock:
                self._components[key] = cached
        return cached
