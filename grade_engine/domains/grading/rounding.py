"""Rounding policies and letter-grade classification."""

import enum
from dataclasses import dataclass
from decimal import (
    ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal,
    InvalidOperation,
)
from typing import Iterable, Mapping, Sequence, Union

from grade_engine.core.errors import FormulaConfigError

MAX_DECIMAL_PLACES = 4  # final_grades.numeric_grade is Numeric(8, 4)
# Grades must stay strictly below this in magnitude to fit that column
MAX_GRADE_MAGNITUDE = Decimal(10) ** (8 - MAX_DECIMAL_PLACES)


class RoundingRule(str, enum.Enum):
    NONE = "none"
    HALF_UP = "half_up"
    HALF_DOWN = "half_down"
    BANKERS = "bankers"
    FLOOR = "floor"
    CEIL = "ceil"


_DECIMAL_MODES = {
    RoundingRule.HALF_UP: ROUND_HALF_UP,
    RoundingRule.HALF_DOWN: ROUND_HALF_DOWN,
    RoundingRule.BANKERS: ROUND_HALF_EVEN,
    RoundingRule.FLOOR: ROUND_FLOOR,
    RoundingRule.CEIL: ROUND_CEILING,
}


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps the shortest repr, so 84.445 stays 84.445 rather than 84.44499...
    return Decimal(str(value))


def round_grade(value, rule: RoundingRule | str = RoundingRule.HALF_UP, places: int = 2) -> Decimal:
    """Round ``value`` to ``places`` decimals using ``rule``.

    >>> round_grade(84.445, "half_up", 2)
    Decimal('84.45')
    >>> round_grade(84.445, "bankers", 2)
    Decimal('84.44')
    """
    rule = RoundingRule(rule)
    value = _to_decimal(value)
    if rule is RoundingRule.NONE:
        return value
    if not 0 <= places <= MAX_DECIMAL_PLACES:
        raise ValueError(f"decimal places must be between 0 and {MAX_DECIMAL_PLACES}")
    quantum = Decimal(1).scaleb(-places)
    return value.quantize(quantum, rounding=_DECIMAL_MODES[rule])


@dataclass(frozen=True)
class GradeBoundary:
    letter: str
    min_score: Decimal


BoundaryPayload = Union[Mapping[str, object], Sequence[Mapping[str, object]]]


def parse_boundaries(raw: BoundaryPayload | None) -> tuple[GradeBoundary, ...]:
    """Normalize a boundary table, sorted by threshold descending.

    Accepts ``{"A": 90, "B": 80}`` or ``[{"letter": "A", "min_score": 90}, ...]``.
    Raises FormulaConfigError on duplicates, blanks or non-numeric thresholds.
    """
    if not raw:
        return ()
    if isinstance(raw, Mapping):
        pairs = list(raw.items())
    else:
        try:
            pairs = [(item["letter"], item["min_score"]) for item in raw]
        except (KeyError, TypeError):
            raise FormulaConfigError("Each grade boundary needs 'letter' and 'min_score'") from None

    boundaries = []
    for letter, min_score in pairs:
        letter = str(letter).strip()
        if not letter:
            raise FormulaConfigError("Grade boundary letters must not be blank")
        try:
            threshold = _to_decimal(min_score)
        except (InvalidOperation, ValueError, TypeError):
            raise FormulaConfigError(f"Boundary '{letter}' has a non-numeric threshold: {min_score!r}") from None
        if not threshold.is_finite() or threshold < 0:
            raise FormulaConfigError(f"Boundary '{letter}' threshold must be a non-negative number")
        boundaries.append(GradeBoundary(letter, threshold))

    letters = [b.letter for b in boundaries]
    if len(set(letters)) != len(letters):
        raise FormulaConfigError("Grade boundary letters must be unique")
    thresholds = [b.min_score for b in boundaries]
    if len(set(thresholds)) != len(thresholds):
        raise FormulaConfigError("Grade boundary thresholds must be unique")

    return tuple(sorted(boundaries, key=lambda b: b.min_score, reverse=True))


def classify(
    value,
    boundaries: Iterable[GradeBoundary] | BoundaryPayload,
    failing_letter: str | None = "F",
) -> str | None:
    """Map a (rounded) grade to a letter.

    The first boundary, highest threshold first, whose threshold is <= value
    wins. Below every threshold the failing letter is returned, or the lowest
    defined letter when no failing letter is configured. No boundaries at all
    means no letter.
    """
    if isinstance(boundaries, Mapping):
        boundaries = parse_boundaries(boundaries)
    else:
        boundaries = tuple(boundaries)
        if any(not isinstance(b, GradeBoundary) for b in boundaries):
            boundaries = parse_boundaries(boundaries)
    if not boundaries:
        return None
    value = _to_decimal(value)
    ordered = sorted(boundaries, key=lambda b: b.min_score, reverse=True)
    for boundary in ordered:
        if boundary.min_score <= value:
            return boundary.letter
    return failing_letter or ordered[-1].letter


def is_passing(value, pass_threshold) -> bool | None:
    if pass_threshold is None:
        return None
    return _to_decimal(value) >= _to_decimal(pass_threshold)
