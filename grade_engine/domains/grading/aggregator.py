"""Reduce a student's raw assessment scores into one component value.

Strategies are small frozen dataclasses, one per aggregation rule, each
carrying only its own parameters. ``aggregate`` never treats "no data" as
zero on its own: when nothing usable is left after the missing policy is
applied it returns ``MissingData`` and the caller decides what that means.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Union

ZERO = Decimal("0")
ONE = Decimal("1")


class MissingPolicy(str, enum.Enum):
    IGNORE = "ignore"  # ungraded entries are dropped
    ZERO = "zero"  # ungraded entries count as 0
    FAIL_VALIDATION = "fail_validation"  # any ungraded entry fails the component


class Reduction(str, enum.Enum):
    AVERAGE = "average"
    SUM = "sum"


class WeightMode(str, enum.Enum):
    FIXED = "fixed"
    COUNT_BASED = "count_based"


@dataclass(frozen=True)
class MissingData:
    """Marker for a component with no usable scores."""
    reason: str = "no usable scores"


@dataclass(frozen=True)
class ScoreEntry:
    """One assessment score joined with the assessment metadata it needs."""
    assessment_id: int
    student_id: int
    adjusted_score: Decimal | None
    status: str
    group_tag: str | None = None
    raw_score: Decimal | None = None
    weight_override: Decimal | None = None
    source_type: str | None = None
    sequence_no: int | None = None
    submitted_at: datetime | None = None
    graded_at: datetime | None = None

    @property
    def effective_score(self) -> Decimal | None:
        return self.adjusted_score if self.adjusted_score is not None else self.raw_score

    @property
    def is_excused(self) -> bool:
        return self.status == "excused"

    @property
    def is_graded(self) -> bool:
        return self.status == "graded" and self.effective_score is not None

    @property
    def timestamp(self) -> datetime | None:
        return self.graded_at or self.submitted_at


# ── Strategies ────────────────────────────────────────────────────


@dataclass(frozen=True)
class Average:
    pass


@dataclass(frozen=True)
class WeightedAverage:
    weights: WeightMode = WeightMode.FIXED


@dataclass(frozen=True)
class BestN:
    n: int
    then: Reduction = Reduction.AVERAGE


@dataclass(frozen=True)
class DropLowestK:
    k: int
    then: Reduction = Reduction.AVERAGE


@dataclass(frozen=True)
class Latest:
    pass


@dataclass(frozen=True)
class Sum:
    pass


@dataclass(frozen=True)
class Max:
    pass


@dataclass(frozen=True)
class Min:
    pass


AggregatorStrategy = Union[Average, WeightedAverage, BestN, DropLowestK, Latest, Sum, Max, Min]


@dataclass(frozen=True)
class SourceFilter:
    """Selects which of a student's scores feed a component. Empty matches all."""
    group_tags: tuple[str, ...] = ()
    source_type: str | None = None
    sequence_nos: tuple[int, ...] = ()

    def matches(self, entry: ScoreEntry) -> bool:
        if self.group_tags and entry.group_tag not in self.group_tags:
            return False
        if self.source_type and entry.source_type != self.source_type:
            return False
        if self.sequence_nos and entry.sequence_no not in self.sequence_nos:
            return False
        return True

    def apply(self, scores: Iterable[ScoreEntry]) -> list[ScoreEntry]:
        return [s for s in scores if self.matches(s)]


# ── Helpers ───────────────────────────────────────────────────────


def _chronological_key(entry: ScoreEntry):
    """Earliest first; entries without a timestamp sort last."""
    ts = entry.timestamp
    return (ts is None, ts.timestamp() if ts else 0.0, entry.assessment_id)


def _usable(scores: Iterable[ScoreEntry], policy: MissingPolicy) -> list[tuple[Decimal, ScoreEntry]]:
    """Apply the missing policy. Excused entries never count."""
    usable = []
    for entry in scores:
        if entry.is_excused:
            continue
        if entry.is_graded:
            usable.append((Decimal(entry.effective_score), entry))
        elif policy is MissingPolicy.ZERO:
            usable.append((ZERO, entry))
    # Canonical order so the result never depends on input order
    usable.sort(key=lambda pair: _chronological_key(pair[1]))
    return usable


def _reduce(values: list[Decimal], how: Reduction) -> Decimal:
    total = sum(values, ZERO)
    if how is Reduction.SUM:
        return total
    return total / Decimal(len(values))


def _ranked_high_to_low(usable: list[tuple[Decimal, ScoreEntry]]) -> list[tuple[Decimal, ScoreEntry]]:
    # usable is already chronological; a stable sort keeps earliest first among ties
    return sorted(usable, key=lambda pair: pair[0], reverse=True)


def _weights(usable: list[tuple[Decimal, ScoreEntry]], mode: WeightMode) -> list[Decimal]:
    fixed = [
        Decimal(entry.weight_override) if entry.weight_override is not None else ONE
        for _, entry in usable
    ]
    if mode is WeightMode.FIXED:
        return fixed
    group_sizes: dict[str | None, int] = {}
    for _, entry in usable:
        group_sizes[entry.group_tag] = group_sizes.get(entry.group_tag, 0) + 1
    return [w / Decimal(group_sizes[entry.group_tag]) for w, (_, entry) in zip(fixed, usable)]


# ── Entry point ───────────────────────────────────────────────────


def aggregate(
    scores: Iterable[ScoreEntry],
    strategy: AggregatorStrategy,
    missing_policy: MissingPolicy | str = MissingPolicy.IGNORE,
) -> Decimal | MissingData:
    """Compute one component value from raw scores.

    Returns ``MissingData`` when nothing is left after applying the missing
    policy (or all weights are zero); callers must propagate it rather than
    substitute zero. Under ``fail_validation`` a single ungraded entry also
    yields ``MissingData``, which the caller turns into a hard failure.
    """
    policy = MissingPolicy(missing_policy)
    scores = list(scores)
    if policy is MissingPolicy.FAIL_VALIDATION:
        ungraded = [s for s in scores if not s.is_excused and not s.is_graded]
        if ungraded:
            return MissingData(f"{len(ungraded)} ungraded score(s)")
    usable = _usable(scores, policy)
    if not usable:
        return MissingData()

    if isinstance(strategy, Average):
        return _reduce([v for v, _ in usable], Reduction.AVERAGE)

    if isinstance(strategy, Sum):
        return _reduce([v for v, _ in usable], Reduction.SUM)

    if isinstance(strategy, Max):
        return max(v for v, _ in usable)

    if isinstance(strategy, Min):
        return min(v for v, _ in usable)

    if isinstance(strategy, WeightedAverage):
        weights = _weights(usable, strategy.weights)
        total_weight = sum(weights, ZERO)
        if total_weight == ZERO:
            return MissingData("all weights are zero")
        weighted = sum((w * v for w, (v, _) in zip(weights, usable)), ZERO)
        return weighted / total_weight

    if isinstance(strategy, BestN):
        kept = _ranked_high_to_low(usable)[: strategy.n]
        return _reduce([v for v, _ in kept], strategy.then)

    if isinstance(strategy, DropLowestK):
        ranked = _ranked_high_to_low(usable)
        # Never drop the last remaining score
        keep = max(len(ranked) - strategy.k, 1)
        return _reduce([v for v, _ in ranked[:keep]], strategy.then)

    if isinstance(strategy, Latest):
        graded = [(v, e) for v, e in usable if e.is_graded]
        if not graded:
            # Only reachable under the zero policy
            return ZERO
        dated = [(v, e) for v, e in graded if e.timestamp is not None] or graded
        return dated[-1][0]

    raise TypeError(f"Unsupported aggregator strategy: {strategy!r}")
