import json
import keyword
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from grade_engine.core.errors import FormulaConfigError
from grade_engine.domains.grading.aggregator import (
    AggregatorStrategy, Average, BestN, DropLowestK, Latest, Max, Min, MissingPolicy, Reduction,
    SourceFilter, Sum, WeightedAverage, WeightMode,
)
from grade_engine.domains.grading.expression import FUNCTIONS
from grade_engine.domains.grading.rounding import MAX_DECIMAL_PLACES, RoundingRule, parse_boundaries
from grade_engine.models.grading import GradingScope


# ── Aggregator strategies (tagged by "type") ─────────────────────


class _AggregatorBase(BaseModel):
    """Options shared by every strategy: rounding of the component value."""
    model_config = ConfigDict(extra="forbid")
    rounding: Optional[RoundingRule] = None
    decimal_places: Optional[int] = Field(default=None, ge=0, le=MAX_DECIMAL_PLACES)


class AverageConfig(_AggregatorBase):
    type: Literal["average"]

    def to_strategy(self) -> AggregatorStrategy:
        return Average()


class WeightedAverageConfig(_AggregatorBase):
    type: Literal["weighted_average"]
    weights: WeightMode = WeightMode.FIXED

    def to_strategy(self) -> AggregatorStrategy:
        return WeightedAverage(self.weights)


class BestNConfig(_AggregatorBase):
    type: Literal["best_n"]
    n: int = Field(ge=1)
    then: Reduction = Reduction.AVERAGE

    def to_strategy(self) -> AggregatorStrategy:
        return BestN(self.n, self.then)


class DropLowestKConfig(_AggregatorBase):
    type: Literal["drop_lowest_k"]
    k: int = Field(ge=1)
    then: Reduction = Reduction.AVERAGE

    def to_strategy(self) -> AggregatorStrategy:
        return DropLowestK(self.k, self.then)


class LatestConfig(_AggregatorBase):
    type: Literal["latest"]

    def to_strategy(self) -> AggregatorStrategy:
        return Latest()


class SumConfig(_AggregatorBase):
    type: Literal["sum"]

    def to_strategy(self) -> AggregatorStrategy:
        return Sum()


class MaxConfig(_AggregatorBase):
    type: Literal["max"]

    def to_strategy(self) -> AggregatorStrategy:
        return Max()


class MinConfig(_AggregatorBase):
    type: Literal["min"]

    def to_strategy(self) -> AggregatorStrategy:
        return Min()


AggregatorConfig = Annotated[
    Union[
        AverageConfig, WeightedAverageConfig, BestNConfig, DropLowestKConfig, LatestConfig, SumConfig,
        MaxConfig, MinConfig,
    ],
    Field(discriminator="type"),
]

_aggregator_adapter = TypeAdapter(AggregatorConfig)


def parse_aggregator(raw: dict) -> AggregatorConfig:
    """Validate a stored aggregator payload into its config variant."""
    try:
        return _aggregator_adapter.validate_python(raw)
    except ValidationError as e:
        raise FormulaConfigError(f"Invalid aggregator {raw!r}: {e.errors()[0]['msg']}") from None


class SourceFilterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    group_tags: list[str] = []
    source_type: Optional[str] = None
    sequence_nos: list[int] = []

    def to_filter(self) -> SourceFilter:
        return SourceFilter(tuple(self.group_tags), self.source_type, tuple(self.sequence_nos))


def parse_source_filter(raw: dict | None) -> SourceFilter:
    try:
        return SourceFilterConfig.model_validate(raw or {}).to_filter()
    except ValidationError as e:
        raise FormulaConfigError(f"Invalid source filter {raw!r}: {e.errors()[0]['msg']}") from None


# ── Components ────────────────────────────────────────────────────


class ComponentCreate(BaseModel):
    scope: GradingScope
    scope_ref_id: int
    key: str
    display_label: Optional[str] = None
    source_filter: SourceFilterConfig = SourceFilterConfig()
    aggregator: AggregatorConfig
    missing_policy: MissingPolicy = MissingPolicy.IGNORE
    default_value: Optional[Decimal] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped.isidentifier() or keyword.iskeyword(stripped):
            raise ValueError("Component key must be a valid identifier (letters, digits, underscore)")
        if stripped.upper() in FUNCTIONS:
            raise ValueError(f"'{stripped}' is reserved for a function name")
        return stripped


class ComponentResponse(BaseModel):
    id: int
    scope: str
    scope_ref_id: int
    key: str
    display_label: Optional[str]
    source_filter: dict
    aggregator: dict
    missing_policy: str
    default_value: Optional[float]
    version: int
    is_active: bool
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("source_filter", "aggregator", mode="before")
    @classmethod
    def decode_json(cls, v):
        return json.loads(v) if isinstance(v, str) else v


# ── Formulas ──────────────────────────────────────────────────────


class ConditionConfig(BaseModel):
    """One override rule. ``condition``/``formula`` are accepted as legacy names."""
    model_config = ConfigDict(populate_by_name=True)

    predicate: str = Field(validation_alias="condition")
    expression: str = Field(validation_alias="formula")
    description: Optional[str] = None

    @field_validator("predicate", "expression")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class BoundaryConfig(BaseModel):
    letter: str
    min_score: Decimal


class FormulaDefinition(BaseModel):
    """Everything needed to evaluate a formula, without scope or identity."""
    expression: str
    conditions: list[ConditionConfig] = []
    rounding_rule: RoundingRule = RoundingRule.HALF_UP
    decimal_places: int = Field(default=2, ge=0, le=MAX_DECIMAL_PLACES)
    pass_threshold: Optional[Decimal] = Field(default=None, ge=0)
    grade_boundaries: list[BoundaryConfig] = []
    failing_letter: Optional[str] = None

    @field_validator("grade_boundaries", mode="before")
    @classmethod
    def normalize_boundaries(cls, v):
        # {"A": 90, "B": 80} or [{"letter": "A", "min_score": 90}, ...]
        try:
            parsed = parse_boundaries(v)
        except FormulaConfigError as e:
            raise ValueError(e.message) from None
        return [{"letter": b.letter, "min_score": b.min_score} for b in parsed]

    @field_validator("conditions", mode="before")
    @classmethod
    def decode_conditions(cls, v):
        return json.loads(v) if isinstance(v, str) else v

    def conditions_payload(self) -> list[dict]:
        return [c.model_dump() for c in self.conditions]

    def boundaries_payload(self) -> list[dict]:
        return [{"letter": b.letter, "min_score": float(b.min_score)} for b in self.grade_boundaries]


class FormulaCreate(FormulaDefinition):
    scope: GradingScope
    scope_ref_id: int
    description: Optional[str] = None


class FormulaResponse(BaseModel):
    id: int
    scope: str
    scope_ref_id: int
    expression: str
    conditions: list[dict]
    rounding_rule: str
    decimal_places: int
    pass_threshold: Optional[float]
    grade_boundaries: list[dict]
    failing_letter: Optional[str]
    description: Optional[str]
    version: int
    is_active: bool
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("conditions", "grade_boundaries", mode="before")
    @classmethod
    def decode_json(cls, v):
        return json.loads(v) if isinstance(v, str) else v


class FormulaPreviewRequest(FormulaDefinition):
    """Sample bindings; null means the component has no data."""
    bindings: dict[str, Optional[Decimal]] = {}


class FormulaPreviewResponse(BaseModel):
    numeric_grade: float
    letter_grade: Optional[str]
    is_passing: Optional[bool]
    raw_value: float
    applied_rule: str
    referenced_components: list[str]
    steps: list[str]
