import enum
import json

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from grade_engine.db.database import Base


class GradingScope(str, enum.Enum):
    """Formula/component scopes, least specific first."""
    SCHOOL = "school"
    PERIOD = "period"
    SUBJECT = "subject"
    COURSE_OFFERING = "course_offering"


class GradingComponent(Base):
    """A named aggregate (e.g. ``tugas_harian``) bound into formula expressions.

    ``aggregator`` and ``source_filter`` are JSON payloads validated at
    activation time by ``grade_engine.schemas.grading``.
    """

    __tablename__ = "grading_components"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(20), nullable=False)
    scope_ref_id = Column(Integer, nullable=False)
    key = Column(String(50), nullable=False)
    display_label = Column(String(100), nullable=True)

    source_filter = Column(Text, nullable=False, default="{}")  # JSON string (Text for SQLite compat)
    aggregator = Column(Text, nullable=False)  # JSON string, tagged by "type"
    missing_policy = Column(String(20), nullable=False, default="ignore")
    default_value = Column(Numeric(8, 4), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=False)
    created_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    activated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_grading_components_scope_key_active", "scope", "scope_ref_id", "key", "is_active"),
    )

    @property
    def aggregator_config(self) -> dict:
        return json.loads(self.aggregator)

    @property
    def source_filter_config(self) -> dict:
        return json.loads(self.source_filter or "{}")


class GradingFormula(Base):
    """Expression, ordered override conditions, rounding and letter boundaries.

    At most one active formula per (scope, scope_ref_id); activation of a new
    version deactivates the previous one in the same transaction.
    """

    __tablename__ = "grading_formulas"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(20), nullable=False)
    scope_ref_id = Column(Integer, nullable=False)
    expression = Column(Text, nullable=False)
    conditions = Column(Text, nullable=False, default="[]")  # JSON list, order is significant
    rounding_rule = Column(String(20), nullable=False, default="half_up")
    decimal_places = Column(Integer, nullable=False, default=2)
    pass_threshold = Column(Numeric(5, 2), nullable=True)
    grade_boundaries = Column(Text, nullable=False, default="[]")  # JSON list of {letter, min_score}
    failing_letter = Column(String(5), nullable=True)
    description = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=False)
    created_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    activated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_grading_formulas_scope_active", "scope", "scope_ref_id", "is_active"),
        Index("ix_grading_formulas_version", "scope", "scope_ref_id", "version"),
    )

    @property
    def conditions_config(self) -> list[dict]:
        return json.loads(self.conditions or "[]")

    @property
    def boundaries_config(self) -> list[dict]:
        return json.loads(self.grade_boundaries or "[]")
