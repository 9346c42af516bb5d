import enum
import json

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from grade_engine.db.database import Base


class TriggerType(str, enum.Enum):
    MANUAL = "manual"
    AUTO_GRADE_CHANGE = "auto_grade_change"
    AUTO_ASSESSMENT_CHANGE = "auto_assessment_change"
    FORMULA_CHANGE = "formula_change"


class ComputationStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class FinalGrade(Base):
    """Computed grade for one (student, course offering) pair.

    ``revision`` is SQLAlchemy's optimistic version counter: an UPDATE that
    raced with another writer fails with StaleDataError instead of silently
    overwriting.
    """

    __tablename__ = "final_grades"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    course_offering_id = Column(
        Integer, ForeignKey("course_offerings.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    numeric_grade = Column(Numeric(8, 4), nullable=True)
    letter_grade = Column(String(5), nullable=True)
    is_passing = Column(Boolean, nullable=True)
    component_breakdown = Column(Text, nullable=True)  # JSON string (Text for SQLite compat)

    formula_id = Column(Integer, ForeignKey("grading_formulas.id", ondelete="SET NULL"), nullable=True)
    formula_version = Column(Integer, nullable=True)
    computed_at = Column(DateTime(timezone=True), nullable=True)
    computed_by = Column(Integer, nullable=True)

    # Staff override; when set it is the grade of record and recomputes
    # only refresh the computed numeric_grade underneath it
    override_grade = Column(Numeric(8, 4), nullable=True)
    override_reason = Column(Text, nullable=True)
    override_by = Column(Integer, nullable=True)
    override_at = Column(DateTime(timezone=True), nullable=True)

    is_published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    published_by = Column(Integer, nullable=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(Integer, nullable=True)

    revision = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    formula = relationship("GradingFormula")
    computations = relationship(
        "ComputationLogEntry", back_populates="final_grade", order_by="ComputationLogEntry.id",
    )

    __mapper_args__ = {"version_id_col": revision}

    __table_args__ = (
        UniqueConstraint("student_id", "course_offering_id", name="uq_final_grades_student_offering"),
        Index("ix_final_grades_published", "is_published"),
        Index("ix_final_grades_locked", "is_locked"),
    )

    @property
    def breakdown(self) -> dict:
        return json.loads(self.component_breakdown) if self.component_breakdown else {}

    @property
    def is_overridden(self) -> bool:
        return self.override_grade is not None

    @property
    def effective_grade(self):
        return self.override_grade if self.override_grade is not None else self.numeric_grade


class ComputationLogEntry(Base):
    """Append-only audit row: one per recompute attempt, failed ones included."""

    __tablename__ = "grade_computations"

    id = Column(Integer, primary_key=True, index=True)
    # Null when the attempt failed before any FinalGrade existed for the pair
    final_grade_id = Column(Integer, ForeignKey("final_grades.id", ondelete="CASCADE"), nullable=True)
    student_id = Column(Integer, nullable=False)
    course_offering_id = Column(Integer, nullable=False)

    trigger_type = Column(String(30), nullable=False)
    triggered_by = Column(Integer, nullable=True)
    trigger_description = Column(Text, nullable=True)

    previous_grade = Column(Numeric(8, 4), nullable=True)
    new_grade = Column(Numeric(8, 4), nullable=True)
    computation_log = Column(Text, nullable=True)  # JSON string: steps, components, applied rule

    status = Column(String(20), nullable=False, default=ComputationStatus.PENDING.value)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    final_grade = relationship("FinalGrade", back_populates="computations")

    __table_args__ = (
        Index("ix_grade_computations_pair", "student_id", "course_offering_id"),
        Index("ix_grade_computations_status", "status"),
        Index("ix_grade_computations_started", "started_at"),
    )

    @property
    def log_details(self) -> dict:
        return json.loads(self.computation_log) if self.computation_log else {}
