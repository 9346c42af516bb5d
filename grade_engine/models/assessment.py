import enum

from sqlalchemy import Column, Integer, Numeric, String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from grade_engine.db.database import Base


class ScoreStatus(str, enum.Enum):
    """Valid assessment score statuses (stored as String in DB)."""
    NOT_SUBMITTED = "not_submitted"
    SUBMITTED = "submitted"
    GRADED = "graded"
    EXCUSED = "excused"


class SourceType(str, enum.Enum):
    ASSIGNMENT = "assignment"
    TEST = "test"
    FINAL_EXAM = "final_exam"


class Assessment(Base):
    """A gradable item inside a course offering (homework, quiz, exam...).

    ``group_tag`` is what grading components filter on, e.g. "homework" or
    "midterm". ``weight_override`` feeds the weighted_average strategy.
    """

    __tablename__ = "assessments"

    id = Column(Integer, primary_key=True, index=True)
    course_offering_id = Column(
        Integer, ForeignKey("course_offerings.id", ondelete="CASCADE"), nullable=False,
    )
    title = Column(String(200), nullable=False)
    group_tag = Column(String(50), nullable=True, index=True)
    source_type = Column(String(20), nullable=False, default=SourceType.ASSIGNMENT.value)
    sequence_no = Column(Integer, nullable=True)
    weight_override = Column(Numeric(8, 4), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    course_offering = relationship("CourseOffering")
    scores = relationship("AssessmentScore", back_populates="assessment", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_assessments_offering_tag", "course_offering_id", "group_tag"),
    )


class AssessmentScore(Base):
    """One student's result on one assessment.

    Written by the assessment-grading collaborator; immutable once graded
    except through an explicit correction.
    """

    __tablename__ = "assessment_scores"

    id = Column(Integer, primary_key=True, index=True)
    assessment_id = Column(Integer, ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, nullable=False, index=True)

    raw_score = Column(Numeric(8, 2), nullable=True)
    adjusted_score = Column(Numeric(8, 2), nullable=True)  # after late penalties, curves
    status = Column(String(20), nullable=False, default=ScoreStatus.NOT_SUBMITTED.value)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    graded_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    assessment = relationship("Assessment", back_populates="scores")

    __table_args__ = (
        UniqueConstraint("assessment_id", "student_id", name="uq_assessment_scores_assessment_student"),
        Index("ix_assessment_scores_student_status", "student_id", "status"),
    )
