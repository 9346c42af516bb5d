import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from grade_engine.db.database import Base


class EnrollmentStatus(str, enum.Enum):
    """Valid enrollment statuses (stored as String in DB)."""
    ACTIVE = "active"
    DROPPED = "dropped"
    COMPLETED = "completed"


class CourseOffering(Base):
    """A subject taught to one class in one academic period.

    Owned by the scheduling collaborator; the engine only reads the three
    scope references to walk the formula hierarchy.
    """

    __tablename__ = "course_offerings"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    academic_period_id = Column(Integer, nullable=False, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    enrollments = relationship("Enrollment", back_populates="course_offering")


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    course_offering_id = Column(
        Integer, ForeignKey("course_offerings.id", ondelete="CASCADE"), nullable=False,
    )
    status = Column(String(20), nullable=False, default=EnrollmentStatus.ACTIVE.value)
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now())

    course_offering = relationship("CourseOffering", back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint("student_id", "course_offering_id", name="uq_enrollments_student_offering"),
        Index("ix_enrollments_offering_status", "course_offering_id", "status"),
    )
