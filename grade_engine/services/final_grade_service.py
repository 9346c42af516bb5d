import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from grade_engine.core.errors import FinalGradeNotFoundError, LockedGradeError
from grade_engine.domains.grading.compiled import CompiledConfigCache
from grade_engine.domains.grading.engine import grade_outcome
from grade_engine.domains.grading.ledger import ComputationLedger
from grade_engine.models.final_grade import ComputationLogEntry, FinalGrade

logger = logging.getLogger(__name__)


class FinalGradeService:
    """Lock/publish/override state of stored final grades and their computation history."""

    def __init__(self, db: Session, cache: CompiledConfigCache | None = None):
        self.db = db
        self.cache = cache or CompiledConfigCache()

    def get(self, final_grade_id: int) -> FinalGrade:
        grade = self.db.query(FinalGrade).filter(FinalGrade.id == final_grade_id).first()
        if not grade:
            raise FinalGradeNotFoundError(f"Final grade {final_grade_id} not found")
        return grade

    def lock(self, final_grade_id: int, user_id: int | None = None) -> FinalGrade:
        grade = self.get(final_grade_id)
        if not grade.is_locked:
            grade.is_locked = True
            grade.locked_at = datetime.now(timezone.utc)
            grade.locked_by = user_id
            self.db.commit()
            self.db.refresh(grade)
            logger.info(f"Final grade {grade.id} locked by {user_id}")
        return grade

    def unlock(self, final_grade_id: int, user_id: int | None = None) -> FinalGrade:
        grade = self.get(final_grade_id)
        if grade.is_locked:
            grade.is_locked = False
            grade.locked_at = None
            grade.locked_by = None
            self.db.commit()
            self.db.refresh(grade)
            logger.info(f"Final grade {grade.id} unlocked by {user_id}")
        return grade

    def publish(self, final_grade_id: int, user_id: int | None = None) -> FinalGrade:
        grade = self.get(final_grade_id)
        if not grade.is_published:
            grade.is_published = True
            grade.published_at = datetime.now(timezone.utc)
            grade.published_by = user_id
            self.db.commit()
            self.db.refresh(grade)
            logger.info(f"Final grade {grade.id} published by {user_id}")
        return grade

    def unpublish(self, final_grade_id: int, user_id: int | None = None) -> FinalGrade:
        grade = self.get(final_grade_id)
        if grade.is_published:
            grade.is_published = False
            grade.published_at = None
            grade.published_by = None
            self.db.commit()
            self.db.refresh(grade)
            logger.info(f"Final grade {grade.id} unpublished by {user_id}")
        return grade

    def override(
        self, final_grade_id: int, override_grade: Decimal, reason: str, user_id: int | None = None,
    ) -> FinalGrade:
        """Set a staff grade of record; letter and pass/fail follow it."""
        grade = self.get(final_grade_id)
        self._ensure_unlocked(grade)
        grade.override_grade = Decimal(str(override_grade))
        grade.override_reason = reason
        grade.override_by = user_id
        grade.override_at = datetime.now(timezone.utc)
        self._reclassify(grade, grade.override_grade)
        self.db.commit()
        self.db.refresh(grade)
        logger.info(
            f"Final grade {grade.id} overridden to {grade.override_grade} by {user_id} "
            f"(computed {grade.numeric_grade})"
        )
        return grade

    def clear_override(self, final_grade_id: int, user_id: int | None = None) -> FinalGrade:
        grade = self.get(final_grade_id)
        if grade.is_overridden:
            self._ensure_unlocked(grade)
            grade.override_grade = None
            grade.override_reason = None
            grade.override_by = None
            grade.override_at = None
            self._reclassify(grade, grade.numeric_grade)
            self.db.commit()
            self.db.refresh(grade)
            logger.info(f"Final grade {grade.id} override cleared by {user_id}")
        return grade

    @staticmethod
    def _ensure_unlocked(grade: FinalGrade) -> None:
        if grade.is_locked:
            raise LockedGradeError(f"Final grade {grade.id} is locked; unlock it before overriding")

    def _reclassify(self, grade: FinalGrade, value) -> None:
        if grade.formula is None or value is None:
            return
        grade.letter_grade, grade.is_passing = grade_outcome(self.cache.formula(grade.formula), Decimal(value))

    def computations(
        self, final_grade_id: int, limit: int = 50, offset: int = 0,
    ) -> tuple[list[ComputationLogEntry], int]:
        grade = self.get(final_grade_id)
        return ComputationLedger(self.db).history(
            grade.student_id, grade.course_offering_id, limit=limit, offset=offset,
        )
