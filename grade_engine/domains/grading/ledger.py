"""Computation ledger: one append-only entry per recompute attempt.

Every entry starts ``pending`` and moves exactly once to ``completed`` or
``failed``. Terminal entries are never touched again.
"""

import json
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from grade_engine.core.errors import GradingError, LedgerStateError
from grade_engine.domains.grading.engine import GradeResult
from grade_engine.models.final_grade import (
    ComputationLogEntry, ComputationStatus, FinalGrade, TriggerType,
)

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


class ComputationLedger:
    """Writes ledger entries through the caller's session; the caller commits."""

    def __init__(self, db: Session):
        self.db = db

    def open_entry(
        self,
        student_id: int,
        course_offering_id: int,
        trigger_type: TriggerType,
        existing: FinalGrade | None = None,
        triggered_by: int | None = None,
        description: str | None = None,
    ) -> ComputationLogEntry:
        entry = ComputationLogEntry(
            final_grade_id=existing.id if existing else None,
            student_id=student_id,
            course_offering_id=course_offering_id,
            trigger_type=TriggerType(trigger_type).value,
            triggered_by=triggered_by,
            trigger_description=description,
            previous_grade=existing.numeric_grade if existing else None,
            status=ComputationStatus.PENDING.value,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def complete_entry(
        self,
        entry: ComputationLogEntry,
        final_grade: FinalGrade,
        result: GradeResult,
    ) -> ComputationLogEntry:
        self._ensure_pending(entry)
        entry.final_grade_id = final_grade.id
        entry.new_grade = result.numeric_grade
        entry.computation_log = json.dumps({
            "formula": result.expression_used,
            "applied_rule": result.applied_rule,
            "components": final_grade.breakdown.get("components", {}),
            "formula_id": final_grade.formula_id,
            "formula_version": final_grade.formula_version,
            "computation_steps": result.steps,
        })
        entry.status = ComputationStatus.COMPLETED.value
        entry.completed_at = datetime.now(timezone.utc)
        return entry

    def fail_entry(self, entry: ComputationLogEntry, error: Exception) -> ComputationLogEntry:
        self._ensure_pending(entry)
        if isinstance(error, GradingError):
            entry.error_code = error.error_code
            entry.error_message = error.message
        else:
            entry.error_code = INTERNAL_ERROR_CODE
            entry.error_message = f"{type(error).__name__}: {error}"
        entry.computation_log = json.dumps({"error": entry.error_message})
        entry.status = ComputationStatus.FAILED.value
        entry.completed_at = datetime.now(timezone.utc)
        return entry

    @staticmethod
    def _ensure_pending(entry: ComputationLogEntry) -> None:
        if entry.status != ComputationStatus.PENDING.value:
            raise LedgerStateError(
                f"Computation {entry.id} is already {entry.status}; terminal entries are immutable"
            )

    def history(
        self,
        student_id: int,
        course_offering_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ComputationLogEntry], int]:
        """Newest first. Keyed by pair so failures before the first grade show up too."""
        query = self.db.query(ComputationLogEntry).filter(
            ComputationLogEntry.student_id == student_id,
            ComputationLogEntry.course_offering_id == course_offering_id,
        )
        total = query.count()
        rows = (
            query.order_by(ComputationLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return rows, total
