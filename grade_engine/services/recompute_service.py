"""Recompute final grades and record every attempt in the computation ledger.

One attempt for one (student, course offering) pair:

1. open a ``pending`` ledger entry carrying the current grade and commit it,
2. reject at once if the FinalGrade is locked,
3. inside the pair's exclusive section: resolve the formula and components,
   aggregate the student's scores, evaluate, and write FinalGrade plus the
   ``completed`` entry in one transaction,
4. on any error roll back and mark the entry ``failed``.

Batches fan out over the active enrollments of an offering with bounded
concurrency and can be cancelled between pairs.
"""

import json
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from grade_engine.core.config import settings
from grade_engine.core.errors import (
    ConcurrentRecomputeConflict, GradingError, LockedGradeError, NotEnrolledError, RecomputeTimeoutError,
)
from grade_engine.db.database import SessionLocal
from grade_engine.domains.grading.aggregator import ScoreEntry
from grade_engine.domains.grading.compiled import CompiledConfigCache
from grade_engine.domains.grading.engine import compute_final_grade, grade_outcome
from grade_engine.domains.grading.ledger import ComputationLedger
from grade_engine.domains.grading.resolver import ScopeResolver
from grade_engine.models.assessment import Assessment, AssessmentScore
from grade_engine.models.course_offering import Enrollment, EnrollmentStatus
from grade_engine.models.final_grade import ComputationLogEntry, FinalGrade, TriggerType
from grade_engine.services.pair_locks import PairLockRegistry

logger = logging.getLogger(__name__)

# The losing side of a race retries once before giving up
MAX_WRITE_ATTEMPTS = 2


@dataclass
class BatchResult:
    course_offering_id: int
    completed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    cancelled: bool = False


def load_scores(db: Session, student_id: int, course_offering_id: int) -> list[ScoreEntry]:
    """All of a student's scores in an offering, joined with assessment metadata."""
    rows = (
        db.query(AssessmentScore, Assessment)
        .join(Assessment, AssessmentScore.assessment_id == Assessment.id)
        .filter(
            AssessmentScore.student_id == student_id,
            Assessment.course_offering_id == course_offering_id,
        )
        .all()
    )
    return [
        ScoreEntry(
            assessment_id=assessment.id,
            student_id=score.student_id,
            adjusted_score=score.adjusted_score,
            raw_score=score.raw_score,
            status=score.status,
            group_tag=assessment.group_tag,
            weight_override=assessment.weight_override,
            source_type=assessment.source_type,
            sequence_no=assessment.sequence_no,
            submitted_at=score.submitted_at,
            graded_at=score.graded_at,
        )
        for score, assessment in rows
    ]


class RecomputeService:
    """Entry point for interactive and batch recomputes.

    Owns the compiled-config cache and the pair lock registry; share one
    instance per process so every caller serializes on the same locks.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        cache: CompiledConfigCache | None = None,
        locks: PairLockRegistry | None = None,
        lock_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache or CompiledConfigCache()
        self.locks = locks or PairLockRegistry()
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else settings.recompute_lock_timeout_seconds
        )

    # ── single pair ──────────────────────────────────────────────

    def recompute(
        self,
        student_id: int,
        course_offering_id: int,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        triggered_by: int | None = None,
        description: str | None = None,
    ) -> ComputationLogEntry:
        """Run one attempt. Returns the completed ledger entry.

        Raises the GradingError that failed the attempt, with ``log_entry_id``
        pointing at the ``failed`` entry that was written for it.
        """
        db = self.session_factory()
        try:
            ledger = ComputationLedger(db)
            existing = self._load_final_grade(db, student_id, course_offering_id)
            entry = ledger.open_entry(
                student_id=student_id,
                course_offering_id=course_offering_id,
                trigger_type=TriggerType(trigger_type),
                existing=existing,
                triggered_by=triggered_by,
                description=description,
            )
            db.commit()

            try:
                if existing is not None and existing.is_locked:
                    raise LockedGradeError(
                        f"Final grade {existing.id} is locked; unlock it before recomputing"
                    )
                with self.locks.hold(student_id, course_offering_id, self.lock_timeout):
                    self._write_with_retry(db, ledger, entry, student_id, course_offering_id, triggered_by)
            except Exception as exc:
                db.rollback()
                ledger.fail_entry(entry, exc)
                db.commit()
                self._log_failure(entry, exc)
                if isinstance(exc, GradingError):
                    exc.log_entry_id = entry.id
                raise

            db.refresh(entry)
            logger.info(
                f"Recomputed student {student_id} offering {course_offering_id}: "
                f"{entry.previous_grade} -> {entry.new_grade} (computation {entry.id})"
            )
            return entry
        finally:
            db.close()

    def _write_with_retry(self, db, ledger, entry, student_id, course_offering_id, triggered_by):
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                self._compute_and_write(db, ledger, entry, student_id, course_offering_id, triggered_by)
                return
            except OperationalError as exc:
                # SQLite gave up waiting on another writer's lock
                if "locked" not in str(exc.orig).lower():
                    raise
                db.rollback()
                raise RecomputeTimeoutError(
                    f"Timed out waiting for the database lock on student {student_id} "
                    f"in offering {course_offering_id}"
                ) from exc
            except (IntegrityError, StaleDataError) as exc:
                db.rollback()
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise ConcurrentRecomputeConflict(
                        f"Concurrent recompute of student {student_id} in offering "
                        f"{course_offering_id} won the race twice"
                    ) from exc
                logger.warning(
                    f"Write conflict for student {student_id} offering {course_offering_id}, retrying: {exc}"
                )

    def _compute_and_write(
        self,
        db: Session,
        ledger: ComputationLedger,
        entry: ComputationLogEntry,
        student_id: int,
        course_offering_id: int,
        triggered_by: int | None,
    ) -> FinalGrade:
        final_grade = self._load_final_grade(db, student_id, course_offering_id, for_update=True)
        if final_grade is not None and final_grade.is_locked:
            raise LockedGradeError(f"Final grade {final_grade.id} is locked; unlock it before recomputing")
        self._ensure_enrolled(db, student_id, course_offering_id)

        resolver = ScopeResolver(db)
        formula = self.cache.formula(resolver.resolve(course_offering_id))
        components = [self.cache.component(row) for row in resolver.resolve_components(course_offering_id)]
        scores = load_scores(db, student_id, course_offering_id)

        result = compute_final_grade(scores, components, formula)

        if final_grade is None:
            final_grade = FinalGrade(student_id=student_id, course_offering_id=course_offering_id)
            db.add(final_grade)
        # The grade actually being replaced, which may differ from the one
        # seen when the entry was opened if another attempt got in first
        entry.previous_grade = final_grade.numeric_grade

        final_grade.numeric_grade = result.numeric_grade
        if final_grade.is_overridden:
            final_grade.letter_grade, final_grade.is_passing = grade_outcome(
                formula, Decimal(final_grade.override_grade),
            )
            result.steps.append(
                f"Override {final_grade.override_grade} kept as grade of record "
                f"(letter {final_grade.letter_grade}, passing {final_grade.is_passing})"
            )
        else:
            final_grade.letter_grade = result.letter_grade
            final_grade.is_passing = result.is_passing
        final_grade.component_breakdown = json.dumps(result.breakdown(formula), sort_keys=True)
        final_grade.formula_id = formula.formula_id
        final_grade.formula_version = formula.version
        final_grade.computed_at = datetime.now(timezone.utc)
        final_grade.computed_by = triggered_by
        db.flush()

        ledger.complete_entry(entry, final_grade, result)
        db.commit()
        return final_grade

    @staticmethod
    def _load_final_grade(db: Session, student_id: int, course_offering_id: int, for_update: bool = False):
        query = db.query(FinalGrade).filter(
            FinalGrade.student_id == student_id,
            FinalGrade.course_offering_id == course_offering_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def _ensure_enrolled(db: Session, student_id: int, course_offering_id: int) -> None:
        enrolled = db.query(Enrollment.id).filter(
            Enrollment.student_id == student_id,
            Enrollment.course_offering_id == course_offering_id,
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
        ).first()
        if not enrolled:
            raise NotEnrolledError(
                f"Student {student_id} has no active enrollment in offering {course_offering_id}"
            )

    @staticmethod
    def _log_failure(entry: ComputationLogEntry, exc: Exception) -> None:
        message = (
            f"Recompute failed for student {entry.student_id} offering {entry.course_offering_id} "
            f"(computation {entry.id}): {entry.error_message}"
        )
        if isinstance(exc, LockedGradeError):
            # Locking is a deliberate staff action, not a fault
            logger.info(message)
        elif isinstance(exc, GradingError):
            logger.warning(message)
        else:
            logger.error(message, exc_info=exc)

    # ── triggers ────────────────────────────────────────────────

    def on_score_changed(self, score: AssessmentScore, course_offering_id: int) -> ComputationLogEntry | None:
        """Recompute after a score edit; locked grades are left alone quietly."""
        try:
            return self.recompute(
                score.student_id,
                course_offering_id,
                trigger_type=TriggerType.AUTO_GRADE_CHANGE,
                description=f"Score changed on assessment {score.assessment_id}",
            )
        except LockedGradeError:
            return None

    # ── batch ────────────────────────────────────────────────────

    def active_student_ids(self, course_offering_id: int) -> list[int]:
        db = self.session_factory()
        try:
            return [
                r[0] for r in db.query(Enrollment.student_id)
                .filter(
                    Enrollment.course_offering_id == course_offering_id,
                    Enrollment.status == EnrollmentStatus.ACTIVE.value,
                )
                .order_by(Enrollment.student_id.asc())
                .all()
            ]
        finally:
            db.close()

    def recompute_offering(
        self,
        course_offering_id: int,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        triggered_by: int | None = None,
        max_workers: int | None = None,
        cancel_event: threading.Event | None = None,
        description: str | None = None,
    ) -> BatchResult:
        """Recompute every actively enrolled student of an offering.

        A failure for one student never stops the others. Setting
        ``cancel_event`` stops new pairs from starting; pairs already
        finished stay valid.
        """
        result = BatchResult(course_offering_id=course_offering_id)
        student_ids = self.active_student_ids(course_offering_id)
        workers = max(1, min(max_workers or settings.batch_max_workers, len(student_ids) or 1))
        queue = iter(student_ids)
        submitted: set[int] = set()

        def run(student_id: int) -> None:
            self.recompute(student_id, course_offering_id, trigger_type, triggered_by, description)

        logger.info(f"Batch recompute of offering {course_offering_id}: {len(student_ids)} students")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="recompute") as pool:
            futures = {}

            def submit_next() -> bool:
                student_id = next(queue, None)
                if student_id is None:
                    return False
                submitted.add(student_id)
                futures[pool.submit(run, student_id)] = student_id
                return True

            for _ in range(workers):
                if not submit_next():
                    break

            while futures:
                done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in done:
                    student_id = futures.pop(future)
                    try:
                        future.result()
                        result.completed.append(student_id)
                    except GradingError as e:
                        result.failed[student_id] = e.message
                    except Exception as e:
                        result.failed[student_id] = f"{type(e).__name__}: {e}"
                        logger.error(f"Unexpected recompute error for student {student_id}: {e}", exc_info=True)

                    # Cooperative checkpoint between pairs
                    if cancel_event is not None and cancel_event.is_set():
                        result.cancelled = True
                    elif not result.cancelled:
                        submit_next()

        result.completed.sort()
        result.skipped = [sid for sid in student_ids if sid not in submitted]
        logger.info(
            f"Batch recompute of offering {course_offering_id} finished | "
            f"completed={len(result.completed)} | failed={len(result.failed)} | "
            f"skipped={len(result.skipped)} | cancelled={result.cancelled}"
        )
        return result
