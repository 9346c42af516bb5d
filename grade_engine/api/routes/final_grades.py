from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from grade_engine.api.deps import get_final_grade_service, get_recompute_service
from grade_engine.core.config import settings
from grade_engine.core.rate_limit import limiter
from grade_engine.db.database import get_db
from grade_engine.schemas.final_grade import (
    BatchRecomputeRequest, BatchRecomputeResponse, ComputationHistoryResponse,
    FinalGradeAction, FinalGradeOverride, FinalGradeResponse, RecomputeRequest, RecomputeResponse,
)
from grade_engine.services.final_grade_service import FinalGradeService
from grade_engine.services.recompute_service import RecomputeService

router = APIRouter(prefix="/final-grades", tags=["Final Grades"])


@router.post("/recompute", response_model=RecomputeResponse)
def recompute_final_grade(
    data: RecomputeRequest,
    db: Session = Depends(get_db),
    service: RecomputeService = Depends(get_recompute_service),
):
    """Recompute one student's final grade.

    Failures come back as ``{"detail", "error_code", "log_entry_id"}`` with
    the ledger entry recording the failed attempt.
    """
    entry = service.recompute(
        data.student_id,
        data.course_offering_id,
        trigger_type=data.trigger_type,
        triggered_by=data.triggered_by,
        description=data.description,
    )
    final_grade = FinalGradeService(db).get(entry.final_grade_id)
    return {"final_grade": final_grade, "computation": entry}


@router.post("/offerings/{course_offering_id}/recompute", response_model=BatchRecomputeResponse)
@limiter.limit(settings.batch_recompute_rate_limit)
def recompute_offering(
    request: Request,
    course_offering_id: int,
    data: BatchRecomputeRequest,
    service: RecomputeService = Depends(get_recompute_service),
):
    """Recompute every actively enrolled student; one failure never stops the rest."""
    result = service.recompute_offering(
        course_offering_id,
        trigger_type=data.trigger_type,
        triggered_by=data.triggered_by,
        max_workers=data.max_workers,
        description=data.description,
    )
    return {
        "course_offering_id": result.course_offering_id,
        "completed": result.completed,
        "failed": result.failed,
        "skipped": result.skipped,
        "cancelled": result.cancelled,
    }


@router.get("/{final_grade_id}", response_model=FinalGradeResponse)
def get_final_grade(final_grade_id: int, service: FinalGradeService = Depends(get_final_grade_service)):
    return service.get(final_grade_id)


@router.get("/{final_grade_id}/computations", response_model=ComputationHistoryResponse)
def list_computations(
    final_grade_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: FinalGradeService = Depends(get_final_grade_service),
):
    """Computation history for the grade's pair, newest first."""
    items, total = service.computations(final_grade_id, limit=limit, offset=offset)
    return {"items": items, "total": total}


# ── State changes ─────────────────────────────────────────────────


@router.post("/{final_grade_id}/lock", response_model=FinalGradeResponse)
def lock_final_grade(
    final_grade_id: int,
    data: FinalGradeAction,
    service: FinalGradeService = Depends(get_final_grade_service),
):
    return service.lock(final_grade_id, user_id=data.user_id)


@router.post("/{final_grade_id}/unlock", response_model=FinalGradeResponse)
def unlock_final_grade(
    final_grade_id: int,
    data: FinalGradeAction,
    service: FinalGradeService = Depends(get_final_grade_service),
):
    return service.unlock(final_grade_id, user_id=data.user_id)


@router.post("/{final_grade_id}/publish", response_model=FinalGradeResponse)
def publish_final_grade(
    final_grade_id: int,
    data: FinalGradeAction,
    service: FinalGradeService = Depends(get_final_grade_service),
):
    return service.publish(final_grade_id, user_id=data.user_id)


@router.post("/{final_grade_id}/unpublish", response_model=FinalGradeResponse)
def unpublish_final_grade(
    final_grade_id: int,
    data: FinalGradeAction,
    service: FinalGradeService = Depends(get_final_grade_service),
):
    return service.unpublish(final_grade_id, user_id=data.user_id)


@router.post("/{final_grade_id}/override", response_model=FinalGradeResponse)
def override_final_grade(
    final_grade_id: int,
    data: FinalGradeOverride,
    service: FinalGradeService = Depends(get_final_grade_service),
):
    """Replace the grade of record; later recomputes keep it and refresh only the computed grade."""
    return service.override(
        final_grade_id, data.override_grade, data.override_reason, user_id=data.user_id,
    )


@router.delete("/{final_grade_id}/override", response_model=FinalGradeResponse)
def clear_final_grade_override(
    final_grade_id: int,
    user_id: Optional[int] = Query(None),
    service: FinalGradeService = Depends(get_final_grade_service),
):
    return service.clear_override(final_grade_id, user_id=user_id)
