from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from grade_engine.api.deps import get_config_service, get_recompute_service
from grade_engine.db.database import get_db
from grade_engine.domains.grading.resolver import ScopeResolver
from grade_engine.jobs.offering_recompute import recompute_scope
from grade_engine.schemas.grading import (
    ComponentCreate, ComponentResponse, FormulaCreate, FormulaPreviewRequest,
    FormulaPreviewResponse, FormulaResponse,
)
from grade_engine.services.grading_config_service import GradingConfigService
from grade_engine.services.recompute_service import RecomputeService

router = APIRouter(prefix="/grading", tags=["Grading Configuration"])


# ── Formulas ──────────────────────────────────────────────────────


@router.post("/formulas", response_model=FormulaResponse, status_code=201)
def create_formula(
    data: FormulaCreate,
    background_tasks: BackgroundTasks,
    activate: bool = Query(True),
    recompute: bool = Query(False, description="Recompute governed offerings after activation"),
    created_by: Optional[int] = Query(None),
    service: GradingConfigService = Depends(get_config_service),
    recompute_service: RecomputeService = Depends(get_recompute_service),
):
    """Store a new formula version, validating its grammar first."""
    formula = service.create_formula(data, created_by=created_by, activate=activate)
    if activate and recompute:
        background_tasks.add_task(
            recompute_scope, recompute_service, formula.scope, formula.scope_ref_id, triggered_by=created_by,
        )
    return formula


@router.post("/formulas/{formula_id}/activate", response_model=FormulaResponse)
def activate_formula(
    formula_id: int,
    background_tasks: BackgroundTasks,
    recompute: bool = Query(False),
    service: GradingConfigService = Depends(get_config_service),
    recompute_service: RecomputeService = Depends(get_recompute_service),
):
    formula = service.activate_formula(formula_id)
    if recompute:
        background_tasks.add_task(recompute_scope, recompute_service, formula.scope, formula.scope_ref_id)
    return formula


@router.post("/formulas/{formula_id}/deactivate", response_model=FormulaResponse)
def deactivate_formula(formula_id: int, service: GradingConfigService = Depends(get_config_service)):
    return service.deactivate_formula(formula_id)


@router.get("/formulas/resolve", response_model=FormulaResponse)
def resolve_formula(course_offering_id: int = Query(...), db: Session = Depends(get_db)):
    """The active formula governing an offering, after scope fallback."""
    return ScopeResolver(db).resolve(course_offering_id)


@router.post("/formulas/preview", response_model=FormulaPreviewResponse)
def preview_formula(data: FormulaPreviewRequest):
    """Evaluate a candidate formula against sample component values."""
    result, referenced = GradingConfigService.preview(data)
    return {
        "numeric_grade": float(result.numeric_grade),
        "letter_grade": result.letter_grade,
        "is_passing": result.is_passing,
        "raw_value": float(result.raw_value),
        "applied_rule": result.applied_rule,
        "referenced_components": referenced,
        "steps": result.steps,
    }


# ── Components ────────────────────────────────────────────────────


@router.post("/components", response_model=ComponentResponse, status_code=201)
def create_component(
    data: ComponentCreate,
    activate: bool = Query(True),
    created_by: Optional[int] = Query(None),
    service: GradingConfigService = Depends(get_config_service),
):
    return service.create_component(data, created_by=created_by, activate=activate)


@router.post("/components/{component_id}/activate", response_model=ComponentResponse)
def activate_component(component_id: int, service: GradingConfigService = Depends(get_config_service)):
    return service.activate_component(component_id)


@router.get("/components/resolve", response_model=list[ComponentResponse])
def resolve_components(course_offering_id: int = Query(...), db: Session = Depends(get_db)):
    return ScopeResolver(db).resolve_components(course_offering_id)
