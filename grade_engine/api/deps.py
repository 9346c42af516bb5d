from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from grade_engine.db.database import SessionLocal, get_db
from grade_engine.services.final_grade_service import FinalGradeService
from grade_engine.services.grading_config_service import GradingConfigService
from grade_engine.services.recompute_service import RecomputeService


@lru_cache
def get_recompute_service() -> RecomputeService:
    """Process-wide service so every request shares one lock registry and cache."""
    return RecomputeService(session_factory=SessionLocal)


def get_config_service(
    db: Session = Depends(get_db),
    recompute: RecomputeService = Depends(get_recompute_service),
) -> GradingConfigService:
    return GradingConfigService(db, cache=recompute.cache)


def get_final_grade_service(
    db: Session = Depends(get_db),
    recompute: RecomputeService = Depends(get_recompute_service),
) -> FinalGradeService:
    return FinalGradeService(db, cache=recompute.cache)
