from grade_engine.schemas.grading import (
    ComponentCreate, ComponentResponse, FormulaCreate, FormulaResponse,
    FormulaPreviewRequest, FormulaPreviewResponse,
)
from grade_engine.schemas.final_grade import (
    RecomputeRequest, RecomputeResponse, BatchRecomputeRequest, BatchRecomputeResponse,
    FinalGradeAction, FinalGradeResponse, ComputationLogResponse, ComputationHistoryResponse,
)
