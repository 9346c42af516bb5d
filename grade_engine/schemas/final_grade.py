import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from grade_engine.models.final_grade import TriggerType


# ── Requests ──────────────────────────────────────────────────────


class RecomputeRequest(BaseModel):
    student_id: int
    course_offering_id: int
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)


class BatchRecomputeRequest(BaseModel):
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    max_workers: Optional[int] = Field(default=None, ge=1, le=32)


class FinalGradeAction(BaseModel):
    """Lock/unlock/publish/unpublish; ``user_id`` is recorded as the actor."""
    user_id: Optional[int] = None


class FinalGradeOverride(BaseModel):
    override_grade: Decimal = Field(ge=0, le=100)
    override_reason: str = Field(min_length=1, max_length=1000)
    user_id: Optional[int] = None

    @field_validator("override_reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Override reason is required")
        return v.strip()


# ── Responses ─────────────────────────────────────────────────────


class ComputationLogResponse(BaseModel):
    id: int
    final_grade_id: Optional[int]
    student_id: int
    course_offering_id: int
    trigger_type: str
    triggered_by: Optional[int]
    trigger_description: Optional[str]
    previous_grade: Optional[float]
    new_grade: Optional[float]
    computation_log: dict = {}
    status: str
    error_code: Optional[str]
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)

    @field_validator("computation_log", mode="before")
    @classmethod
    def decode_log(cls, v):
        if v is None:
            return {}
        return json.loads(v) if isinstance(v, str) else v


class ComputationHistoryResponse(BaseModel):
    items: list[ComputationLogResponse]
    total: int


class FinalGradeResponse(BaseModel):
    id: int
    student_id: int
    course_offering_id: int
    numeric_grade: Optional[float]
    letter_grade: Optional[str]
    is_passing: Optional[bool]
    component_breakdown: dict = {}
    formula_id: Optional[int]
    formula_version: Optional[int]
    computed_at: Optional[datetime]
    override_grade: Optional[float] = None
    override_reason: Optional[str] = None
    override_by: Optional[int] = None
    override_at: Optional[datetime] = None
    effective_grade: Optional[float] = None
    is_published: bool
    published_at: Optional[datetime] = None
    is_locked: bool
    locked_at: Optional[datetime] = None
    revision: int

    model_config = ConfigDict(from_attributes=True)

    @field_validator("component_breakdown", mode="before")
    @classmethod
    def decode_breakdown(cls, v):
        if v is None:
            return {}
        return json.loads(v) if isinstance(v, str) else v


class RecomputeResponse(BaseModel):
    final_grade: FinalGradeResponse
    computation: ComputationLogResponse


class BatchRecomputeResponse(BaseModel):
    course_offering_id: int
    completed: list[int]
    failed: dict[int, str]
    skipped: list[int]
    cancelled: bool
