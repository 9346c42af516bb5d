"""Authoring-side operations: versioning and activating formulas and components.

Everything is parsed and validated here, at activation time. A formula whose
expression or conditions fall outside the grammar is never stored as active,
so syntax problems cannot surface during grade computation.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from grade_engine.core.errors import ConfigNotFoundError
from grade_engine.domains.grading.aggregator import MissingData
from grade_engine.domains.grading.compiled import CompiledConfigCache, CompiledFormula
from grade_engine.domains.grading.engine import GradeResult, evaluate_formula
from grade_engine.domains.grading.expression import referenced_names
from grade_engine.models.grading import GradingComponent, GradingFormula
from grade_engine.schemas.grading import ComponentCreate, FormulaCreate, FormulaPreviewRequest

logger = logging.getLogger(__name__)


class GradingConfigService:
    """Service for formula/component versioning and activation."""

    def __init__(self, db: Session, cache: Optional[CompiledConfigCache] = None):
        self.db = db
        self.cache = cache or CompiledConfigCache()

    # ── Formulas ──────────────────────────────────────────────────

    def create_formula(
        self, payload: FormulaCreate, created_by: int | None = None, activate: bool = True,
    ) -> GradingFormula:
        """Store a new formula version for the payload's scope.

        Raises ExpressionSyntaxError / FormulaConfigError before anything is
        written if the expression or a condition does not parse.
        """
        CompiledFormula.build(
            expression=payload.expression,
            conditions=payload.conditions_payload(),
            rounding_rule=payload.rounding_rule,
            decimal_places=payload.decimal_places,
            pass_threshold=payload.pass_threshold,
            grade_boundaries=payload.boundaries_payload(),
            failing_letter=payload.failing_letter,
        )

        latest_version = (
            self.db.query(func.max(GradingFormula.version))
            .filter(
                GradingFormula.scope == payload.scope.value,
                GradingFormula.scope_ref_id == payload.scope_ref_id,
            )
            .scalar()
        ) or 0

        formula = GradingFormula(
            scope=payload.scope.value,
            scope_ref_id=payload.scope_ref_id,
            expression=payload.expression.strip(),
            conditions=json.dumps(payload.conditions_payload()),
            rounding_rule=payload.rounding_rule.value,
            decimal_places=payload.decimal_places,
            pass_threshold=payload.pass_threshold,
            grade_boundaries=json.dumps(payload.boundaries_payload()),
            failing_letter=payload.failing_letter,
            description=payload.description,
            version=latest_version + 1,
            is_active=False,
            created_by=created_by,
        )
        self.db.add(formula)
        self.db.flush()

        if activate:
            return self.activate_formula(formula.id)
        self.db.commit()
        self.db.refresh(formula)
        return formula

    def activate_formula(self, formula_id: int) -> GradingFormula:
        """Activate a version, deactivating its predecessor in the same transaction."""
        formula = self._get_formula(formula_id)
        # Re-validate: rows may predate the current grammar
        self.cache.formula(formula)

        (
            self.db.query(GradingFormula)
            .filter(
                GradingFormula.scope == formula.scope,
                GradingFormula.scope_ref_id == formula.scope_ref_id,
                GradingFormula.is_active == True,  # noqa: E712
                GradingFormula.id != formula.id,
            )
            .update({GradingFormula.is_active: False}, synchronize_session="fetch")
        )
        formula.is_active = True
        formula.activated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(formula)

        logger.info(
            f"Activated formula {formula.id} v{formula.version} for {formula.scope} {formula.scope_ref_id}"
        )
        return formula

    def deactivate_formula(self, formula_id: int) -> GradingFormula:
        formula = self._get_formula(formula_id)
        formula.is_active = False
        self.db.commit()
        self.db.refresh(formula)
        return formula

    def _get_formula(self, formula_id: int) -> GradingFormula:
        formula = self.db.query(GradingFormula).filter(GradingFormula.id == formula_id).first()
        if not formula:
            raise ConfigNotFoundError(f"Grading formula {formula_id} not found")
        return formula

    # ── Components ────────────────────────────────────────────────

    def create_component(
        self, payload: ComponentCreate, created_by: int | None = None, activate: bool = True,
    ) -> GradingComponent:
        latest_version = (
            self.db.query(func.max(GradingComponent.version))
            .filter(
                GradingComponent.scope == payload.scope.value,
                GradingComponent.scope_ref_id == payload.scope_ref_id,
                GradingComponent.key == payload.key,
            )
            .scalar()
        ) or 0

        component = GradingComponent(
            scope=payload.scope.value,
            scope_ref_id=payload.scope_ref_id,
            key=payload.key,
            display_label=payload.display_label,
            source_filter=payload.source_filter.model_dump_json(),
            aggregator=payload.aggregator.model_dump_json(exclude_none=True),
            missing_policy=payload.missing_policy.value,
            default_value=payload.default_value,
            version=latest_version + 1,
            is_active=False,
            created_by=created_by,
        )
        self.db.add(component)
        self.db.flush()

        if activate:
            return self.activate_component(component.id)
        self.db.commit()
        self.db.refresh(component)
        return component

    def activate_component(self, component_id: int) -> GradingComponent:
        component = self.db.query(GradingComponent).filter(GradingComponent.id == component_id).first()
        if not component:
            raise ConfigNotFoundError(f"Grading component {component_id} not found")
        self.cache.component(component)

        (
            self.db.query(GradingComponent)
            .filter(
                GradingComponent.scope == component.scope,
                GradingComponent.scope_ref_id == component.scope_ref_id,
                GradingComponent.key == component.key,
                GradingComponent.is_active == True,  # noqa: E712
                GradingComponent.id != component.id,
            )
            .update({GradingComponent.is_active: False}, synchronize_session="fetch")
        )
        component.is_active = True
        component.activated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(component)

        logger.info(
            f"Activated component '{component.key}' v{component.version} "
            f"for {component.scope} {component.scope_ref_id}"
        )
        return component

    # ── Preview ───────────────────────────────────────────────────

    @staticmethod
    def preview(payload: FormulaPreviewRequest) -> tuple[GradeResult, list[str]]:
        """Evaluate a candidate formula against sample bindings, storing nothing."""
        compiled = CompiledFormula.build(
            expression=payload.expression,
            conditions=payload.conditions_payload(),
            rounding_rule=payload.rounding_rule,
            decimal_places=payload.decimal_places,
            pass_threshold=payload.pass_threshold,
            grade_boundaries=payload.boundaries_payload(),
            failing_letter=payload.failing_letter,
        )
        bindings = {
            key: MissingData("no sample value") if value is None else value
            for key, value in payload.bindings.items()
        }
        referenced = referenced_names(compiled.expression)
        for condition in compiled.conditions:
            referenced |= referenced_names(condition.expression) | {condition.predicate.key}
        return evaluate_formula(compiled, bindings), sorted(referenced)
