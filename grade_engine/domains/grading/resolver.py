"""Scope resolution for formulas and components.

Scopes nest school → period → subject → course_offering; the most specific
active row wins.
"""

from sqlalchemy.orm import Session

from grade_engine.core.errors import MissingFormulaError
from grade_engine.models.course_offering import CourseOffering
from grade_engine.models.grading import GradingComponent, GradingFormula, GradingScope


class ScopeResolver:
    """Finds the governing formula and components for a course offering."""

    def __init__(self, db: Session):
        self.db = db

    def scope_chain(self, course_offering_id: int) -> list[tuple[GradingScope, int]]:
        """(scope, scope_ref_id) pairs, most specific first."""
        offering = self.db.query(CourseOffering).filter(CourseOffering.id == course_offering_id).first()
        if not offering:
            raise MissingFormulaError(f"Course offering {course_offering_id} not found")
        return [
            (GradingScope.COURSE_OFFERING, offering.id),
            (GradingScope.SUBJECT, offering.subject_id),
            (GradingScope.PERIOD, offering.academic_period_id),
            (GradingScope.SCHOOL, offering.school_id),
        ]

    def resolve(self, course_offering_id: int) -> GradingFormula:
        """Return the active formula governing the offering.

        Raises MissingFormulaError when no scope level has one.
        """
        for scope, ref_id in self.scope_chain(course_offering_id):
            formula = (
                self.db.query(GradingFormula)
                .filter(
                    GradingFormula.scope == scope.value,
                    GradingFormula.scope_ref_id == ref_id,
                    GradingFormula.is_active == True,  # noqa: E712
                )
                .order_by(GradingFormula.version.desc())
                .first()
            )
            if formula:
                return formula
        raise MissingFormulaError(
            f"No active grading formula for course offering {course_offering_id} at any scope"
        )

    def resolve_components(self, course_offering_id: int) -> list[GradingComponent]:
        """Active components by key, a more specific scope shadowing a broader one."""
        chain = self.scope_chain(course_offering_id)
        by_key: dict[str, GradingComponent] = {}
        # Broadest first so narrower scopes overwrite
        for scope, ref_id in reversed(chain):
            rows = (
                self.db.query(GradingComponent)
                .filter(
                    GradingComponent.scope == scope.value,
                    GradingComponent.scope_ref_id == ref_id,
                    GradingComponent.is_active == True,  # noqa: E712
                )
                .order_by(GradingComponent.key.asc(), GradingComponent.version.asc())
                .all()
            )
            for row in rows:
                by_key[row.key] = row
        return [by_key[key] for key in sorted(by_key)]


def offerings_in_scope(db: Session, scope: GradingScope | str, scope_ref_id: int) -> list[int]:
    """Course offering ids a formula at (scope, scope_ref_id) could govern."""
    column = {
        GradingScope.COURSE_OFFERING: CourseOffering.id,
        GradingScope.SUBJECT: CourseOffering.subject_id,
        GradingScope.PERIOD: CourseOffering.academic_period_id,
        GradingScope.SCHOOL: CourseOffering.school_id,
    }[GradingScope(scope)]
    return [
        r[0] for r in db.query(CourseOffering.id)
        .filter(column == scope_ref_id)
        .order_by(CourseOffering.id.asc())
        .all()
    ]
