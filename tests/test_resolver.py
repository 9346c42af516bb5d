"""Tests for scope fallback of formulas and components."""

import pytest

from grade_engine.core.errors import MissingFormulaError
from grade_engine.domains.grading.resolver import ScopeResolver, offerings_in_scope
from grade_engine.models.grading import GradingScope

from conftest import add_component, add_formula, make_offering


def test_most_specific_scope_wins(db_session, config_service):
    offering = make_offering(db_session)
    add_formula(config_service, "uas", scope="school", scope_ref_id=offering.school_id, conditions=[])
    add_formula(config_service, "uts", scope="subject", scope_ref_id=offering.subject_id, conditions=[])

    formula = ScopeResolver(db_session).resolve(offering.id)
    assert formula.scope == GradingScope.SUBJECT.value
    assert formula.expression == "uts"

    offering_formula = add_formula(config_service, "tugas", scope="course_offering", scope_ref_id=offering.id,
                                   conditions=[])
    assert ScopeResolver(db_session).resolve(offering.id).id == offering_formula.id


def test_falls_back_to_school(db_session, config_service):
    offering = make_offering(db_session, school_id=7)
    school_formula = add_formula(config_service, "uas", scope="school", scope_ref_id=7, conditions=[])
    assert ScopeResolver(db_session).resolve(offering.id).id == school_formula.id


def test_inactive_formula_is_skipped(db_session, config_service):
    offering = make_offering(db_session)
    period_formula = add_formula(config_service, "uas", scope="period", scope_ref_id=offering.academic_period_id,
                                 conditions=[])
    add_formula(config_service, "uts", scope="course_offering", scope_ref_id=offering.id, conditions=[],
                activate=False)
    assert ScopeResolver(db_session).resolve(offering.id).id == period_formula.id


def test_no_formula_anywhere(db_session):
    offering = make_offering(db_session)
    with pytest.raises(MissingFormulaError) as exc_info:
        ScopeResolver(db_session).resolve(offering.id)
    assert exc_info.value.error_code == "MISSING_FORMULA"


def test_unknown_offering(db_session):
    with pytest.raises(MissingFormulaError):
        ScopeResolver(db_session).resolve(9999)


def test_components_shadow_by_key(db_session, config_service):
    offering = make_offering(db_session)
    add_component(config_service, "uas", scope="school", scope_ref_id=offering.school_id)
    add_component(config_service, "tugas", scope="school", scope_ref_id=offering.school_id)
    narrow = add_component(config_service, "uas", scope="course_offering", scope_ref_id=offering.id,
                           aggregator={"type": "latest"})

    components = ScopeResolver(db_session).resolve_components(offering.id)
    assert [c.key for c in components] == ["tugas", "uas"]
    assert components[1].id == narrow.id


def test_offerings_in_scope(db_session):
    first = make_offering(db_session, subject_id=5)
    second = make_offering(db_session, subject_id=5)
    make_offering(db_session, subject_id=6)
    assert offerings_in_scope(db_session, "subject", 5) == [first.id, second.id]
    assert offerings_in_scope(db_session, GradingScope.COURSE_OFFERING, second.id) == [second.id]
