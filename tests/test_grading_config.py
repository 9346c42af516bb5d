"""Tests for formula/component versioning, activation and preview."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from grade_engine.core.errors import ConfigNotFoundError, ExpressionSyntaxError, FormulaConfigError
from grade_engine.domains.grading.aggregator import Max, Min, MissingPolicy
from grade_engine.domains.grading.rounding import RoundingRule
from grade_engine.models.grading import GradingComponent, GradingFormula
from grade_engine.schemas.grading import ComponentCreate, FormulaCreate, FormulaPreviewRequest
from grade_engine.services.grading_config_service import GradingConfigService

from conftest import add_component, add_formula


def _active_formulas(db, scope_ref_id):
    db.expire_all()
    return db.query(GradingFormula).filter(
        GradingFormula.scope == "course_offering",
        GradingFormula.scope_ref_id == scope_ref_id,
        GradingFormula.is_active == True,  # noqa: E712
    ).all()


# ===========================================================================
# Formulas
# ===========================================================================


def test_new_version_replaces_active_formula(db_session, config_service):
    first = add_formula(config_service, scope_ref_id=3)
    second = add_formula(config_service, "uas", scope_ref_id=3, conditions=[])

    assert (first.version, second.version) == (1, 2)
    active = _active_formulas(db_session, 3)
    assert [f.id for f in active] == [second.id]
    assert second.activated_at is not None


def test_reactivating_old_version(db_session, config_service):
    first = add_formula(config_service, scope_ref_id=3)
    add_formula(config_service, "uas", scope_ref_id=3, conditions=[])

    config_service.activate_formula(first.id)
    assert [f.id for f in _active_formulas(db_session, 3)] == [first.id]


def test_inactive_draft(db_session, config_service):
    draft = add_formula(config_service, scope_ref_id=3, activate=False)
    assert draft.is_active is False
    assert _active_formulas(db_session, 3) == []


def test_deactivate_formula(db_session, config_service):
    formula = add_formula(config_service, scope_ref_id=3)
    config_service.deactivate_formula(formula.id)
    assert _active_formulas(db_session, 3) == []


def test_syntax_error_stores_nothing(db_session, config_service):
    with pytest.raises(ExpressionSyntaxError):
        add_formula(config_service, "0.5 * uas ** 2", scope_ref_id=3)
    assert db_session.query(GradingFormula).count() == 0


def test_bad_condition_stores_nothing(db_session, config_service):
    with pytest.raises(ExpressionSyntaxError):
        add_formula(config_service, "uas", scope_ref_id=3,
                    conditions=[{"predicate": "uas < 60 or uts < 60", "expression": "uas"}])
    assert db_session.query(GradingFormula).count() == 0


def test_conditions_and_boundaries_stored_in_order(config_service):
    formula = add_formula(config_service, "uas", scope_ref_id=3, conditions=[
        {"predicate": "uas is_missing", "expression": "uts", "description": "absent"},
        {"predicate": "uas < 60", "expression": "uas"},
    ])
    assert [c["predicate"] for c in formula.conditions_config] == ["uas is_missing", "uas < 60"]
    assert [b["letter"] for b in formula.boundaries_config] == ["A", "B", "C", "D"]


def test_legacy_condition_keys_accepted():
    payload = FormulaCreate(
        scope="course_offering", scope_ref_id=1, expression="uas",
        conditions=[{"condition": "uas < 60", "formula": "uas"}],
    )
    assert payload.conditions_payload() == [{"predicate": "uas < 60", "expression": "uas", "description": None}]


def test_unknown_formula(config_service):
    with pytest.raises(ConfigNotFoundError):
        config_service.activate_formula(404)


@pytest.mark.parametrize("field,value", [
    ("decimal_places", 7),
    ("rounding_rule", "stochastic"),
    ("grade_boundaries", {"A": 90, "B": 90}),
    ("pass_threshold", -5),
])
def test_formula_payload_validation(field, value):
    data = {"scope": "course_offering", "scope_ref_id": 1, "expression": "uas", field: value}
    with pytest.raises(ValidationError):
        FormulaCreate(**data)


# ===========================================================================
# Components
# ===========================================================================


def test_component_versions_one_active_per_key(db_session, config_service):
    first = add_component(config_service, "uas", scope_ref_id=3)
    second = add_component(config_service, "uas", scope_ref_id=3, aggregator={"type": "best_n", "n": 1})
    add_component(config_service, "uts", scope_ref_id=3)

    db_session.expire_all()
    active = db_session.query(GradingComponent).filter(GradingComponent.is_active == True).all()  # noqa: E712
    assert sorted((c.key, c.version) for c in active) == [("uas", 2), ("uts", 1)]
    assert second.aggregator_config == {"type": "best_n", "n": 1, "then": "average"}
    assert first.id != second.id


@pytest.mark.parametrize("aggregator", [
    {"type": "median"},
    {"type": "best_n"},
    {"type": "best_n", "n": 0},
    {"type": "drop_lowest_k", "k": 1, "n": 2},
    {"type": "weighted_average", "weights": "random"},
    {"type": "average", "decimal_places": 9},
    {"type": "max", "rounding": "stochastic"},
])
def test_invalid_aggregator_rejected(aggregator):
    with pytest.raises(ValidationError):
        ComponentCreate(scope="school", scope_ref_id=1, key="uas", aggregator=aggregator)


def test_component_rounding_and_extremum_strategies_compile(config_service, cache):
    row = add_component(config_service, "uts", scope_ref_id=3,
                        aggregator={"type": "min", "rounding": "half_up", "decimal_places": 1},
                        missing_policy="fail_validation")
    assert row.aggregator_config == {"type": "min", "rounding": "half_up", "decimal_places": 1}

    compiled = cache.component(row)
    assert compiled.strategy == Min()
    assert compiled.rounding is RoundingRule.HALF_UP
    assert compiled.decimal_places == 1
    assert compiled.missing_policy is MissingPolicy.FAIL_VALIDATION

    plain = cache.component(add_component(config_service, "uas", scope_ref_id=3, aggregator={"type": "max"}))
    assert plain.strategy == Max()
    assert plain.rounding is None


@pytest.mark.parametrize("key", ["1st", "class", "IF", "max", "with space", ""])
def test_invalid_component_key_rejected(key):
    with pytest.raises(ValidationError):
        ComponentCreate(scope="school", scope_ref_id=1, key=key, aggregator={"type": "average"})


def test_corrupt_stored_aggregator_fails_activation(db_session, config_service):
    row = GradingComponent(scope="school", scope_ref_id=1, key="uas", aggregator='{"type": "median"}')
    db_session.add(row)
    db_session.commit()
    with pytest.raises(FormulaConfigError):
        config_service.activate_component(row.id)


# ===========================================================================
# Preview
# ===========================================================================


def test_preview_report_card_override():
    result, referenced = GradingConfigService.preview(FormulaPreviewRequest(
        expression="0.25*tugas_harian + 0.25*ulangan_harian + 0.2*uts + 0.3*uas",
        conditions=[{"predicate": "uas < 60", "expression": "uas"}],
        grade_boundaries={"A": 90, "B": 80, "C": 70, "D": 60},
        pass_threshold=60,
        bindings={"tugas_harian": 85, "ulangan_harian": 78, "uts": 70, "uas": 55},
    ))
    assert result.numeric_grade == Decimal("55")
    assert result.letter_grade == "F"
    assert result.is_passing is False
    assert referenced == ["tugas_harian", "uas", "ulangan_harian", "uts"]


def test_preview_null_binding_triggers_is_missing():
    result, _ = GradingConfigService.preview(FormulaPreviewRequest(
        expression="uas",
        conditions=[{"predicate": "uas is_missing", "expression": "uts"}],
        bindings={"uas": None, "uts": 64.5},
    ))
    assert result.numeric_grade == Decimal("64.50")
    assert result.letter_grade is None
    assert result.is_passing is None
