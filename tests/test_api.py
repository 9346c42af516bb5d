"""API tests for grading configuration and final-grade routes."""

import pytest

from conftest import REPORT_CARD_EXPRESSION, add_score, enroll, make_offering, seed_report_card_scores

COMPONENT_KEYS = ("tugas_harian", "ulangan_harian", "uts", "uas")


@pytest.fixture()
def offering(db_session, client):
    offering = make_offering(db_session)
    enroll(db_session, offering, 501)
    for key in COMPONENT_KEYS:
        resp = client.post("/api/grading/components", json={
            "scope": "course_offering",
            "scope_ref_id": offering.id,
            "key": key,
            "source_filter": {"group_tags": [key]},
            "aggregator": {"type": "average"},
        })
        assert resp.status_code == 201, resp.text
    resp = client.post("/api/grading/formulas", json={
        "scope": "course_offering",
        "scope_ref_id": offering.id,
        "expression": REPORT_CARD_EXPRESSION,
        "conditions": [{"predicate": "uas < 60", "expression": "uas"}],
        "grade_boundaries": {"A": 90, "B": 80, "C": 70, "D": 60},
        "pass_threshold": 60,
    })
    assert resp.status_code == 201, resp.text
    return offering


def _recompute(client, offering_id, student_id=501):
    return client.post("/api/final-grades/recompute", json={
        "student_id": student_id, "course_offering_id": offering_id, "triggered_by": 12,
    })


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


# ===========================================================================
# Configuration
# ===========================================================================


def test_create_formula_rejects_bad_expression(client):
    resp = client.post("/api/grading/formulas", json={
        "scope": "school", "scope_ref_id": 1, "expression": "__import__('os').system('x')",
    })
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "EXPRESSION_SYNTAX"


def test_resolve_formula(client, offering):
    resp = client.get("/api/grading/formulas/resolve", params={"course_offering_id": offering.id})
    assert resp.status_code == 200
    data = resp.json()
    assert data["expression"] == REPORT_CARD_EXPRESSION
    assert data["conditions"][0]["predicate"] == "uas < 60"
    assert data["is_active"] is True


def test_resolve_formula_missing(client, db_session):
    offering = make_offering(db_session)
    resp = client.get("/api/grading/formulas/resolve", params={"course_offering_id": offering.id})
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "MISSING_FORMULA"


def test_resolve_components(client, offering):
    resp = client.get("/api/grading/components/resolve", params={"course_offering_id": offering.id})
    assert resp.status_code == 200
    assert [c["key"] for c in resp.json()] == sorted(COMPONENT_KEYS)


def test_preview(client):
    resp = client.post("/api/grading/formulas/preview", json={
        "expression": REPORT_CARD_EXPRESSION,
        "conditions": [{"predicate": "uas < 60", "expression": "uas"}],
        "grade_boundaries": {"A": 90, "B": 80, "C": 70, "D": 60},
        "bindings": {"tugas_harian": 85, "ulangan_harian": 78, "uts": 70, "uas": 78},
    })
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["numeric_grade"] == 78.15
    assert data["letter_grade"] == "C"
    assert data["applied_rule"] == "standard"


def test_activate_unknown_component(client):
    resp = client.post("/api/grading/components/999/activate")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "CONFIG_NOT_FOUND"


# ===========================================================================
# Final grades
# ===========================================================================


def test_recompute_and_fetch(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=55)

    resp = _recompute(client, offering.id)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["final_grade"]["numeric_grade"] == 55
    assert data["final_grade"]["letter_grade"] == "F"
    assert data["final_grade"]["is_passing"] is False
    assert data["computation"]["status"] == "completed"
    assert data["computation"]["triggered_by"] == 12

    grade_id = data["final_grade"]["id"]
    resp = client.get(f"/api/final-grades/{grade_id}")
    assert resp.status_code == 200
    assert resp.json()["component_breakdown"]["applied_rule"] == "condition 1: uas < 60"


def test_recompute_failure_returns_log_entry(client, offering):
    resp = _recompute(client, offering.id, student_id=999)
    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_ENROLLED"
    assert isinstance(body["log_entry_id"], int)


def test_lock_blocks_recompute(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]

    resp = client.post(f"/api/final-grades/{grade_id}/lock", json={"user_id": 3})
    assert resp.status_code == 200
    assert resp.json()["is_locked"] is True

    resp = _recompute(client, offering.id)
    assert resp.status_code == 409
    assert resp.json()["error_code"] == "LOCKED_GRADE"

    resp = client.post(f"/api/final-grades/{grade_id}/unlock", json={"user_id": 3})
    assert resp.json()["is_locked"] is False
    assert _recompute(client, offering.id).status_code == 200


def test_publish_and_unpublish(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]

    resp = client.post(f"/api/final-grades/{grade_id}/publish", json={"user_id": 3})
    assert resp.json()["is_published"] is True
    assert resp.json()["published_at"] is not None

    resp = client.post(f"/api/final-grades/{grade_id}/unpublish", json={})
    assert resp.json()["is_published"] is False


def test_computation_history(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]
    _recompute(client, offering.id)

    resp = client.get(f"/api/final-grades/{grade_id}/computations", params={"limit": 1})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert len(data["items"]) == 1
    latest = data["items"][0]
    assert latest["previous_grade"] == latest["new_grade"] == 78.15
    assert latest["computation_log"]["applied_rule"] == "standard"


def test_unknown_final_grade(client):
    resp = client.get("/api/final-grades/12345")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "FINAL_GRADE_NOT_FOUND"


def test_batch_recompute(client, db_session, offering):
    enroll(db_session, offering, 502)
    seed_report_card_scores(db_session, offering, 501, uas=78)

    resp = client.post(f"/api/final-grades/offerings/{offering.id}/recompute", json={"max_workers": 1})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["completed"] == [501]
    assert list(data["failed"]) == ["502"]
    assert data["cancelled"] is False


def test_override_and_clear(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]

    resp = client.post(f"/api/final-grades/{grade_id}/override", json={
        "override_grade": 91.5, "override_reason": "Remedial exam passed", "user_id": 3,
    })
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["override_grade"] == 91.5
    assert data["numeric_grade"] == 78.15
    assert data["effective_grade"] == 91.5
    assert data["letter_grade"] == "A"
    assert data["override_by"] == 3

    # A recompute keeps the override as the grade of record
    data = _recompute(client, offering.id).json()["final_grade"]
    assert data["effective_grade"] == 91.5
    assert data["letter_grade"] == "A"

    resp = client.delete(f"/api/final-grades/{grade_id}/override", params={"user_id": 3})
    assert resp.status_code == 200
    assert resp.json()["override_grade"] is None
    assert resp.json()["effective_grade"] == 78.15
    assert resp.json()["letter_grade"] == "C"


@pytest.mark.parametrize("body", [
    {"override_grade": 101, "override_reason": "too high"},
    {"override_grade": -1, "override_reason": "negative"},
    {"override_grade": 80, "override_reason": ""},
    {"override_grade": 80, "override_reason": "   "},
    {"override_grade": 80},
])
def test_override_validation(client, db_session, offering, body):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]
    resp = client.post(f"/api/final-grades/{grade_id}/override", json=body)
    assert resp.status_code == 422


def test_override_locked_grade(client, db_session, offering):
    seed_report_card_scores(db_session, offering, 501, uas=78)
    grade_id = _recompute(client, offering.id).json()["final_grade"]["id"]
    client.post(f"/api/final-grades/{grade_id}/lock", json={"user_id": 3})

    resp = client.post(f"/api/final-grades/{grade_id}/override", json={
        "override_grade": 95, "override_reason": "Appeal",
    })
    assert resp.status_code == 409
    assert resp.json()["error_code"] == "LOCKED_GRADE"


def test_oversized_result_is_unprocessable(client, db_session):
    offering = make_offering(db_session)
    enroll(db_session, offering, 501)
    client.post("/api/grading/components", json={
        "scope": "course_offering", "scope_ref_id": offering.id, "key": "uas",
        "aggregator": {"type": "max"},
    })
    client.post("/api/grading/formulas", json={
        "scope": "course_offering", "scope_ref_id": offering.id,
        "expression": "uas * 100000000000000000000000000000",
    })
    add_score(db_session, offering, 501, "uas", 55)

    resp = _recompute(client, offering.id)
    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "EXPRESSION_EVALUATION"
    assert isinstance(body["log_entry_id"], int)


def test_preview_oversized_result_is_unprocessable(client):
    resp = client.post("/api/grading/formulas/preview", json={
        "expression": "if(uas > 0, uas * 1000, 0)",
        "bindings": {"uas": 55},
    })
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "EXPRESSION_EVALUATION"
