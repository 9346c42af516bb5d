"""Shared fixtures: an in-memory database per test and seed helpers.

Every test gets a fresh SQLite database on a single shared connection
(StaticPool), so sessions opened by the services see the rows the test
committed.
"""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("GRADE_ENGINE_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("GRADE_ENGINE_DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import grade_engine.models  # noqa: F401
from grade_engine.db.database import Base, get_db
from grade_engine.domains.grading.compiled import CompiledConfigCache
from grade_engine.models.assessment import Assessment, AssessmentScore, ScoreStatus
from grade_engine.models.course_offering import CourseOffering, Enrollment
from grade_engine.schemas.grading import ComponentCreate, FormulaCreate
from grade_engine.services.grading_config_service import GradingConfigService
from grade_engine.services.pair_locks import PairLockRegistry
from grade_engine.services.recompute_service import RecomputeService

BASE_TIME = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

REPORT_CARD_EXPRESSION = "0.25*tugas_harian + 0.25*ulangan_harian + 0.2*uts + 0.3*uas"
REPORT_CARD_BOUNDARIES = {"A": 90, "B": 80, "C": 70, "D": 60}


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def cache():
    return CompiledConfigCache()


@pytest.fixture()
def recompute_service(session_factory, cache):
    return RecomputeService(
        session_factory=session_factory,
        cache=cache,
        locks=PairLockRegistry(),
        lock_timeout=1.0,
    )


@pytest.fixture()
def config_service(db_session, cache):
    return GradingConfigService(db_session, cache=cache)


@pytest.fixture()
def client(session_factory, recompute_service):
    from grade_engine.api.deps import get_recompute_service
    from grade_engine.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_recompute_service] = lambda: recompute_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


def make_offering(db, school_id=1, academic_period_id=10, subject_id=100, name="Matematika 7A"):
    offering = CourseOffering(
        school_id=school_id,
        academic_period_id=academic_period_id,
        subject_id=subject_id,
        name=name,
    )
    db.add(offering)
    db.commit()
    return offering


def enroll(db, offering, *student_ids, status="active"):
    for student_id in student_ids:
        db.add(Enrollment(student_id=student_id, course_offering_id=offering.id, status=status))
    db.commit()


def add_score(db, offering, student_id, group_tag, score, *, status=ScoreStatus.GRADED.value,
              source_type="assignment", day=0, title=None):
    """One assessment with one score; ``day`` offsets graded_at from BASE_TIME."""
    assessment = Assessment(
        course_offering_id=offering.id,
        title=title or f"{group_tag} {day}",
        group_tag=group_tag,
        source_type=source_type,
    )
    db.add(assessment)
    db.flush()
    when = BASE_TIME + timedelta(days=day)
    row = AssessmentScore(
        assessment_id=assessment.id,
        student_id=student_id,
        raw_score=Decimal(str(score)) if score is not None else None,
        status=status,
        submitted_at=when,
        graded_at=when if status == ScoreStatus.GRADED.value else None,
    )
    db.add(row)
    db.commit()
    return row


def add_component(service, key, scope="course_offering", scope_ref_id=1, aggregator=None,
                  missing_policy="ignore", default_value=None, group_tags=None):
    return service.create_component(ComponentCreate(
        scope=scope,
        scope_ref_id=scope_ref_id,
        key=key,
        source_filter={"group_tags": group_tags if group_tags is not None else [key]},
        aggregator=aggregator or {"type": "average"},
        missing_policy=missing_policy,
        default_value=default_value,
    ))


def add_formula(service, expression=REPORT_CARD_EXPRESSION, scope="course_offering", scope_ref_id=1,
                conditions=None, boundaries=None, pass_threshold=60, activate=True, **extra):
    return service.create_formula(FormulaCreate(
        scope=scope,
        scope_ref_id=scope_ref_id,
        expression=expression,
        conditions=conditions if conditions is not None else [{"predicate": "uas < 60", "expression": "uas"}],
        grade_boundaries=boundaries if boundaries is not None else REPORT_CARD_BOUNDARIES,
        pass_threshold=pass_threshold,
        **extra,
    ), activate=activate)


@pytest.fixture()
def report_card(db_session, config_service):
    """An offering with four report-card components, the formula, and student 501 enrolled."""
    offering = make_offering(db_session)
    enroll(db_session, offering, 501)
    for key in ("tugas_harian", "ulangan_harian", "uts", "uas"):
        add_component(config_service, key, scope_ref_id=offering.id)
    formula = add_formula(config_service, scope_ref_id=offering.id)
    return {"offering": offering, "formula": formula, "student_id": 501}


def seed_report_card_scores(db, offering, student_id, uas):
    add_score(db, offering, student_id, "tugas_harian", 80, day=1)
    add_score(db, offering, student_id, "tugas_harian", 90, day=2)
    add_score(db, offering, student_id, "ulangan_harian", 78, day=3)
    add_score(db, offering, student_id, "uts", 70, source_type="test", day=4)
    add_score(db, offering, student_id, "uas", uas, source_type="final_exam", day=5)
