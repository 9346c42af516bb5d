"""Concurrent recomputes of the same pair through the service.

Runs against a file-backed SQLite database so each thread's session gets its
own connection, as it would against a real server.
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine

from grade_engine.db.database import Base
from grade_engine.models.final_grade import ComputationLogEntry, FinalGrade

from conftest import seed_report_card_scores


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'grades.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def test_same_pair_from_two_threads(db_session, recompute_service, report_card):
    offering = report_card["offering"]
    seed_report_card_scores(db_session, offering, 501, uas=78)
    recompute_service.lock_timeout = 10

    start = threading.Barrier(2)
    entries, errors = [], []

    def worker():
        start.wait(5)
        try:
            entries.append(recompute_service.recompute(501, offering.id))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    assert sorted(e.status for e in entries) == ["completed", "completed"]

    db_session.expire_all()
    [grade] = db_session.query(FinalGrade).filter(FinalGrade.student_id == 501).all()
    assert grade.numeric_grade == Decimal("78.15")
    assert grade.revision == 2

    ledger = db_session.query(ComputationLogEntry).order_by(ComputationLogEntry.id).all()
    assert [e.status for e in ledger] == ["completed", "completed"]
    # Whichever attempt ran second saw the first one's grade, not the empty pair
    previous = sorted((e.previous_grade for e in ledger), key=lambda v: v is not None)
    assert previous == [None, Decimal("78.15")]
