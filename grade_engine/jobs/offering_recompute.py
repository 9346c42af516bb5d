"""Background job to recompute grades after a formula or component change.

A newly activated formula at some scope may govern many course offerings.
Each offering is recomputed in turn on a worker thread; a failing offering
is logged and the job moves on to the next.
"""

import asyncio
import logging
import threading

from grade_engine.domains.grading.resolver import offerings_in_scope
from grade_engine.models.final_grade import TriggerType
from grade_engine.models.grading import GradingScope
from grade_engine.services.recompute_service import BatchResult, RecomputeService

logger = logging.getLogger(__name__)


async def recompute_scope(
    service: RecomputeService,
    scope: GradingScope | str,
    scope_ref_id: int,
    triggered_by: int | None = None,
    description: str | None = None,
    cancel_event: threading.Event | None = None,
) -> list[BatchResult]:
    """Recompute every offering a (scope, scope_ref_id) configuration governs."""
    scope = GradingScope(scope)
    logger.info(f"Starting formula-change recompute for {scope.value} {scope_ref_id}...")

    db = service.session_factory()
    try:
        offering_ids = offerings_in_scope(db, scope, scope_ref_id)
    finally:
        db.close()

    logger.info(f"Found {len(offering_ids)} course offerings in scope")

    results = []
    recomputed = 0
    failed = 0
    for offering_id in offering_ids:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Formula-change recompute cancelled before offering {offering_id}")
            break
        try:
            result = await asyncio.to_thread(
                service.recompute_offering,
                offering_id,
                trigger_type=TriggerType.FORMULA_CHANGE,
                triggered_by=triggered_by,
                cancel_event=cancel_event,
                description=description or f"Grading configuration changed at {scope.value} {scope_ref_id}",
            )
            results.append(result)
            recomputed += len(result.completed)
            failed += len(result.failed)
        except Exception as e:
            logger.warning(f"Formula-change recompute failed for offering {offering_id}: {e}")

    logger.info(
        f"Formula-change recompute complete | "
        f"offerings={len(results)} | recomputed={recomputed} | failed={failed}"
    )
    return results

