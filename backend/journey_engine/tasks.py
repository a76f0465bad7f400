import asyncio
import logging
from datetime import datetime, timezone

from journey_engine.celery_config import celery_app
from journey_engine.db.init import init_store
from journey_engine.engine import build_http_engine

logger = logging.getLogger(__name__)


async def _with_engine(work):
    """Run `work(engine)` against a fresh store bound to the current event loop."""
    store = await init_store()
    engine = build_http_engine(store)
    try:
        return await work(engine)
    finally:
        await engine.aclose()
        store.client.close()


@celery_app.task(name="journey_engine.tasks.sweep_executions_task", acks_late=True, max_retries=3)
def sweep_executions_task():
    """
    Claim and run every due execution. Safe to run on several workers at
    once: each execution is claimed by exactly one of them.
    """

    async def sweep(engine):
        claimed = await engine.scheduler.drain(max_sweeps=10)
        if claimed:
            logger.info(f"[SWEEP] Processed {claimed} executions")
        return claimed

    try:
        return asyncio.run(_with_engine(sweep))
    except Exception as e:
        logger.error(f"Error in sweep_executions_task: {e}", exc_info=True)
        raise


@celery_app.task(name="journey_engine.tasks.recover_stuck_executions_task", acks_late=True, max_retries=3)
def recover_stuck_executions_task():
    """Push executions stuck in processing back through the failure path."""

    async def recover(engine):
        logger.info("Executing recover_stuck_executions_task")
        recovered = await engine.scheduler.recover_stale()
        if recovered:
            logger.info(f"Recovery completed: {recovered} executions recovered")
        else:
            logger.info("No stuck executions found")
        return recovered

    try:
        return asyncio.run(_with_engine(recover))
    except Exception as e:
        logger.error(f"Error in recover_stuck_executions_task: {e}", exc_info=True)
        raise


@celery_app.task(name="journey_engine.tasks.auto_enroll_task", acks_late=True, max_retries=3)
def auto_enroll_task():
    """Enroll leads matching the trigger criteria of auto-enrolling journeys."""

    async def run(engine):
        logger.info(f"=== AUTO_ENROLL_TASK STARTED === {datetime.now(timezone.utc).isoformat()}")
        totals = await engine.enrollment.auto_enroll()
        logger.info("=== AUTO_ENROLL_TASK COMPLETED ===")
        return totals

    try:
        return asyncio.run(_with_engine(run))
    except Exception as e:
        logger.error(f"Error in auto_enroll_task: {e}", exc_info=True)
        raise


@celery_app.task(name="journey_engine.tasks.cleanup_old_enrollments_task", acks_late=True, max_retries=3)
def cleanup_old_enrollments_task():
    """Remove finished enrollments past the retention window, with their executions and journal."""

    async def cleanup(engine):
        logger.info("=== AUTOMATIC CLEANUP TASK STARTED ===")
        counts = await engine.enrollment.cleanup_finished()
        logger.info("=== AUTOMATIC CLEANUP COMPLETED ===")
        logger.info(f"Total deleted: {counts}")
        return counts

    try:
        return asyncio.run(_with_engine(cleanup))
    except Exception as e:
        logger.error(f"Error in cleanup_old_enrollments_task: {e}", exc_info=True)
        raise
