import logging

from celery.schedules import crontab

from journey_engine.celery_config import celery_app
from journey_engine.config import AUTO_ENROLL_INTERVAL_MINUTES, SWEEP_INTERVAL_SECONDS
from journey_engine.tasks import (
    auto_enroll_task,
    cleanup_old_enrollments_task,
    recover_stuck_executions_task,
    sweep_executions_task,
)

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    sender.add_periodic_task(
        SWEEP_INTERVAL_SECONDS,
        sweep_executions_task.s(),
        name="sweep-due-executions",
    )

    # Executions left in processing by a dead worker
    sender.add_periodic_task(
        crontab(minute="*"),
        recover_stuck_executions_task.s(),
        name="recover-stuck-executions",
    )

    sender.add_periodic_task(
        crontab(minute=f"*/{AUTO_ENROLL_INTERVAL_MINUTES}"),
        auto_enroll_task.s(),
        name="auto-enroll-leads",
    )

    # Daily at 2:00 AM
    sender.add_periodic_task(
        crontab(hour=2, minute=0),
        cleanup_old_enrollments_task.s(),
        name="cleanup-old-enrollments",
    )

    logger.info("Periodic tasks configured successfully")
