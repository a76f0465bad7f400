import asyncio
import logging
import sys
import time

from celery.signals import worker_process_init

from journey_engine.celery_config import celery_app
from journey_engine.db.init import init_db

# Entry point for the Celery worker. Tasks come from the `include` list in
# celery_config and the beat schedule from journey_engine.scheduler.
import journey_engine.scheduler  # noqa: F401

logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Check the database is reachable when a worker process starts."""
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        logger.info("Database connection verified for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to reach database from Celery worker: {e}", exc_info=True)
        time.sleep(5)
        try:
            asyncio.run(init_db())
            logger.info("Database connection verified for Celery worker (retry successful).")
        except Exception as retry_error:
            logger.error(f"Database unreachable from Celery worker (retry failed): {retry_error}", exc_info=True)
            sys.exit(1)


celery = celery_app
