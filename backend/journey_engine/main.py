import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from journey_engine.api.enrollments import router as enrollments_router
from journey_engine.api.journeys import router as journeys_router
from journey_engine.api.signals import router as signals_router
from journey_engine.config import LOG_LEVEL, RUN_INPROCESS_SCHEDULER
from journey_engine.db.init import init_store
from journey_engine.engine import build_http_engine

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Starting Journey Automation API")
    logger.info("Initializing database...")
    try:
        store = await init_store()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise

    engine = build_http_engine(store)
    app.state.engine = engine
    if RUN_INPROCESS_SCHEDULER:
        await engine.scheduler.start()
    else:
        logger.info("Execution sweeps run in the Celery beat/worker processes.")
    logger.info("API endpoints available:")
    logger.info("  - /api/journeys: Journey and step definitions, enrollment")
    logger.info("  - /api/lead-journeys: Enrollment control and manual execution")
    logger.info("  - /api/signals: Signed signal links")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    if RUN_INPROCESS_SCHEDULER:
        await engine.scheduler.stop()
    await engine.aclose()
    store.client.close()
    logger.info("=== APPLICATION SHUTDOWN COMPLETE ===")


app = FastAPI(title="Journey Automation Engine", lifespan=lifespan)

# For production, restrict this to the dashboard's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Journey Automation API"}


@app.get("/health")
async def health_check(request: Request):
    """Database and worker status"""
    engine = getattr(request.app.state, "engine", None)
    try:
        if engine is None:
            raise RuntimeError("engine not initialized")
        await engine.store.ping()
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    try:
        from journey_engine.celery_config import celery_app

        active_workers = celery_app.control.inspect(timeout=1.0).active()
        celery_status = "healthy" if active_workers else "no_workers"
    except Exception as e:
        celery_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" and celery_status == "healthy" else "degraded",
        "database": db_status,
        "celery": celery_status,
        "in_process_scheduler": bool(engine and engine.scheduler.running),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(journeys_router, prefix="/api", tags=["journeys"])
app.include_router(enrollments_router, prefix="/api", tags=["enrollments"])
app.include_router(signals_router, prefix="/api", tags=["signals"])
