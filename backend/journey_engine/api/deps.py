import logging

from fastapi import Header, HTTPException, Request

from journey_engine.engine import Engine
from journey_engine.services.errors import JourneyError

logger = logging.getLogger(__name__)


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Journey engine is not initialized")
    return engine


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    if not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return x_tenant_id.strip()


def http_error(error: JourneyError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


def unexpected_error(action: str, error: Exception) -> HTTPException:
    logger.error(f"[API] {action} failed: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=f"{action} failed: {str(error)}")
