import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from journey_engine.api.deps import get_engine, http_error, unexpected_error
from journey_engine.engine import Engine
from journey_engine.services.errors import JourneyError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/signals/{token}")
async def signal_from_link(
    token: str,
    redirect: Optional[str] = Query(None, description="Optional redirect after the signal is recorded"),
    engine: Engine = Depends(get_engine),
):
    """
    Releases a held conditional step from a signed link, e.g. one embedded in
    an SMS or email or used as a provider callback. No tenant header needed:
    the token carries the tenant.
    """
    try:
        logger.info(f"[SIGNAL] Signal link received: {token[:20]}...")
        result = await engine.signals.signal_from_token(token)
        if redirect:
            return RedirectResponse(url=redirect, status_code=302)
        return result
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Signal link", e)
