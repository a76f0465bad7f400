import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from journey_engine.api.deps import get_engine, get_tenant_id, http_error, unexpected_error
from journey_engine.engine import Engine
from journey_engine.services.errors import JourneyError, NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()


class StatusRequest(BaseModel):
    status: str


class ExecuteRequest(BaseModel):
    step_id: str


class SignalRequest(BaseModel):
    event: str


@router.get("/lead-journeys/{lead_journey_id}")
async def get_lead_journey(lead_journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        lead_journey = await engine.store.get_lead_journey(lead_journey_id, tenant_id=tenant_id)
        if lead_journey is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")
        executions = await engine.store.list_executions(lead_journey_id=lead_journey_id)
        return {
            **lead_journey.model_dump(mode="json"),
            "executions": [e.model_dump(mode="json", exclude={"claim_token"}) for e in executions],
        }
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading lead journey", e)


@router.put("/lead-journeys/{lead_journey_id}/status")
async def set_lead_journey_status(
    lead_journey_id: str,
    body: StatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.enrollment.set_status(tenant_id, lead_journey_id, body.status)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Updating lead journey status", e)


@router.post("/lead-journeys/{lead_journey_id}/resume")
async def resume_lead_journey(lead_journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.enrollment.resume(tenant_id, lead_journey_id)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Resuming lead journey", e)


@router.post("/lead-journeys/{lead_journey_id}/execute")
async def execute_step_now(
    lead_journey_id: str,
    body: ExecuteRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        execution = await engine.executor.execute_now(tenant_id, lead_journey_id, body.step_id)
        return execution.model_dump(mode="json", exclude={"claim_token"})
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Manual step execution", e)


@router.post("/lead-journeys/{lead_journey_id}/signals")
async def signal_lead_journey(
    lead_journey_id: str,
    body: SignalRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        released = await engine.signals.signal(tenant_id, lead_journey_id, body.event)
        return {"lead_journey_id": lead_journey_id, "event": body.event, "released": released}
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Signal", e)


@router.get("/lead-journeys/{lead_journey_id}/journal")
async def get_lead_journey_journal(
    lead_journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)
):
    try:
        if await engine.store.get_lead_journey(lead_journey_id, tenant_id=tenant_id) is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")
        return await engine.store.list_journal(lead_journey_id)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading journal", e)


@router.get("/leads/{lead_id}/journeys")
async def get_lead_journeys(lead_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.analytics.lead_journeys(tenant_id, lead_id)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading lead journeys", e)


@router.get("/stats/journeys")
async def get_journey_stats(tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.analytics.journey_stats(tenant_id)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading journey stats", e)


@router.get("/executions/upcoming")
async def get_upcoming_executions(
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.analytics.upcoming_executions(tenant_id, limit=limit)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading upcoming executions", e)
