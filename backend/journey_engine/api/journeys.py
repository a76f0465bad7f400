import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from journey_engine.api.deps import get_engine, get_tenant_id, http_error, unexpected_error
from journey_engine.engine import Engine
from journey_engine.services.enrollment import parse_lead_ids_csv
from journey_engine.services.errors import JourneyError

logger = logging.getLogger(__name__)
router = APIRouter()


class JourneyRequest(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    trigger_criteria: Dict[str, Any] = Field(default_factory=dict)
    failure_policy: Literal["fail_enrollment", "skip_step"] = "fail_enrollment"


class JourneyUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    trigger_criteria: Optional[Dict[str, Any]] = None
    failure_policy: Optional[Literal["fail_enrollment", "skip_step"]] = None


# Action and delay payloads are validated by the definition store so that a bad
# payload is a 400 with a readable message.
class StepRequest(BaseModel):
    name: str
    description: Optional[str] = None
    step_order: Optional[int] = None
    action: Dict[str, Any]
    delay: Optional[Dict[str, Any]] = None
    conditions: Optional[Dict[str, Any]] = None
    max_attempts: Optional[int] = None
    is_active: bool = True
    is_exit_point: bool = False


class StepUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    step_order: Optional[int] = None
    action: Optional[Dict[str, Any]] = None
    delay: Optional[Dict[str, Any]] = None
    conditions: Optional[Dict[str, Any]] = None
    max_attempts: Optional[int] = None
    is_active: Optional[bool] = None
    is_exit_point: Optional[bool] = None


class EnrollRequest(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)
    restart: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)


def _summary(results: List[dict]) -> dict:
    enrolled = sum(1 for r in results if r["status"] == "enrolled")
    return {"enrolled": enrolled, "failed": len(results) - enrolled, "results": results}


# --- journeys ---------------------------------------------------------------

@router.get("/journeys")
async def list_journeys(
    active_only: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.list_journeys(tenant_id, active_only=active_only)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Listing journeys", e)


@router.post("/journeys", status_code=201)
async def create_journey(
    body: JourneyRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.create_journey(tenant_id, body.model_dump())
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Creating journey", e)


@router.get("/journeys/{journey_id}")
async def get_journey(journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        journey = await engine.definitions.get_journey(tenant_id, journey_id)
        steps = await engine.definitions.list_steps(tenant_id, journey_id)
        return {**journey.model_dump(mode="json"), "steps": [s.model_dump(mode="json") for s in steps]}
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading journey", e)


@router.put("/journeys/{journey_id}")
async def update_journey(
    journey_id: str,
    body: JourneyUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.update_journey(tenant_id, journey_id, body.model_dump(exclude_unset=True))
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Updating journey", e)


@router.delete("/journeys/{journey_id}")
async def delete_journey(
    journey_id: str,
    force: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        deleted = await engine.enrollment.delete_journey(tenant_id, journey_id, force=force)
        return {"message": "Journey deleted", "journey_id": journey_id, "deleted": deleted}
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Deleting journey", e)


@router.post("/journeys/{journey_id}/enable")
async def enable_journey(journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.definitions.set_journey_active(tenant_id, journey_id, True)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Enabling journey", e)


@router.post("/journeys/{journey_id}/disable")
async def disable_journey(journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.definitions.set_journey_active(tenant_id, journey_id, False)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Disabling journey", e)


# --- steps ------------------------------------------------------------------

@router.get("/journeys/{journey_id}/steps")
async def list_steps(
    journey_id: str,
    active_only: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.list_steps(tenant_id, journey_id, active_only=active_only)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Listing steps", e)


@router.post("/journeys/{journey_id}/steps", status_code=201)
async def add_step(
    journey_id: str,
    body: StepRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.add_step(tenant_id, journey_id, body.model_dump(exclude_none=True))
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Adding step", e)


@router.put("/journeys/{journey_id}/steps/{step_id}")
async def update_step(
    journey_id: str,
    step_id: str,
    body: StepUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.definitions.update_step(tenant_id, journey_id, step_id, body.model_dump(exclude_unset=True))
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Updating step", e)


@router.delete("/journeys/{journey_id}/steps/{step_id}")
async def delete_step(
    journey_id: str,
    step_id: str,
    force: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        deleted = await engine.definitions.delete_step(tenant_id, journey_id, step_id, force=force)
        return {"message": "Step deleted", "step_id": step_id, "deleted_executions": deleted}
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Deleting step", e)


# --- enrollment -------------------------------------------------------------

@router.post("/journeys/{journey_id}/enroll")
async def enroll_leads(
    journey_id: str,
    body: EnrollRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        results = await engine.enrollment.bulk_enroll(
            tenant_id, journey_id, body.lead_ids, restart=body.restart, context=body.context
        )
        return _summary(results)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Enrolling leads", e)


@router.post("/journeys/{journey_id}/enroll/csv")
async def enroll_leads_from_csv(
    journey_id: str,
    file: UploadFile = File(...),
    restart: bool = Form(False),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        lead_ids = parse_lead_ids_csv(await file.read())
        if not lead_ids:
            raise HTTPException(status_code=400, detail="CSV contains no lead ids")
        logger.info(f"[API] CSV enrollment of {len(lead_ids)} leads into {journey_id}")
        results = await engine.enrollment.bulk_enroll(tenant_id, journey_id, lead_ids, restart=restart)
        return _summary(results)
    except HTTPException:
        raise
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("CSV enrollment", e)


@router.get("/journeys/{journey_id}/leads")
async def list_journey_leads(
    journey_id: str,
    status: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(get_engine),
):
    try:
        return await engine.analytics.journey_leads(tenant_id, journey_id, status=status)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Listing journey leads", e)


@router.get("/journeys/{journey_id}/stats")
async def journey_step_stats(journey_id: str, tenant_id: str = Depends(get_tenant_id), engine: Engine = Depends(get_engine)):
    try:
        return await engine.analytics.step_stats(tenant_id, journey_id)
    except JourneyError as e:
        raise http_error(e)
    except Exception as e:
        raise unexpected_error("Loading journey stats", e)
