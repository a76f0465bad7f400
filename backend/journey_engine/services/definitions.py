import logging
from typing import Any, Callable, Dict, List

import pydantic

from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STEP_ORDER_GAP = 10
_SYSTEM_FIELDS = {"journey_id", "step_id", "tenant_id", "created_at", "updated_at"}
JOURNEY_FIELDS = {"name", "description", "is_active", "trigger_criteria", "failure_policy"}
STEP_FIELDS = {
    "name", "description", "step_order", "action", "delay", "conditions",
    "max_attempts", "is_active", "is_exit_point",
}


def _validation_message(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else item.get("msg"))
    return "; ".join(parts)


class DefinitionStore:
    """Journeys and their ordered steps, scoped by tenant."""

    def __init__(self, store: JourneyStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    # --- journeys -----------------------------------------------------------

    async def create_journey(self, tenant_id: str, data: Dict[str, Any]) -> Journey:
        payload = {k: v for k, v in data.items() if k not in _SYSTEM_FIELDS}
        now = self.clock()
        try:
            journey = Journey(**payload, tenant_id=tenant_id, created_at=now, updated_at=now)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid journey: {_validation_message(e)}")
        await self.store.insert_journey(journey)
        logger.info(f"[DEFINITIONS] Created journey {journey.journey_id} '{journey.name}' for tenant {tenant_id}")
        return journey

    async def get_journey(self, tenant_id: str, journey_id: str) -> Journey:
        journey = await self.store.get_journey(journey_id, tenant_id=tenant_id)
        if journey is None:
            raise NotFoundError(f"Journey {journey_id} not found")
        return journey

    async def list_journeys(self, tenant_id: str, active_only: bool = False) -> List[Journey]:
        return await self.store.list_journeys(tenant_id=tenant_id, active_only=active_only)

    async def update_journey(self, tenant_id: str, journey_id: str, data: Dict[str, Any]) -> Journey:
        journey = await self.get_journey(tenant_id, journey_id)
        changes = {k: v for k, v in data.items() if k in JOURNEY_FIELDS}
        try:
            updated = Journey.model_validate({**journey.model_dump(), **changes, "updated_at": self.clock()})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid journey: {_validation_message(e)}")
        await self.store.save_journey(updated)
        logger.info(f"[DEFINITIONS] Updated journey {journey_id}: {sorted(changes)}")
        return updated

    async def set_journey_active(self, tenant_id: str, journey_id: str, is_active: bool) -> Journey:
        return await self.update_journey(tenant_id, journey_id, {"is_active": is_active})

    # --- steps --------------------------------------------------------------

    async def add_step(self, tenant_id: str, journey_id: str, data: Dict[str, Any]) -> JourneyStep:
        await self.get_journey(tenant_id, journey_id)
        payload = {k: v for k, v in data.items() if k not in _SYSTEM_FIELDS}
        if payload.get("step_order") is None:
            existing = await self.store.list_steps(journey_id)
            payload["step_order"] = (existing[-1].step_order + STEP_ORDER_GAP) if existing else STEP_ORDER_GAP
        now = self.clock()
        try:
            step = JourneyStep(**payload, journey_id=journey_id, tenant_id=tenant_id, created_at=now, updated_at=now)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid step: {_validation_message(e)}")
        await self.store.insert_step(step)
        logger.info(
            f"[DEFINITIONS] Added {step.action_type} step {step.step_id} at order {step.step_order} to journey {journey_id}"
        )
        return step

    async def get_step(self, tenant_id: str, journey_id: str, step_id: str) -> JourneyStep:
        await self.get_journey(tenant_id, journey_id)
        step = await self.store.get_step(step_id, journey_id=journey_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in journey {journey_id}")
        return step

    async def list_steps(self, tenant_id: str, journey_id: str, active_only: bool = False) -> List[JourneyStep]:
        await self.get_journey(tenant_id, journey_id)
        return await self.store.list_steps(journey_id, active_only=active_only)

    async def update_step(self, tenant_id: str, journey_id: str, step_id: str, data: Dict[str, Any]) -> JourneyStep:
        step = await self.get_step(tenant_id, journey_id, step_id)
        changes = {k: v for k, v in data.items() if k in STEP_FIELDS}
        try:
            updated = JourneyStep.model_validate({**step.model_dump(), **changes, "updated_at": self.clock()})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid step: {_validation_message(e)}")
        await self.store.save_step(updated)
        logger.info(f"[DEFINITIONS] Updated step {step_id}: {sorted(changes)}")
        return updated

    async def delete_step(self, tenant_id: str, journey_id: str, step_id: str, force: bool = False) -> int:
        await self.get_step(tenant_id, journey_id, step_id)
        deleted = await self.store.delete_step(step_id, force=force)
        logger.info(f"[DEFINITIONS] Deleted step {step_id} (force={force}, executions removed={deleted})")
        return deleted
