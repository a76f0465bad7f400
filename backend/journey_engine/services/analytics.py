import logging
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.lead_journey import ENROLLMENT_STATUSES, LeadJourney
from journey_engine.services.errors import NotFoundError

logger = logging.getLogger(__name__)

EXECUTION_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TOP_JOURNEYS = 5


class AnalyticsReader:
    """Read-only views over journeys, enrollments and executions."""

    def __init__(self, store: JourneyStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    async def journey_stats(self, tenant_id: str) -> Dict[str, Any]:
        journeys = await self.store.list_journeys(tenant_id=tenant_id)
        enrollments = await self.store.list_lead_journeys(tenant_id=tenant_id)
        names = {j.journey_id: j.name for j in journeys}

        by_status = {status: 0 for status in ENROLLMENT_STATUSES}
        top: List[Dict[str, Any]] = []
        if enrollments:
            df = pd.DataFrame([{"journey_id": e.journey_id, "status": e.status} for e in enrollments])
            by_status.update({k: int(v) for k, v in df["status"].value_counts().items()})
            counts = df.groupby("journey_id").size().sort_values(ascending=False).head(TOP_JOURNEYS)
            top = [
                {"journey_id": journey_id, "name": names.get(journey_id), "enrollments": int(count)}
                for journey_id, count in counts.items()
            ]

        return {
            "total_journeys": len(journeys),
            "active_journeys": sum(1 for j in journeys if j.is_active),
            "total_enrollments": len(enrollments),
            "enrollments_by_status": by_status,
            "top_journeys": top,
        }

    async def step_stats(self, tenant_id: str, journey_id: str) -> Dict[str, Any]:
        journey = await self.store.get_journey(journey_id, tenant_id=tenant_id)
        if journey is None:
            raise NotFoundError(f"Journey {journey_id} not found")
        steps = await self.store.list_steps(journey_id)
        executions = await self.store.list_executions(journey_id=journey_id, tenant_id=tenant_id)
        enrollments = await self.store.list_lead_journeys(tenant_id=tenant_id, journey_id=journey_id)

        step_ids = [s.step_id for s in steps]
        if executions:
            df = pd.DataFrame([{"step_id": e.step_id, "status": e.status} for e in executions])
            table = pd.crosstab(df["step_id"], df["status"])
        else:
            table = pd.DataFrame()
        table = table.reindex(index=step_ids, columns=list(EXECUTION_STATUSES), fill_value=0).fillna(0)

        rows = []
        for step in steps:
            counts = {status: int(table.at[step.step_id, status]) for status in EXECUTION_STATUSES}
            rows.append({
                "step_id": step.step_id,
                "name": step.name,
                "step_order": step.step_order,
                "action_type": step.action_type,
                "is_active": step.is_active,
                "executions": counts,
                "total": sum(counts.values()),
            })

        by_status = {status: 0 for status in ENROLLMENT_STATUSES}
        for enrollment in enrollments:
            by_status[enrollment.status] += 1
        return {
            "journey_id": journey_id,
            "name": journey.name,
            "enrollments_by_status": by_status,
            "steps": rows,
        }

    async def upcoming_executions(self, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        executions = await self.store.upcoming_executions(tenant_id, self.clock(), limit)
        step_names: Dict[str, Optional[str]] = {}
        lead_ids: Dict[str, Optional[str]] = {}
        rows = []
        for execution in executions:
            if execution.step_id not in step_names:
                step = await self.store.get_step(execution.step_id)
                step_names[execution.step_id] = step.name if step else None
            if execution.lead_journey_id not in lead_ids:
                lead_journey = await self.store.get_lead_journey(execution.lead_journey_id)
                lead_ids[execution.lead_journey_id] = lead_journey.lead_id if lead_journey else None
            rows.append({
                **execution.model_dump(exclude={"claim_token"}),
                "step_name": step_names[execution.step_id],
                "lead_id": lead_ids[execution.lead_journey_id],
            })
        return rows

    async def journey_leads(self, tenant_id: str, journey_id: str, status: Optional[str] = None) -> List[LeadJourney]:
        if await self.store.get_journey(journey_id, tenant_id=tenant_id) is None:
            raise NotFoundError(f"Journey {journey_id} not found")
        statuses = [status] if status else None
        return await self.store.list_lead_journeys(tenant_id=tenant_id, journey_id=journey_id, statuses=statuses)

    async def lead_journeys(self, tenant_id: str, lead_id: str) -> List[Dict[str, Any]]:
        enrollments = await self.store.list_lead_journeys(tenant_id=tenant_id, lead_id=lead_id)
        rows = []
        for enrollment in enrollments:
            journey = await self.store.get_journey(enrollment.journey_id, tenant_id=tenant_id)
            pending = await self.store.list_executions(
                lead_journey_id=enrollment.lead_journey_id, statuses=["pending"]
            )
            rows.append({
                **enrollment.model_dump(),
                "journey_name": journey.name if journey else None,
                "pending_executions": [e.model_dump(exclude={"claim_token"}) for e in pending],
            })
        return rows
