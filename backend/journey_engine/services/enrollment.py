import logging
from datetime import timedelta
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from journey_engine.config import EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.lead_journey import ENROLLMENT_STATUSES, FINISHED_STATUSES, LeadJourney
from journey_engine.services.advancement import AdvancementController, next_in_order
from journey_engine.services.collaborators import LeadCollaborator, TenantCollaborator
from journey_engine.services.errors import (
    ConflictError,
    ExecutionFailure,
    JourneyError,
    JourneyInactive,
    NotFoundError,
    ValidationError,
)
from journey_engine.services.journal import Journal

logger = logging.getLogger(__name__)


def parse_lead_ids_csv(content: bytes) -> List[str]:
    """Lead ids from an uploaded CSV with a `lead_id` column, in file order, without duplicates."""
    try:
        df = pd.read_csv(BytesIO(content), dtype=str)
    except Exception as e:
        raise ValidationError(f"Invalid CSV format: {e}")
    df.columns = [str(h).strip().lower() for h in df.columns]
    if "lead_id" not in df.columns:
        raise ValidationError("CSV must contain a 'lead_id' column.")
    ids = df["lead_id"].dropna().str.strip()
    ids = ids[ids != ""]
    return list(dict.fromkeys(ids.tolist()))


class EnrollmentManager:
    """Creates enrollments and moves them between statuses."""

    def __init__(
        self,
        store: JourneyStore,
        leads: LeadCollaborator,
        tenants: TenantCollaborator,
        advancement: Optional[AdvancementController] = None,
        settings: Optional[EngineSettings] = None,
        journal: Optional[Journal] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.leads = leads
        self.tenants = tenants
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.journal = journal or Journal(store, clock)
        self.advancement = advancement or AdvancementController(store, self.settings, self.journal, clock)

    async def _get_lead_journey(self, tenant_id: str, lead_journey_id: str) -> LeadJourney:
        lead_journey = await self.store.get_lead_journey(lead_journey_id, tenant_id=tenant_id)
        if lead_journey is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")
        return lead_journey

    async def enroll(
        self,
        tenant_id: str,
        lead_id: str,
        journey_id: str,
        restart: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> LeadJourney:
        journey = await self.store.get_journey(journey_id, tenant_id=tenant_id)
        if journey is None:
            raise NotFoundError(f"Journey {journey_id} not found")
        if not journey.is_active:
            raise JourneyInactive(f"Journey {journey_id} is not active")
        lead = await self.leads.get_lead(lead_id, tenant_id)
        if lead is None:
            raise NotFoundError(f"Lead {lead_id} not found")
        tenant = await self.tenants.get_tenant(tenant_id)

        now = self.clock()
        lead_journey = LeadJourney(
            journey_id=journey_id,
            lead_id=lead_id,
            tenant_id=tenant_id,
            started_at=now,
            updated_at=now,
            context_data=context or {},
        )
        first = await self.advancement.first_step(journey_id)
        execution = None
        if first is None:
            lead_journey.status = "completed"
            lead_journey.completed_at = now
        else:
            execution = self.advancement.build_execution(lead_journey, first, tenant, now)
            lead_journey.current_step_id = first.step_id
            lead_journey.current_execution_id = execution.execution_id
            lead_journey.next_execution_time = execution.scheduled_time

        await self.store.create_enrollment(lead_journey, execution, restart=restart)
        logger.info(
            f"[ENROLL] Lead {lead_id} enrolled in journey {journey_id} as {lead_journey.lead_journey_id} "
            f"(status={lead_journey.status}, restart={restart})"
        )
        await self.journal.add(
            lead_journey,
            "Enrolled in journey." if first else "Enrolled in journey with no active steps; completed.",
            step=first,
            details={"restart": restart},
        )
        return lead_journey

    async def bulk_enroll(
        self,
        tenant_id: str,
        journey_id: str,
        lead_ids: List[str],
        restart: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if await self.store.get_journey(journey_id, tenant_id=tenant_id) is None:
            raise NotFoundError(f"Journey {journey_id} not found")

        results = []
        for lead_id in lead_ids:
            try:
                lead_journey = await self.enroll(tenant_id, lead_id, journey_id, restart=restart, context=context)
                results.append({
                    "lead_id": lead_id,
                    "status": "enrolled",
                    "lead_journey_id": lead_journey.lead_journey_id,
                })
            except (JourneyError, ExecutionFailure) as e:
                results.append({"lead_id": lead_id, "status": "error", "error": e.message})
            except Exception as e:
                logger.error(f"[ENROLL] Unexpected error enrolling lead {lead_id}: {e}", exc_info=True)
                results.append({"lead_id": lead_id, "status": "error", "error": str(e)})
        enrolled = sum(1 for r in results if r["status"] == "enrolled")
        logger.info(f"[ENROLL] Bulk enrollment into {journey_id}: {enrolled}/{len(lead_ids)} enrolled")
        return results

    async def set_status(self, tenant_id: str, lead_journey_id: str, status: str) -> LeadJourney:
        if status not in ENROLLMENT_STATUSES:
            raise ValidationError(f"Invalid status '{status}'. Expected one of {', '.join(ENROLLMENT_STATUSES)}")
        lead_journey = await self._get_lead_journey(tenant_id, lead_journey_id)
        if lead_journey.status == status:
            return lead_journey
        if lead_journey.status in FINISHED_STATUSES and status in ("active", "paused"):
            raise ConflictError(
                f"Lead journey {lead_journey_id} is {lead_journey.status}; enroll the lead again to restart it"
            )

        updated = await self.store.set_enrollment_status(lead_journey_id, status, self.clock())
        if updated is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")
        logger.info(f"[ENROLL] Lead journey {lead_journey_id}: {lead_journey.status} -> {status}")
        await self.journal.add(updated, f"Status changed from {lead_journey.status} to {status}.")
        return updated

    async def resume(self, tenant_id: str, lead_journey_id: str) -> LeadJourney:
        lead_journey = await self._get_lead_journey(tenant_id, lead_journey_id)
        if lead_journey.status != "paused":
            raise ConflictError(f"Lead journey {lead_journey_id} is {lead_journey.status}, not paused")

        steps = await self.store.list_steps(lead_journey.journey_id, active_only=True)
        step = next((s for s in steps if s.step_id == lead_journey.current_step_id), None)
        if step is None and lead_journey.current_step_id:
            current = await self.store.get_step(lead_journey.current_step_id)
            step = next_in_order(steps, current) if current else next_in_order(steps, None)
        elif step is None:
            step = next_in_order(steps, None)

        now = self.clock()
        if step is None:
            updated = await self.store.set_enrollment_status(lead_journey_id, "completed", now)
            logger.info(f"[ENROLL] Lead journey {lead_journey_id} resumed with nothing left to run; completed")
            await self.journal.add(updated, "Resumed with no remaining steps; completed.")
            return updated

        tenant = await self.tenants.get_tenant(tenant_id)
        execution = self.advancement.build_execution(lead_journey, step, tenant, now, anchor=now)
        updated = await self.store.resume_enrollment(lead_journey_id, execution, now)
        if updated is None:
            raise ConflictError(f"Lead journey {lead_journey_id} is no longer paused")
        logger.info(
            f"[ENROLL] Lead journey {lead_journey_id} resumed at step {step.step_id} "
            f"for {execution.scheduled_time.isoformat()}"
        )
        await self.journal.add(
            updated, "Resumed.", step=step, details={"scheduled_time": execution.scheduled_time.isoformat()}
        )
        return updated

    async def delete_journey(self, tenant_id: str, journey_id: str, force: bool = False) -> Dict[str, int]:
        if await self.store.get_journey(journey_id, tenant_id=tenant_id) is None:
            raise NotFoundError(f"Journey {journey_id} not found")
        counts = await self.store.delete_journey_cascade(journey_id, force=force)
        logger.info(f"[ENROLL] Deleted journey {journey_id} (force={force}): {counts}")
        return counts

    async def auto_enroll(self) -> Dict[str, int]:
        """Enroll matching leads into every active journey that opted into auto-enrollment."""
        totals = {"journeys": 0, "enrolled": 0, "errors": 0}
        for journey in await self.store.list_journeys(active_only=True):
            criteria = journey.trigger_criteria or {}
            if not criteria.get("auto_enroll"):
                continue
            totals["journeys"] += 1
            try:
                leads = await self.leads.find_leads(journey.tenant_id, criteria)
            except ExecutionFailure as e:
                logger.error(f"[AUTO_ENROLL] Lead search failed for journey {journey.journey_id}: {e.message}")
                totals["errors"] += 1
                continue

            for lead in leads:
                existing = await self.store.find_enrollment(lead.lead_id, journey.journey_id, ("active", "paused"))
                if existing is not None:
                    continue
                try:
                    await self.enroll(journey.tenant_id, lead.lead_id, journey.journey_id)
                    totals["enrolled"] += 1
                except (JourneyError, ExecutionFailure) as e:
                    logger.warning(
                        f"[AUTO_ENROLL] Could not enroll lead {lead.lead_id} in {journey.journey_id}: {e.message}"
                    )
                    totals["errors"] += 1
        logger.info(f"[AUTO_ENROLL] Completed: {totals}")
        return totals

    async def cleanup_finished(self, retention_days: Optional[int] = None) -> Dict[str, int]:
        days = retention_days if retention_days is not None else self.settings.finished_enrollment_retention_days
        cutoff = self.clock() - timedelta(days=days)
        counts = await self.store.cleanup_finished(cutoff)
        logger.info(f"[CLEANUP] Removed finished enrollments older than {days} days: {counts}")
        return counts
