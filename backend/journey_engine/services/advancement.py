import logging
from typing import Callable, List, Optional

from journey_engine.config import EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journey import JourneyStep
from journey_engine.models.lead import Tenant
from journey_engine.models.lead_journey import LeadJourney
from journey_engine.services.journal import Journal
from journey_engine.services.scheduling import compute_schedule, resolve_timezone

logger = logging.getLogger(__name__)


def next_in_order(steps: List[JourneyStep], current: Optional[JourneyStep]) -> Optional[JourneyStep]:
    """Lowest-ordered active step strictly after `current`; the first active step when `current` is None."""
    candidates = [s for s in steps if s.is_active and (current is None or s.step_order > current.step_order)]
    return min(candidates, key=lambda s: s.step_order, default=None)


class AdvancementController:
    """Decides what an enrollment does after a step finishes: schedule the next step, complete, or exit."""

    def __init__(
        self,
        store: JourneyStore,
        settings: Optional[EngineSettings] = None,
        journal: Optional[Journal] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.journal = journal or Journal(store, clock)

    def build_execution(
        self,
        lead_journey: LeadJourney,
        step: JourneyStep,
        tenant: Optional[Tenant] = None,
        now=None,
        anchor=None,
    ) -> JourneyExecution:
        """A pending execution of `step`. `anchor` replaces the enrollment start for enrollment-anchored delays."""
        now = now or self.clock()
        tz = resolve_timezone(tenant.timezone if tenant else None, self.settings.default_timezone)
        when = compute_schedule(
            step.delay, now, anchor or lead_journey.started_at, tz, self.settings.conditional_hold_hours
        )
        return JourneyExecution(
            lead_journey_id=lead_journey.lead_journey_id,
            journey_id=lead_journey.journey_id,
            tenant_id=lead_journey.tenant_id,
            step_id=step.step_id,
            scheduled_time=when.at,
            awaiting_signal=when.awaiting_signal,
            signal_event=when.signal_event,
            created_at=now,
            updated_at=now,
        )

    async def first_step(self, journey_id: str) -> Optional[JourneyStep]:
        return next_in_order(await self.store.list_steps(journey_id, active_only=True), None)

    async def resolve_next_step(
        self, current: JourneyStep, target_step_id: Optional[str] = None
    ) -> Optional[JourneyStep]:
        steps = await self.store.list_steps(current.journey_id, active_only=True)
        if target_step_id:
            for step in steps:
                if step.step_id == target_step_id:
                    return step
            logger.warning(
                f"[ADVANCE] Branch target {target_step_id} is not an active step of journey {current.journey_id}; "
                f"falling through to the next step"
            )
        return next_in_order(steps, current)

    async def advance(
        self,
        lead_journey: LeadJourney,
        current: JourneyStep,
        tenant: Optional[Tenant] = None,
        target_step_id: Optional[str] = None,
        exit_point: bool = False,
        execution_id: Optional[str] = None,
    ) -> str:
        """
        Move the enrollment past `current`. Returns one of `scheduled`,
        `completed`, `exited`, or `not_active` when the enrollment left
        `active` while the step ran. With `execution_id`, nothing happens unless
        that execution is still the enrollment's current one, so a run that was
        superseded by a resume cannot start a second chain.
        """
        now = self.clock()
        lead_journey_id = lead_journey.lead_journey_id

        if exit_point:
            if not await self.store.close_enrollment(lead_journey_id, "exited", now, execution_id):
                return self._not_active(lead_journey_id)
            logger.info(f"[ADVANCE] Enrollment {lead_journey_id} exited at step {current.step_id}")
            await self.journal.add(lead_journey, "Journey exited at exit point.", step=current)
            return "exited"

        next_step = await self.resolve_next_step(current, target_step_id)
        if next_step is None:
            if not await self.store.close_enrollment(lead_journey_id, "completed", now, execution_id):
                return self._not_active(lead_journey_id)
            logger.info(f"[ADVANCE] Enrollment {lead_journey_id} completed after step {current.step_id}")
            await self.journal.add(lead_journey, "Journey completed.", step=current)
            return "completed"

        execution = self.build_execution(lead_journey, next_step, tenant, now)
        if not await self.store.advance_enrollment(lead_journey_id, execution, now, execution_id):
            return self._not_active(lead_journey_id)
        logger.info(
            f"[ADVANCE] Enrollment {lead_journey_id} scheduled step {next_step.step_id} "
            f"for {execution.scheduled_time.isoformat()}"
        )
        await self.journal.add(
            lead_journey,
            f"Scheduled step '{next_step.name}'",
            step=next_step,
            details={
                "scheduled_time": execution.scheduled_time.isoformat(),
                "awaiting_signal": execution.awaiting_signal,
                "signal_event": execution.signal_event,
            },
        )
        return "scheduled"

    def _not_active(self, lead_journey_id: str) -> str:
        logger.info(f"[ADVANCE] Enrollment {lead_journey_id} is no longer active or has moved on; not advancing")
        return "not_active"
