import logging
from typing import Callable, Optional

from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import JourneyStep
from journey_engine.models.lead_journey import LeadJourney

logger = logging.getLogger(__name__)


class Journal:
    """Audit trail of what happened to each enrollment. Writing an entry never breaks the flow."""

    def __init__(self, store: JourneyStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    async def add(
        self,
        lead_journey: LeadJourney,
        message: str,
        step: Optional[JourneyStep] = None,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await self.store.add_journal_entry(
                JourneyJournalEntry(
                    lead_journey_id=lead_journey.lead_journey_id,
                    journey_id=lead_journey.journey_id,
                    lead_id=lead_journey.lead_id,
                    tenant_id=lead_journey.tenant_id,
                    timestamp=self.clock(),
                    message=message,
                    step_id=step.step_id if step else None,
                    action_type=step.action_type if step else None,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(
                f"[JOURNAL_ERROR] Failed to add journal entry for enrollment {lead_journey.lead_journey_id}: {e}",
                exc_info=True,
            )
