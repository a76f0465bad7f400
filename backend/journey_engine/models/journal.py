from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from journey_engine.models.common import utcnow


class JourneyJournalEntry(BaseModel):
    """
    A single event or state transition in a lead's journey.
    Used for auditing and debugging enrollments.
    """
    lead_journey_id: str
    journey_id: str
    lead_id: str
    tenant_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    step_id: Optional[str] = None
    action_type: Optional[str] = None
    details: Optional[dict] = None
