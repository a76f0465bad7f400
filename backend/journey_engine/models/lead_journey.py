from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from journey_engine.models.common import new_id, utcnow

EnrollmentStatus = Literal["active", "paused", "completed", "failed", "exited"]
ENROLLMENT_STATUSES = ("active", "paused", "completed", "failed", "exited")
FINISHED_STATUSES = ("completed", "failed", "exited")


class LeadJourney(BaseModel):
    """One lead's run through one journey."""

    lead_journey_id: str = Field(default_factory=lambda: new_id("lj"))
    journey_id: str
    lead_id: str
    tenant_id: str
    status: EnrollmentStatus = "active"
    current_step_id: Optional[str] = None
    # The execution whose outcome may advance the enrollment; resuming replaces it.
    current_execution_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    next_execution_time: Optional[datetime] = None
    last_execution_time: Optional[datetime] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)
