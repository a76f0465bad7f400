from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from journey_engine.models.common import new_id, utcnow

ExecutionStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]


class JourneyExecution(BaseModel):
    """One attempt to run a step for an enrollment.

    `pending` rows become `processing` only through the store's atomic claim,
    which also stamps `claim_token`. Every later write on a claimed row is
    conditional on that token.
    """

    execution_id: str = Field(default_factory=lambda: new_id("exec"))
    lead_journey_id: str
    journey_id: str
    tenant_id: str
    step_id: str
    scheduled_time: datetime
    status: ExecutionStatus = "pending"
    result: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    attempt_count: int = 0
    awaiting_signal: bool = False
    signal_event: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    manual: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
