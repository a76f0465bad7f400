import re
from datetime import datetime, timedelta
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from journey_engine.models.common import new_id, utcnow

DelayType = Literal["immediate", "relative", "absolute", "conditional", "fixed_time", "specific_days"]
FailurePolicy = Literal["fail_enrollment", "skip_step"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class SmsAction(BaseModel):
    action_type: Literal["sms"] = "sms"
    body: Optional[str] = None
    template_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    provider: Optional[str] = None
    respect_business_hours: bool = False

    @model_validator(mode="after")
    def _require_content(self):
        if not (self.body or self.template_id):
            raise ValueError("sms action needs a body or a template_id")
        return self


class CallAction(BaseModel):
    action_type: Literal["call"] = "call"
    transfer_number: Optional[str] = None
    ingroup: Optional[str] = None
    dialer_context: Optional[str] = None
    caller_id: Optional[str] = None
    amd: Optional[bool] = None
    recording_id: Optional[str] = None
    script_id: Optional[str] = None
    provider: Optional[str] = None
    respect_business_hours: bool = True


class EmailLink(BaseModel):
    """A button appended to the HTML part. Both fields are templates."""
    text: str
    url: str


class EmailAction(BaseModel):
    action_type: Literal["email"] = "email"
    subject: str
    body: str
    links: List[EmailLink] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    respect_business_hours: bool = False


class WaitAction(BaseModel):
    action_type: Literal["wait"] = "wait"
    respect_business_hours: bool = False


class TagAction(BaseModel):
    action_type: Literal["tag"] = "tag"
    operation: Literal["add", "remove", "set"] = "add"
    tags: List[str] = Field(default_factory=list)
    respect_business_hours: bool = False

    @model_validator(mode="after")
    def _require_tags(self):
        if self.operation != "set" and not self.tags:
            raise ValueError(f"tag {self.operation} needs at least one tag")
        return self


class StatusChangeAction(BaseModel):
    action_type: Literal["status_change"] = "status_change"
    new_status: str = Field(..., min_length=1)
    respect_business_hours: bool = False


class WebhookAction(BaseModel):
    action_type: Literal["webhook"] = "webhook"
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    respect_business_hours: bool = False


class BranchRule(BaseModel):
    """One ordered rule of a branch step; `field` is a lead field, a lead attribute or `tenant.<field>`."""

    field: str
    operator: Literal["eq", "ne", "in", "not_in", "contains", "exists", "gt", "gte", "lt", "lte"] = "eq"
    value: Any = None
    target_step_id: str


class BranchAction(BaseModel):
    action_type: Literal["branch"] = "branch"
    rules: List[BranchRule] = Field(default_factory=list)
    default_step_id: Optional[str] = None
    respect_business_hours: bool = False


StepAction = Annotated[
    Union[
        SmsAction,
        CallAction,
        EmailAction,
        WaitAction,
        TagAction,
        StatusChangeAction,
        WebhookAction,
        BranchAction,
    ],
    Field(discriminator="action_type"),
]

ACTION_TYPES = ("sms", "call", "email", "wait", "tag", "status_change", "webhook", "branch")


class StepDelay(BaseModel):
    delay_type: DelayType = "immediate"
    # relative
    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)
    anchor: Literal["previous", "enrollment"] = "previous"
    # absolute
    at: Optional[datetime] = None
    # fixed_time / specific_days, in the tenant's timezone
    time_of_day: Optional[str] = None
    weekdays: List[str] = Field(default_factory=list)
    # conditional
    event: Optional[str] = None
    timeout_hours: Optional[float] = Field(default=None, gt=0)
    on_timeout: Literal["skip", "run"] = "skip"

    @model_validator(mode="after")
    def _check_parameters(self):
        if self.delay_type == "absolute" and self.at is None:
            raise ValueError("absolute delay needs `at`")
        if self.delay_type == "conditional" and not self.event:
            raise ValueError("conditional delay needs an `event` name")
        if self.delay_type in ("fixed_time", "specific_days"):
            if not self.time_of_day or not _TIME_OF_DAY.match(self.time_of_day):
                raise ValueError("time_of_day must be HH:MM")
        if self.delay_type == "specific_days":
            self.weekdays = [day.lower() for day in self.weekdays]
            unknown = [day for day in self.weekdays if day not in WEEKDAYS]
            if not self.weekdays or unknown:
                raise ValueError(f"specific_days needs weekdays from {WEEKDAYS}")
        return self

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.days, hours=self.hours, minutes=self.minutes)


class StepConditions(BaseModel):
    lead_statuses: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class Journey(BaseModel):
    journey_id: str = Field(default_factory=lambda: new_id("journey"))
    tenant_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    is_active: bool = True
    trigger_criteria: Dict[str, Any] = Field(default_factory=dict)
    failure_policy: FailurePolicy = "fail_enrollment"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "journey_id": "journey_5f0c2a9e4b1d4f7e9a0b3c6d8e1f2a3b",
                "tenant_id": "tenant_42",
                "name": "New lead follow-up",
                "description": "Text, wait a day, then call",
                "is_active": True,
                "trigger_criteria": {"lead_statuses": ["pending"], "auto_enroll": False},
                "failure_policy": "fail_enrollment",
            }
        }
    )


class JourneyStep(BaseModel):
    step_id: str = Field(default_factory=lambda: new_id("step"))
    journey_id: str
    tenant_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    step_order: int
    action: StepAction
    delay: StepDelay = Field(default_factory=StepDelay)
    conditions: StepConditions = Field(default_factory=StepConditions)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True
    is_exit_point: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def action_type(self) -> str:
        return self.action.action_type
