from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Lead(BaseModel):
    """A lead as the CRM hands it to us. The engine never persists leads."""

    lead_id: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    status: str = "pending"
    tags: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def field_value(self, path: str) -> Any:
        if path == "name":
            return self.name
        if path in type(self).model_fields and path != "attributes":
            return getattr(self, path)
        if path.startswith("attributes."):
            path = path[len("attributes."):]
        return self.attributes.get(path)


class BusinessDay(BaseModel):
    enabled: bool = True
    start: str = "09:00"
    end: str = "17:00"


class Tenant(BaseModel):
    tenant_id: str
    name: Optional[str] = None
    timezone: Optional[str] = None
    default_sms_provider: Optional[str] = None
    default_call_provider: Optional[str] = None
    # Keyed by lowercase weekday name. An empty schedule means "always open".
    schedule: Dict[str, BusinessDay] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
