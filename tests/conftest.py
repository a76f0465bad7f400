"""Shared fixtures: an in-memory store, a controllable clock and fake collaborators."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from journey_engine.config import EngineSettings
from journey_engine.db.memory import MemoryJourneyStore
from journey_engine.engine import build_engine
from journey_engine.models.lead import Lead, Tenant
from journey_engine.services.collaborators import (
    LeadCollaborator,
    MessagingCollaborator,
    ProviderRouter,
    TenantCollaborator,
)

TENANT = "tenant_a"
OTHER_TENANT = "tenant_b"

# Monday 2 March 2026, 15:00 UTC
START = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLeads(LeadCollaborator):
    def __init__(self):
        self.leads: Dict[str, Lead] = {}
        self.mutations: List[dict] = []

    def add(self, lead_id: str, tenant_id: str = TENANT, **fields) -> Lead:
        fields.setdefault("first_name", "Ada")
        fields.setdefault("phone", "+15550100")
        fields.setdefault("email", "ada@example.com")
        lead = Lead(lead_id=lead_id, tenant_id=tenant_id, **fields)
        self.leads[lead_id] = lead
        return lead

    async def get_lead(self, lead_id: str, tenant_id: str) -> Optional[Lead]:
        lead = self.leads.get(lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            return None
        return lead.model_copy(deep=True)

    async def mutate_lead(self, lead_id: str, tenant_id: str, patch: Dict[str, Any]) -> Lead:
        self.mutations.append({"lead_id": lead_id, **patch})
        lead = self.leads[lead_id].model_copy(update=patch)
        self.leads[lead_id] = lead
        return lead.model_copy(deep=True)

    async def find_leads(self, tenant_id: str, criteria: Dict[str, Any]) -> List[Lead]:
        statuses = criteria.get("lead_statuses") or []
        return [
            lead for lead in self.leads.values()
            if lead.tenant_id == tenant_id and (not statuses or lead.status in statuses)
        ]


class FakeTenants(TenantCollaborator):
    def __init__(self):
        self.tenants: Dict[str, Tenant] = {
            TENANT: Tenant(tenant_id=TENANT, name="Acme Roofing", timezone="UTC"),
            OTHER_TENANT: Tenant(tenant_id=OTHER_TENANT, name="Other Co", timezone="UTC"),
        }

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.tenants.get(tenant_id)


class FakeMessaging(MessagingCollaborator):
    """Records every message and call. `failures` are raised one per call; `hook` runs before returning."""

    def __init__(self):
        self.sent: List[dict] = []
        self.calls: List[dict] = []
        self.failures: List[Exception] = []
        self.hook = None

    async def _maybe_fail(self):
        if self.hook is not None:
            await self.hook()
        if self.failures:
            raise self.failures.pop(0)

    async def send_message(self, tenant_id: str, to: str, body: str, **options) -> dict:
        await self._maybe_fail()
        self.sent.append({"tenant_id": tenant_id, "to": to, "body": body, **options})
        return {"success": True, "message_id": f"msg_{len(self.sent)}"}

    async def place_call(self, tenant_id: str, to: str, **options) -> dict:
        await self._maybe_fail()
        self.calls.append({"tenant_id": tenant_id, "to": to, **options})
        return {"success": True, "call_id": f"call_{len(self.calls)}"}


class FakeEmail:
    def __init__(self):
        self.sent: List[dict] = []

    async def send_email(self, tenant_id: str, to: str, subject: str, body: str, links=None) -> dict:
        self.sent.append({"tenant_id": tenant_id, "to": to, "subject": subject, "body": body, "links": links or []})
        return {"success": True, "to": to, "subject": subject}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryJourneyStore()


@pytest.fixture
def leads():
    fake = FakeLeads()
    fake.add("lead_1")
    fake.add("lead_2", first_name="Grace")
    fake.add("lead_other", tenant_id=OTHER_TENANT)
    return fake


@pytest.fixture
def tenants():
    return FakeTenants()


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def email_sender():
    return FakeEmail()


@pytest.fixture
def settings():
    return EngineSettings(
        sweep_interval_seconds=0.01,
        sweep_batch_size=50,
        sweep_concurrency=5,
        stale_processing_seconds=900,
        default_max_attempts=3,
        retry_backoff_seconds=60,
        retry_backoff_max_seconds=3600,
        action_timeout_seconds=2.0,
        conditional_hold_hours=72,
        default_timezone="UTC",
        default_sms_provider="default",
        default_call_provider="default",
        finished_enrollment_retention_days=30,
        signal_secret_key="test-secret",
        signal_token_max_age_seconds=3600,
    )


@pytest.fixture
def engine(store, leads, tenants, messaging, email_sender, settings, clock):
    return build_engine(
        store,
        leads,
        tenants,
        ProviderRouter({"default": messaging}),
        email_sender,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def make_journey(engine):
    """Create a journey with the given step payloads, in order."""

    async def _make(steps, tenant_id: str = TENANT, **journey_fields):
        journey_fields.setdefault("name", "Follow-up")
        journey = await engine.definitions.create_journey(tenant_id, journey_fields)
        created = []
        for step in steps:
            step = dict(step)
            step.setdefault("name", f"Step {len(created) + 1}")
            created.append(await engine.definitions.add_step(tenant_id, journey.journey_id, step))
        return journey, created

    return _make
