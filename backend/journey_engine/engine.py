import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from journey_engine.config import MESSAGING_PROVIDERS, EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.services.advancement import AdvancementController
from journey_engine.services.analytics import AnalyticsReader
from journey_engine.services.collaborators import (
    HttpLeadCollaborator,
    HttpMessagingCollaborator,
    HttpTenantCollaborator,
    LeadCollaborator,
    ProviderRouter,
    TenantCollaborator,
)
from journey_engine.services.definitions import DefinitionStore
from journey_engine.services.email import SmtpEmailSender
from journey_engine.services.enrollment import EnrollmentManager
from journey_engine.services.execution_scheduler import ExecutionScheduler
from journey_engine.services.journal import Journal
from journey_engine.services.signals import SignalService
from journey_engine.services.step_executor import StepActionExecutor

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: JourneyStore
    settings: EngineSettings
    journal: Journal
    definitions: DefinitionStore
    advancement: AdvancementController
    enrollment: EnrollmentManager
    signals: SignalService
    executor: StepActionExecutor
    scheduler: ExecutionScheduler
    analytics: AnalyticsReader
    leads: LeadCollaborator
    tenants: TenantCollaborator
    messaging: ProviderRouter

    async def aclose(self):
        """Release the collaborators' connection pools. The store is closed by its owner."""
        for collaborator in (self.leads, self.tenants, self.messaging):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()


def build_engine(
    store: JourneyStore,
    leads: LeadCollaborator,
    tenants: TenantCollaborator,
    messaging: ProviderRouter,
    email_sender=None,
    settings: Optional[EngineSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable = utcnow,
) -> Engine:
    """Wire every engine service around one store and one set of collaborators."""
    settings = settings or EngineSettings()
    journal = Journal(store, clock)
    advancement = AdvancementController(store, settings, journal, clock)
    signals = SignalService(store, settings, journal, clock)
    executor = StepActionExecutor(
        store,
        leads,
        tenants,
        messaging,
        email_sender or SmtpEmailSender(),
        advancement=advancement,
        settings=settings,
        journal=journal,
        http_client=http_client,
        signals=signals,
        clock=clock,
    )
    return Engine(
        store=store,
        settings=settings,
        journal=journal,
        definitions=DefinitionStore(store, clock),
        advancement=advancement,
        enrollment=EnrollmentManager(store, leads, tenants, advancement, settings, journal, clock),
        signals=signals,
        executor=executor,
        scheduler=ExecutionScheduler(store, executor, settings=settings, clock=clock),
        analytics=AnalyticsReader(store, clock),
        leads=leads,
        tenants=tenants,
        messaging=messaging,
    )


def build_http_engine(store: JourneyStore, settings: Optional[EngineSettings] = None) -> Engine:
    """Engine talking to the CRM, tenant service and messaging gateway over HTTP."""
    providers = {name: HttpMessagingCollaborator(name) for name in MESSAGING_PROVIDERS}
    logger.info(f"Messaging providers configured: {sorted(providers)}")
    return build_engine(
        store,
        HttpLeadCollaborator(),
        HttpTenantCollaborator(),
        ProviderRouter(providers),
        SmtpEmailSender(),
        settings=settings,
    )
