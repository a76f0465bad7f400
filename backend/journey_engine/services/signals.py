import logging
from typing import Callable, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from journey_engine.config import API_PUBLIC_URL, EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.services.errors import NotFoundError, ValidationError
from journey_engine.services.journal import Journal

logger = logging.getLogger(__name__)

TOKEN_SALT = "journey-signal"


class SignalService:
    """
    Releases conditional steps held for an external event. Events arrive
    through the management API or through signed, expiring links that carry
    the tenant, enrollment and event name.
    """

    def __init__(
        self,
        store: JourneyStore,
        settings: Optional[EngineSettings] = None,
        journal: Optional[Journal] = None,
        clock: Callable = utcnow,
        public_url: str = API_PUBLIC_URL,
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.journal = journal or Journal(store, clock)
        self.public_url = public_url.rstrip("/")
        self.serializer = URLSafeTimedSerializer(self.settings.signal_secret_key, salt=TOKEN_SALT)

    async def signal(self, tenant_id: str, lead_journey_id: str, event: str) -> int:
        if not event or not event.strip():
            raise ValidationError("Signal event name is required")
        event = event.strip()
        lead_journey = await self.store.get_lead_journey(lead_journey_id, tenant_id=tenant_id)
        if lead_journey is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")

        released = await self.store.release_signal(lead_journey_id, event, self.clock())
        logger.info(f"[SIGNAL] '{event}' for {lead_journey_id} released {released} execution(s)")
        if released:
            await self.journal.add(lead_journey, f"Signal '{event}' received.", details={"released": released})
        return released

    def make_token(self, tenant_id: str, lead_journey_id: str, event: str) -> str:
        return self.serializer.dumps({"tenant_id": tenant_id, "lead_journey_id": lead_journey_id, "event": event})

    def signal_url(self, tenant_id: str, lead_journey_id: str, event: str) -> str:
        return f"{self.public_url}/api/signals/{self.make_token(tenant_id, lead_journey_id, event)}"

    async def signal_from_token(self, token: str) -> dict:
        try:
            data = self.serializer.loads(token, max_age=self.settings.signal_token_max_age_seconds)
        except SignatureExpired:
            logger.warning("[SIGNAL] Expired signal token")
            raise ValidationError("Signal link has expired")
        except BadSignature:
            logger.warning("[SIGNAL] Invalid signal token")
            raise ValidationError("Invalid signal link")

        released = await self.signal(data["tenant_id"], data["lead_journey_id"], data["event"])
        return {"lead_journey_id": data["lead_journey_id"], "event": data["event"], "released": released}
