"""Interfaces to the systems the engine drives but does not own: the lead CRM,
tenant settings, and the SMS/voice providers.

The HTTP implementations talk JSON over httpx. Transport errors, timeouts,
429 and 5xx responses are retryable `ExecutionFailure`s; other 4xx responses
are not.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from journey_engine.config import (
    COLLABORATOR_API_KEY,
    COLLABORATOR_TIMEOUT_SECONDS,
    LEAD_API_URL,
    MESSAGING_API_URL,
    TENANT_API_URL,
)
from journey_engine.models.lead import Lead, Tenant
from journey_engine.services.errors import ExecutionFailure

logger = logging.getLogger(__name__)


class LeadCollaborator(ABC):
    @abstractmethod
    async def get_lead(self, lead_id: str, tenant_id: str) -> Optional[Lead]: ...

    @abstractmethod
    async def mutate_lead(self, lead_id: str, tenant_id: str, patch: Dict[str, Any]) -> Lead: ...

    @abstractmethod
    async def find_leads(self, tenant_id: str, criteria: Dict[str, Any]) -> List[Lead]: ...


class MessagingCollaborator(ABC):
    @abstractmethod
    async def send_message(self, tenant_id: str, to: str, body: str, **options) -> dict: ...

    @abstractmethod
    async def place_call(self, tenant_id: str, to: str, **options) -> dict: ...


class TenantCollaborator(ABC):
    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...


def _raise_for_response(response: httpx.Response, what: str):
    if response.status_code == 429 or response.status_code >= 500:
        raise ExecutionFailure(f"{what} failed with HTTP {response.status_code}", retryable=True)
    if response.status_code >= 400:
        raise ExecutionFailure(
            f"{what} rejected with HTTP {response.status_code}: {response.text[:200]}",
            retryable=False,
        )


class _HttpCollaborator:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = COLLABORATOR_API_KEY,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def _request(self, method: str, url: str, what: str, tenant_id: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["X-Tenant-ID"] = tenant_id
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ExecutionFailure(f"{what} timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise ExecutionFailure(f"{what} transport error: {e}", retryable=True)

    async def aclose(self):
        await self._client.aclose()


class HttpLeadCollaborator(_HttpCollaborator, LeadCollaborator):
    def __init__(self, base_url: str = LEAD_API_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def get_lead(self, lead_id: str, tenant_id: str) -> Optional[Lead]:
        response = await self._request("GET", f"/leads/{lead_id}", "Lead lookup", tenant_id)
        if response.status_code == 404:
            return None
        _raise_for_response(response, "Lead lookup")
        lead = Lead.model_validate({"tenant_id": tenant_id, **response.json(), "lead_id": lead_id})
        if lead.tenant_id != tenant_id:
            return None
        return lead

    async def mutate_lead(self, lead_id: str, tenant_id: str, patch: Dict[str, Any]) -> Lead:
        response = await self._request("PATCH", f"/leads/{lead_id}", "Lead update", tenant_id, json=patch)
        _raise_for_response(response, "Lead update")
        return Lead.model_validate({"tenant_id": tenant_id, **response.json(), "lead_id": lead_id})

    async def find_leads(self, tenant_id: str, criteria: Dict[str, Any]) -> List[Lead]:
        response = await self._request(
            "POST", "/leads/search", "Lead search", tenant_id, json={"criteria": criteria}
        )
        _raise_for_response(response, "Lead search")
        payload = response.json()
        rows = payload.get("leads", []) if isinstance(payload, dict) else payload
        return [Lead.model_validate({"tenant_id": tenant_id, **row}) for row in rows]


class HttpTenantCollaborator(_HttpCollaborator, TenantCollaborator):
    def __init__(self, base_url: str = TENANT_API_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        response = await self._request("GET", f"/tenants/{tenant_id}", "Tenant lookup", tenant_id)
        if response.status_code == 404:
            return None
        _raise_for_response(response, "Tenant lookup")
        return Tenant.model_validate({**response.json(), "tenant_id": tenant_id})


class HttpMessagingCollaborator(_HttpCollaborator, MessagingCollaborator):
    """One SMS/voice provider reachable through the messaging gateway."""

    def __init__(self, provider: str, base_url: str = MESSAGING_API_URL, **kwargs):
        super().__init__(base_url, **kwargs)
        self.provider = provider

    async def send_message(self, tenant_id: str, to: str, body: str, **options) -> dict:
        payload = {"provider": self.provider, "to": to, "body": body, **options}
        response = await self._request("POST", "/sms/send", f"SMS via {self.provider}", tenant_id, json=payload)
        _raise_for_response(response, f"SMS via {self.provider}")
        return response.json()

    async def place_call(self, tenant_id: str, to: str, **options) -> dict:
        payload = {"provider": self.provider, "to": to, **options}
        response = await self._request("POST", "/calls", f"Call via {self.provider}", tenant_id, json=payload)
        _raise_for_response(response, f"Call via {self.provider}")
        return response.json()


class ProviderRouter:
    """Messaging collaborators keyed by provider name."""

    def __init__(self, providers: Dict[str, MessagingCollaborator]):
        self.providers = dict(providers)

    def get(self, name: str) -> MessagingCollaborator:
        try:
            return self.providers[name]
        except KeyError:
            raise ExecutionFailure(f"Unknown messaging provider '{name}'", retryable=False)

    async def aclose(self):
        for provider in self.providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
