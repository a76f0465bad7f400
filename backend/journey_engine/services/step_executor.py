import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import httpx
import pydantic
from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from journey_engine.config import EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow
from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journey import (
    ACTION_TYPES,
    BranchAction,
    BranchRule,
    CallAction,
    EmailAction,
    JourneyStep,
    SmsAction,
    StatusChangeAction,
    StepConditions,
    TagAction,
    WaitAction,
    WebhookAction,
)
from journey_engine.models.lead import Lead, Tenant
from journey_engine.models.lead_journey import LeadJourney
from journey_engine.services.advancement import AdvancementController
from journey_engine.services.collaborators import LeadCollaborator, ProviderRouter, TenantCollaborator
from journey_engine.services.errors import (
    ConflictError,
    ExecutionFailure,
    NotFoundError,
    TerminalEnrollmentFailure,
)
from journey_engine.services.journal import Journal
from journey_engine.services.scheduling import next_business_time, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    """What a step action produced."""
    success: bool = True
    result: Dict[str, Any] = field(default_factory=dict)
    # Set by branch steps only.
    next_step_id: Optional[str] = None


def conditions_met(conditions: StepConditions, lead: Lead) -> bool:
    if conditions.lead_statuses and lead.status not in conditions.lead_statuses:
        return False
    if conditions.tags and not set(conditions.tags).issubset(lead.tags):
        return False
    return True


def _field_value(path: str, lead: Lead, tenant: Optional[Tenant]) -> Any:
    if path.startswith("tenant."):
        if tenant is None:
            return None
        name = path[len("tenant."):]
        if name in type(tenant).model_fields and name != "settings":
            return getattr(tenant, name)
        return tenant.settings.get(name)
    if path.startswith("lead."):
        path = path[len("lead."):]
    return lead.field_value(path)


def rule_matches(rule: BranchRule, lead: Lead, tenant: Optional[Tenant] = None) -> bool:
    actual = _field_value(rule.field, lead, tenant)
    expected = rule.value
    op = rule.operator
    if op == "exists":
        return (actual is not None) == (True if expected is None else bool(expected))
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op in ("in", "not_in"):
        values = expected if isinstance(expected, (list, tuple, set)) else [expected]
        return (actual in values) == (op == "in")
    if op == "contains":
        if actual is None:
            return False
        try:
            return expected in actual
        except TypeError:
            return False
    if actual is None or expected is None:
        return False
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        return False
    return False


def idempotency_key(payload: dict) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class StepActionExecutor:
    """
    Runs claimed executions: loads the enrollment, lead and tenant, performs
    the step's action, records the outcome and hands over to the
    AdvancementController. Failures go through the retry policy.
    """

    def __init__(
        self,
        store: JourneyStore,
        leads: LeadCollaborator,
        tenants: TenantCollaborator,
        messaging: ProviderRouter,
        email_sender,
        advancement: Optional[AdvancementController] = None,
        settings: Optional[EngineSettings] = None,
        journal: Optional[Journal] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        signals=None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.signals = signals
        self.leads = leads
        self.tenants = tenants
        self.messaging = messaging
        self.email_sender = email_sender
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.journal = journal or Journal(store, clock)
        self.advancement = advancement or AdvancementController(store, self.settings, self.journal, clock)
        self.http_client = http_client
        self.templates = SandboxedEnvironment(autoescape=False)
        self._handlers = {
            "sms": self._send_sms,
            "call": self._place_call,
            "email": self._send_email,
            "wait": self._wait,
            "tag": self._update_tags,
            "status_change": self._change_status,
            "webhook": self._call_webhook,
            "branch": self._evaluate_branch,
        }
        missing = set(ACTION_TYPES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(missing)}")

    # --- rendering ----------------------------------------------------------

    def render(self, template: str, lead: Lead, lead_journey: LeadJourney, variables: Dict[str, str]) -> str:
        context = {
            **lead.attributes,
            **lead.model_dump(exclude={"attributes"}),
            "name": lead.name,
            "lead": lead.model_dump(),
            "context": lead_journey.context_data,
            **variables,
        }
        if self.signals is not None:
            context["signal_link"] = lambda event: self.signals.signal_url(
                lead_journey.tenant_id, lead_journey.lead_journey_id, event
            )
        try:
            return self.templates.from_string(template).render(**context)
        except TemplateError as e:
            raise ExecutionFailure(f"Template error: {e}", retryable=False)

    # --- actions ------------------------------------------------------------

    async def execute(
        self,
        execution: JourneyExecution,
        step: JourneyStep,
        lead: Lead,
        tenant: Optional[Tenant],
        lead_journey: LeadJourney,
    ) -> ActionOutcome:
        handler = self._handlers.get(step.action_type)
        if handler is None:
            raise ExecutionFailure(f"Unsupported action type: {step.action_type}", retryable=False)
        logger.info(
            f"[EXECUTOR] Running {step.action_type} step {step.step_id} for lead {lead.lead_id} "
            f"(execution {execution.execution_id})"
        )
        return await handler(step.action, execution, step, lead, tenant, lead_journey)

    def _provider(self, requested: Optional[str], tenant_default: Optional[str], default: str) -> str:
        return requested or tenant_default or default

    @staticmethod
    def _check_response(response: dict, what: str) -> dict:
        if isinstance(response, dict) and response.get("success") is False:
            raise ExecutionFailure(
                f"{what} failed: {response.get('error', 'provider returned success=false')}",
                retryable=bool(response.get("retryable", True)),
                result={"response": response},
            )
        return response

    async def _send_sms(self, action: SmsAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        if not lead.phone:
            raise ExecutionFailure(f"Lead {lead.lead_id} has no phone number", retryable=False)
        provider = self._provider(
            action.provider, tenant.default_sms_provider if tenant else None, self.settings.default_sms_provider
        )
        body = self.render(action.body or "", lead, lead_journey, action.variables)
        options = {"lead_id": lead.lead_id, "execution_id": execution.execution_id}
        if action.template_id:
            options["template_id"] = action.template_id
        response = await self.messaging.get(provider).send_message(lead.tenant_id, lead.phone, body, **options)
        self._check_response(response, f"SMS via {provider}")
        return ActionOutcome(result={"provider": provider, "to": lead.phone, "response": response})

    async def _place_call(self, action: CallAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        if not lead.phone:
            raise ExecutionFailure(f"Lead {lead.lead_id} has no phone number", retryable=False)
        provider = self._provider(
            action.provider, tenant.default_call_provider if tenant else None, self.settings.default_call_provider
        )
        options = action.model_dump(
            exclude={"action_type", "provider", "respect_business_hours"}, exclude_none=True
        )
        options.update({"lead_id": lead.lead_id, "execution_id": execution.execution_id})
        response = await self.messaging.get(provider).place_call(lead.tenant_id, lead.phone, **options)
        self._check_response(response, f"Call via {provider}")
        return ActionOutcome(result={"provider": provider, "to": lead.phone, "response": response})

    async def _send_email(self, action: EmailAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        if not lead.email:
            raise ExecutionFailure(f"Lead {lead.lead_id} has no email address", retryable=False)
        subject = self.render(action.subject, lead, lead_journey, action.variables)
        body = self.render(action.body, lead, lead_journey, action.variables)
        links = [
            {
                "text": self.render(link.text, lead, lead_journey, action.variables),
                "url": self.render(link.url, lead, lead_journey, action.variables),
            }
            for link in action.links
        ]
        try:
            response = await self.email_sender.send_email(lead.tenant_id, lead.email, subject, body, links=links)
        except ValueError as e:
            raise ExecutionFailure(f"Email rejected: {e}", retryable=False)
        except ExecutionFailure:
            raise
        except Exception as e:
            raise ExecutionFailure(f"Email delivery failed: {e}", retryable=True)
        self._check_response(response, "Email")
        return ActionOutcome(result={"to": lead.email, "subject": subject, "response": response})

    async def _wait(self, action: WaitAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        return ActionOutcome(result={"waited": True})

    async def _update_tags(self, action: TagAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        if action.operation == "set":
            tags = list(dict.fromkeys(action.tags))
        elif action.operation == "add":
            tags = list(dict.fromkeys(lead.tags + action.tags))
        else:
            tags = [t for t in lead.tags if t not in action.tags]
        updated = await self.leads.mutate_lead(lead.lead_id, lead.tenant_id, {"tags": tags})
        return ActionOutcome(result={"operation": action.operation, "previous_tags": lead.tags, "tags": updated.tags})

    async def _change_status(self, action: StatusChangeAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        updated = await self.leads.mutate_lead(lead.lead_id, lead.tenant_id, {"status": action.new_status})
        return ActionOutcome(result={"previous_status": lead.status, "new_status": updated.status})

    async def _call_webhook(self, action: WebhookAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        payload = {
            "lead": lead.model_dump(),
            "journey": {
                "id": lead_journey.journey_id,
                "lead_journey_id": lead_journey.lead_journey_id,
                "step_id": step.step_id,
                "execution_id": execution.execution_id,
                "context_data": lead_journey.context_data,
            },
            "tenant": {"id": lead.tenant_id, "name": tenant.name if tenant else None},
        }
        headers = {"Content-Type": "application/json", **action.headers, "X-Idempotency-Key": idempotency_key(payload)}
        payload["timestamp"] = self.clock().isoformat()
        body = json.loads(json.dumps(payload, default=str))

        client = self.http_client or httpx.AsyncClient(timeout=self.settings.action_timeout_seconds)
        try:
            if action.method == "GET":
                params = {
                    "lead_id": lead.lead_id,
                    "journey_id": lead_journey.journey_id,
                    "step_id": step.step_id,
                    "execution_id": execution.execution_id,
                }
                response = await client.request("GET", action.url, headers=headers, params=params)
            else:
                response = await client.request(action.method, action.url, headers=headers, json=body)
        except httpx.HTTPError as e:
            raise ExecutionFailure(f"Webhook {action.url} failed: {e}", retryable=True)
        finally:
            if self.http_client is None:
                await client.aclose()

        if response.status_code == 429 or response.status_code >= 500:
            raise ExecutionFailure(f"Webhook {action.url} returned HTTP {response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise ExecutionFailure(f"Webhook {action.url} returned HTTP {response.status_code}", retryable=False)
        return ActionOutcome(
            result={
                "status_code": response.status_code,
                "idempotency_key": headers["X-Idempotency-Key"],
                "response": response.text[:1000],
            }
        )

    async def _evaluate_branch(self, action: BranchAction, execution, step, lead, tenant, lead_journey) -> ActionOutcome:
        target, matched = None, None
        for index, rule in enumerate(action.rules):
            if rule_matches(rule, lead, tenant):
                target, matched = rule.target_step_id, index
                break
        if target is None:
            target = action.default_step_id
        if target is not None:
            target_step = await self.store.get_step(target, journey_id=step.journey_id)
            if target_step is None or not target_step.is_active:
                raise ExecutionFailure(
                    f"Branch target {target} is not an active step of journey {step.journey_id}", retryable=False
                )
        return ActionOutcome(result={"matched_rule": matched, "target_step_id": target}, next_step_id=target)

    # --- claimed execution lifecycle ----------------------------------------

    async def _update(self, execution: JourneyExecution, fields: Dict[str, Any]) -> bool:
        fields = {**fields, "updated_at": self.clock()}
        updated = await self.store.update_claimed_execution(execution.execution_id, execution.claim_token, fields)
        if not updated:
            logger.warning(
                f"[EXECUTOR] Lost claim on execution {execution.execution_id}; another worker owns it now"
            )
        return updated

    async def _complete(self, execution: JourneyExecution, result: Dict[str, Any], attempted: bool) -> bool:
        now = self.clock()
        fields = {
            "status": "completed",
            "result": {**execution.result, **result},
            "error_message": None,
            "awaiting_signal": False,
        }
        if attempted:
            fields.update({"attempt_count": execution.attempt_count + 1, "last_attempt_at": now})
        return await self._update(execution, fields)

    async def process(self, execution: JourneyExecution) -> str:
        """
        Run one claimed execution to its outcome. Returns `completed`,
        `skipped`, `deferred`, `retrying`, `failed`, `cancelled` or `lost_claim`.
        """
        lead_journey = await self.store.get_lead_journey(execution.lead_journey_id)
        if lead_journey is None or lead_journey.status != "active":
            reason = "enrollment missing" if lead_journey is None else f"enrollment {lead_journey.status}"
            logger.info(f"[EXECUTOR] Cancelling execution {execution.execution_id}: {reason}")
            await self._update(execution, {"status": "cancelled", "result": {**execution.result, "reason": reason}})
            return "cancelled"

        step = await self.store.get_step(execution.step_id, journey_id=execution.journey_id)
        journey = await self.store.get_journey(execution.journey_id)
        if step is None:
            failure = ExecutionFailure(f"Step {execution.step_id} no longer exists", retryable=False)
            return await self.record_failure(execution, failure, None, lead_journey, journey)

        if not step.is_active:
            if not await self._complete(execution, {"skipped": True, "reason": "step inactive"}, attempted=False):
                return "lost_claim"
            await self.journal.add(lead_journey, f"Skipped inactive step '{step.name}'", step=step)
            await self.advancement.advance(lead_journey, step, execution_id=execution.execution_id)
            return "skipped"

        tenant = None
        try:
            lead = await self.leads.get_lead(lead_journey.lead_id, lead_journey.tenant_id)
            if lead is None:
                raise ExecutionFailure(f"Lead {lead_journey.lead_id} not found", retryable=False)
            tenant = await self.tenants.get_tenant(lead_journey.tenant_id)
        except ExecutionFailure as failure:
            return await self.record_failure(execution, failure, step, lead_journey, journey, tenant)
        except pydantic.ValidationError as e:
            failure = ExecutionFailure(f"Malformed lead or tenant payload: {e}", retryable=False)
            return await self.record_failure(execution, failure, step, lead_journey, journey, tenant)

        now = self.clock()
        if step.action.respect_business_hours and tenant is not None and tenant.schedule:
            tz = resolve_timezone(tenant.timezone, self.settings.default_timezone)
            opens_at = next_business_time(now, tenant.schedule, tz)
            if opens_at > now:
                deferred = await self._update(execution, {
                    "status": "pending",
                    "claim_token": None,
                    "claimed_at": None,
                    "scheduled_time": opens_at,
                    "result": {**execution.result, "deferred_until": opens_at.isoformat()},
                })
                if not deferred:
                    return "lost_claim"
                logger.info(f"[EXECUTOR] Execution {execution.execution_id} deferred to business hours at {opens_at.isoformat()}")
                await self.journal.add(
                    lead_journey, "Deferred until business hours", step=step,
                    details={"scheduled_time": opens_at.isoformat()},
                )
                return "deferred"

        if execution.awaiting_signal and step.delay.on_timeout == "skip":
            if not await self._complete(execution, {"skipped": True, "reason": "signal timeout"}, attempted=False):
                return "lost_claim"
            await self.journal.add(
                lead_journey, f"No '{execution.signal_event}' signal before timeout; step skipped", step=step
            )
            await self.advancement.advance(lead_journey, step, tenant, execution_id=execution.execution_id)
            return "skipped"

        if not conditions_met(step.conditions, lead):
            if not await self._complete(execution, {"conditions_met": False}, attempted=False):
                return "lost_claim"
            await self.journal.add(lead_journey, f"Conditions not met for step '{step.name}'", step=step)
            await self.advancement.advance(lead_journey, step, tenant, execution_id=execution.execution_id)
            return "skipped"

        try:
            outcome = await asyncio.wait_for(
                self.execute(execution, step, lead, tenant, lead_journey),
                timeout=self.settings.action_timeout_seconds,
            )
        except asyncio.TimeoutError:
            failure = ExecutionFailure(
                f"Action timed out after {self.settings.action_timeout_seconds}s", retryable=True
            )
            return await self.record_failure(execution, failure, step, lead_journey, journey, tenant)
        except ExecutionFailure as failure:
            return await self.record_failure(execution, failure, step, lead_journey, journey, tenant)
        except Exception as e:
            logger.error(f"[EXECUTOR] Unexpected error in execution {execution.execution_id}: {e}", exc_info=True)
            failure = ExecutionFailure(f"Unexpected error: {e}", retryable=True)
            return await self.record_failure(execution, failure, step, lead_journey, journey, tenant)

        if not await self._complete(execution, outcome.result, attempted=True):
            return "lost_claim"
        logger.info(f"[EXECUTOR] Execution {execution.execution_id} completed")
        await self.journal.add(lead_journey, f"Step '{step.name}' completed", step=step, details=outcome.result)
        await self.advancement.advance(
            lead_journey,
            step,
            tenant,
            target_step_id=outcome.next_step_id,
            exit_point=step.is_exit_point,
            execution_id=execution.execution_id,
        )
        return "completed"

    def backoff(self, attempt: int) -> timedelta:
        seconds = self.settings.retry_backoff_seconds * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.settings.retry_backoff_max_seconds))

    async def record_failure(
        self,
        execution: JourneyExecution,
        failure: ExecutionFailure,
        step: Optional[JourneyStep],
        lead_journey: Optional[LeadJourney],
        journey=None,
        tenant: Optional[Tenant] = None,
    ) -> str:
        """Retry with exponential backoff, or fail the execution and apply the journey's failure policy."""
        now = self.clock()
        attempts = execution.attempt_count + 1
        max_attempts = 1
        if step is not None:
            max_attempts = step.max_attempts or self.settings.default_max_attempts
        result = {**execution.result, **failure.result, "last_error": failure.message}

        if failure.retryable and attempts < max_attempts:
            retry_at = now + self.backoff(attempts)
            rescheduled = await self._update(execution, {
                "status": "pending",
                "claim_token": None,
                "claimed_at": None,
                "scheduled_time": retry_at,
                "attempt_count": attempts,
                "last_attempt_at": now,
                "awaiting_signal": False,
                "error_message": failure.message,
                "result": result,
            })
            if not rescheduled:
                return "lost_claim"
            logger.warning(
                f"[EXECUTOR] Execution {execution.execution_id} failed (attempt {attempts}/{max_attempts}): "
                f"{failure.message}; retrying at {retry_at.isoformat()}"
            )
            return "retrying"

        failed = await self._update(execution, {
            "status": "failed",
            "attempt_count": attempts,
            "last_attempt_at": now,
            "awaiting_signal": False,
            "error_message": failure.message,
            "result": result,
        })
        if not failed:
            return "lost_claim"
        logger.error(
            f"[EXECUTOR] Execution {execution.execution_id} failed permanently after {attempts} attempt(s): {failure.message}"
        )
        if lead_journey is None:
            return "failed"

        policy = journey.failure_policy if journey is not None else "fail_enrollment"
        if policy == "skip_step" and step is not None:
            await self.journal.add(
                lead_journey, f"Step '{step.name}' failed; skipping", step=step, details={"error": failure.message}
            )
            await self.advancement.advance(lead_journey, step, tenant, execution_id=execution.execution_id)
            return "failed"

        terminal = TerminalEnrollmentFailure(lead_journey.lead_journey_id, failure.message)
        if await self.store.close_enrollment(
            lead_journey.lead_journey_id, "failed", now, from_execution_id=execution.execution_id
        ):
            logger.warning(f"[EXECUTOR] {terminal}")
            await self.journal.add(lead_journey, str(terminal), step=step, details={"error": failure.message})
        return "failed"

    async def recover(self, execution: JourneyExecution) -> str:
        """Put an execution abandoned in `processing` by a dead worker through the failure path."""
        lead_journey = await self.store.get_lead_journey(execution.lead_journey_id)
        step = await self.store.get_step(execution.step_id, journey_id=execution.journey_id)
        journey = await self.store.get_journey(execution.journey_id)
        failure = ExecutionFailure("Worker stopped responding while processing", retryable=True)
        if lead_journey is None or lead_journey.status != "active":
            await self._update(execution, {"status": "cancelled", "result": {**execution.result, "reason": "recovered"}})
            return "cancelled"
        return await self.record_failure(execution, failure, step, lead_journey, journey)

    # --- manual execution ---------------------------------------------------

    async def execute_now(self, tenant_id: str, lead_journey_id: str, step_id: str) -> JourneyExecution:
        """Run one step immediately for an active enrollment. No retries and no advancement."""
        lead_journey = await self.store.get_lead_journey(lead_journey_id, tenant_id=tenant_id)
        if lead_journey is None:
            raise NotFoundError(f"Lead journey {lead_journey_id} not found")
        if lead_journey.status != "active":
            raise ConflictError(f"Lead journey {lead_journey_id} is {lead_journey.status}, not active")
        step = await self.store.get_step(step_id, journey_id=lead_journey.journey_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in journey {lead_journey.journey_id}")
        lead = await self.leads.get_lead(lead_journey.lead_id, tenant_id)
        if lead is None:
            raise NotFoundError(f"Lead {lead_journey.lead_id} not found")
        tenant = await self.tenants.get_tenant(tenant_id)

        now = self.clock()
        execution = JourneyExecution(
            lead_journey_id=lead_journey_id,
            journey_id=lead_journey.journey_id,
            tenant_id=tenant_id,
            step_id=step_id,
            scheduled_time=now,
            status="processing",
            claim_token=uuid.uuid4().hex,
            claimed_at=now,
            manual=True,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_execution(execution)
        logger.info(f"[EXECUTOR] Manual execution {execution.execution_id} of step {step_id} for {lead_journey_id}")

        try:
            outcome = await asyncio.wait_for(
                self.execute(execution, step, lead, tenant, lead_journey),
                timeout=self.settings.action_timeout_seconds,
            )
            await self._complete(execution, outcome.result, attempted=True)
            await self.journal.add(lead_journey, f"Step '{step.name}' executed manually", step=step, details=outcome.result)
        except (ExecutionFailure, asyncio.TimeoutError) as e:
            message = e.message if isinstance(e, ExecutionFailure) else "Action timed out"
            await self._update(execution, {
                "status": "failed",
                "attempt_count": 1,
                "last_attempt_at": self.clock(),
                "error_message": message,
            })
            await self.journal.add(lead_journey, f"Manual step '{step.name}' failed", step=step, details={"error": message})
        return await self.store.get_execution(execution.execution_id)
