import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from journey_engine.db.store import JourneyStore
from journey_engine.models.common import as_utc
from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.models.lead_journey import FINISHED_STATUSES, LeadJourney
from journey_engine.services.errors import AlreadyEnrolled, ConflictError, HasActiveEnrollments

logger = logging.getLogger(__name__)


class MemoryJourneyStore(JourneyStore):
    """
    Process-local store. One lock serialises every operation, and composite
    operations restore a snapshot of all tables when they raise, so each
    method behaves like a single transaction.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self.journeys: Dict[str, Journey] = {}
        self.steps: Dict[str, JourneyStep] = {}
        self.lead_journeys: Dict[str, LeadJourney] = {}
        self.executions: Dict[str, JourneyExecution] = {}
        self.journal: List[JourneyJournalEntry] = []

    @asynccontextmanager
    async def _atomic(self):
        async with self._lock:
            snapshot = copy.deepcopy(
                (self.journeys, self.steps, self.lead_journeys, self.executions, self.journal)
            )
            try:
                yield
            except BaseException:
                self.journeys, self.steps, self.lead_journeys, self.executions, self.journal = snapshot
                raise

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    # --- journeys -----------------------------------------------------------

    async def insert_journey(self, journey: Journey) -> Journey:
        async with self._atomic():
            if journey.journey_id in self.journeys:
                raise ConflictError(f"Journey {journey.journey_id} already exists")
            self.journeys[journey.journey_id] = self._copy(journey)
            return self._copy(journey)

    async def get_journey(self, journey_id: str, tenant_id: Optional[str] = None) -> Optional[Journey]:
        async with self._lock:
            journey = self.journeys.get(journey_id)
            if journey is None or (tenant_id is not None and journey.tenant_id != tenant_id):
                return None
            return self._copy(journey)

    async def list_journeys(self, tenant_id: Optional[str] = None, active_only: bool = False) -> List[Journey]:
        async with self._lock:
            journeys = [
                j for j in self.journeys.values()
                if (tenant_id is None or j.tenant_id == tenant_id) and (not active_only or j.is_active)
            ]
            journeys.sort(key=lambda j: j.created_at)
            return [self._copy(j) for j in journeys]

    async def save_journey(self, journey: Journey) -> Journey:
        async with self._atomic():
            self.journeys[journey.journey_id] = self._copy(journey)
            return self._copy(journey)

    # --- steps --------------------------------------------------------------

    def _check_step_order(self, step: JourneyStep):
        for other in self.steps.values():
            if (
                other.journey_id == step.journey_id
                and other.step_id != step.step_id
                and other.step_order == step.step_order
            ):
                raise ConflictError(f"Journey {step.journey_id} already has a step at order {step.step_order}")

    async def insert_step(self, step: JourneyStep) -> JourneyStep:
        async with self._atomic():
            self._check_step_order(step)
            self.steps[step.step_id] = self._copy(step)
            return self._copy(step)

    async def save_step(self, step: JourneyStep) -> JourneyStep:
        async with self._atomic():
            self._check_step_order(step)
            self.steps[step.step_id] = self._copy(step)
            return self._copy(step)

    async def get_step(self, step_id: str, journey_id: Optional[str] = None) -> Optional[JourneyStep]:
        async with self._lock:
            step = self.steps.get(step_id)
            if step is None or (journey_id is not None and step.journey_id != journey_id):
                return None
            return self._copy(step)

    async def list_steps(self, journey_id: str, active_only: bool = False) -> List[JourneyStep]:
        async with self._lock:
            steps = [
                s for s in self.steps.values()
                if s.journey_id == journey_id and (not active_only or s.is_active)
            ]
            steps.sort(key=lambda s: s.step_order)
            return [self._copy(s) for s in steps]

    async def delete_step(self, step_id: str, force: bool = False) -> int:
        async with self._atomic():
            referencing = [e for e in self.executions.values() if e.step_id == step_id]
            in_flight = [e for e in referencing if e.status in ("pending", "processing")]
            if in_flight and not force:
                raise ConflictError(f"Step {step_id} has {len(in_flight)} pending or processing executions")
            for execution in referencing:
                del self.executions[execution.execution_id]
            self.steps.pop(step_id, None)
            return len(referencing)

    # --- enrollments --------------------------------------------------------

    def _active_for(self, lead_id: str, journey_id: str, exclude: Optional[str] = None) -> Optional[LeadJourney]:
        for lj in self.lead_journeys.values():
            if (
                lj.lead_id == lead_id
                and lj.journey_id == journey_id
                and lj.status == "active"
                and lj.lead_journey_id != exclude
            ):
                return lj
        return None

    def _cancel_pending(self, lead_journey_id: str, now: datetime) -> int:
        cancelled = 0
        for execution in self.executions.values():
            if execution.lead_journey_id == lead_journey_id and execution.status == "pending":
                execution.status = "cancelled"
                execution.awaiting_signal = False
                execution.updated_at = now
                cancelled += 1
        return cancelled

    async def create_enrollment(
        self,
        lead_journey: LeadJourney,
        first_execution: Optional[JourneyExecution] = None,
        restart: bool = False,
    ) -> LeadJourney:
        async with self._atomic():
            existing = self._active_for(lead_journey.lead_id, lead_journey.journey_id)
            if existing is not None:
                if not restart:
                    raise AlreadyEnrolled(
                        f"Lead {lead_journey.lead_id} is already active in journey {lead_journey.journey_id}"
                    )
                existing.status = "exited"
                existing.completed_at = lead_journey.started_at
                existing.updated_at = lead_journey.started_at
                self._cancel_pending(existing.lead_journey_id, lead_journey.started_at)
            self.lead_journeys[lead_journey.lead_journey_id] = self._copy(lead_journey)
            if first_execution is not None:
                self.executions[first_execution.execution_id] = self._copy(first_execution)
            return self._copy(lead_journey)

    async def get_lead_journey(self, lead_journey_id: str, tenant_id: Optional[str] = None) -> Optional[LeadJourney]:
        async with self._lock:
            lj = self.lead_journeys.get(lead_journey_id)
            if lj is None or (tenant_id is not None and lj.tenant_id != tenant_id):
                return None
            return self._copy(lj)

    async def find_enrollment(
        self, lead_id: str, journey_id: str, statuses: Sequence[str] = ("active",)
    ) -> Optional[LeadJourney]:
        async with self._lock:
            for lj in self.lead_journeys.values():
                if lj.lead_id == lead_id and lj.journey_id == journey_id and lj.status in statuses:
                    return self._copy(lj)
            return None

    async def list_lead_journeys(
        self,
        tenant_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[LeadJourney]:
        async with self._lock:
            found = [
                lj for lj in self.lead_journeys.values()
                if (tenant_id is None or lj.tenant_id == tenant_id)
                and (journey_id is None or lj.journey_id == journey_id)
                and (lead_id is None or lj.lead_id == lead_id)
                and (statuses is None or lj.status in statuses)
            ]
            found.sort(key=lambda lj: lj.started_at)
            return [self._copy(lj) for lj in found]

    async def count_enrollments(self, journey_id: str, statuses: Sequence[str] = ("active",)) -> int:
        async with self._lock:
            return sum(
                1 for lj in self.lead_journeys.values()
                if lj.journey_id == journey_id and lj.status in statuses
            )

    async def set_enrollment_status(self, lead_journey_id: str, status: str, now: datetime) -> Optional[LeadJourney]:
        async with self._atomic():
            lj = self.lead_journeys.get(lead_journey_id)
            if lj is None:
                return None
            if status in ("active", "paused") and lj.status in FINISHED_STATUSES:
                raise ConflictError(f"Lead journey {lead_journey_id} is {lj.status} and cannot become {status}")
            if status == "active" and lj.status != "active":
                if self._active_for(lj.lead_id, lj.journey_id, exclude=lj.lead_journey_id):
                    raise AlreadyEnrolled(f"Lead {lj.lead_id} is already active in journey {lj.journey_id}")
            if status != "active":
                self._cancel_pending(lead_journey_id, now)
            if status in FINISHED_STATUSES:
                lj.completed_at = now
            lj.status = status
            lj.updated_at = now
            return self._copy(lj)

    async def resume_enrollment(self, lead_journey_id: str, execution: JourneyExecution, now: datetime) -> Optional[LeadJourney]:
        async with self._atomic():
            lj = self.lead_journeys.get(lead_journey_id)
            if lj is None or lj.status != "paused":
                return None
            if self._active_for(lj.lead_id, lj.journey_id, exclude=lj.lead_journey_id):
                raise AlreadyEnrolled(f"Lead {lj.lead_id} is already active in journey {lj.journey_id}")
            lj.status = "active"
            lj.current_step_id = execution.step_id
            lj.current_execution_id = execution.execution_id
            lj.next_execution_time = execution.scheduled_time
            lj.updated_at = now
            self.executions[execution.execution_id] = self._copy(execution)
            return self._copy(lj)

    def _advanceable(self, lead_journey_id: str, from_execution_id: Optional[str]) -> Optional[LeadJourney]:
        lj = self.lead_journeys.get(lead_journey_id)
        if lj is None or lj.status != "active":
            return None
        if from_execution_id is not None and lj.current_execution_id != from_execution_id:
            return None
        return lj

    async def advance_enrollment(
        self,
        lead_journey_id: str,
        execution: JourneyExecution,
        now: datetime,
        from_execution_id: Optional[str] = None,
    ) -> bool:
        async with self._atomic():
            lj = self._advanceable(lead_journey_id, from_execution_id)
            if lj is None:
                return False
            lj.current_step_id = execution.step_id
            lj.current_execution_id = execution.execution_id
            lj.next_execution_time = execution.scheduled_time
            lj.last_execution_time = now
            lj.updated_at = now
            self.executions[execution.execution_id] = self._copy(execution)
            return True

    async def close_enrollment(
        self, lead_journey_id: str, status: str, now: datetime, from_execution_id: Optional[str] = None
    ) -> bool:
        async with self._atomic():
            lj = self._advanceable(lead_journey_id, from_execution_id)
            if lj is None:
                return False
            self._cancel_pending(lead_journey_id, now)
            lj.status = status
            lj.completed_at = now
            lj.last_execution_time = now
            lj.next_execution_time = None
            lj.updated_at = now
            return True

    # --- executions ---------------------------------------------------------

    async def insert_execution(self, execution: JourneyExecution) -> JourneyExecution:
        async with self._atomic():
            self.executions[execution.execution_id] = self._copy(execution)
            return self._copy(execution)

    async def get_execution(self, execution_id: str) -> Optional[JourneyExecution]:
        async with self._lock:
            return self._copy(self.executions.get(execution_id))

    async def list_executions(
        self,
        lead_journey_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        step_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[JourneyExecution]:
        async with self._lock:
            found = [
                e for e in self.executions.values()
                if (lead_journey_id is None or e.lead_journey_id == lead_journey_id)
                and (journey_id is None or e.journey_id == journey_id)
                and (tenant_id is None or e.tenant_id == tenant_id)
                and (step_id is None or e.step_id == step_id)
                and (statuses is None or e.status in statuses)
            ]
            found.sort(key=lambda e: (as_utc(e.scheduled_time), e.created_at))
            return [self._copy(e) for e in found]

    async def due_executions(self, now: datetime, limit: int) -> List[JourneyExecution]:
        async with self._lock:
            due = [
                e for e in self.executions.values()
                if e.status == "pending" and as_utc(e.scheduled_time) <= now
            ]
            due.sort(key=lambda e: as_utc(e.scheduled_time))
            return [self._copy(e) for e in due[:limit]]

    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime) -> Optional[JourneyExecution]:
        async with self._lock:
            execution = self.executions.get(execution_id)
            if execution is None or execution.status != "pending":
                return None
            execution.status = "processing"
            execution.claim_token = claim_token
            execution.claimed_at = now
            execution.updated_at = now
            return self._copy(execution)

    async def update_claimed_execution(self, execution_id: str, claim_token: str, fields: Dict[str, Any]) -> bool:
        async with self._atomic():
            execution = self.executions.get(execution_id)
            if execution is None or execution.status != "processing" or execution.claim_token != claim_token:
                return False
            self.executions[execution_id] = execution.model_copy(update=copy.deepcopy(fields))
            return True

    async def stale_processing(self, cutoff: datetime, limit: int) -> List[JourneyExecution]:
        async with self._lock:
            stale = [
                e for e in self.executions.values()
                if e.status == "processing" and not e.manual
                and e.claimed_at is not None and as_utc(e.claimed_at) < cutoff
            ]
            stale.sort(key=lambda e: as_utc(e.claimed_at))
            return [self._copy(e) for e in stale[:limit]]

    async def release_signal(self, lead_journey_id: str, event: str, now: datetime) -> int:
        async with self._atomic():
            released = 0
            for execution in self.executions.values():
                if (
                    execution.lead_journey_id == lead_journey_id
                    and execution.status == "pending"
                    and execution.awaiting_signal
                    and execution.signal_event == event
                ):
                    execution.awaiting_signal = False
                    execution.scheduled_time = now
                    execution.result = {**execution.result, "signal": {"event": event, "received_at": now.isoformat()}}
                    execution.updated_at = now
                    released += 1
            return released

    async def upcoming_executions(self, tenant_id: str, now: datetime, limit: int) -> List[JourneyExecution]:
        async with self._lock:
            upcoming = [
                e for e in self.executions.values()
                if e.tenant_id == tenant_id and e.status == "pending" and as_utc(e.scheduled_time) >= now
            ]
            upcoming.sort(key=lambda e: as_utc(e.scheduled_time))
            return [self._copy(e) for e in upcoming[:limit]]

    # --- deletion -----------------------------------------------------------

    def _remove_executions(self, lead_journey_ids: List[str], journey_id: str) -> int:
        doomed = [
            key for key, e in self.executions.items()
            if e.lead_journey_id in lead_journey_ids or e.journey_id == journey_id
        ]
        for key in doomed:
            del self.executions[key]
        return len(doomed)

    def _remove_journal(self, lead_journey_ids: List[str]) -> int:
        before = len(self.journal)
        self.journal = [entry for entry in self.journal if entry.lead_journey_id not in lead_journey_ids]
        return before - len(self.journal)

    def _remove_enrollments(self, lead_journey_ids: List[str]) -> int:
        for key in lead_journey_ids:
            del self.lead_journeys[key]
        return len(lead_journey_ids)

    def _remove_steps(self, journey_id: str) -> int:
        doomed = [key for key, s in self.steps.items() if s.journey_id == journey_id]
        for key in doomed:
            del self.steps[key]
        return len(doomed)

    def _remove_journey(self, journey_id: str) -> int:
        return 1 if self.journeys.pop(journey_id, None) is not None else 0

    async def delete_journey_cascade(self, journey_id: str, force: bool = False) -> Dict[str, int]:
        async with self._atomic():
            lead_journey_ids = [
                key for key, lj in self.lead_journeys.items() if lj.journey_id == journey_id
            ]
            active = sum(1 for key in lead_journey_ids if self.lead_journeys[key].status == "active")
            if active and not force:
                raise HasActiveEnrollments(f"Journey {journey_id} has {active} active enrollments")
            return {
                "executions": self._remove_executions(lead_journey_ids, journey_id),
                "journal_entries": self._remove_journal(lead_journey_ids),
                "lead_journeys": self._remove_enrollments(lead_journey_ids),
                "steps": self._remove_steps(journey_id),
                "journeys": self._remove_journey(journey_id),
            }

    async def cleanup_finished(self, cutoff: datetime) -> Dict[str, int]:
        async with self._atomic():
            lead_journey_ids = [
                key for key, lj in self.lead_journeys.items()
                if lj.status in FINISHED_STATUSES and as_utc(lj.updated_at) < cutoff
            ]
            executions = [key for key, e in self.executions.items() if e.lead_journey_id in lead_journey_ids]
            for key in executions:
                del self.executions[key]
            journal_entries = self._remove_journal(lead_journey_ids)
            return {
                "executions": len(executions),
                "journal_entries": journal_entries,
                "lead_journeys": self._remove_enrollments(lead_journey_ids),
            }

    # --- journal ------------------------------------------------------------

    async def add_journal_entry(self, entry: JourneyJournalEntry) -> None:
        async with self._lock:
            self.journal.append(self._copy(entry))

    async def list_journal(self, lead_journey_id: str) -> List[JourneyJournalEntry]:
        async with self._lock:
            return [self._copy(e) for e in self.journal if e.lead_journey_id == lead_journey_id]
