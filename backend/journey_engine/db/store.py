from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.models.lead_journey import LeadJourney


class JourneyStore(ABC):
    """
    Persistence contract for the engine.

    Every method is one atomic unit. Composite operations (enrollment with its
    first execution, status change with cancellation, advancement, cascade
    delete) either apply fully or not at all. Writes on a claimed execution are
    conditional on its claim token.
    """

    # --- journeys -----------------------------------------------------------

    @abstractmethod
    async def insert_journey(self, journey: Journey) -> Journey: ...

    @abstractmethod
    async def get_journey(self, journey_id: str, tenant_id: Optional[str] = None) -> Optional[Journey]: ...

    @abstractmethod
    async def list_journeys(self, tenant_id: Optional[str] = None, active_only: bool = False) -> List[Journey]: ...

    @abstractmethod
    async def save_journey(self, journey: Journey) -> Journey: ...

    # --- steps --------------------------------------------------------------

    @abstractmethod
    async def insert_step(self, step: JourneyStep) -> JourneyStep:
        """Raises ConflictError when the journey already has a step at `step_order`."""

    @abstractmethod
    async def save_step(self, step: JourneyStep) -> JourneyStep: ...

    @abstractmethod
    async def get_step(self, step_id: str, journey_id: Optional[str] = None) -> Optional[JourneyStep]: ...

    @abstractmethod
    async def list_steps(self, journey_id: str, active_only: bool = False) -> List[JourneyStep]:
        """Steps ordered by `step_order`."""

    @abstractmethod
    async def delete_step(self, step_id: str, force: bool = False) -> int:
        """
        Delete a step and the executions referencing it. Raises ConflictError when
        pending or processing executions reference the step and `force` is off.
        Returns the number of executions deleted.
        """

    # --- enrollments --------------------------------------------------------

    @abstractmethod
    async def create_enrollment(
        self,
        lead_journey: LeadJourney,
        first_execution: Optional[JourneyExecution] = None,
        restart: bool = False,
    ) -> LeadJourney:
        """
        Insert an enrollment and its first execution. An existing active
        enrollment for the same (lead, journey) raises AlreadyEnrolled, or with
        `restart` is exited (its pending executions cancelled) in the same unit.
        This holds whatever the status of the new enrollment.
        """

    @abstractmethod
    async def get_lead_journey(self, lead_journey_id: str, tenant_id: Optional[str] = None) -> Optional[LeadJourney]: ...

    @abstractmethod
    async def find_enrollment(
        self, lead_id: str, journey_id: str, statuses: Sequence[str] = ("active",)
    ) -> Optional[LeadJourney]: ...

    @abstractmethod
    async def list_lead_journeys(
        self,
        tenant_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[LeadJourney]: ...

    @abstractmethod
    async def count_enrollments(self, journey_id: str, statuses: Sequence[str] = ("active",)) -> int: ...

    @abstractmethod
    async def set_enrollment_status(self, lead_journey_id: str, status: str, now: datetime) -> Optional[LeadJourney]:
        """
        Change the status. Any status other than active cancels the pending
        executions in the same unit; terminal statuses stamp `completed_at`.
        A finished enrollment never moves back to active or paused
        (ConflictError). Re-activating a paused one raises AlreadyEnrolled when
        another active enrollment exists for the pair. Returns None for an unknown id.
        """

    @abstractmethod
    async def resume_enrollment(self, lead_journey_id: str, execution: JourneyExecution, now: datetime) -> Optional[LeadJourney]:
        """paused -> active with a freshly scheduled execution. None when the enrollment is not paused."""

    @abstractmethod
    async def advance_enrollment(
        self,
        lead_journey_id: str,
        execution: JourneyExecution,
        now: datetime,
        from_execution_id: Optional[str] = None,
    ) -> bool:
        """
        Insert the next execution and move the pointer, only while the
        enrollment is active and, when `from_execution_id` is given, only while
        that execution is still the enrollment's current one.
        """

    @abstractmethod
    async def close_enrollment(
        self, lead_journey_id: str, status: str, now: datetime, from_execution_id: Optional[str] = None
    ) -> bool:
        """Move an active enrollment to a terminal status, under the same conditions as advance_enrollment."""

    # --- executions ---------------------------------------------------------

    @abstractmethod
    async def insert_execution(self, execution: JourneyExecution) -> JourneyExecution: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[JourneyExecution]: ...

    @abstractmethod
    async def list_executions(
        self,
        lead_journey_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        step_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[JourneyExecution]:
        """Executions ordered by `scheduled_time`, then creation."""

    @abstractmethod
    async def due_executions(self, now: datetime, limit: int) -> List[JourneyExecution]:
        """Pending executions with `scheduled_time <= now`, oldest first."""

    @abstractmethod
    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime) -> Optional[JourneyExecution]:
        """Atomically move pending -> processing. None when another claimer got there first."""

    @abstractmethod
    async def update_claimed_execution(self, execution_id: str, claim_token: str, fields: Dict[str, Any]) -> bool:
        """Apply `fields` only if the row is still processing under `claim_token`."""

    @abstractmethod
    async def stale_processing(self, cutoff: datetime, limit: int) -> List[JourneyExecution]: ...

    @abstractmethod
    async def release_signal(self, lead_journey_id: str, event: str, now: datetime) -> int:
        """Release pending executions of the enrollment waiting for `event`. Returns the count released."""

    @abstractmethod
    async def upcoming_executions(self, tenant_id: str, now: datetime, limit: int) -> List[JourneyExecution]: ...

    # --- deletion -----------------------------------------------------------

    @abstractmethod
    async def delete_journey_cascade(self, journey_id: str, force: bool = False) -> Dict[str, int]:
        """
        Remove a journey with everything hanging off it, in this order:
        executions, journal entries, enrollments, steps, journey.
        Raises HasActiveEnrollments unless `force` or no active enrollments.
        """

    @abstractmethod
    async def cleanup_finished(self, cutoff: datetime) -> Dict[str, int]:
        """Delete finished enrollments last touched before `cutoff`, executions first."""

    # --- journal ------------------------------------------------------------

    @abstractmethod
    async def add_journal_entry(self, entry: JourneyJournalEntry) -> None: ...

    @abstractmethod
    async def list_journal(self, lead_journey_id: str) -> List[JourneyJournalEntry]: ...

    async def ping(self) -> bool:
        return True
