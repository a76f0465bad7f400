import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from journey_engine.db.documents import (
    JourneyDocument,
    JourneyExecutionDocument,
    JourneyJournalDocument,
    JourneyStepDocument,
    LeadJourneyDocument,
)
from journey_engine.db.store import JourneyStore
from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.models.lead_journey import FINISHED_STATUSES, LeadJourney
from journey_engine.services.errors import AlreadyEnrolled, ConflictError, HasActiveEnrollments

logger = logging.getLogger(__name__)

_DOCUMENT_INTERNALS = {"id", "revision_id"}


def _load(model_cls, raw):
    """Turn a raw Mongo document or a Beanie document into the plain domain model."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raw = raw.model_dump(exclude=_DOCUMENT_INTERNALS)
    return model_cls.model_validate(raw)


class MongoJourneyStore(JourneyStore):
    """
    MongoDB-backed store. Reads go through the Beanie documents; conditional
    writes use the Motor collections directly so each one is a single
    server-side compare-and-set. Composite operations run in a client session
    transaction when `use_transactions` is on (requires a replica set).
    """

    def __init__(self, client: AsyncIOMotorClient, use_transactions: bool = True):
        self.client = client
        self.use_transactions = use_transactions

    @property
    def _journeys(self):
        return JourneyDocument.get_motor_collection()

    @property
    def _steps(self):
        return JourneyStepDocument.get_motor_collection()

    @property
    def _lead_journeys(self):
        return LeadJourneyDocument.get_motor_collection()

    @property
    def _executions(self):
        return JourneyExecutionDocument.get_motor_collection()

    @property
    def _journal(self):
        return JourneyJournalDocument.get_motor_collection()

    @asynccontextmanager
    async def _transaction(self):
        if not self.use_transactions:
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def ping(self) -> bool:
        await self.client.admin.command("ping")
        return True

    # --- journeys -----------------------------------------------------------

    async def insert_journey(self, journey: Journey) -> Journey:
        try:
            await self._journeys.insert_one(journey.model_dump())
        except DuplicateKeyError:
            raise ConflictError(f"Journey {journey.journey_id} already exists")
        return journey

    async def get_journey(self, journey_id: str, tenant_id: Optional[str] = None) -> Optional[Journey]:
        query = {"journey_id": journey_id}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        return _load(Journey, await JourneyDocument.find_one(query))

    async def list_journeys(self, tenant_id: Optional[str] = None, active_only: bool = False) -> List[Journey]:
        query: Dict[str, Any] = {}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        if active_only:
            query["is_active"] = True
        documents = await JourneyDocument.find(query).sort("+created_at").to_list()
        return [_load(Journey, d) for d in documents]

    async def save_journey(self, journey: Journey) -> Journey:
        await self._journeys.replace_one({"journey_id": journey.journey_id}, journey.model_dump(), upsert=True)
        return journey

    # --- steps --------------------------------------------------------------

    async def insert_step(self, step: JourneyStep) -> JourneyStep:
        try:
            await self._steps.insert_one(step.model_dump())
        except DuplicateKeyError:
            raise ConflictError(f"Journey {step.journey_id} already has a step at order {step.step_order}")
        return step

    async def save_step(self, step: JourneyStep) -> JourneyStep:
        try:
            await self._steps.replace_one({"step_id": step.step_id}, step.model_dump(), upsert=True)
        except DuplicateKeyError:
            raise ConflictError(f"Journey {step.journey_id} already has a step at order {step.step_order}")
        return step

    async def get_step(self, step_id: str, journey_id: Optional[str] = None) -> Optional[JourneyStep]:
        query = {"step_id": step_id}
        if journey_id is not None:
            query["journey_id"] = journey_id
        return _load(JourneyStep, await JourneyStepDocument.find_one(query))

    async def list_steps(self, journey_id: str, active_only: bool = False) -> List[JourneyStep]:
        query: Dict[str, Any] = {"journey_id": journey_id}
        if active_only:
            query["is_active"] = True
        documents = await JourneyStepDocument.find(query).sort("+step_order").to_list()
        return [_load(JourneyStep, d) for d in documents]

    async def delete_step(self, step_id: str, force: bool = False) -> int:
        async with self._transaction() as session:
            in_flight = await self._executions.count_documents(
                {"step_id": step_id, "status": {"$in": ["pending", "processing"]}}, session=session
            )
            if in_flight and not force:
                raise ConflictError(f"Step {step_id} has {in_flight} pending or processing executions")
            deleted = await self._executions.delete_many({"step_id": step_id}, session=session)
            await self._steps.delete_one({"step_id": step_id}, session=session)
            return deleted.deleted_count

    # --- enrollments --------------------------------------------------------

    async def _cancel_pending(self, lead_journey_id: str, now: datetime, session=None) -> int:
        result = await self._executions.update_many(
            {"lead_journey_id": lead_journey_id, "status": "pending"},
            {"$set": {"status": "cancelled", "awaiting_signal": False, "updated_at": now}},
            session=session,
        )
        return result.modified_count

    async def create_enrollment(
        self,
        lead_journey: LeadJourney,
        first_execution: Optional[JourneyExecution] = None,
        restart: bool = False,
    ) -> LeadJourney:
        now = lead_journey.started_at
        async with self._transaction() as session:
            existing = await self._lead_journeys.find_one(
                {"lead_id": lead_journey.lead_id, "journey_id": lead_journey.journey_id, "status": "active"},
                session=session,
            )
            if existing is not None:
                if not restart:
                    raise AlreadyEnrolled(
                        f"Lead {lead_journey.lead_id} is already active in journey {lead_journey.journey_id}"
                    )
                await self._lead_journeys.update_one(
                    {"lead_journey_id": existing["lead_journey_id"], "status": "active"},
                    {"$set": {"status": "exited", "completed_at": now, "updated_at": now}},
                    session=session,
                )
                await self._cancel_pending(existing["lead_journey_id"], now, session=session)
            try:
                await self._lead_journeys.insert_one(lead_journey.model_dump(), session=session)
            except DuplicateKeyError:
                raise AlreadyEnrolled(
                    f"Lead {lead_journey.lead_id} is already active in journey {lead_journey.journey_id}"
                )
            if first_execution is not None:
                await self._executions.insert_one(first_execution.model_dump(), session=session)
        return lead_journey

    async def get_lead_journey(self, lead_journey_id: str, tenant_id: Optional[str] = None) -> Optional[LeadJourney]:
        query = {"lead_journey_id": lead_journey_id}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        return _load(LeadJourney, await LeadJourneyDocument.find_one(query))

    async def find_enrollment(
        self, lead_id: str, journey_id: str, statuses: Sequence[str] = ("active",)
    ) -> Optional[LeadJourney]:
        document = await LeadJourneyDocument.find_one(
            {"lead_id": lead_id, "journey_id": journey_id, "status": {"$in": list(statuses)}}
        )
        return _load(LeadJourney, document)

    async def list_lead_journeys(
        self,
        tenant_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[LeadJourney]:
        query: Dict[str, Any] = {}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        if journey_id is not None:
            query["journey_id"] = journey_id
        if lead_id is not None:
            query["lead_id"] = lead_id
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        documents = await LeadJourneyDocument.find(query).sort("+started_at").to_list()
        return [_load(LeadJourney, d) for d in documents]

    async def count_enrollments(self, journey_id: str, statuses: Sequence[str] = ("active",)) -> int:
        return await self._lead_journeys.count_documents({"journey_id": journey_id, "status": {"$in": list(statuses)}})

    async def set_enrollment_status(self, lead_journey_id: str, status: str, now: datetime) -> Optional[LeadJourney]:
        update: Dict[str, Any] = {"status": status, "updated_at": now}
        if status in FINISHED_STATUSES:
            update["completed_at"] = now
        query: Dict[str, Any] = {"lead_journey_id": lead_journey_id}
        async with self._transaction() as session:
            if status in ("active", "paused"):
                current = await self._lead_journeys.find_one(query, {"status": 1}, session=session)
                if current is None:
                    return None
                if current["status"] in FINISHED_STATUSES:
                    raise ConflictError(
                        f"Lead journey {lead_journey_id} is {current['status']} and cannot become {status}"
                    )
                # A finish racing the read above leaves the write unmatched.
                query["status"] = {"$nin": list(FINISHED_STATUSES)}
            if status != "active":
                await self._cancel_pending(lead_journey_id, now, session=session)
            try:
                raw = await self._lead_journeys.find_one_and_update(
                    query,
                    {"$set": update},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
            except DuplicateKeyError:
                raise AlreadyEnrolled(f"Another enrollment of lead journey {lead_journey_id}'s lead is already active")
        return _load(LeadJourney, raw)

    async def resume_enrollment(self, lead_journey_id: str, execution: JourneyExecution, now: datetime) -> Optional[LeadJourney]:
        async with self._transaction() as session:
            try:
                raw = await self._lead_journeys.find_one_and_update(
                    {"lead_journey_id": lead_journey_id, "status": "paused"},
                    {"$set": {
                        "status": "active",
                        "current_step_id": execution.step_id,
                        "current_execution_id": execution.execution_id,
                        "next_execution_time": execution.scheduled_time,
                        "updated_at": now,
                    }},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
            except DuplicateKeyError:
                raise AlreadyEnrolled(f"Another enrollment of lead journey {lead_journey_id}'s lead is already active")
            if raw is None:
                return None
            await self._executions.insert_one(execution.model_dump(), session=session)
        return _load(LeadJourney, raw)

    @staticmethod
    def _advanceable(lead_journey_id: str, from_execution_id: Optional[str]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"lead_journey_id": lead_journey_id, "status": "active"}
        if from_execution_id is not None:
            query["current_execution_id"] = from_execution_id
        return query

    async def advance_enrollment(
        self,
        lead_journey_id: str,
        execution: JourneyExecution,
        now: datetime,
        from_execution_id: Optional[str] = None,
    ) -> bool:
        async with self._transaction() as session:
            result = await self._lead_journeys.update_one(
                self._advanceable(lead_journey_id, from_execution_id),
                {"$set": {
                    "current_step_id": execution.step_id,
                    "current_execution_id": execution.execution_id,
                    "next_execution_time": execution.scheduled_time,
                    "last_execution_time": now,
                    "updated_at": now,
                }},
                session=session,
            )
            if result.matched_count == 0:
                return False
            await self._executions.insert_one(execution.model_dump(), session=session)
        return True

    async def close_enrollment(
        self, lead_journey_id: str, status: str, now: datetime, from_execution_id: Optional[str] = None
    ) -> bool:
        async with self._transaction() as session:
            result = await self._lead_journeys.update_one(
                self._advanceable(lead_journey_id, from_execution_id),
                {"$set": {
                    "status": status,
                    "completed_at": now,
                    "last_execution_time": now,
                    "next_execution_time": None,
                    "updated_at": now,
                }},
                session=session,
            )
            if result.matched_count == 0:
                return False
            await self._cancel_pending(lead_journey_id, now, session=session)
        return True

    # --- executions ---------------------------------------------------------

    async def insert_execution(self, execution: JourneyExecution) -> JourneyExecution:
        await self._executions.insert_one(execution.model_dump())
        return execution

    async def get_execution(self, execution_id: str) -> Optional[JourneyExecution]:
        return _load(JourneyExecution, await JourneyExecutionDocument.find_one({"execution_id": execution_id}))

    async def list_executions(
        self,
        lead_journey_id: Optional[str] = None,
        journey_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        step_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[JourneyExecution]:
        query: Dict[str, Any] = {}
        for key, value in (
            ("lead_journey_id", lead_journey_id),
            ("journey_id", journey_id),
            ("tenant_id", tenant_id),
            ("step_id", step_id),
        ):
            if value is not None:
                query[key] = value
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        documents = await JourneyExecutionDocument.find(query).sort("+scheduled_time", "+created_at").to_list()
        return [_load(JourneyExecution, d) for d in documents]

    async def due_executions(self, now: datetime, limit: int) -> List[JourneyExecution]:
        cursor = (
            self._executions.find({"status": "pending", "scheduled_time": {"$lte": now}})
            .sort("scheduled_time", ASCENDING)
            .limit(limit)
        )
        return [_load(JourneyExecution, raw) async for raw in cursor]

    async def claim_execution(self, execution_id: str, claim_token: str, now: datetime) -> Optional[JourneyExecution]:
        raw = await self._executions.find_one_and_update(
            {"execution_id": execution_id, "status": "pending"},
            {"$set": {"status": "processing", "claim_token": claim_token, "claimed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return _load(JourneyExecution, raw)

    async def update_claimed_execution(self, execution_id: str, claim_token: str, fields: Dict[str, Any]) -> bool:
        result = await self._executions.update_one(
            {"execution_id": execution_id, "status": "processing", "claim_token": claim_token},
            {"$set": fields},
        )
        return result.modified_count == 1

    async def stale_processing(self, cutoff: datetime, limit: int) -> List[JourneyExecution]:
        cursor = (
            self._executions.find({"status": "processing", "manual": {"$ne": True}, "claimed_at": {"$lt": cutoff}})
            .sort("claimed_at", ASCENDING)
            .limit(limit)
        )
        return [_load(JourneyExecution, raw) async for raw in cursor]

    async def release_signal(self, lead_journey_id: str, event: str, now: datetime) -> int:
        result = await self._executions.update_many(
            {
                "lead_journey_id": lead_journey_id,
                "status": "pending",
                "awaiting_signal": True,
                "signal_event": event,
            },
            {"$set": {
                "awaiting_signal": False,
                "scheduled_time": now,
                "result.signal": {"event": event, "received_at": now.isoformat()},
                "updated_at": now,
            }},
        )
        return result.modified_count

    async def upcoming_executions(self, tenant_id: str, now: datetime, limit: int) -> List[JourneyExecution]:
        documents = (
            await JourneyExecutionDocument.find(
                {"tenant_id": tenant_id, "status": "pending", "scheduled_time": {"$gte": now}}
            )
            .sort("+scheduled_time")
            .limit(limit)
            .to_list()
        )
        return [_load(JourneyExecution, d) for d in documents]

    # --- deletion -----------------------------------------------------------

    async def delete_journey_cascade(self, journey_id: str, force: bool = False) -> Dict[str, int]:
        async with self._transaction() as session:
            lead_journey_ids = await self._lead_journeys.distinct(
                "lead_journey_id", {"journey_id": journey_id}, session=session
            )
            active = await self._lead_journeys.count_documents(
                {"journey_id": journey_id, "status": "active"}, session=session
            )
            if active and not force:
                raise HasActiveEnrollments(f"Journey {journey_id} has {active} active enrollments")

            executions = await self._executions.delete_many(
                {"$or": [{"lead_journey_id": {"$in": lead_journey_ids}}, {"journey_id": journey_id}]},
                session=session,
            )
            journal = await self._journal.delete_many({"lead_journey_id": {"$in": lead_journey_ids}}, session=session)
            lead_journeys = await self._lead_journeys.delete_many({"journey_id": journey_id}, session=session)
            steps = await self._steps.delete_many({"journey_id": journey_id}, session=session)
            journeys = await self._journeys.delete_one({"journey_id": journey_id}, session=session)
        return {
            "executions": executions.deleted_count,
            "journal_entries": journal.deleted_count,
            "lead_journeys": lead_journeys.deleted_count,
            "steps": steps.deleted_count,
            "journeys": journeys.deleted_count,
        }

    async def cleanup_finished(self, cutoff: datetime) -> Dict[str, int]:
        async with self._transaction() as session:
            lead_journey_ids = await self._lead_journeys.distinct(
                "lead_journey_id",
                {"status": {"$in": list(FINISHED_STATUSES)}, "updated_at": {"$lt": cutoff}},
                session=session,
            )
            if not lead_journey_ids:
                return {"executions": 0, "journal_entries": 0, "lead_journeys": 0}
            executions = await self._executions.delete_many(
                {"lead_journey_id": {"$in": lead_journey_ids}}, session=session
            )
            journal = await self._journal.delete_many({"lead_journey_id": {"$in": lead_journey_ids}}, session=session)
            lead_journeys = await self._lead_journeys.delete_many(
                {"lead_journey_id": {"$in": lead_journey_ids}}, session=session
            )
        return {
            "executions": executions.deleted_count,
            "journal_entries": journal.deleted_count,
            "lead_journeys": lead_journeys.deleted_count,
        }

    # --- journal ------------------------------------------------------------

    async def add_journal_entry(self, entry: JourneyJournalEntry) -> None:
        await JourneyJournalDocument(**entry.model_dump()).insert()

    async def list_journal(self, lead_journey_id: str) -> List[JourneyJournalEntry]:
        documents = await JourneyJournalDocument.find({"lead_journey_id": lead_journey_id}).sort("+timestamp").to_list()
        return [_load(JourneyJournalEntry, d) for d in documents]
