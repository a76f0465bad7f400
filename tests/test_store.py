"""
Store contract tests. Every test runs against the in-memory store and, when
JOURNEY_ENGINE_TEST_MONGO_URI points at a MongoDB server, against the Mongo
store in a throwaway database.
"""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from journey_engine.db.init import init_store
from journey_engine.db.memory import MemoryJourneyStore
from journey_engine.models.execution import JourneyExecution
from journey_engine.models.journal import JourneyJournalEntry
from journey_engine.models.journey import Journey, JourneyStep
from journey_engine.models.lead_journey import LeadJourney
from journey_engine.services.errors import AlreadyEnrolled, ConflictError, HasActiveEnrollments

from conftest import START, TENANT

TEST_MONGO_URI = os.getenv("JOURNEY_ENGINE_TEST_MONGO_URI")
TEST_MONGO_TRANSACTIONS = os.getenv("JOURNEY_ENGINE_TEST_MONGO_TRANSACTIONS", "false").lower() in ("1", "true", "yes")

requires_mongo = pytest.mark.skipif(
    not TEST_MONGO_URI,
    reason="JOURNEY_ENGINE_TEST_MONGO_URI not set"
)


@pytest_asyncio.fixture(params=["memory", pytest.param("mongo", marks=requires_mongo)])
async def store(request):
    if request.param == "memory":
        yield MemoryJourneyStore()
        return

    db_name = f"journey_engine_test_{uuid.uuid4().hex[:12]}"
    mongo = await init_store(TEST_MONGO_URI, db_name=db_name, use_transactions=TEST_MONGO_TRANSACTIONS)
    try:
        yield mongo
    finally:
        await mongo.client.drop_database(db_name)
        mongo.client.close()


def _enrollment(lead_id="lead_1", journey_id="journey_x", **fields):
    return LeadJourney(journey_id=journey_id, lead_id=lead_id, tenant_id=TENANT, started_at=START,
                       updated_at=START, **fields)


def _execution(lead_journey, step_id="step_x", **fields):
    fields.setdefault("scheduled_time", START)
    return JourneyExecution(
        lead_journey_id=lead_journey.lead_journey_id,
        journey_id=lead_journey.journey_id,
        tenant_id=lead_journey.tenant_id,
        step_id=step_id,
        **fields,
    )


async def _started(store, **fields):
    """An active enrollment whose first execution is the current one."""
    lj = _enrollment(**fields)
    first = _execution(lj)
    lj.current_step_id = first.step_id
    lj.current_execution_id = first.execution_id
    await store.create_enrollment(lj, first)
    return lj, first


class TestClaims:

    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, store):
        lj = _enrollment()
        execution = _execution(lj)
        await store.create_enrollment(lj, execution)

        results = await asyncio.gather(*(
            store.claim_execution(execution.execution_id, f"token_{i}", START) for i in range(10)
        ))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].status == "processing"

    @pytest.mark.asyncio
    async def test_writes_need_the_claim_token(self, store):
        lj = _enrollment()
        execution = _execution(lj)
        await store.create_enrollment(lj, execution)
        await store.claim_execution(execution.execution_id, "mine", START)

        assert await store.update_claimed_execution(execution.execution_id, "theirs", {"status": "completed"}) is False
        assert await store.update_claimed_execution(execution.execution_id, "mine", {"status": "completed"}) is True
        # Once completed the row is no longer claimed by anyone.
        assert await store.update_claimed_execution(execution.execution_id, "mine", {"status": "failed"}) is False
        assert (await store.get_execution(execution.execution_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_due_executions_are_ordered_and_limited(self, store):
        lj = _enrollment()
        await store.create_enrollment(lj)
        later = _execution(lj, scheduled_time=START - timedelta(minutes=1))
        earlier = _execution(lj, scheduled_time=START - timedelta(minutes=5))
        future = _execution(lj, scheduled_time=START + timedelta(minutes=5))
        for execution in (later, earlier, future):
            await store.insert_execution(execution)

        due = await store.due_executions(START, limit=10)
        assert [e.execution_id for e in due] == [earlier.execution_id, later.execution_id]
        assert len(await store.due_executions(START, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_stale_processing_skips_manual_runs(self, store):
        lj = _enrollment()
        scheduled = _execution(lj)
        manual = _execution(lj, manual=True)
        await store.create_enrollment(lj, scheduled)
        await store.insert_execution(manual)
        await store.claim_execution(scheduled.execution_id, "a", START)
        await store.claim_execution(manual.execution_id, "b", START)

        stale = await store.stale_processing(START + timedelta(minutes=30), limit=10)
        assert [e.execution_id for e in stale] == [scheduled.execution_id]
        assert await store.stale_processing(START, limit=10) == []


class TestEnrollments:

    @pytest.mark.asyncio
    async def test_one_active_enrollment_per_lead_and_journey(self, store):
        await store.create_enrollment(_enrollment())
        with pytest.raises(AlreadyEnrolled):
            await store.create_enrollment(_enrollment())
        # Another journey is fine.
        await store.create_enrollment(_enrollment(journey_id="journey_y"))
        assert await store.count_enrollments("journey_x") == 1

    @pytest.mark.asyncio
    async def test_restart_exits_previous_and_cancels_its_work(self, store):
        first = _enrollment()
        pending = _execution(first)
        await store.create_enrollment(first, pending)

        second = _enrollment()
        await store.create_enrollment(second, _execution(second), restart=True)

        old = await store.get_lead_journey(first.lead_journey_id)
        assert old.status == "exited"
        assert (await store.get_execution(pending.execution_id)).status == "cancelled"
        assert (await store.get_lead_journey(second.lead_journey_id)).status == "active"

    @pytest.mark.asyncio
    async def test_completed_enrollment_still_checks_the_active_one(self, store):
        first = _enrollment()
        pending = _execution(first)
        await store.create_enrollment(first, pending)

        with pytest.raises(AlreadyEnrolled):
            await store.create_enrollment(_enrollment(status="completed", completed_at=START))

        done = _enrollment(status="completed", completed_at=START)
        await store.create_enrollment(done, restart=True)
        assert (await store.get_lead_journey(first.lead_journey_id)).status == "exited"
        assert (await store.get_execution(pending.execution_id)).status == "cancelled"
        assert (await store.get_lead_journey(done.lead_journey_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_advance_requires_active_enrollment(self, store):
        lj, first = await _started(store)
        await store.set_enrollment_status(lj.lead_journey_id, "paused", START)

        next_execution = _execution(lj, step_id="step_y")
        assert await store.advance_enrollment(
            lj.lead_journey_id, next_execution, START, from_execution_id=first.execution_id
        ) is False
        assert await store.get_execution(next_execution.execution_id) is None

    @pytest.mark.asyncio
    async def test_only_the_current_execution_advances(self, store):
        lj, first = await _started(store)

        stray = _execution(lj, step_id="step_y")
        assert await store.advance_enrollment(lj.lead_journey_id, stray, START, from_execution_id="exec_old") is False
        assert await store.get_execution(stray.execution_id) is None

        second = _execution(lj, step_id="step_y")
        assert await store.advance_enrollment(
            lj.lead_journey_id, second, START, from_execution_id=first.execution_id
        ) is True
        moved = await store.get_lead_journey(lj.lead_journey_id)
        assert moved.current_step_id == "step_y"
        assert moved.current_execution_id == second.execution_id

        # The first execution no longer owns the enrollment.
        assert await store.close_enrollment(
            lj.lead_journey_id, "completed", START, from_execution_id=first.execution_id
        ) is False
        assert await store.close_enrollment(
            lj.lead_journey_id, "completed", START, from_execution_id=second.execution_id
        ) is True
        assert (await store.get_lead_journey(lj.lead_journey_id)).status == "completed"
        assert (await store.get_execution(second.execution_id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_resume_hands_ownership_to_the_new_execution(self, store):
        lj, first = await _started(store)
        await store.set_enrollment_status(lj.lead_journey_id, "paused", START)

        rerun = _execution(lj)
        resumed = await store.resume_enrollment(lj.lead_journey_id, rerun, START)
        assert resumed.status == "active"
        assert resumed.current_execution_id == rerun.execution_id
        assert await store.resume_enrollment(lj.lead_journey_id, _execution(lj), START) is None

        assert await store.advance_enrollment(
            lj.lead_journey_id, _execution(lj, step_id="step_y"), START, from_execution_id=first.execution_id
        ) is False
        pending = await store.list_executions(lead_journey_id=lj.lead_journey_id, statuses=["pending"])
        assert [e.execution_id for e in pending] == [rerun.execution_id]

    @pytest.mark.asyncio
    async def test_finished_enrollment_stays_finished(self, store):
        lj, _ = await _started(store)
        await store.set_enrollment_status(lj.lead_journey_id, "completed", START)

        for status in ("active", "paused"):
            with pytest.raises(ConflictError):
                await store.set_enrollment_status(lj.lead_journey_id, status, START)
        finished = await store.get_lead_journey(lj.lead_journey_id)
        assert finished.status == "completed"
        assert finished.completed_at == START
        assert await store.set_enrollment_status("lj_missing", "active", START) is None

    @pytest.mark.asyncio
    async def test_reactivating_a_paused_enrollment_respects_uniqueness(self, store):
        paused = _enrollment()
        await store.create_enrollment(paused)
        await store.set_enrollment_status(paused.lead_journey_id, "paused", START)
        await store.create_enrollment(_enrollment())

        with pytest.raises(AlreadyEnrolled):
            await store.set_enrollment_status(paused.lead_journey_id, "active", START)
        assert (await store.get_lead_journey(paused.lead_journey_id)).status == "paused"

    @pytest.mark.asyncio
    async def test_tenant_scoped_lookup(self, store):
        lj = _enrollment()
        await store.create_enrollment(lj)
        assert await store.get_lead_journey(lj.lead_journey_id, tenant_id=TENANT) is not None
        assert await store.get_lead_journey(lj.lead_journey_id, tenant_id="someone_else") is None


class TestSignals:

    @pytest.mark.asyncio
    async def test_release_only_matching_event(self, store):
        lj = _enrollment()
        held = _execution(lj, awaiting_signal=True, signal_event="replied",
                          scheduled_time=START + timedelta(hours=72))
        await store.create_enrollment(lj, held)

        assert await store.release_signal(lj.lead_journey_id, "clicked", START) == 0
        assert await store.release_signal(lj.lead_journey_id, "replied", START) == 1

        released = await store.get_execution(held.execution_id)
        assert released.awaiting_signal is False
        assert released.scheduled_time == START
        assert released.result["signal"]["event"] == "replied"
        # A second signal finds nothing left to release.
        assert await store.release_signal(lj.lead_journey_id, "replied", START) == 0


async def _populate(store):
    """A journey with two steps, one enrollment with pending work and a journal entry, plus an unrelated journey."""
    journey = Journey(tenant_id=TENANT, name="Follow-up")
    other = Journey(tenant_id=TENANT, name="Unrelated")
    for j in (journey, other):
        await store.insert_journey(j)
    for order in (1, 2):
        await store.insert_step(JourneyStep(
            journey_id=journey.journey_id, tenant_id=TENANT, name=f"Step {order}",
            step_order=order, action={"action_type": "wait"},
        ))
    other_step = await store.insert_step(JourneyStep(
        journey_id=other.journey_id, tenant_id=TENANT, name="Only", step_order=1, action={"action_type": "wait"},
    ))

    lj = _enrollment(journey_id=journey.journey_id)
    await store.create_enrollment(lj, _execution(lj))
    await store.add_journal_entry(JourneyJournalEntry(
        lead_journey_id=lj.lead_journey_id, journey_id=journey.journey_id, lead_id=lj.lead_id,
        tenant_id=TENANT, message="Enrolled in journey.",
    ))
    kept = _enrollment(journey_id=other.journey_id)
    await store.create_enrollment(kept, _execution(kept, step_id=other_step.step_id))
    return journey, lj, other, kept


class TestCascadeDelete:

    @pytest.mark.asyncio
    async def test_refuses_with_active_enrollments(self, store):
        journey, lj, _, _ = await _populate(store)
        with pytest.raises(HasActiveEnrollments):
            await store.delete_journey_cascade(journey.journey_id)
        assert await store.get_journey(journey.journey_id) is not None
        assert await store.get_lead_journey(lj.lead_journey_id) is not None

    @pytest.mark.asyncio
    async def test_force_removes_everything(self, store):
        journey, lj, other, kept = await _populate(store)
        counts = await store.delete_journey_cascade(journey.journey_id, force=True)

        assert counts == {"executions": 1, "journal_entries": 1, "lead_journeys": 1, "steps": 2, "journeys": 1}
        assert await store.get_journey(journey.journey_id) is None
        assert await store.list_steps(journey.journey_id) == []
        assert await store.list_lead_journeys(journey_id=journey.journey_id) == []
        assert await store.list_executions(journey_id=journey.journey_id) == []
        assert await store.list_executions(lead_journey_id=lj.lead_journey_id) == []
        assert await store.list_journal(lj.lead_journey_id) == []

        # Nothing belonging to another journey is touched.
        assert await store.get_journey(other.journey_id) is not None
        assert len(await store.list_steps(other.journey_id)) == 1
        assert len(await store.list_executions(lead_journey_id=kept.lead_journey_id)) == 1

    @pytest.mark.asyncio
    async def test_finished_enrollments_do_not_block_delete(self, store):
        journey, lj, _, _ = await _populate(store)
        await store.set_enrollment_status(lj.lead_journey_id, "exited", START)
        counts = await store.delete_journey_cascade(journey.journey_id)
        assert counts["lead_journeys"] == 1
        assert counts["journeys"] == 1


class TestMemoryRollback:

    @pytest.mark.asyncio
    async def test_failure_midway_leaves_nothing_deleted(self, monkeypatch):
        store = MemoryJourneyStore()
        journey, _, _, _ = await _populate(store)
        before = (len(store.journeys), len(store.steps), len(store.lead_journeys),
                  len(store.executions), len(store.journal))

        def boom(journey_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "_remove_steps", boom)
        with pytest.raises(RuntimeError):
            await store.delete_journey_cascade(journey.journey_id, force=True)

        after = (len(store.journeys), len(store.steps), len(store.lead_journeys),
                 len(store.executions), len(store.journal))
        assert after == before


class TestCleanup:

    @pytest.mark.asyncio
    async def test_removes_only_old_finished_enrollments(self, store):
        old = _enrollment(lead_id="lead_old")
        await store.create_enrollment(old, _execution(old))
        await store.set_enrollment_status(old.lead_journey_id, "completed", START - timedelta(days=40))

        recent = _enrollment(lead_id="lead_recent")
        await store.create_enrollment(recent)
        await store.set_enrollment_status(recent.lead_journey_id, "completed", START - timedelta(days=1))

        active = _enrollment(lead_id="lead_active")
        await store.create_enrollment(active)

        counts = await store.cleanup_finished(START - timedelta(days=30))
        assert counts["lead_journeys"] == 1
        assert counts["executions"] == 1
        assert await store.get_lead_journey(old.lead_journey_id) is None
        assert await store.get_lead_journey(recent.lead_journey_id) is not None
        assert await store.get_lead_journey(active.lead_journey_id) is not None
