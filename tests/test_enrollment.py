"""Tests for enrolling leads and moving enrollments between statuses."""

from datetime import timedelta

import pytest

from journey_engine.services.enrollment import parse_lead_ids_csv
from journey_engine.services.errors import (
    AlreadyEnrolled,
    ConflictError,
    JourneyInactive,
    NotFoundError,
    ValidationError,
)

from conftest import OTHER_TENANT, START, TENANT

SMS = {"action_type": "sms", "body": "Hi {{ first_name }}"}
WAIT_DAY = {"action": {"action_type": "wait"}, "delay": {"delay_type": "relative", "days": 1}}


class TestEnroll:

    @pytest.mark.asyncio
    async def test_schedules_first_active_step(self, engine, store, make_journey):
        journey, steps = await make_journey([{"action": SMS, "is_active": False}, WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id, context={"source": "web"})

        assert lj.status == "active"
        assert lj.current_step_id == steps[1].step_id
        assert lj.next_execution_time == START + timedelta(days=1)
        assert lj.context_data == {"source": "web"}

        pending = await store.list_executions(lead_journey_id=lj.lead_journey_id)
        assert len(pending) == 1
        assert pending[0].step_id == steps[1].step_id
        assert pending[0].status == "pending"

    @pytest.mark.asyncio
    async def test_second_enrollment_rejected(self, engine, make_journey):
        journey, _ = await make_journey([{"action": SMS}])
        await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        with pytest.raises(AlreadyEnrolled):
            await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)

    @pytest.mark.asyncio
    async def test_restart_replaces_active_enrollment(self, engine, store, make_journey):
        journey, _ = await make_journey([{"action": SMS}])
        first = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        second = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id, restart=True)

        assert (await store.get_lead_journey(first.lead_journey_id)).status == "exited"
        assert (await store.get_lead_journey(second.lead_journey_id)).status == "active"
        old_work = await store.list_executions(lead_journey_id=first.lead_journey_id)
        assert [e.status for e in old_work] == ["cancelled"]
        assert await store.count_enrollments(journey.journey_id) == 1

    @pytest.mark.asyncio
    async def test_journey_without_active_steps_completes_immediately(self, engine, store, make_journey):
        journey, _ = await make_journey([{"action": SMS, "is_active": False}])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        assert lj.status == "completed"
        assert await store.list_executions(lead_journey_id=lj.lead_journey_id) == []

    @pytest.mark.asyncio
    async def test_restart_into_journey_without_active_steps(self, engine, store, make_journey):
        journey, steps = await make_journey([{"action": SMS}])
        first = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        steps[0].is_active = False
        await store.save_step(steps[0])

        with pytest.raises(AlreadyEnrolled):
            await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        second = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id, restart=True)

        assert second.status == "completed"
        assert (await store.get_lead_journey(first.lead_journey_id)).status == "exited"
        old_work = await store.list_executions(lead_journey_id=first.lead_journey_id)
        assert [e.status for e in old_work] == ["cancelled"]

    @pytest.mark.asyncio
    async def test_failed_restart_leaves_old_enrollment_untouched(self, engine, store, make_journey, monkeypatch):
        journey, _ = await make_journey([{"action": SMS}])
        first = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)

        def broken(*args):
            raise RuntimeError("write failed")

        monkeypatch.setattr(store, "_cancel_pending", broken)
        with pytest.raises(RuntimeError):
            await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id, restart=True)

        assert (await store.get_lead_journey(first.lead_journey_id)).status == "active"
        assert len(await store.list_lead_journeys(journey_id=journey.journey_id)) == 1

    @pytest.mark.asyncio
    async def test_inactive_journey(self, engine, make_journey):
        journey, _ = await make_journey([{"action": SMS}], is_active=False)
        with pytest.raises(JourneyInactive):
            await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)

    @pytest.mark.asyncio
    async def test_lead_from_another_tenant(self, engine, make_journey):
        journey, _ = await make_journey([{"action": SMS}])
        with pytest.raises(NotFoundError):
            await engine.enrollment.enroll(TENANT, "lead_other", journey.journey_id)
        with pytest.raises(NotFoundError):
            await engine.enrollment.enroll(OTHER_TENANT, "lead_other", journey.journey_id)

    @pytest.mark.asyncio
    async def test_bulk_enroll_reports_each_lead(self, engine, make_journey):
        journey, _ = await make_journey([{"action": SMS}])
        await engine.enrollment.enroll(TENANT, "lead_2", journey.journey_id)

        results = await engine.enrollment.bulk_enroll(TENANT, journey.journey_id, ["lead_1", "lead_2", "nobody"])
        by_lead = {r["lead_id"]: r for r in results}
        assert by_lead["lead_1"]["status"] == "enrolled"
        assert by_lead["lead_2"]["status"] == "error"
        assert "already active" in by_lead["lead_2"]["error"]
        assert by_lead["nobody"]["status"] == "error"


class TestStatusChanges:

    @pytest.mark.asyncio
    async def test_pause_cancels_pending_work(self, engine, store, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)

        paused = await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "paused")
        assert paused.status == "paused"
        executions = await store.list_executions(lead_journey_id=lj.lead_journey_id)
        assert [e.status for e in executions] == ["cancelled"]

    @pytest.mark.asyncio
    async def test_reactivating_does_not_reschedule(self, engine, store, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "paused")

        active = await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "active")
        assert active.status == "active"
        assert await store.list_executions(lead_journey_id=lj.lead_journey_id, statuses=["pending"]) == []

    @pytest.mark.asyncio
    async def test_resume_reschedules_current_step(self, engine, store, clock, make_journey):
        journey, steps = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "paused")

        clock.advance(hours=5)
        resumed = await engine.enrollment.resume(TENANT, lj.lead_journey_id)
        assert resumed.status == "active"
        pending = await store.list_executions(lead_journey_id=lj.lead_journey_id, statuses=["pending"])
        assert len(pending) == 1
        assert pending[0].step_id == steps[0].step_id
        assert pending[0].scheduled_time == clock() + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, engine, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        with pytest.raises(ConflictError):
            await engine.enrollment.resume(TENANT, lj.lead_journey_id)

    @pytest.mark.asyncio
    async def test_finished_enrollment_cannot_be_reactivated(self, engine, store, make_journey):
        journey, _ = await make_journey([{"action": {"action_type": "wait"}}])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        await engine.scheduler.drain()
        assert (await store.get_lead_journey(lj.lead_journey_id)).status == "completed"

        for status in ("active", "paused"):
            with pytest.raises(ConflictError):
                await engine.enrollment.set_status(TENANT, lj.lead_journey_id, status)
        assert (await store.get_lead_journey(lj.lead_journey_id)).status == "completed"

        again = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        assert again.status == "active"

    @pytest.mark.asyncio
    async def test_invalid_status(self, engine, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        with pytest.raises(ValidationError):
            await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "sleeping")

    @pytest.mark.asyncio
    async def test_status_change_is_tenant_scoped(self, engine, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        with pytest.raises(NotFoundError):
            await engine.enrollment.set_status(OTHER_TENANT, lj.lead_journey_id, "paused")

    @pytest.mark.asyncio
    async def test_status_changes_are_journaled(self, engine, store, make_journey):
        journey, _ = await make_journey([WAIT_DAY])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "paused")
        messages = [entry.message for entry in await store.list_journal(lj.lead_journey_id)]
        assert messages == ["Enrolled in journey.", "Status changed from active to paused."]


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_auto_enroll_matches_trigger_criteria(self, engine, leads, store, make_journey):
        leads.add("lead_hot", status="hot")
        journey, _ = await make_journey(
            [WAIT_DAY], trigger_criteria={"auto_enroll": True, "lead_statuses": ["hot"]}
        )
        await make_journey([WAIT_DAY], name="Manual only")

        totals = await engine.enrollment.auto_enroll()
        assert totals == {"journeys": 1, "enrolled": 1, "errors": 0}
        assert (await store.find_enrollment("lead_hot", journey.journey_id)) is not None

        # Already enrolled leads are left alone on the next run.
        assert (await engine.enrollment.auto_enroll())["enrolled"] == 0

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention(self, engine, store, clock, make_journey):
        journey, _ = await make_journey([{"action": SMS}])
        lj = await engine.enrollment.enroll(TENANT, "lead_1", journey.journey_id)
        await engine.enrollment.set_status(TENANT, lj.lead_journey_id, "exited")

        assert (await engine.enrollment.cleanup_finished())["lead_journeys"] == 0
        clock.advance(days=31)
        assert (await engine.enrollment.cleanup_finished())["lead_journeys"] == 1
        assert await store.get_lead_journey(lj.lead_journey_id) is None


class TestCsv:

    def test_parses_lead_ids_in_order_without_duplicates(self):
        content = b"Lead_ID,name\nL1,Ada\nL2,Grace\nL1,Ada again\n,blank\n"
        assert parse_lead_ids_csv(content) == ["L1", "L2"]

    def test_missing_column(self):
        with pytest.raises(ValidationError):
            parse_lead_ids_csv(b"id,name\n1,Ada\n")
