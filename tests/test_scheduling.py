"""Tests for delay and business-hours calculations."""

from datetime import datetime, timedelta, timezone

import pytest
import pytz

from journey_engine.models.journey import StepDelay
from journey_engine.models.lead import BusinessDay
from journey_engine.services.scheduling import compute_schedule, next_business_time, resolve_timezone

UTC = timezone.utc
LA = pytz.timezone("America/Los_Angeles")
# Monday 2 March 2026, 07:00 in Los Angeles (PST)
NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def schedule(delay: StepDelay, now=NOW, started=NOW, tz=LA):
    return compute_schedule(delay, now, started, tz, default_hold_hours=72)


class TestComputeSchedule:

    def test_immediate_runs_now(self):
        assert schedule(StepDelay()).at == NOW

    def test_relative_to_previous_step(self):
        delay = StepDelay(delay_type="relative", days=1, hours=2, minutes=30)
        assert schedule(delay).at == NOW + timedelta(days=1, hours=2, minutes=30)

    def test_relative_to_enrollment(self):
        delay = StepDelay(delay_type="relative", hours=6, anchor="enrollment")
        started = NOW - timedelta(hours=2)
        assert schedule(delay, started=started).at == started + timedelta(hours=6)

    def test_relative_to_enrollment_in_the_past_runs_now(self):
        delay = StepDelay(delay_type="relative", hours=1, anchor="enrollment")
        assert schedule(delay, started=NOW - timedelta(days=3)).at == NOW

    def test_absolute_in_the_past_runs_now(self):
        delay = StepDelay(delay_type="absolute", at=NOW - timedelta(days=1))
        assert schedule(delay).at == NOW

    def test_absolute_in_the_future(self):
        at = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)
        assert schedule(StepDelay(delay_type="absolute", at=at)).at == at

    def test_conditional_is_held_until_timeout(self):
        delay = StepDelay(delay_type="conditional", event="replied", timeout_hours=24)
        result = schedule(delay)
        assert result.at == NOW + timedelta(hours=24)
        assert result.awaiting_signal is True
        assert result.signal_event == "replied"

    def test_conditional_uses_default_hold(self):
        result = schedule(StepDelay(delay_type="conditional", event="replied"))
        assert result.at == NOW + timedelta(hours=72)

    def test_fixed_time_later_today(self):
        delay = StepDelay(delay_type="fixed_time", time_of_day="09:00")
        # 09:00 PST is 17:00 UTC
        assert schedule(delay).at == datetime(2026, 3, 2, 17, 0, tzinfo=UTC)

    def test_fixed_time_already_passed_rolls_to_tomorrow(self):
        delay = StepDelay(delay_type="fixed_time", time_of_day="06:00")
        assert schedule(delay).at == datetime(2026, 3, 3, 14, 0, tzinfo=UTC)

    def test_specific_days(self):
        delay = StepDelay(delay_type="specific_days", time_of_day="10:00", weekdays=["Wednesday"])
        assert schedule(delay).at == datetime(2026, 3, 4, 18, 0, tzinfo=UTC)

    def test_specific_days_across_daylight_saving_change(self):
        # Already past 09:00 on Monday; the next Monday is after the switch to PDT.
        now = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)
        delay = StepDelay(delay_type="specific_days", time_of_day="09:00", weekdays=["monday"])
        assert schedule(delay, now=now).at == datetime(2026, 3, 9, 16, 0, tzinfo=UTC)

    def test_never_earlier_than_now(self):
        for delay in (
            StepDelay(),
            StepDelay(delay_type="relative", anchor="enrollment"),
            StepDelay(delay_type="absolute", at=NOW - timedelta(hours=1)),
            StepDelay(delay_type="fixed_time", time_of_day="00:00"),
        ):
            assert schedule(delay, started=NOW - timedelta(days=10)).at >= NOW


class TestStepDelayValidation:

    def test_conditional_needs_event(self):
        with pytest.raises(ValueError):
            StepDelay(delay_type="conditional")

    def test_absolute_needs_at(self):
        with pytest.raises(ValueError):
            StepDelay(delay_type="absolute")

    def test_time_of_day_format(self):
        with pytest.raises(ValueError):
            StepDelay(delay_type="fixed_time", time_of_day="9am")

    def test_unknown_weekday(self):
        with pytest.raises(ValueError):
            StepDelay(delay_type="specific_days", time_of_day="09:00", weekdays=["funday"])


class TestBusinessHours:
    SCHEDULE = {"monday": BusinessDay(start="09:00", end="17:00")}

    def test_open_returns_now(self):
        now = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert next_business_time(now, self.SCHEDULE, pytz.utc) == now

    def test_before_opening(self):
        now = datetime(2026, 3, 2, 7, 0, tzinfo=UTC)
        assert next_business_time(now, self.SCHEDULE, pytz.utc) == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def test_after_closing_waits_for_next_open_day(self):
        now = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)
        assert next_business_time(now, self.SCHEDULE, pytz.utc) == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)

    def test_disabled_day_is_closed(self):
        schedule = {
            "monday": BusinessDay(enabled=False),
            "tuesday": BusinessDay(start="08:00", end="12:00"),
        }
        now = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert next_business_time(now, schedule, pytz.utc) == datetime(2026, 3, 3, 8, 0, tzinfo=UTC)

    def test_empty_schedule_is_always_open(self):
        assert next_business_time(NOW, {}, LA) == NOW

    def test_unknown_timezone_falls_back(self):
        assert resolve_timezone("Mars/Olympus", "UTC") == pytz.utc
