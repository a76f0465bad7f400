"""Tests for the Celery wiring and the worker launcher."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import start_worker
from journey_engine import tasks
from journey_engine.celery_config import celery_app
from journey_engine.scheduler import setup_periodic_tasks


class TestBeatSchedule:

    def test_periodic_tasks_registered(self):
        sender = MagicMock()
        setup_periodic_tasks(sender)

        registered = {c.kwargs["name"]: c.args for c in sender.add_periodic_task.call_args_list}
        assert set(registered) == {
            "sweep-due-executions",
            "recover-stuck-executions",
            "auto-enroll-leads",
            "cleanup-old-enrollments",
        }
        assert registered["sweep-due-executions"][1].task == "journey_engine.tasks.sweep_executions_task"
        assert registered["cleanup-old-enrollments"][0].hour == {2}

    def test_tasks_are_registered_with_the_app(self):
        for name in (
            "journey_engine.tasks.sweep_executions_task",
            "journey_engine.tasks.recover_stuck_executions_task",
            "journey_engine.tasks.auto_enroll_task",
            "journey_engine.tasks.cleanup_old_enrollments_task",
        ):
            assert name in celery_app.tasks


class TestTasks:

    def _engine(self):
        engine = MagicMock()
        engine.scheduler.drain = AsyncMock(return_value=3)
        engine.scheduler.recover_stale = AsyncMock(return_value=1)
        engine.enrollment.auto_enroll = AsyncMock(return_value={"journeys": 1, "enrolled": 2, "errors": 0})
        engine.enrollment.cleanup_finished = AsyncMock(return_value={"lead_journeys": 4})
        engine.aclose = AsyncMock()
        return engine

    def test_each_task_runs_against_a_fresh_store(self):
        store = MagicMock()
        engine = self._engine()
        with patch.object(tasks, "init_store", AsyncMock(return_value=store)), \
                patch.object(tasks, "build_http_engine", return_value=engine) as build:
            assert tasks.sweep_executions_task() == 3
            assert tasks.recover_stuck_executions_task() == 1
            assert tasks.auto_enroll_task()["enrolled"] == 2
            assert tasks.cleanup_old_enrollments_task() == {"lead_journeys": 4}

        assert build.call_count == 4
        assert store.client.close.call_count == 4
        assert engine.aclose.await_count == 4

    def test_store_and_collaborators_closed_when_task_fails(self):
        store = MagicMock()
        engine = self._engine()
        engine.scheduler.drain = AsyncMock(side_effect=RuntimeError("mongo down"))
        with patch.object(tasks, "init_store", AsyncMock(return_value=store)), \
                patch.object(tasks, "build_http_engine", return_value=engine):
            with pytest.raises(RuntimeError):
                tasks.sweep_executions_task()
        store.client.close.assert_called_once()
        engine.aclose.assert_awaited_once()


class TestWorkerLauncher:

    def test_worker_command(self):
        cmd = start_worker.build_worker_command(concurrency=4)
        assert cmd[:3] == ["celery", "-A", "journey_engine.celery_worker.celery"]
        assert "--concurrency=4" in cmd
        assert cmd[-1] == "--beat"

    def test_worker_command_without_beat(self):
        assert "--beat" not in start_worker.build_worker_command(beat=False)
