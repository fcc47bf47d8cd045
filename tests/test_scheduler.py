"""
Tests: scheduler service and the sla_breach_scan job.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from workflow_engine.models import db as _db
from workflow_engine.models.scheduling import ScheduledJob
from workflow_engine.models.task import TaskExecution
from workflow_engine.services.scheduler_service import (
    SchedulerService,
    _get_default_schedule,
    get_registered_jobs,
)
from workflow_engine.utils.helpers import utc_now


@pytest.fixture(autouse=True)
def _scheduler(app):
    SchedulerService.init_app(app)
    yield SchedulerService
    SchedulerService.stop()


def _job(name="sla_breach_scan"):
    _db.session.expire_all()
    return _db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == name)
    ).scalar_one_or_none()


class TestRegistry:
    def test_breach_scan_job_is_registered(self):
        assert "sla_breach_scan" in get_registered_jobs()

    def test_default_interval_follows_config(self, app):
        assert _get_default_schedule("sla_breach_scan", app.config)["interval_minutes"] == 15
        assert _get_default_schedule("sla_breach_scan", {"SLA_SCAN_INTERVAL_MINUTES": 5}) == {
            "interval_minutes": 5, "description": "Every 5 minutes",
        }

    def test_ensure_jobs_registered_is_idempotent(self):
        created = SchedulerService.ensure_jobs_registered()
        again = SchedulerService.ensure_jobs_registered()
        assert len(created) == 1
        assert again == []
        assert _job().schedule_config["interval_minutes"] == 15


class TestRunJob:
    def test_run_breach_scan_job(self, make_task, hil_users):
        started = utc_now() - timedelta(hours=30)
        task = make_task(status="IN_PROGRESS", sla_hours=24, started_at=started,
                         sla_due_at=started + timedelta(hours=24))
        SchedulerService.ensure_jobs_registered()

        outcome = SchedulerService.run_job("sla_breach_scan")

        assert outcome["status"] == "success"
        assert outcome["result"]["claimed"] == 1
        assert outcome["result"]["notifications_created"] == 2
        record = _job()
        assert record.run_count == 1
        assert record.last_run_status == "success"
        _db.session.expire_all()
        assert _db.session.get(TaskExecution, task.id).sla_status == "BREACHED"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_failing_job_is_recorded(self):
        SchedulerService.ensure_jobs_registered()
        with patch("workflow_engine.services.scheduled_jobs.run_breach_scan",
                   side_effect=RuntimeError("db gone")):
            outcome = SchedulerService.run_job("sla_breach_scan")
        assert outcome["status"] == "failed"
        assert "db gone" in outcome["error"]
        record = _job()
        assert record.error_count == 1
        assert record.last_error == "db gone"


class TestDueJobs:
    def test_never_run_job_is_due(self):
        SchedulerService.ensure_jobs_registered()
        assert SchedulerService.due_jobs() == ["sla_breach_scan"]

    def test_recent_run_is_not_due(self):
        SchedulerService.ensure_jobs_registered()
        record = _job()
        record.last_run_at = utc_now() - timedelta(minutes=5)
        _db.session.commit()
        assert SchedulerService.due_jobs() == []
        assert SchedulerService.due_jobs(now=utc_now() + timedelta(minutes=11)) == ["sla_breach_scan"]

    def test_disabled_job_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        toggled = SchedulerService.toggle_job("sla_breach_scan", False)
        assert toggled["status"] == "paused"
        assert SchedulerService.due_jobs() == []

    def test_tick_runs_due_jobs(self):
        SchedulerService.ensure_jobs_registered()
        outcomes = SchedulerService.tick()
        assert [o["job_name"] for o in outcomes] == ["sla_breach_scan"]
        assert _job().run_count == 1

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        jobs = SchedulerService.list_jobs()
        assert jobs[0]["job_name"] == "sla_breach_scan"
        assert jobs[0]["db_record"]["is_enabled"] is True
