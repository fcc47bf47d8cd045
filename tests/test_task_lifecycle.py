"""
Tests: task lifecycle and SLA clock ownership.

Covers:
    - start fixes sla_due_at = started_at + sla_hours exactly once
    - configure_task_sla back-fill rules
    - retry clears the clock but never clears a recorded breach
    - Lifecycle notifications: interrupt, completion, agent failure
    - Invalid transitions leave the task untouched
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from workflow_engine.core.exceptions import NotFoundError, ValidationError
from workflow_engine.models import db as _db
from workflow_engine.models.audit import AuditEvent
from workflow_engine.models.notification import Notification
from workflow_engine.models.task import TaskExecution
from workflow_engine.services import task_lifecycle as svc
from workflow_engine.utils.helpers import as_utc

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def _reload(task_id):
    _db.session.expire_all()
    return _db.session.get(TaskExecution, task_id)


def _audit_actions():
    return [e.action for e in _db.session.execute(
        select(AuditEvent).order_by(AuditEvent.id)).scalars()]


# ═════════════════════════════════════════════════════════════════════════════
# 1. START & SLA CLOCK
# ═════════════════════════════════════════════════════════════════════════════


class TestStartTask:
    def test_start_fixes_deadline(self, make_task):
        task = make_task(sla_hours=4)
        svc.start_task(task.id, clock=lambda: NOW)

        reloaded = _reload(task.id)
        assert reloaded.status == "IN_PROGRESS"
        assert as_utc(reloaded.started_at) == NOW
        assert as_utc(reloaded.sla_due_at) == NOW + timedelta(hours=4)
        assert reloaded.sla_status == "ON_TIME"
        assert _audit_actions() == ["task.start"]

    def test_start_without_sla_leaves_deadline_empty(self, make_task):
        task = make_task()
        started = svc.start_task(task.id, clock=lambda: NOW)
        assert started.sla_due_at is None

    def test_cannot_start_twice(self, make_task):
        task = make_task(sla_hours=4)
        svc.start_task(task.id, clock=lambda: NOW)
        with pytest.raises(ValidationError, match="Cannot start task with status IN_PROGRESS"):
            svc.start_task(task.id, clock=lambda: NOW + timedelta(hours=1))
        assert as_utc(_reload(task.id).sla_due_at) == NOW + timedelta(hours=4)

    def test_missing_task(self):
        with pytest.raises(NotFoundError):
            svc.start_task("missing")


class TestConfigureSla:
    def test_backfill_on_running_task_uses_original_start(self, make_task):
        started = NOW - timedelta(hours=10)
        task = make_task(status="IN_PROGRESS", started_at=started)

        svc.configure_task_sla(task.id, 8)

        reloaded = _reload(task.id)
        assert reloaded.sla_hours == 8.0
        assert as_utc(reloaded.sla_due_at) == started + timedelta(hours=8)
        assert "task.configure_sla" in _audit_actions()

    def test_configure_before_start_defers_deadline(self, make_task):
        task = make_task()
        svc.configure_task_sla(task.id, 2.5)
        assert _reload(task.id).sla_due_at is None

        svc.start_task(task.id, clock=lambda: NOW)
        assert as_utc(_reload(task.id).sla_due_at) == NOW + timedelta(hours=2.5)

    def test_fixed_deadline_cannot_change(self, make_task):
        task = make_task(sla_hours=4)
        svc.start_task(task.id, clock=lambda: NOW)
        with pytest.raises(ValidationError, match="already fixed"):
            svc.configure_task_sla(task.id, 12)

    @pytest.mark.parametrize("hours", [0, -2, "soon"])
    def test_invalid_hours(self, make_task, hours):
        task = make_task()
        with pytest.raises(ValidationError):
            svc.configure_task_sla(task.id, hours)

    def test_completed_task_rejected(self, make_task):
        task = make_task(status="COMPLETED")
        with pytest.raises(ValidationError, match="completed"):
            svc.configure_task_sla(task.id, 4)


# ═════════════════════════════════════════════════════════════════════════════
# 2. FAIL / RETRY
# ═════════════════════════════════════════════════════════════════════════════


class TestFailRetry:
    def test_retry_resets_clock_and_keeps_breach(self, make_task):
        task = make_task(status="FAILED", sla_hours=4, started_at=NOW - timedelta(hours=6),
                         sla_due_at=NOW - timedelta(hours=2), sla_status="BREACHED",
                         sla_breached_at=NOW - timedelta(hours=1), error_message="timeout")

        retried = svc.retry_task(task.id)

        assert retried.status == "PENDING"
        assert retried.retry_count == 1
        assert retried.started_at is None
        assert retried.sla_due_at is None
        assert retried.error_message is None
        assert retried.sla_status == "BREACHED"
        assert retried.sla_breached_at is not None

    def test_retry_only_from_failed(self, make_task):
        task = make_task(status="IN_PROGRESS")
        with pytest.raises(ValidationError):
            svc.retry_task(task.id)
        assert _reload(task.id).retry_count == 0

    def test_agent_failure_notifies_hil(self, make_task, hil_users):
        task = make_task(status="IN_PROGRESS", executor_type="AI")

        failed = svc.fail_task(task.id, "Lender portal returned 503")

        assert failed.status == "FAILED"
        rows = _db.session.execute(select(Notification)).scalars().all()
        assert sorted(n.user_id for n in rows) == hil_users
        assert {n.type for n in rows} == {"AGENT_FAILURE"}
        assert all(n.priority == "HIGH" for n in rows)

    def test_human_failure_is_workflow_update(self, make_task, hil_users):
        task = make_task(status="AWAITING_REVIEW", executor_type="HUMAN")
        svc.fail_task(task.id, "Client unreachable")
        types = {n.type for n in _db.session.execute(select(Notification)).scalars()}
        assert types == {"WORKFLOW_UPDATE"}

    def test_fail_requires_message(self, make_task):
        task = make_task(status="IN_PROGRESS")
        with pytest.raises(ValidationError):
            svc.fail_task(task.id, "")


# ═════════════════════════════════════════════════════════════════════════════
# 3. REVIEW / COMPLETE
# ═════════════════════════════════════════════════════════════════════════════


class TestReviewComplete:
    def test_submit_for_review_raises_interrupt(self, make_workflow, make_task, hil_users):
        wf = make_workflow(status="IN_PROGRESS", assigned_to="processor-dan")
        task = make_task(workflow=wf, status="IN_PROGRESS")

        reviewed = svc.submit_for_review(task.id, "MISSING_DOCUMENT", reason="No payoff letter")

        assert reviewed.status == "AWAITING_REVIEW"
        assert reviewed.interrupt_type == "MISSING_DOCUMENT"
        rows = _db.session.execute(select(Notification)).scalars().all()
        assert sorted(n.user_id for n in rows) == sorted(hil_users + ["processor-dan"])
        assert all(n.type == "TASK_INTERRUPT" and n.show_popup for n in rows)
        assert "No payoff letter" in rows[0].message

    def test_unknown_interrupt_type(self, make_task):
        task = make_task(status="IN_PROGRESS")
        with pytest.raises(ValidationError, match="interrupt type"):
            svc.submit_for_review(task.id, "COFFEE_BREAK")
        assert _reload(task.id).status == "IN_PROGRESS"

    def test_completion_notification_is_stored_without_popup(self, make_task, hil_users):
        task = make_task(status="AWAITING_REVIEW")

        done = svc.complete_task(task.id, {"payoff_amount": "182,430.55"}, clock=lambda: NOW)

        assert done.status == "COMPLETED"
        assert done.output_data == {"payoff_amount": "182,430.55"}
        assert done.interrupt_type is None
        rows = _db.session.execute(select(Notification)).scalars().all()
        assert len(rows) == len(hil_users)
        assert all(n.type == "TASK_COMPLETION" and n.show_popup is False for n in rows)

    def test_cannot_complete_pending_task(self, make_task):
        task = make_task()
        with pytest.raises(ValidationError, match="Cannot complete task with status PENDING"):
            svc.complete_task(task.id)
        assert _audit_actions() == []

    def test_notification_failure_does_not_undo_transition(self, make_task):
        task = make_task(status="IN_PROGRESS")
        dispatcher = MagicMock()
        dispatcher.config.sla_notify_role = "hil_operator"
        dispatcher.config.app_base_url = ""
        dispatcher.dispatch.side_effect = RuntimeError("dispatch exploded")

        done = svc.complete_task(task.id, dispatcher=dispatcher)

        assert done.status == "COMPLETED"
        assert _reload(task.id).status == "COMPLETED"
        dispatcher.dispatch.assert_called_once()
