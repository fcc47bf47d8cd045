"""
Workflow SLA Engine
Task Lifecycle Service.

Moves tasks through their statuses and owns the SLA clock columns:

  start              PENDING -> IN_PROGRESS; stamps started_at and, when
                     sla_hours is configured, sla_due_at = started_at + sla_hours
  submit_for_review  IN_PROGRESS -> AWAITING_REVIEW (human interrupt)
  complete           IN_PROGRESS | AWAITING_REVIEW -> COMPLETED
  fail               PENDING | IN_PROGRESS | AWAITING_REVIEW -> FAILED
  retry              FAILED -> PENDING; clears the SLA clock, keeps sla_status

sla_status is never written here; only the breach scanner flips it.
Lifecycle notifications (interrupt, completion, agent failure) are
best-effort and sent after the status change is committed.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from flask import current_app, has_app_context
from sqlalchemy import select, update

from workflow_engine.core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from workflow_engine.models import db
from workflow_engine.models.notification import NotificationType
from workflow_engine.models.task import ExecutorType, InterruptType, TaskExecution, TaskStatus
from workflow_engine.models.workflow import Priority
from workflow_engine.services import audit_recorder, sla
from workflow_engine.services.notification import Audience, NotificationEvent
from workflow_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)

T = TaskStatus

# Task transition rules
TASK_TRANSITIONS = {
    "start": {"from": [T.PENDING], "to": T.IN_PROGRESS},
    "submit_for_review": {"from": [T.IN_PROGRESS], "to": T.AWAITING_REVIEW},
    "complete": {"from": [T.IN_PROGRESS, T.AWAITING_REVIEW], "to": T.COMPLETED},
    "fail": {"from": [T.PENDING, T.IN_PROGRESS, T.AWAITING_REVIEW], "to": T.FAILED},
    "retry": {"from": [T.FAILED], "to": T.PENDING},
}


def get_task(task_id: str) -> TaskExecution:
    task = db.session.get(TaskExecution, task_id)
    if not task:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def validate_task_transition(task: TaskExecution, action: str) -> T:
    rule = TASK_TRANSITIONS.get(action)
    if rule is None:
        raise ValidationError(f"Unknown task action: {action}",
                              details={"allowed": sorted(TASK_TRANSITIONS)})
    if task.status not in [s.value for s in rule["from"]]:
        raise ValidationError(
            f"Cannot {action} task with status {task.status}",
            details={"action": action, "current_status": task.status},
        )
    return rule["to"]


def _transition(task: TaskExecution, action: str, values: dict, *, actor: str,
                actor_type: str, metadata: dict | None = None) -> TaskExecution:
    """Conditional status write + audit + commit."""
    new_status = validate_task_transition(task, action)
    previous = task.status
    values = {"status": new_status.value, **values}

    result = db.session.execute(
        update(TaskExecution)
        .where(TaskExecution.id == task.id, TaskExecution.status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        actual = db.session.execute(
            select(TaskExecution.status).where(TaskExecution.id == task.id)
        ).scalar_one_or_none()
        if actual is None:
            raise NotFoundError(resource="Task", resource_id=task.id)
        raise ConcurrencyConflict("Task", task.id, previous, actual)

    audit_recorder.record(
        actor=actor,
        actor_type=actor_type,
        action=f"task.{action}",
        resource_type="task",
        resource_id=task.id,
        workflow_id=task.workflow_id,
        before=previous,
        after=new_status.value,
        metadata=metadata,
    )
    db.session.commit()
    db.session.refresh(task)
    logger.info("Task %s: %s -> %s", action, previous, new_status.value,
                extra={"task_id": task.id, "workflow_id": task.workflow_id, "action": action})
    return task


# ── Notifications ────────────────────────────────────────────────────────────


def _resolve_dispatcher(dispatcher):
    if dispatcher is not None:
        return dispatcher
    if has_app_context():
        return current_app.extensions.get("notification_dispatcher")
    return None


def _notify(dispatcher, event: NotificationEvent, task: TaskExecution) -> None:
    """Send a lifecycle notification; failures are logged only."""
    disp = _resolve_dispatcher(dispatcher)
    if disp is None:
        return
    try:
        disp.dispatch(event)
    except Exception:
        db.session.rollback()
        logger.warning("Lifecycle notification failed", exc_info=True,
                       extra={"task_id": task.id, "event_type": str(event.type.value)})


def _audience_for(task: TaskExecution, notify_role: str) -> Audience:
    assignee = task.workflow.assigned_to if task.workflow else None
    return Audience(roles=(notify_role,), user_ids=(assignee,) if assignee else ())


def _notify_role(dispatcher) -> str:
    disp = _resolve_dispatcher(dispatcher)
    return disp.config.sla_notify_role if disp is not None else "hil_operator"


def _action_url(dispatcher, task: TaskExecution) -> str:
    disp = _resolve_dispatcher(dispatcher)
    base = disp.config.app_base_url if disp is not None else ""
    return f"{base}/workflow/{task.workflow_id}"


# ── Operations ───────────────────────────────────────────────────────────────


def start_task(task_id: str, *, actor: str = "system", actor_type: str = "agent",
               clock: Callable = utc_now) -> TaskExecution:
    """Start a task and, for configured tasks, fix its SLA deadline."""
    task = get_task(task_id)
    now = clock()
    values: dict[str, Any] = {"started_at": now, "updated_at": now}
    due = sla.due_at(now, task.sla_hours) if task.sla_hours is not None else None
    if due is not None:
        values["sla_due_at"] = due
    return _transition(task, "start", values, actor=actor, actor_type=actor_type,
                       metadata={"sla_due_at": due.isoformat() if due else None})


def submit_for_review(task_id: str, interrupt_type: str | None = None, *, reason: str = "",
                      actor: str = "system", actor_type: str = "agent",
                      dispatcher=None, clock: Callable = utc_now) -> TaskExecution:
    """Hand a task to a human reviewer and raise a TASK_INTERRUPT notification."""
    if interrupt_type is not None:
        try:
            interrupt_type = InterruptType(interrupt_type).value
        except ValueError:
            raise ValidationError(f"Unknown interrupt type: {interrupt_type}",
                                  details={"allowed": [i.value for i in InterruptType]})
    task = get_task(task_id)
    task = _transition(
        task, "submit_for_review",
        {"interrupt_type": interrupt_type, "updated_at": clock()},
        actor=actor, actor_type=actor_type,
        metadata={"interrupt_type": interrupt_type, "reason": reason},
    )
    _notify(dispatcher, NotificationEvent(
        type=NotificationType.TASK_INTERRUPT,
        priority=Priority.HIGH,
        title="Task requires attention",
        message=f'Task "{task.title}" needs review' + (f": {reason}" if reason else ""),
        audience=_audience_for(task, _notify_role(dispatcher)),
        action_url=_action_url(dispatcher, task),
        metadata={"task_id": task.id, "workflow_id": task.workflow_id,
                  "interrupt_type": interrupt_type},
    ), task)
    return task


def complete_task(task_id: str, output_data: dict | None = None, *, actor: str = "system",
                  actor_type: str = "agent", dispatcher=None,
                  clock: Callable = utc_now) -> TaskExecution:
    if output_data is not None and not isinstance(output_data, dict):
        raise ValidationError("output_data must be an object")
    task = get_task(task_id)
    now = clock()
    task = _transition(
        task, "complete",
        {"completed_at": now, "output_data": output_data, "interrupt_type": None, "updated_at": now},
        actor=actor, actor_type=actor_type,
    )
    _notify(dispatcher, NotificationEvent(
        type=NotificationType.TASK_COMPLETION,
        priority=Priority.NORMAL,
        title="Task completed",
        message=f'Task "{task.title}" completed',
        audience=_audience_for(task, _notify_role(dispatcher)),
        action_url=_action_url(dispatcher, task),
        metadata={"task_id": task.id, "workflow_id": task.workflow_id},
    ), task)
    return task


def fail_task(task_id: str, error_message: str, *, actor: str = "system", actor_type: str = "agent",
              dispatcher=None, clock: Callable = utc_now) -> TaskExecution:
    """Mark a task failed; agent failures raise AGENT_FAILURE, human ones WORKFLOW_UPDATE."""
    if not error_message:
        raise ValidationError("error_message is required")
    task = get_task(task_id)
    task = _transition(
        task, "fail", {"error_message": error_message, "updated_at": clock()},
        actor=actor, actor_type=actor_type, metadata={"error_message": error_message[:500]},
    )
    is_agent = task.executor_type == ExecutorType.AI.value
    _notify(dispatcher, NotificationEvent(
        type=NotificationType.AGENT_FAILURE if is_agent else NotificationType.WORKFLOW_UPDATE,
        priority=Priority.HIGH,
        title="Agent failure" if is_agent else "Task failed",
        message=f'Task "{task.title}" failed: {error_message[:200]}',
        audience=_audience_for(task, _notify_role(dispatcher)),
        action_url=_action_url(dispatcher, task),
        metadata={"task_id": task.id, "workflow_id": task.workflow_id,
                  "retry_count": task.retry_count},
    ), task)
    return task


def retry_task(task_id: str, *, actor: str = "system", actor_type: str = "human",
               clock: Callable = utc_now) -> TaskExecution:
    """Return a failed task to PENDING. The SLA clock restarts on the next start;
    a breach already recorded stays recorded."""
    task = get_task(task_id)
    return _transition(
        task, "retry",
        {
            "retry_count": (task.retry_count or 0) + 1,
            "started_at": None,
            "sla_due_at": None,
            "error_message": None,
            "updated_at": clock(),
        },
        actor=actor, actor_type=actor_type,
        metadata={"retry_count": (task.retry_count or 0) + 1},
    )


def configure_task_sla(task_id: str, sla_hours, *, actor: str = "system",
                       actor_type: str = "human") -> TaskExecution:
    """Back-fill an SLA budget on a task.

    A task that already started gets its deadline computed from the original
    ``started_at``. A deadline that was already fixed cannot be changed.
    A task already BREACHED stays BREACHED.
    """
    hours = sla.validate_sla_hours(sla_hours)
    task = get_task(task_id)
    if task.sla_due_at is not None:
        raise ValidationError("SLA deadline is already fixed for this task",
                              details={"sla_due_at": task.sla_due_at.isoformat()})
    if task.status == TaskStatus.COMPLETED.value:
        raise ValidationError("Cannot configure SLA on a completed task")

    before = {"sla_hours": task.sla_hours, "sla_due_at": None}
    task.sla_hours = hours
    if task.started_at is not None:
        task.sla_due_at = sla.due_at(task.started_at, hours)
    db.session.flush()
    audit_recorder.record(
        actor=actor,
        actor_type=actor_type,
        action="task.configure_sla",
        resource_type="task",
        resource_id=task.id,
        workflow_id=task.workflow_id,
        before=before,
        after={"sla_hours": hours,
               "sla_due_at": task.sla_due_at.isoformat() if task.sla_due_at else None},
    )
    db.session.commit()
    logger.info("Task SLA configured: %sh", hours, extra={"task_id": task.id})
    return task
