"""
Workflow SLA Engine
Workflow Lifecycle Service.

Manages workflow status transitions with:
  - Transition validation (single static table, single lookup point)
  - Optimistic concurrency: conditional UPDATE on the status that was read
  - Audit trail (one AuditEvent per successful transition, best-effort)
  - Orchestrator trigger on ``start`` (best-effort)

6 actions:
  start, pause, resume, complete, cancel, retry

Cancel does not have its own status: the workflow moves to BLOCKED and
``metadata.cancelled`` is set. ``resume`` and ``retry`` clear the flag.

Usage:
    from workflow_engine.services.workflow_lifecycle import request_action

    wf = request_action(workflow_id, "complete", {"comment": "done"}, actor="alice")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from flask import current_app, has_app_context
from sqlalchemy import select, update

from workflow_engine.core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from workflow_engine.models import db
from workflow_engine.models.task import TaskExecution
from workflow_engine.models.workflow import Priority, Workflow, WorkflowStatus, WorkflowType
from workflow_engine.services import audit_recorder
from workflow_engine.services.sla import validate_sla_hours
from workflow_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class WorkflowAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RETRY = "retry"


S = WorkflowStatus

# Workflow transition rules
WORKFLOW_TRANSITIONS: dict[WorkflowAction, dict] = {
    WorkflowAction.START: {"from": (S.PENDING,), "to": S.IN_PROGRESS},
    WorkflowAction.PAUSE: {"from": (S.IN_PROGRESS,), "to": S.BLOCKED},
    WorkflowAction.RESUME: {"from": (S.BLOCKED,), "to": S.IN_PROGRESS},
    WorkflowAction.COMPLETE: {"from": (S.IN_PROGRESS, S.AWAITING_REVIEW), "to": S.COMPLETED},
    WorkflowAction.CANCEL: {
        "from": (S.PENDING, S.IN_PROGRESS, S.AWAITING_REVIEW, S.BLOCKED),
        "to": S.BLOCKED,
    },
    WorkflowAction.RETRY: {"from": (S.FAILED, S.BLOCKED), "to": S.PENDING},
}

_CANCEL_KEYS = ("cancelled", "cancelled_at", "cancelled_by", "cancel_reason")
_PAYLOAD_STRING_FIELDS = ("reason", "comment")


@dataclass
class SideEffectOutcome:
    name: str
    ok: bool
    error: str | None = None


@dataclass
class TransitionResult:
    """Outcome of a successful transition.

    The status change is already committed; ``side_effects`` report the
    best-effort follow-ups separately.
    """

    workflow: Workflow
    action: WorkflowAction
    previous_status: WorkflowStatus
    new_status: WorkflowStatus
    side_effects: list[SideEffectOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow.to_dict(),
            "action": self.action.value,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "side_effects": [
                {"name": s.name, "ok": s.ok, "error": s.error} for s in self.side_effects
            ],
        }


# ── Validation ───────────────────────────────────────────────────────────────


def parse_action(action: str | WorkflowAction) -> WorkflowAction:
    if isinstance(action, WorkflowAction):
        return action
    try:
        return WorkflowAction(str(action).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown workflow action: {action}",
            details={"action": action, "allowed": [a.value for a in WorkflowAction]},
        )


def parse_status(status: str | WorkflowStatus) -> WorkflowStatus:
    if isinstance(status, WorkflowStatus):
        return status
    try:
        return WorkflowStatus(str(status))
    except ValueError:
        raise ValidationError(f"Unknown workflow status: {status}", details={"status": status})


def validate_payload(payload: Any) -> dict:
    """Return the payload as a dict; reject non-mappings and non-string text fields."""
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValidationError("Action payload must be an object",
                              details={"payload": type(payload).__name__})
    for key in _PAYLOAD_STRING_FIELDS:
        value = payload.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"'{key}' must be a string", details={key: repr(value)})
    return dict(payload)


def attempt(current_status, action, payload: Any = None) -> WorkflowStatus:
    """Pure transition check: return the resulting status or raise ValidationError."""
    act = parse_action(action)
    current = parse_status(current_status)
    validate_payload(payload)
    rule = WORKFLOW_TRANSITIONS[act]
    if current not in rule["from"]:
        raise ValidationError(
            f"Cannot {act.value} workflow with status {current.value}",
            details={
                "action": act.value,
                "current_status": current.value,
                "allowed_from": [s.value for s in rule["from"]],
            },
        )
    return rule["to"]


def get_available_actions(status) -> list[str]:
    """List actions valid from the given status."""
    current = parse_status(status)
    return [a.value for a, rule in WORKFLOW_TRANSITIONS.items() if current in rule["from"]]


# ── Metadata rules ───────────────────────────────────────────────────────────


def _next_metadata(metadata: dict, act: WorkflowAction, payload: dict, actor: str, now) -> dict | None:
    """Metadata to write alongside the status, or None when unchanged."""
    if act is WorkflowAction.CANCEL:
        updated = dict(metadata)
        updated.update({
            "cancelled": True,
            "cancelled_at": now.isoformat(),
            "cancelled_by": actor,
        })
        if payload.get("reason"):
            updated["cancel_reason"] = payload["reason"]
        return updated
    if act in (WorkflowAction.RESUME, WorkflowAction.RETRY) and metadata.get("cancelled"):
        return {k: v for k, v in metadata.items() if k not in _CANCEL_KEYS}
    return None


# ── Operations ───────────────────────────────────────────────────────────────


def get_workflow(workflow_id: str) -> Workflow:
    wf = db.session.get(Workflow, workflow_id)
    if not wf:
        raise NotFoundError(resource="Workflow", resource_id=workflow_id)
    return wf


def perform_action(
    workflow_id: str,
    action: str | WorkflowAction,
    payload: Any = None,
    *,
    actor: str = "system",
    actor_type: str = "human",
    expected_status: str | WorkflowStatus | None = None,
    gateway=None,
    clock: Callable = utc_now,
) -> TransitionResult:
    """
    Apply ``action`` to a workflow.

    Args:
        expected_status: status the caller last saw; when given, the
            conditional write is made against it instead of a fresh read.
        gateway: orchestrator gateway override (defaults to the app's).

    Raises:
        NotFoundError: workflow does not exist.
        ValidationError: action not valid from the current status, or bad payload.
        ConcurrencyConflict: status changed between read and write.
    """
    act = parse_action(action)
    body = validate_payload(payload)
    wf = get_workflow(workflow_id)

    current = parse_status(expected_status if expected_status is not None else wf.status)
    try:
        new_status = attempt(current, act, body)
    except ValidationError:
        logger.info("Rejected workflow action %s from %s", act.value, current.value,
                    extra={"workflow_id": workflow_id, "action": act.value})
        raise

    now = clock()
    values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
    if act is WorkflowAction.COMPLETE and wf.completed_at is None:
        values["completed_at"] = now
    new_metadata = _next_metadata(wf.metadata_dict, act, body, actor, now)
    if new_metadata is not None:
        values["metadata_json"] = new_metadata

    result = db.session.execute(
        update(Workflow)
        .where(Workflow.id == workflow_id, Workflow.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        actual = db.session.execute(
            select(Workflow.status).where(Workflow.id == workflow_id)
        ).scalar_one_or_none()
        if actual is None:
            raise NotFoundError(resource="Workflow", resource_id=workflow_id)
        logger.info("Lost status race on %s: expected %s, found %s",
                    act.value, current.value, actual,
                    extra={"workflow_id": workflow_id, "action": act.value})
        raise ConcurrencyConflict("Workflow", workflow_id, current.value, actual)

    audit_recorder.record(
        actor=actor,
        actor_type=actor_type,
        action=f"workflow.{act.value}",
        resource_type="workflow",
        resource_id=workflow_id,
        workflow_id=workflow_id,
        before=current.value,
        after=new_status.value,
        metadata={k: v for k, v in body.items() if k in _PAYLOAD_STRING_FIELDS},
    )
    db.session.commit()
    db.session.refresh(wf)

    logger.info("Workflow %s: %s -> %s", act.value, current.value, new_status.value,
                extra={"workflow_id": workflow_id, "action": act.value,
                       "event_type": "workflow_transition"})

    outcome = TransitionResult(
        workflow=wf, action=act, previous_status=current, new_status=new_status,
    )
    if act is WorkflowAction.START:
        outcome.side_effects.append(_trigger_orchestrator(wf, gateway))
    return outcome


def request_action(workflow_id: str, action: str, payload: Any = None, actor: str = "system",
                   **kwargs) -> Workflow:
    """Outward entry point: apply the action and return the updated workflow."""
    return perform_action(workflow_id, action, payload, actor=actor, **kwargs).workflow


def _resolve_gateway(gateway):
    if gateway is not None:
        return gateway
    if has_app_context():
        return current_app.extensions.get("orchestrator_gateway")
    return None


def _trigger_orchestrator(wf: Workflow, gateway) -> SideEffectOutcome:
    """Kick off the external flow; failures are recorded on the workflow, never raised."""
    gw = _resolve_gateway(gateway)
    if gw is None:
        return SideEffectOutcome("orchestrator", ok=False, error="not configured")

    try:
        result = gw.trigger_workflow(wf)
    except Exception as exc:
        logger.warning("Orchestrator trigger raised: %s", exc, exc_info=True,
                       extra={"workflow_id": wf.id, "dependency": "orchestrator"})
        result = None
        error = str(exc)
    else:
        error = result.error

    try:
        if result is not None and result.ok:
            wf.orchestrator_status = "triggered"
            wf.orchestrator_execution_id = result.execution_id
        else:
            wf.orchestrator_status = "disabled" if error == "disabled" else "error"
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.warning("Could not record orchestrator status", exc_info=True,
                       extra={"workflow_id": wf.id})

    if result is not None and result.ok:
        return SideEffectOutcome("orchestrator", ok=True)
    if error != "disabled":
        logger.warning("Orchestrator trigger failed: %s", error,
                       extra={"workflow_id": wf.id, "dependency": "orchestrator"})
    return SideEffectOutcome("orchestrator", ok=False, error=error)


def create_workflow(
    workflow_type: str,
    title: str = "",
    *,
    created_by: str = "system",
    priority: str = Priority.NORMAL.value,
    metadata: dict | None = None,
    assigned_to: str | None = None,
    due_date=None,
    tasks: list[dict] | None = None,
) -> Workflow:
    """Create a PENDING workflow, optionally with its tasks.

    Each task dict accepts ``title``, ``task_type``, ``executor_type`` and
    ``sla_hours``; tasks are ordered as given.
    """
    try:
        wf_type = WorkflowType(workflow_type)
    except ValueError:
        raise ValidationError(f"Unknown workflow type: {workflow_type}",
                              details={"workflow_type": workflow_type})
    try:
        prio = Priority(priority)
    except ValueError:
        raise ValidationError(f"Unknown priority: {priority}", details={"priority": priority})

    task_rows = []
    for order, task_def in enumerate(tasks or []):
        if not task_def.get("title"):
            raise ValidationError("Task title is required", details={"index": order})
        sla_hours = task_def.get("sla_hours")
        task_rows.append(TaskExecution(
            title=task_def["title"],
            task_type=task_def.get("task_type", "generic"),
            executor_type=task_def.get("executor_type", "AI"),
            sequence_order=order,
            sla_hours=validate_sla_hours(sla_hours) if sla_hours is not None else None,
        ))

    # Nothing enters the session until every task definition is valid
    wf = Workflow(
        workflow_type=wf_type.value,
        title=title or wf_type.value.replace("_", " ").title(),
        status=WorkflowStatus.PENDING.value,
        priority=prio.value,
        metadata_json=dict(metadata or {}),
        created_by=created_by,
        assigned_to=assigned_to,
        due_date=due_date,
        tasks=task_rows,
    )
    db.session.add(wf)
    db.session.flush()
    audit_recorder.record(
        actor=created_by,
        action="workflow.create",
        resource_type="workflow",
        resource_id=wf.id,
        workflow_id=wf.id,
        after=WorkflowStatus.PENDING.value,
        metadata={"workflow_type": wf_type.value, "task_count": len(wf.tasks)},
    )
    db.session.commit()
    logger.info("Workflow created type=%s tasks=%d", wf_type.value, len(wf.tasks),
                extra={"workflow_id": wf.id})
    return wf


def delete_workflow(workflow_id: str, *, actor: str = "system") -> None:
    """Delete a workflow that is finished: COMPLETED, FAILED, or cancelled."""
    wf = get_workflow(workflow_id)
    deletable = wf.status in (S.COMPLETED.value, S.FAILED.value) or wf.is_cancelled
    if not deletable:
        raise ValidationError(
            f"Cannot delete workflow with status {wf.status}",
            details={"status": wf.status, "cancelled": wf.is_cancelled},
        )
    before = wf.status
    db.session.delete(wf)
    db.session.flush()
    audit_recorder.record(
        actor=actor,
        action="workflow.delete",
        resource_type="workflow",
        resource_id=workflow_id,
        workflow_id=workflow_id,
        before=before,
        after=None,
    )
    db.session.commit()
    logger.info("Workflow deleted", extra={"workflow_id": workflow_id})
