"""
Workflow SLA Engine
Audit Recorder.

Best-effort wrapper around ``write_audit``. Each insert runs inside a
SAVEPOINT so a failing audit write rolls back only itself; the caller's
business change stays in the outer transaction and commits normally.

Usage:
    from workflow_engine.services.audit_recorder import record

    record(actor="alice", action="workflow.start", resource_type="workflow",
           resource_id=wf.id, before="PENDING", after="IN_PROGRESS")
"""

import logging

from sqlalchemy import select

from workflow_engine.core.exceptions import AuditWriteFailure
from workflow_engine.models import db
from workflow_engine.models.audit import AuditEvent, write_audit

logger = logging.getLogger(__name__)


def record(
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: str,
    actor_type: str = "human",
    workflow_id: str | None = None,
    before=None,
    after=None,
    metadata: dict | None = None,
) -> AuditEvent | None:
    """Append one audit row; on failure log it and return None."""
    try:
        with db.session.begin_nested():
            return write_audit(
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
                actor=actor,
                actor_type=actor_type,
                workflow_id=workflow_id,
                before=before,
                after=after,
                metadata=metadata,
            )
    except Exception as exc:
        failure = AuditWriteFailure(action, resource_type, resource_id, exc)
        logger.warning(
            "%s", failure,
            exc_info=True,
            extra={"event_type": "audit_write_failure", "workflow_id": workflow_id},
        )
        return None


def list_events(resource_type: str | None = None, resource_id: str | None = None,
                workflow_id: str | None = None, limit: int = 200) -> list[AuditEvent]:
    """Read the audit trail, oldest first."""
    stmt = select(AuditEvent)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == str(resource_id))
    if workflow_id:
        stmt = stmt.where(AuditEvent.workflow_id == workflow_id)
    stmt = stmt.order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc()).limit(limit)
    return list(db.session.execute(stmt).scalars())
