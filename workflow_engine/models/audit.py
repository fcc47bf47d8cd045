"""
Workflow SLA Engine
Audit domain model.

Models:
    - AuditEvent: immutable, append-only audit trail for state mutations.
"""

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, utc_now

# ── Constants ────────────────────────────────────────────────────────────────

ACTOR_TYPES = {"human", "agent", "system"}

AUDIT_ACTIONS = {
    # Workflow lifecycle
    "workflow.create",
    "workflow.start",
    "workflow.pause",
    "workflow.resume",
    "workflow.complete",
    "workflow.cancel",
    "workflow.retry",
    "workflow.delete",
    # Task lifecycle
    "task.start",
    "task.submit_for_review",
    "task.complete",
    "task.fail",
    "task.retry",
    "task.configure_sla",
    "task.sla_breach",
}


class AuditEvent(db.Model):
    """
    One row per successful state mutation.

    ``before`` / ``after`` carry the status (or field snapshot) on each
    side of the change; ``metadata`` holds action-specific context.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("idx_audit_resource", "resource_type", "resource_id"),
        db.Index("idx_audit_workflow", "workflow_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_created", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_type = db.Column(db.String(10), nullable=False, default="system",
                           comment="human | agent | system")
    action = db.Column(db.String(60), nullable=False,
                       comment="workflow.start | task.sla_breach | ...")
    resource_type = db.Column(db.String(30), nullable=False,
                              comment="workflow | task")
    resource_id = db.Column(db.String(36), nullable=False)
    # No FK: audit rows outlive deleted workflows.
    workflow_id = db.Column(db.String(36), nullable=True)
    before = db.Column(db.JSON, nullable=True)
    after = db.Column(db.JSON, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "actor_type": self.actor_type,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "workflow_id": self.workflow_id,
            "before": self.before,
            "after": self.after,
            "metadata": dict(self.metadata_json or {}),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<AuditEvent {self.id}: {self.action} on {self.resource_type}/{self.resource_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    resource_type: str,
    resource_id: str,
    action: str,
    actor: str = "system",
    actor_type: str = "system",
    workflow_id: str | None = None,
    before=None,
    after=None,
    metadata: dict | None = None,
) -> AuditEvent:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditEvent instance.
    """
    if actor_type not in ACTOR_TYPES:
        actor_type = "system"

    event = AuditEvent(
        actor=actor or "system",
        actor_type=actor_type,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        workflow_id=workflow_id,
        before=before,
        after=after,
        metadata_json=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
