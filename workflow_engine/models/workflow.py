"""
Workflow SLA Engine
Workflow domain model.

Models:
    - Workflow: long-lived unit of work that owns an ordered set of tasks.

Cancellation is not a status of its own: a cancelled workflow sits in
BLOCKED with ``metadata["cancelled"] = True``.
"""

from enum import Enum

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, new_uuid, utc_now


# ── Enumerations ─────────────────────────────────────────────────────────────


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WorkflowType(str, Enum):
    PAYOFF = "PAYOFF"
    HOA_ACQUISITION = "HOA_ACQUISITION"
    LIEN_SEARCH = "LIEN_SEARCH"


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class Workflow(db.Model):
    """
    A workflow instance moving through the lifecycle table in
    ``services.workflow_lifecycle``.

    ``status`` is written only through the conditional UPDATE in that
    module; ``completed_at`` is set exactly when status becomes COMPLETED.
    """

    __tablename__ = "workflows"
    __table_args__ = (
        db.Index("idx_workflow_status", "status"),
        db.Index("idx_workflow_assigned", "assigned_to"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    workflow_type = db.Column(db.String(40), nullable=False,
                              comment="PAYOFF | HOA_ACQUISITION | LIEN_SEARCH")
    title = db.Column(db.String(255), nullable=False, default="")
    status = db.Column(db.String(30), nullable=False,
                       default=WorkflowStatus.PENDING.value)
    priority = db.Column(db.String(10), nullable=False, default=Priority.NORMAL.value)
    metadata_json = db.Column("metadata", db.JSON, default=dict,
                              comment="Free-form attributes; carries the cancelled flag")

    created_by = db.Column(db.String(150), nullable=True)
    assigned_to = db.Column(db.String(150), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # External orchestrator tracking
    orchestrator_execution_id = db.Column(db.String(100), nullable=True)
    orchestrator_status = db.Column(db.String(20), nullable=True,
                                    comment="triggered | error | disabled")

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    tasks = db.relationship(
        "TaskExecution",
        back_populates="workflow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TaskExecution.sequence_order",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def metadata_dict(self) -> dict:
        return dict(self.metadata_json or {})

    @property
    def is_cancelled(self) -> bool:
        return (
            self.status == WorkflowStatus.BLOCKED.value
            and bool(self.metadata_dict.get("cancelled"))
        )

    def to_dict(self, include_tasks: bool = False) -> dict:
        d = {
            "id": self.id,
            "workflow_type": self.workflow_type,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "metadata": self.metadata_dict,
            "is_cancelled": self.is_cancelled,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "due_date": isoformat(self.due_date),
            "completed_at": isoformat(self.completed_at),
            "orchestrator_execution_id": self.orchestrator_execution_id,
            "orchestrator_status": self.orchestrator_status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def __repr__(self):
        return f"<Workflow {self.id} {self.workflow_type} [{self.status}]>"
