"""
Workflow SLA Engine
Task execution model.

Models:
    - TaskExecution: one step of a workflow, executed by an agent or a human,
      carrying its own SLA clock.

SLA columns:
    sla_hours     configured budget (NULL = unconfigured, fallback policy applies)
    sla_due_at    started_at + sla_hours, written once when the task starts
    sla_status    ON_TIME -> BREACHED, flipped exactly once by the breach scanner
"""

from enum import Enum

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, new_uuid, utc_now


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExecutorType(str, Enum):
    AI = "AI"
    HUMAN = "HUMAN"


class SlaStatus(str, Enum):
    ON_TIME = "ON_TIME"
    BREACHED = "BREACHED"


class InterruptType(str, Enum):
    MISSING_DOCUMENT = "MISSING_DOCUMENT"
    CLIENT_CLARIFICATION = "CLIENT_CLARIFICATION"
    MANUAL_VERIFICATION = "MANUAL_VERIFICATION"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"


class TaskExecution(db.Model):
    """A single task inside a workflow."""

    __tablename__ = "task_executions"
    __table_args__ = (
        db.CheckConstraint("sla_hours IS NULL OR sla_hours > 0", name="ck_task_sla_hours_positive"),
        db.Index("idx_task_sla_scan", "sla_status", "sla_due_at"),
        db.Index("idx_task_workflow", "workflow_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    title = db.Column(db.String(255), nullable=False)
    task_type = db.Column(db.String(60), nullable=False, default="generic")
    sequence_order = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default=TaskStatus.PENDING.value)
    interrupt_type = db.Column(db.String(40), nullable=True)
    executor_type = db.Column(db.String(10), nullable=False, default=ExecutorType.AI.value)

    # SLA tracking
    sla_hours = db.Column(db.Float, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sla_due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sla_status = db.Column(db.String(20), nullable=False, default=SlaStatus.ON_TIME.value)
    sla_breached_at = db.Column(db.DateTime(timezone=True), nullable=True)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    output_data = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    workflow = db.relationship("Workflow", back_populates="tasks")

    @property
    def is_breached(self) -> bool:
        return self.sla_status == SlaStatus.BREACHED.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "title": self.title,
            "task_type": self.task_type,
            "sequence_order": self.sequence_order,
            "status": self.status,
            "interrupt_type": self.interrupt_type,
            "executor_type": self.executor_type,
            "sla_hours": self.sla_hours,
            "started_at": isoformat(self.started_at),
            "sla_due_at": isoformat(self.sla_due_at),
            "sla_status": self.sla_status,
            "sla_breached_at": isoformat(self.sla_breached_at),
            "retry_count": self.retry_count,
            "output_data": self.output_data,
            "error_message": self.error_message,
            "completed_at": isoformat(self.completed_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<TaskExecution {self.id} {self.task_type} [{self.status}/{self.sla_status}]>"
