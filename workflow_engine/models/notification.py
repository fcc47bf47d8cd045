"""
Workflow SLA Engine
Notification model.

One row per (event, target user). Rows are append-only apart from the
read/unread toggle; ``show_popup`` records the preference-filter outcome
at dispatch time.
"""

from enum import Enum

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, utc_now


class NotificationType(str, Enum):
    SLA_WARNING = "SLA_WARNING"
    TASK_INTERRUPT = "TASK_INTERRUPT"
    WORKFLOW_UPDATE = "WORKFLOW_UPDATE"
    AGENT_FAILURE = "AGENT_FAILURE"
    MENTION = "MENTION"
    TASK_COMPLETION = "TASK_COMPLETION"
    CLIENT_MESSAGE_RECEIVED = "CLIENT_MESSAGE_RECEIVED"
    COUNTERPARTY_MESSAGE_RECEIVED = "COUNTERPARTY_MESSAGE_RECEIVED"


class Notification(db.Model):
    """In-app notification addressed to a single user."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("user_id", "dedup_key", name="uq_notification_user_dedup"),
        db.Index("idx_notification_user_created", "user_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False)
    type = db.Column(db.String(40), nullable=False)
    priority = db.Column(db.String(10), nullable=False, default="NORMAL")
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, default="")
    action_url = db.Column(db.String(500), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)

    show_popup = db.Column(db.Boolean, nullable=False, default=False)
    read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dedup_key = db.Column(db.String(120), nullable=True,
                          comment="e.g. sla-breach:<task_id>; unique per user")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    def mark_read(self, now=None):
        self.read = True
        self.read_at = now or utc_now()

    def mark_unread(self):
        self.read = False
        self.read_at = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "action_url": self.action_url,
            "metadata": dict(self.metadata_json or {}),
            "show_popup": self.show_popup,
            "read": self.read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id} {self.type} -> {self.user_id}>"
