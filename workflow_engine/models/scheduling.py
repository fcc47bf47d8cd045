"""
Workflow SLA Engine
Scheduling & Notification Preference models.

Models:
    - NotificationPreference: Per-user popup matrix (priority + type toggles)
    - ScheduledJob: Persisted schedule registry (run history + config)
"""

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, utc_now


# ── Constants ────────────────────────────────────────────────────────────────

PREFERENCE_FIELDS = (
    "show_popups_for_urgent",
    "show_popups_for_high",
    "show_popups_for_normal",
    "show_popups_for_low",
    "enable_task_interrupts",
    "enable_workflow_failures",
    "enable_task_completions",
    "enable_sla_warnings",
)


class NotificationPreference(db.Model):
    """
    Per-user popup preferences.

    Every notification is persisted; these flags only decide whether it
    is surfaced as an interruptive popup. A user without a row gets the
    engine defaults (see ``config.PopupDefaults``).
    """

    __tablename__ = "notification_preferences"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, unique=True, index=True,
                        comment="Username or user identifier")

    # Priority matrix
    show_popups_for_urgent = db.Column(db.Boolean, nullable=False, default=True)
    show_popups_for_high = db.Column(db.Boolean, nullable=False, default=True)
    show_popups_for_normal = db.Column(db.Boolean, nullable=False, default=False)
    show_popups_for_low = db.Column(db.Boolean, nullable=False, default=False)

    # Type toggles
    enable_task_interrupts = db.Column(db.Boolean, nullable=False, default=True)
    enable_workflow_failures = db.Column(db.Boolean, nullable=False, default=True,
                                         comment="Covers WORKFLOW_UPDATE and AGENT_FAILURE")
    enable_task_completions = db.Column(db.Boolean, nullable=False, default=False)
    enable_sla_warnings = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self):
        d = {"id": self.id, "user_id": self.user_id}
        for field in PREFERENCE_FIELDS:
            d[field] = getattr(self, field)
        d["created_at"] = isoformat(self.created_at)
        d["updated_at"] = isoformat(self.updated_at)
        return d

    def __repr__(self):
        return f"<NotificationPreference {self.user_id}>"


class ScheduledJob(db.Model):
    """
    One row per registered background job.

    ``schedule_config["interval_minutes"]`` decides when the scheduler loop
    runs the job next; the ``last_run_*`` columns and counters are its run
    history. Pausing a job flips ``is_enabled`` and ``status`` together.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Name passed to @register_job")
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment='e.g. {"interval_minutes": 15, "description": "..."}')
    status = db.Column(db.String(20), default="active", comment="active | paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True,
                                comment="Job return value, e.g. breach scan counts")
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    _PLAIN_FIELDS = (
        "id", "job_name", "description", "schedule_type", "schedule_config",
        "status", "is_enabled", "last_run_status", "last_run_duration_ms",
        "last_run_result", "run_count", "error_count", "last_error",
    )

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        self.run_count = (self.run_count or 0) + 1
        self.last_run_at = utc_now()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        data = {name: getattr(self, name) for name in self._PLAIN_FIELDS}
        for name in ("last_run_at", "created_at", "updated_at"):
            data[name] = isoformat(getattr(self, name))
        return data

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} {self.status} runs={self.run_count}>"
