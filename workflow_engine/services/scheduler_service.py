"""
Workflow SLA Engine
Scheduler Service.

Jobs are registered with ``@register_job`` and mirrored into ``scheduled_jobs``
rows that hold their interval and run history. ``run_job`` executes one job
inside an app context (CLI, tests); ``start`` drives due jobs from a daemon
thread, checking every ``tick_seconds`` whether a job's interval has elapsed.

The same job may run twice at once (two processes, or a manual run during a
tick); jobs must tolerate that.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from flask import Flask
from sqlalchemy import select

from workflow_engine.models import db
from workflow_engine.models.scheduling import ScheduledJob
from workflow_engine.utils.helpers import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobDefinition:
    name: str
    fn: Callable[[Flask], Any]
    interval_setting: str | None = None
    default_minutes: int = 60

    @property
    def summary(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else f"Scheduled job: {self.name}"

    def interval_minutes(self, app_config) -> int:
        if self.interval_setting and app_config:
            return int(app_config.get(self.interval_setting, self.default_minutes))
        return self.default_minutes


@dataclass
class JobOutcome:
    job_name: str
    status: str
    duration_ms: int = 0
    result: Any = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error": self.error,
        }

    def history_payload(self) -> dict:
        if isinstance(self.result, dict):
            return self.result
        return {"output": str(self.result)}


_definitions: dict[str, JobDefinition] = {}


def register_job(name: str, *, interval_setting: str | None = None, default_minutes: int = 60):
    """Register ``fn(app)`` as a scheduled job.

    ``interval_setting`` names the app config key holding the interval in
    minutes; without it the job runs every ``default_minutes``.
    """
    def decorator(fn):
        _definitions[name] = JobDefinition(name, fn, interval_setting, default_minutes)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return {name: d.fn for name, d in _definitions.items()}


def _get_default_schedule(job_name: str, app_config=None) -> dict:
    definition = _definitions.get(job_name)
    minutes = definition.interval_minutes(app_config) if definition else 60
    if minutes == 60:
        return {"interval_minutes": 60, "description": "Hourly"}
    return {"interval_minutes": minutes, "description": f"Every {minutes} minutes"}


def _job_row(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


def _is_due(row: ScheduledJob, now) -> bool:
    minutes = (row.schedule_config or {}).get("interval_minutes")
    if not row.is_enabled or not minutes:
        return False
    last = as_utc(row.last_run_at)
    return last is None or now - last >= timedelta(minutes=float(minutes))


class SchedulerService:
    """Class-level scheduler bound to one Flask app via ``init_app``."""

    _app: Flask | None = None
    _stop_event: threading.Event | None = None
    _thread: threading.Thread | None = None
    tick_seconds: float = 30.0

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound to app (%d jobs: %s)",
                    len(_definitions), ", ".join(sorted(_definitions)))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ``scheduled_jobs`` row for every registered job that lacks one."""
        if cls._app is None:
            return []

        with cls._app.app_context():
            missing = [d for name, d in _definitions.items() if _job_row(name) is None]
            rows = [
                ScheduledJob(
                    job_name=d.name,
                    description=d.summary,
                    schedule_type="interval",
                    schedule_config=_get_default_schedule(d.name, cls._app.config),
                    status="active",
                    is_enabled=True,
                )
                for d in missing
            ]
            if rows:
                db.session.add_all(rows)
                db.session.commit()
                logger.info("Seeded scheduled_jobs rows: %s", [d.name for d in missing])
        return rows

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job now and append the run to its history row.

        Returns a dict with ``job_name``, ``status`` (success, failed, error),
        ``duration_ms``, ``result`` and ``error``. Job exceptions are logged and
        reported as ``failed``, never raised.
        """
        definition = _definitions.get(job_name)
        if definition is None:
            return JobOutcome(job_name, "error", error=f"Unknown job: {job_name}").as_dict()
        if cls._app is None:
            return JobOutcome(job_name, "error", error="Scheduler not initialized").as_dict()

        outcome = cls._execute(definition)
        cls._record(outcome)
        return outcome.as_dict()

    @classmethod
    def _execute(cls, definition: JobDefinition) -> JobOutcome:
        started = time.monotonic()
        outcome = JobOutcome(definition.name, "success")
        try:
            with cls._app.app_context():
                outcome.result = definition.fn(cls._app)
        except Exception as exc:
            outcome.status = "failed"
            outcome.error = str(exc)
            logger.exception("Job %s failed", definition.name,
                             extra={"job_name": definition.name})
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Job %s finished: %s", definition.name, outcome.status,
                    extra={"job_name": definition.name, "duration_ms": outcome.duration_ms})
        return outcome

    @classmethod
    def _record(cls, outcome: JobOutcome) -> None:
        # A history write failure never changes the returned outcome
        try:
            with cls._app.app_context():
                row = _job_row(outcome.job_name)
                if row is None:
                    return
                row.record_run(
                    status=outcome.status,
                    duration_ms=outcome.duration_ms,
                    result=outcome.history_payload(),
                    error=outcome.error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Could not store run history for %s", outcome.job_name,
                             extra={"job_name": outcome.job_name})

    @classmethod
    def list_jobs(cls) -> list[dict]:
        listing = []
        for name in _definitions:
            row = _job_row(name)
            listing.append({
                "job_name": name,
                "registered": True,
                "db_record": row.to_dict() if row else None,
            })
        return listing

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job; None when it has no row yet."""
        row = _job_row(job_name)
        if row is None:
            return None
        row.is_enabled = enabled
        row.status = "active" if enabled else "paused"
        db.session.commit()
        return row.to_dict()

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now=None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed since their last run."""
        now = now or utc_now()
        due = []
        for name in _definitions:
            row = _job_row(name)
            if row is not None and _is_due(row, now):
                due.append(name)
        return due

    @classmethod
    def tick(cls) -> list[dict]:
        if cls._app is None:
            return []
        with cls._app.app_context():
            names = cls.due_jobs()
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls) -> None:
        """Start the daemon loop; a no-op while it is already running."""
        if cls._thread is not None and cls._thread.is_alive():
            return
        cls.ensure_jobs_registered()
        stop = threading.Event()

        def _loop() -> None:
            while not stop.is_set():
                try:
                    cls.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
                stop.wait(cls.tick_seconds)

        cls._stop_event = stop
        cls._thread = threading.Thread(target=_loop, name="scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started, tick every %ss", cls.tick_seconds)

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = None
        cls._stop_event = None
