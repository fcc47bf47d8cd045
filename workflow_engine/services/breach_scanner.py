"""
Workflow SLA Engine
SLA Breach Scanner.

Runs every SLA_SCAN_INTERVAL_MINUTES (default 15) via the ``sla_breach_scan``
scheduled job, or on demand through ``flask sla-scan``.

Each run:
    1. Selects candidates from two queries:
         configured  sla_due_at < now, status != COMPLETED, sla_status = ON_TIME
         fallback    no sla_hours / sla_due_at, created more than DEFAULT_SLA_HOURS
                     ago, status PENDING or AWAITING_REVIEW, sla_status = ON_TIME
    2. Claims each candidate with a conditional UPDATE
       (``... SET sla_status = 'BREACHED' WHERE id = ? AND sla_status = 'ON_TIME'``),
       committed per row. Zero rows updated means another run got there first.
    3. For every claimed task, dispatches one SLA_WARNING / HIGH notification
       to the HIL role and appends an audit event.

Overlapping runs are safe: only the claim decides who reports a breach, and
the claim is never undone, so a breach is reported at most once even when
delivery partially fails.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select, update

from workflow_engine.config import EngineConfig
from workflow_engine.models import db
from workflow_engine.models.notification import NotificationType
from workflow_engine.models.task import SlaStatus, TaskExecution, TaskStatus
from workflow_engine.models.workflow import Priority
from workflow_engine.services import audit_recorder, sla
from workflow_engine.services.notification import (
    Audience,
    NotificationDispatcher,
    NotificationEvent,
)
from workflow_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)

SCANNER_ACTOR = "sla-monitor"


@dataclass(frozen=True)
class BreachCandidate:
    task_id: str
    basis: sla.SlaBasis


class BreachScanner:
    """Detects SLA breaches and reports each exactly once.

    Args:
        config: engine settings (fallback hours, notify role, base URL).
        dispatcher: turns breach events into notifications.
        clock: returns the current UTC time.
        batch_limit: max candidates per query per run; the rest wait for the next run.
    """

    def __init__(
        self,
        config: EngineConfig,
        dispatcher: NotificationDispatcher,
        clock: Callable = utc_now,
        batch_limit: int = 500,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.clock = clock
        self.batch_limit = batch_limit

    # ── Candidate selection ──────────────────────────────────────────────

    def find_candidates(self, now) -> list[BreachCandidate]:
        configured = db.session.execute(
            select(TaskExecution.id)
            .where(
                TaskExecution.sla_due_at.is_not(None),
                TaskExecution.sla_due_at < now,
                TaskExecution.status != TaskStatus.COMPLETED.value,
                TaskExecution.sla_status == SlaStatus.ON_TIME.value,
            )
            .order_by(TaskExecution.sla_due_at)
            .limit(self.batch_limit)
        ).scalars().all()

        fallback = db.session.execute(
            select(TaskExecution.id)
            .where(
                TaskExecution.sla_hours.is_(None),
                TaskExecution.sla_due_at.is_(None),
                TaskExecution.created_at < sla.fallback_cutoff(now, self.config.default_sla_hours),
                TaskExecution.status.in_(sla.FALLBACK_ACTIVE_STATUSES),
                TaskExecution.sla_status == SlaStatus.ON_TIME.value,
            )
            .order_by(TaskExecution.created_at)
            .limit(self.batch_limit)
        ).scalars().all()

        candidates = [BreachCandidate(tid, sla.SlaBasis.CONFIGURED) for tid in configured]
        seen = set(configured)
        candidates.extend(
            BreachCandidate(tid, sla.SlaBasis.FALLBACK) for tid in fallback if tid not in seen
        )
        # Release the read transaction before claiming
        db.session.commit()
        return candidates

    # ── Claim ────────────────────────────────────────────────────────────

    def claim(self, task_id: str, now) -> bool:
        """Atomically flip ON_TIME -> BREACHED. True only for the run that won."""
        result = db.session.execute(
            update(TaskExecution)
            .where(
                TaskExecution.id == task_id,
                TaskExecution.sla_status == SlaStatus.ON_TIME.value,
            )
            .values(sla_status=SlaStatus.BREACHED.value, sla_breached_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    # ── Reporting ────────────────────────────────────────────────────────

    def build_event(self, task: TaskExecution, deadline: sla.SlaDeadline, now) -> NotificationEvent:
        overdue = sla.hours_overdue(deadline.due_at, now)
        hours_label = sla.format_hours(deadline.sla_hours)
        return NotificationEvent(
            type=NotificationType.SLA_WARNING,
            priority=Priority.HIGH,
            title="⏰ SLA Breached",
            message=f'Task "{task.title}" is {overdue} hours overdue ({hours_label}h SLA)',
            audience=Audience(roles=(self.config.sla_notify_role,)),
            action_url=f"{self.config.app_base_url}/workflow/{task.workflow_id}",
            metadata={
                "task_id": task.id,
                "workflow_id": task.workflow_id,
                "task_type": task.task_type,
                "hours_overdue": overdue,
                "sla_hours": deadline.sla_hours,
                "sla_basis": deadline.basis.value,
                "sla_due_at": deadline.due_at.isoformat(),
                "breach_detected_at": now.isoformat(),
            },
            dedup_key=f"sla-breach:{task.id}",
        )

    def _report(self, task_id: str, now) -> int:
        """Notify and audit one claimed breach. Returns notifications created."""
        task = db.session.get(TaskExecution, task_id)
        if task is None:
            logger.warning("Claimed task disappeared before reporting", extra={"task_id": task_id})
            return 0

        deadline = sla.resolve_deadline(task, self.config.default_sla_hours)
        if deadline is None:
            # sla_hours was configured after the fallback claim but the task never started
            deadline = sla.SlaDeadline(
                sla.fallback_due_at(task.created_at, self.config.default_sla_hours),
                self.config.default_sla_hours,
                sla.SlaBasis.FALLBACK,
            )

        created = self.dispatcher.dispatch(self.build_event(task, deadline, now))

        audit_recorder.record(
            actor=SCANNER_ACTOR,
            actor_type="system",
            action="task.sla_breach",
            resource_type="task",
            resource_id=task.id,
            workflow_id=task.workflow_id,
            before=SlaStatus.ON_TIME.value,
            after=SlaStatus.BREACHED.value,
            metadata={
                "sla_basis": deadline.basis.value,
                "hours_overdue": sla.hours_overdue(deadline.due_at, now),
                "notifications_created": len(created),
            },
        )
        db.session.commit()
        return len(created)

    # ── Run ──────────────────────────────────────────────────────────────

    def run(self) -> dict:
        """One scan pass. Returns counters; per-task failures are isolated."""
        start = time.monotonic()
        now = self.clock()
        results = {
            "found": 0,
            "claimed": 0,
            "processed": 0,
            "skipped": 0,
            "notifications_created": 0,
            "undelivered": 0,
            "errors": 0,
        }

        candidates = self.find_candidates(now)
        results["found"] = len(candidates)

        for candidate in candidates:
            try:
                won = self.claim(candidate.task_id, now)
            except Exception:
                db.session.rollback()
                results["errors"] += 1
                logger.warning("SLA claim failed; task left for the next run", exc_info=True,
                               extra={"task_id": candidate.task_id, "event_type": "sla_breach"})
                continue

            if not won:
                results["skipped"] += 1
                logger.debug("SLA breach already claimed elsewhere",
                             extra={"task_id": candidate.task_id})
                continue

            results["claimed"] += 1
            logger.info("SLA breach claimed (%s)", candidate.basis.value,
                        extra={"task_id": candidate.task_id, "event_type": "sla_breach"})
            try:
                created = self._report(candidate.task_id, now)
            except Exception:
                db.session.rollback()
                results["errors"] += 1
                logger.error("SLA breach reporting failed; breach stays claimed", exc_info=True,
                             extra={"task_id": candidate.task_id, "event_type": "sla_breach"})
                continue

            results["processed"] += 1
            results["notifications_created"] += created
            if created == 0:
                results["undelivered"] += 1
                logger.warning("SLA breach for task %s reached no recipients", candidate.task_id,
                               extra={"task_id": candidate.task_id, "event_type": "sla_breach"})

        duration_ms = (time.monotonic() - start) * 1000
        logger.info("sla_breach_scan: %s", results,
                    extra={"job_name": "sla_breach_scan", "duration_ms": duration_ms})
        return results


def run_breach_scan(scanner: BreachScanner | None = None) -> dict:
    """Outward entry point: run one scan with the app's configured scanner."""
    if scanner is None:
        from flask import current_app
        scanner = current_app.extensions["breach_scanner"]
    return scanner.run()
