"""
Workflow SLA Engine
SLA Calculator.

Pure functions computing task deadlines. Two policies exist and are
always tagged so callers can tell them apart:

    CONFIGURED  sla_due_at = started_at + sla_hours
    FALLBACK    no sla_hours: assume ``default_sla_hours`` from creation time,
                and only for tasks still PENDING or AWAITING_REVIEW

Nothing here touches the database or the wall clock; ``now`` is always
passed in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from workflow_engine.core.exceptions import ValidationError
from workflow_engine.models.task import TaskStatus
from workflow_engine.utils.helpers import as_utc

# Statuses in which an unconfigured task is still eligible for the fallback policy
FALLBACK_ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.AWAITING_REVIEW.value)


class SlaBasis(str, Enum):
    CONFIGURED = "CONFIGURED"
    FALLBACK = "FALLBACK"


@dataclass(frozen=True)
class SlaDeadline:
    due_at: datetime
    sla_hours: float
    basis: SlaBasis


def validate_sla_hours(sla_hours) -> float:
    """Return ``sla_hours`` as a float or raise ValidationError if not > 0."""
    try:
        hours = float(sla_hours)
    except (TypeError, ValueError):
        raise ValidationError("sla_hours must be a number", details={"sla_hours": sla_hours})
    if not math.isfinite(hours) or hours <= 0:
        raise ValidationError("sla_hours must be greater than 0", details={"sla_hours": sla_hours})
    return hours


def due_at(started_at: datetime, sla_hours) -> datetime:
    """Configured-path deadline: ``started_at + sla_hours`` (fractional hours allowed)."""
    if started_at is None:
        raise ValidationError("started_at is required to compute an SLA deadline")
    hours = validate_sla_hours(sla_hours)
    return as_utc(started_at) + timedelta(hours=hours)


def fallback_due_at(created_at: datetime, default_sla_hours: float) -> datetime:
    """Fallback-path deadline, measured from creation time."""
    return as_utc(created_at) + timedelta(hours=validate_sla_hours(default_sla_hours))


def fallback_cutoff(now: datetime, default_sla_hours: float) -> datetime:
    """Tasks created before this instant have exhausted the fallback window."""
    return as_utc(now) - timedelta(hours=validate_sla_hours(default_sla_hours))


def resolve_deadline(task, default_sla_hours: float) -> SlaDeadline | None:
    """Pick the deadline policy for a task.

    Configured data always wins over the fallback. Returns None for a
    configured task that has not started yet (no clock running).
    """
    if task.sla_due_at is not None:
        hours = float(task.sla_hours) if task.sla_hours is not None else float(default_sla_hours)
        return SlaDeadline(as_utc(task.sla_due_at), hours, SlaBasis.CONFIGURED)
    if task.sla_hours is not None:
        if task.started_at is None:
            return None
        return SlaDeadline(due_at(task.started_at, task.sla_hours), float(task.sla_hours),
                           SlaBasis.CONFIGURED)
    return SlaDeadline(fallback_due_at(task.created_at, default_sla_hours),
                       float(default_sla_hours), SlaBasis.FALLBACK)


def hours_overdue(due: datetime, now: datetime) -> int:
    """Whole hours past the deadline, rounded half-up (1.5h -> 2)."""
    delta_hours = (as_utc(now) - as_utc(due)).total_seconds() / 3600
    return int(math.floor(delta_hours + 0.5))


def format_hours(hours: float) -> str:
    """Render an SLA budget the way it appears in messages: ``24`` or ``1.5``."""
    return f"{hours:g}"
