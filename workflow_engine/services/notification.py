"""
Workflow SLA Engine
Notification Service.

Two halves:

  NotificationDispatcher  turns an event into one persisted row per target
                          user, applies the popup preference filter, then
                          publishes each row to the real-time channel.
  NotificationService     stateless read/update operations (lists, unread
                          counts, read toggles, preferences).

Failure isolation: a directory lookup failure loses only that role; a
preference lookup or insert failure loses only that user; a publish
failure or timeout is logged and never undoes the persisted row.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Mapping

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from workflow_engine.config import EngineConfig
from workflow_engine.core.exceptions import DependencyError, NotFoundError, ValidationError
from workflow_engine.models import db
from workflow_engine.models.notification import Notification, NotificationType
from workflow_engine.models.scheduling import PREFERENCE_FIELDS, NotificationPreference
from workflow_engine.models.workflow import Priority
from workflow_engine.services.directory import UserDirectory
from workflow_engine.services.realtime import RealtimeChannel
from workflow_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)


# ── Popup filter ─────────────────────────────────────────────────────────────

_PRIORITY_FIELD = {
    Priority.URGENT.value: "show_popups_for_urgent",
    Priority.HIGH.value: "show_popups_for_high",
    Priority.NORMAL.value: "show_popups_for_normal",
    Priority.LOW.value: "show_popups_for_low",
}

# Types without an entry are gated by priority only
_TYPE_FIELD = {
    NotificationType.TASK_INTERRUPT.value: "enable_task_interrupts",
    NotificationType.WORKFLOW_UPDATE.value: "enable_workflow_failures",
    NotificationType.AGENT_FAILURE.value: "enable_workflow_failures",
    NotificationType.SLA_WARNING.value: "enable_sla_warnings",
    NotificationType.TASK_COMPLETION.value: "enable_task_completions",
}


def should_show_popup(notification_type: str, priority: str, prefs: Mapping[str, bool]) -> bool:
    """Priority matrix AND type toggle; MENTION always shows."""
    notification_type = str(getattr(notification_type, "value", notification_type))
    priority = str(getattr(priority, "value", priority))
    if notification_type == NotificationType.MENTION.value:
        return True
    priority_field = _PRIORITY_FIELD.get(priority)
    if not priority_field or not prefs.get(priority_field, False):
        return False
    type_field = _TYPE_FIELD.get(notification_type)
    if type_field is None:
        return True
    return bool(prefs.get(type_field, False))


# ── Event types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Audience:
    """Who receives an event: everyone holding ``roles`` plus ``user_ids``."""

    roles: tuple[str, ...] = ()
    user_ids: tuple[str, ...] = ()


@dataclass
class NotificationEvent:
    type: NotificationType
    priority: Priority
    title: str
    message: str
    audience: Audience
    action_url: str | None = None
    metadata: dict = field(default_factory=dict)
    dedup_key: str | None = None


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatcher
# ═══════════════════════════════════════════════════════════════════════════


class NotificationDispatcher:
    """Persists and pushes notifications for lifecycle and breach events.

    Directory lookups and real-time publishes run on separate worker pools.
    A publish that hangs past its timeout keeps its worker, so at most
    ``max_workers`` publishes are in flight; further publishes are skipped
    (the row is already persisted) instead of queueing behind them.

    Args:
        config: engine settings (popup defaults, timeouts).
        directory: resolves roles to user ids.
        channel: real-time push target.
        clock: returns the current UTC time.
        max_workers: publish pool size and in-flight publish limit.
        lookup_workers: directory lookup pool size.
    """

    def __init__(
        self,
        config: EngineConfig,
        directory: UserDirectory,
        channel: RealtimeChannel,
        clock: Callable = utc_now,
        max_workers: int = 8,
        lookup_workers: int = 4,
    ) -> None:
        self.config = config
        self.directory = directory
        self.channel = channel
        self.clock = clock
        self._lookup_executor = ThreadPoolExecutor(max_workers=lookup_workers,
                                                   thread_name_prefix="notify-lookup")
        self._publish_executor = ThreadPoolExecutor(max_workers=max_workers,
                                                    thread_name_prefix="notify-publish")
        self._publish_slots = threading.BoundedSemaphore(max_workers)

    def close(self) -> None:
        self._lookup_executor.shutdown(wait=False, cancel_futures=True)
        self._publish_executor.shutdown(wait=False, cancel_futures=True)

    # ── Audience ──────────────────────────────────────────────────────────

    def _users_for_role(self, role: str) -> list[str]:
        future = self._lookup_executor.submit(self.directory.list_users_by_role, role)
        try:
            return list(future.result(timeout=self.config.directory_timeout_seconds))
        except FutureTimeout:
            future.cancel()
            raise DependencyError(
                "directory",
                f"role lookup '{role}' timed out after {self.config.directory_timeout_seconds}s",
            )
        except Exception as exc:
            raise DependencyError("directory", f"role lookup '{role}' failed: {exc}") from exc

    def resolve_audience(self, audience: Audience) -> list[str]:
        """Explicit users first, then role members; duplicates removed, order kept."""
        seen: dict[str, None] = {}
        for user_id in audience.user_ids:
            if user_id:
                seen.setdefault(user_id, None)
        for role in audience.roles:
            try:
                for user_id in self._users_for_role(role):
                    seen.setdefault(user_id, None)
            except DependencyError as exc:
                logger.warning("%s", exc, extra={"dependency": "directory",
                                                 "event_type": "audience_resolution"})
        return list(seen)

    # ── Preferences ───────────────────────────────────────────────────────

    def preferences_for(self, user_id: str) -> dict:
        prefs = db.session.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if prefs is None:
            return self.config.popup_defaults.as_dict()
        return {f: bool(getattr(prefs, f)) for f in PREFERENCE_FIELDS}

    # ── Dispatch ──────────────────────────────────────────────────────────

    def dispatch(self, event: NotificationEvent) -> list[Notification]:
        """Persist one notification per target user and publish them.

        Returns the notifications that were stored. Users that failed
        (or already hold a row with the same dedup key) are skipped.
        """
        event_type = str(getattr(event.type, "value", event.type))
        users = self.resolve_audience(event.audience)
        if not users:
            logger.warning("No recipients for %s notification %r", event_type, event.title,
                           extra={"event_type": event_type})
            return []

        priority = str(getattr(event.priority, "value", event.priority))
        created: list[Notification] = []

        for user_id in users:
            try:
                prefs = self.preferences_for(user_id)
                notif = Notification(
                    user_id=user_id,
                    type=event_type,
                    priority=priority,
                    title=event.title,
                    message=event.message,
                    action_url=event.action_url,
                    metadata_json=dict(event.metadata),
                    show_popup=should_show_popup(event_type, priority, prefs),
                    dedup_key=event.dedup_key,
                    created_at=self.clock(),
                )
                with db.session.begin_nested():
                    db.session.add(notif)
                created.append(notif)
            except IntegrityError:
                logger.info("Duplicate notification %s skipped", event.dedup_key,
                            extra={"user_id": user_id, "event_type": event_type})
            except Exception:
                logger.warning("Failed to create notification for user", exc_info=True,
                               extra={"user_id": user_id, "event_type": event_type})

        db.session.commit()
        logger.info("Dispatched %s to %d/%d users", event_type, len(created), len(users),
                    extra={"event_type": event_type})

        self._publish_all(created)
        return created

    def _publish_all(self, notifications: list[Notification]) -> int:
        """Publish in parallel, each bounded by the publish timeout. Returns successes."""
        jobs = {}
        for n in notifications:
            if not self._publish_slots.acquire(blocking=False):
                logger.warning("Realtime publish skipped: publish pool saturated",
                               extra={"user_id": n.user_id, "dependency": "realtime"})
                continue
            try:
                fut = self._publish_executor.submit(self.channel.publish, n.user_id, n.to_dict())
            except RuntimeError:
                self._publish_slots.release()
                logger.warning("Realtime publish skipped: dispatcher closed",
                               extra={"user_id": n.user_id, "dependency": "realtime"})
                continue
            # The slot frees when the publish finishes or is cancelled, not on timeout
            fut.add_done_callback(lambda _f: self._publish_slots.release())
            jobs[fut] = n.user_id
        if not jobs:
            return 0
        done, not_done = wait(jobs, timeout=self.config.publish_timeout_seconds)
        ok = 0
        for fut in done:
            exc = fut.exception()
            if exc is None:
                ok += 1
            else:
                logger.warning("Realtime publish failed: %s", exc,
                               extra={"user_id": jobs[fut], "dependency": "realtime"})
        for fut in not_done:
            fut.cancel()
            logger.warning("Realtime publish timed out after %ss",
                           self.config.publish_timeout_seconds,
                           extra={"user_id": jobs[fut], "dependency": "realtime"})
        return ok


# ═══════════════════════════════════════════════════════════════════════════
#  Read / update operations
# ═══════════════════════════════════════════════════════════════════════════


class NotificationService:
    """Stateless service class for notification queries and read state."""

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first. Returns (items, total)."""
        base = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            base = base.where(Notification.read.is_(False))
        total = db.session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()
        items = db.session.execute(
            base.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def list_recent(user_id, window_hours=None, now=None, limit=50):
        """Notifications created within the recent window, newest first.

        The window defaults to the app's NOTIFICATION_RECENT_WINDOW_HOURS.
        """
        if window_hours is None:
            window_hours = current_app.extensions["engine_config"].recent_window_hours
        cutoff = (now or utc_now()) - timedelta(hours=window_hours)
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id, Notification.created_at >= cutoff)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return db.session.execute(stmt).scalars().all()

    @staticmethod
    def unread_count(user_id):
        return db.session.execute(
            select(func.count(Notification.id))
            .where(Notification.user_id == user_id, Notification.read.is_(False))
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def _get_owned(notification_id, user_id=None) -> Notification:
        notif = db.session.get(Notification, notification_id)
        if not notif or (user_id is not None and notif.user_id != user_id):
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        return notif

    @staticmethod
    def mark_read(notification_id, user_id=None):
        """Mark a single notification as read."""
        notif = NotificationService._get_owned(notification_id, user_id)
        if not notif.read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_unread(notification_id, user_id=None):
        notif = NotificationService._get_owned(notification_id, user_id)
        if notif.read:
            notif.mark_unread()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        """Mark all of a user's notifications as read. Returns the count updated."""
        result = db.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True, read_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount

    # ── Preferences ───────────────────────────────────────────────────────

    @staticmethod
    def get_preferences(user_id, defaults=None) -> dict:
        prefs = db.session.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if prefs:
            return prefs.to_dict()
        base = (defaults.as_dict() if defaults is not None else
                {c.name: c.default.arg for c in NotificationPreference.__table__.columns
                 if c.name in PREFERENCE_FIELDS})
        return {"user_id": user_id, **base}

    @staticmethod
    def update_preferences(user_id, changes: Mapping, defaults=None) -> NotificationPreference:
        """Create or update a user's popup preferences; new rows start from ``defaults``."""
        unknown = set(changes) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValidationError("Unknown preference fields", details={"fields": sorted(unknown)})
        bad = [k for k, v in changes.items() if not isinstance(v, bool)]
        if bad:
            raise ValidationError("Preference values must be booleans", details={"fields": bad})

        prefs = db.session.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if prefs is None:
            seed = defaults.as_dict() if defaults is not None else {}
            prefs = NotificationPreference(user_id=user_id, **seed)
            db.session.add(prefs)
        for key, value in changes.items():
            setattr(prefs, key, value)
        db.session.commit()
        return prefs
