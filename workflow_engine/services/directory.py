"""
Workflow SLA Engine
User Directory.

Resolves notification audiences (roles) to user ids. The dispatcher only
depends on the ``UserDirectory`` protocol; ``DatabaseUserDirectory`` reads
active rows from ``user_profiles``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from flask import Flask
from sqlalchemy import select

from workflow_engine.models import db
from workflow_engine.models.user import UserProfile

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    def list_users_by_role(self, role: str) -> list[str]:
        ...


class DatabaseUserDirectory:
    """Directory backed by the ``user_profiles`` table.

    Lookups push their own app context so they can run on a worker thread
    (the dispatcher bounds every directory call with a timeout).
    """

    def __init__(self, app: Flask) -> None:
        self._app = app

    def list_users_by_role(self, role: str) -> list[str]:
        with self._app.app_context():
            stmt = (
                select(UserProfile.id)
                .where(UserProfile.role == role, UserProfile.is_active.is_(True))
                .order_by(UserProfile.id)
            )
            users = list(db.session.execute(stmt).scalars())
        logger.debug("Directory resolved role=%s to %d users", role, len(users))
        return users


class StaticUserDirectory:
    """In-memory directory: ``{role: [user_id, ...]}``."""

    def __init__(self, roles: dict[str, list[str]] | None = None) -> None:
        self._roles = {k: list(v) for k, v in (roles or {}).items()}

    def list_users_by_role(self, role: str) -> list[str]:
        return list(self._roles.get(role, []))
