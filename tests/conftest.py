"""
Shared pytest fixtures for the workflow engine test suite.

Every test runs inside an app context against in-memory SQLite; the schema
is dropped and recreated after each test and the in-memory realtime channel
is cleared, so tests never see each other's rows or published messages.

Fixtures:
    - app / _setup_db / session: the Flask app and per-test database reset
    - engine_config / channel / dispatcher: engine services from the app
    - fixed_now: a frozen UTC "now" for SLA arithmetic
    - make_workflow / make_task / make_user: ORM factories (committed)
"""

from datetime import datetime, timezone

import pytest

from workflow_engine import create_app
from workflow_engine.models import db as _db
from workflow_engine.models.task import TaskExecution
from workflow_engine.models.user import UserProfile
from workflow_engine.models.workflow import Workflow

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Testing app; built once, shared by every test."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Schema for the whole run."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Isolate each test: discard its rows and its published messages."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    app.extensions["realtime_channel"].clear()


@pytest.fixture()
def engine_config(app):
    return app.extensions["engine_config"]


@pytest.fixture()
def channel(app):
    return app.extensions["realtime_channel"]


@pytest.fixture()
def dispatcher(app):
    return app.extensions["notification_dispatcher"]


@pytest.fixture()
def fixed_now():
    return FIXED_NOW


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    def _make(user_id, role="hil_operator", is_active=True):
        user = UserProfile(id=user_id, full_name=user_id.title(), role=role, is_active=is_active,
                           email=f"{user_id}@example.com")
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def hil_users(make_user):
    """Two active HIL operators plus one inactive and one client user."""
    make_user("hil-alice")
    make_user("hil-bob")
    make_user("hil-retired", is_active=False)
    make_user("client-carol", role="client_user")
    return ["hil-alice", "hil-bob"]


@pytest.fixture()
def make_workflow():
    def _make(status="PENDING", workflow_type="PAYOFF", **kwargs):
        wf = Workflow(workflow_type=workflow_type, title=kwargs.pop("title", "Payoff 123 Main St"),
                      status=status, **kwargs)
        _db.session.add(wf)
        _db.session.commit()
        return wf
    return _make


@pytest.fixture()
def make_task(make_workflow):
    def _make(workflow=None, **kwargs):
        wf = workflow or make_workflow(status="IN_PROGRESS")
        kwargs.setdefault("title", "Request payoff statement")
        kwargs.setdefault("task_type", "request_payoff")
        task = TaskExecution(workflow_id=wf.id, **kwargs)
        _db.session.add(task)
        _db.session.commit()
        return task
    return _make
