"""
Workflow SLA Engine
Flask Application Factory.

Usage:
    from workflow_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config

Engine components are built once per app and stored in ``app.extensions``:
    engine_config            EngineConfig
    realtime_channel         InMemoryChannel | RedisChannel
    user_directory           DatabaseUserDirectory
    notification_dispatcher  NotificationDispatcher
    breach_scanner           BreachScanner
    orchestrator_gateway     OrchestratorGateway
"""

import importlib
import json
import logging
import os
import time

import click
from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from workflow_engine.config import EngineConfig, config
from workflow_engine.middleware.logging_config import configure_logging
from workflow_engine.models import db

logger = logging.getLogger(__name__)


# ── SQLite: enforce FKs so tasks cannot outlive their workflow ──────────


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Turn on PRAGMA foreign_keys for every new SQLite connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def init_engine(app):
    """Build the engine services from app config and register them on the app."""
    from workflow_engine.integrations.orchestrator_gateway import OrchestratorGateway
    from workflow_engine.services.breach_scanner import BreachScanner
    from workflow_engine.services.directory import DatabaseUserDirectory
    from workflow_engine.services.notification import NotificationDispatcher
    from workflow_engine.services.realtime import build_channel

    engine_config = EngineConfig.from_app_config(app.config)
    channel = build_channel(app.config.get("REALTIME_URL"))
    directory = DatabaseUserDirectory(app)
    dispatcher = NotificationDispatcher(engine_config, directory, channel)

    app.extensions["engine_config"] = engine_config
    app.extensions["realtime_channel"] = channel
    app.extensions["user_directory"] = directory
    app.extensions["notification_dispatcher"] = dispatcher
    app.extensions["breach_scanner"] = BreachScanner(engine_config, dispatcher)
    app.extensions["orchestrator_gateway"] = OrchestratorGateway.from_app_config(app.config)


def create_app(config_name=None, config_overrides=None):
    """
    Build the engine app: config, logging, database, engine services, CLI
    and scheduler.

    Args:
        config_name: Key into ``config`` ("development", "testing",
                     "production"); APP_ENV when omitted.
        config_overrides: Applied on top of the config class, e.g. a
                     file-backed SQLALCHEMY_DATABASE_URI for thread tests.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    config_class = config[config_name]
    if hasattr(config_class, "validate"):
        config_class.validate()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    # ── Logging before anything else logs ────────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Model registry (create_all and Alembic metadata) ─────────────────
    from workflow_engine.models import audit as _audit_models            # noqa: F401
    from workflow_engine.models import notification as _notification_models  # noqa: F401
    from workflow_engine.models import scheduling as _scheduling_models  # noqa: F401
    from workflow_engine.models import task as _task_models              # noqa: F401
    from workflow_engine.models import user as _user_models              # noqa: F401
    from workflow_engine.models import workflow as _workflow_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]) or ".", exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.debug("Schema ensured for %s", db_uri.split("@")[-1])
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Engine services ──────────────────────────────────────────────────
    init_engine(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    register_cli(app)

    # ── Scheduler (importing the jobs module runs @register_job) ─────────
    importlib.import_module("workflow_engine.services.scheduled_jobs")
    from workflow_engine.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        _SchedulerSvc.start()

    return app


def register_cli(app):
    @app.cli.command("sla-scan")
    def sla_scan_cmd():
        """Run one SLA breach scan now."""
        from workflow_engine.services.breach_scanner import run_breach_scan
        results = run_breach_scan()
        click.echo(json.dumps(results))

    @app.cli.command("workflow-action")
    @click.argument("workflow_id")
    @click.argument("action")
    @click.option("--actor", default="cli", help="Actor recorded in the audit trail.")
    @click.option("--reason", default=None, help="Optional reason (cancel).")
    def workflow_action_cmd(workflow_id, action, actor, reason):
        """Apply a lifecycle action (start, pause, resume, complete, cancel, retry)."""
        from workflow_engine.core.exceptions import NotFoundError, ValidationError
        from workflow_engine.services.workflow_lifecycle import perform_action

        payload = {"reason": reason} if reason else {}
        try:
            result = perform_action(workflow_id, action, payload, actor=actor)
        except (NotFoundError, ValidationError) as exc:
            raise click.ClickException(str(exc))
        click.echo(json.dumps(result.to_dict(), default=str))

    @app.cli.command("workflow-history")
    @click.argument("workflow_id")
    @click.option("--limit", default=200, show_default=True)
    def workflow_history_cmd(workflow_id, limit):
        """Print the audit trail of a workflow and its tasks, oldest first."""
        from workflow_engine.services.audit_recorder import list_events

        for event in list_events(workflow_id=workflow_id, limit=limit):
            click.echo(json.dumps(event.to_dict(), default=str))

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once."""
        from workflow_engine.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        click.echo(json.dumps(SchedulerService.run_job(job_name), default=str))

    @app.cli.command("run-scheduler")
    def run_scheduler_cmd():
        """Run the interval scheduler in the foreground."""
        from workflow_engine.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        logger.info("Scheduler running in foreground; Ctrl+C to stop")
        try:
            while True:
                SchedulerService.tick()
                time.sleep(SchedulerService.tick_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler stopped")
