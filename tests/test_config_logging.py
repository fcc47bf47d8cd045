"""
Tests: engine configuration, app wiring, structured logging and CLI commands.
"""

import json
import logging
from datetime import timedelta

import pytest

from workflow_engine.config import EngineConfig, PopupDefaults
from workflow_engine.middleware.logging_config import JSONFormatter, ReadableFormatter
from workflow_engine.services.breach_scanner import BreachScanner
from workflow_engine.services.notification import NotificationDispatcher
from workflow_engine.services.realtime import InMemoryChannel, build_channel
from workflow_engine.utils.helpers import utc_now


def _record(msg="hello", **extra):
    record = logging.LogRecord("workflow_engine.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
class TestEngineConfig:
    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.default_sla_hours == 24.0
        assert cfg.scan_interval_minutes == 15
        assert cfg.sla_notify_role == "hil_operator"
        assert cfg.popup_defaults.enable_task_completions is False

    def test_from_app_config(self):
        cfg = EngineConfig.from_app_config({
            "DEFAULT_SLA_HOURS": "8",
            "SLA_NOTIFY_ROLE": "closer",
            "APP_BASE_URL": "https://ops.example.com",
        })
        assert cfg.default_sla_hours == 8.0
        assert cfg.sla_notify_role == "closer"
        assert cfg.app_base_url == "https://ops.example.com"
        assert cfg.popup_defaults == PopupDefaults()

    def test_popup_defaults_cover_every_toggle(self):
        assert set(PopupDefaults().as_dict()) == {
            "show_popups_for_urgent", "show_popups_for_high", "show_popups_for_normal",
            "show_popups_for_low", "enable_task_interrupts", "enable_workflow_failures",
            "enable_task_completions", "enable_sla_warnings",
        }


class TestAppWiring:
    def test_engine_services_registered(self, app):
        assert isinstance(app.extensions["engine_config"], EngineConfig)
        assert isinstance(app.extensions["realtime_channel"], InMemoryChannel)
        assert isinstance(app.extensions["notification_dispatcher"], NotificationDispatcher)
        assert isinstance(app.extensions["breach_scanner"], BreachScanner)

    def test_memory_channel_when_no_url(self):
        assert isinstance(build_channel(None), InMemoryChannel)
        assert isinstance(build_channel("memory://"), InMemoryChannel)

    def test_unreachable_redis_falls_back_to_memory(self):
        assert isinstance(build_channel("redis://127.0.0.1:1/0"), InMemoryChannel)


@pytest.mark.unit
class TestLogging:
    def test_json_formatter_includes_engine_context(self):
        line = JSONFormatter().format(_record("SLA breach claimed", task_id="t-1",
                                              event_type="sla_breach", duration_ms=12.5))
        payload = json.loads(line)
        assert payload["message"] == "SLA breach claimed"
        assert payload["level"] == "INFO"
        assert payload["task_id"] == "t-1"
        assert payload["event_type"] == "sla_breach"
        assert "workflow_id" not in payload

    def test_readable_formatter_appends_context(self):
        line = ReadableFormatter().format(_record("started", workflow_id="wf-9", duration_ms=3))
        assert "started (workflow_id=wf-9)" in line
        assert "[3ms]" in line


class TestCli:
    def test_sla_scan_command(self, app, make_task, hil_users):
        started = utc_now() - timedelta(hours=30)
        make_task(status="IN_PROGRESS", sla_hours=24, started_at=started,
                  sla_due_at=started + timedelta(hours=24))

        result = app.test_cli_runner().invoke(args=["sla-scan"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["claimed"] == 1

    def test_workflow_action_command(self, app, make_workflow):
        wf = make_workflow(status="PENDING")
        result = app.test_cli_runner().invoke(args=["workflow-action", wf.id, "start",
                                                    "--actor", "ops"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["new_status"] == "IN_PROGRESS"

    def test_workflow_action_rejected(self, app, make_workflow):
        wf = make_workflow(status="PENDING")
        result = app.test_cli_runner().invoke(args=["workflow-action", wf.id, "complete"])
        assert result.exit_code != 0
        assert "Cannot complete workflow with status PENDING" in result.output

    def test_workflow_history_command(self, app, make_workflow):
        wf = make_workflow(status="PENDING")
        runner = app.test_cli_runner()
        runner.invoke(args=["workflow-action", wf.id, "start", "--actor", "ops"])

        result = runner.invoke(args=["workflow-history", wf.id])

        assert result.exit_code == 0, result.output
        events = [json.loads(line) for line in result.output.splitlines()]
        assert [e["action"] for e in events] == ["workflow.start"]
        assert events[0]["actor"] == "ops"
