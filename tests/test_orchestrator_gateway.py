"""
Unit tests for OrchestratorGateway.

All HTTP is mocked through an injected session; retries use zero backoff.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from workflow_engine.integrations.orchestrator_gateway import GatewayResult, OrchestratorGateway


def _response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    resp.text = "error body" if not resp.ok else ""
    return resp


def _gateway(session, **kwargs):
    return OrchestratorGateway(
        "https://n8n.example.com/",
        "secret-key",
        workflow_ids={"PAYOFF": "flow-payoff"},
        webhook_url="https://engine.example.com/hooks/n8n",
        session=session,
        retry_backoff=[0, 0],
        **kwargs,
    )


def _workflow(workflow_type="PAYOFF"):
    return SimpleNamespace(id="wf-1", workflow_type=workflow_type, metadata_json={"loan": "L-7"})


@pytest.mark.unit
class TestGateway:
    def test_disabled_without_credentials(self):
        session = MagicMock()
        gw = OrchestratorGateway("", "", session=session)
        result = gw.trigger_workflow(_workflow())
        assert gw.enabled is False
        assert result.ok is False
        assert result.error == "disabled"
        session.request.assert_not_called()

    def test_from_app_config(self, app):
        gw = OrchestratorGateway.from_app_config(app.config)
        assert gw.enabled is False
        assert gw.timeout == 10

    def test_trigger_success(self):
        session = MagicMock()
        session.request.return_value = _response(200, {"executionId": 4711})

        result = _gateway(session).trigger_workflow(_workflow())

        assert result.ok is True
        assert result.execution_id == "4711"
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == "https://n8n.example.com/api/v1/workflows/flow-payoff/execute"
        assert kwargs["headers"]["X-N8N-API-KEY"] == "secret-key"
        assert kwargs["json"]["engineWorkflowId"] == "wf-1"
        assert kwargs["json"]["metadata"] == {"loan": "L-7"}
        assert kwargs["json"]["webhookUrl"] == "https://engine.example.com/hooks/n8n"
        assert kwargs["timeout"] == 10

    def test_unmapped_workflow_type(self):
        session = MagicMock()
        result = _gateway(session).trigger_workflow(_workflow("LIEN_SEARCH"))
        assert result.ok is False
        assert "LIEN_SEARCH" in result.error
        session.request.assert_not_called()

    def test_retries_then_succeeds(self):
        session = MagicMock()
        session.request.side_effect = [_response(502), _response(200, {"id": "x"})]
        result = _gateway(session).trigger_workflow(_workflow())
        assert result.ok is True
        assert session.request.call_count == 2

    def test_gives_up_after_retries(self):
        session = MagicMock()
        session.request.return_value = _response(500)
        result = _gateway(session).trigger_workflow(_workflow())
        assert result.ok is False
        assert result.status_code == 500
        assert session.request.call_count == 3

    def test_timeout_is_reported(self):
        session = MagicMock()
        session.request.side_effect = requests.Timeout("slow")
        result = _gateway(session).trigger_workflow(_workflow())
        assert result.ok is False
        assert "timed out" in result.error

    def test_network_error_never_raises(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")
        result = _gateway(session).trigger_workflow(_workflow())
        assert isinstance(result, GatewayResult)
        assert result.ok is False

    def test_circuit_opens_after_repeated_failures(self):
        session = MagicMock()
        session.request.return_value = _response(503)
        gw = _gateway(session)

        gw.trigger_workflow(_workflow())
        gw.trigger_workflow(_workflow())
        calls_before = session.request.call_count
        result = gw.trigger_workflow(_workflow())

        assert calls_before == 6
        assert session.request.call_count == calls_before
        assert "Circuit breaker is open" in result.error
