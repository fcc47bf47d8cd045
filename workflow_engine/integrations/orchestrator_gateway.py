"""
Workflow Orchestrator Gateway (n8n).

Services never call ``requests`` directly; every outbound orchestrator call
goes through ``OrchestratorGateway`` and comes back as a ``GatewayResult``.

  - Auth: static API key in the ``X-N8N-API-KEY`` header
  - Retry: up to 2 retries, backoff 1 s then 4 s
  - Timeout: ORCHESTRATOR_TIMEOUT_SECONDS per attempt (default 10 s)
  - Circuit: 5 failures within 60 s suspend a workflow type for 30 s

With ORCHESTRATOR_BASE_URL or ORCHESTRATOR_API_KEY unset the gateway is
disabled and every call returns ``ok=False, error="disabled"``.

Tests inject a mock ``session`` and ``retry_backoff=[0, 0]``.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import requests

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 5
FAILURE_WINDOW = timedelta(seconds=60)
OPEN_FOR = timedelta(seconds=30)

_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]
_DEFAULT_TIMEOUT = 10
_LOG_EXTRA = {"dependency": "orchestrator"}


@dataclass
class GatewayResult:
    """Outcome of one gateway call; ``data`` is the parsed JSON body on success."""

    ok: bool
    status_code: int | None = None
    data: dict | list | None = None
    error: str | None = None
    duration_ms: int = 0

    @classmethod
    def failed(cls, error: str, status_code: int | None = None, duration_ms: int = 0) -> "GatewayResult":
        return cls(False, status_code, None, error, duration_ms)

    @property
    def execution_id(self) -> str | None:
        if not isinstance(self.data, dict):
            return None
        value = self.data.get("executionId") or self.data.get("id")
        return None if value is None else str(value)


class _Circuit:
    """Sliding-window failure counter for one workflow type."""

    def __init__(self):
        self.failures: deque[datetime] = deque()
        self.open_until: datetime | None = None

    def allows(self, now: datetime) -> bool:
        if self.open_until is not None and now < self.open_until:
            return False
        while self.failures and self.failures[0] < now - FAILURE_WINDOW:
            self.failures.popleft()
        if len(self.failures) >= FAILURE_THRESHOLD:
            self.open_until = now + OPEN_FOR
            return False
        return True

    def fail(self, now: datetime) -> None:
        self.failures.append(now)

    def reset(self) -> None:
        self.failures.clear()
        self.open_until = None


class OrchestratorGateway:
    """n8n REST API client used by workflow lifecycle side effects."""

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        *,
        workflow_ids: Mapping[str, str] | None = None,
        webhook_url: str = "",
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        retry_backoff: list[float] | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.workflow_ids = dict(workflow_ids or {})
        self.webhook_url = webhook_url or ""
        self.timeout = timeout
        self.retry_backoff = list(_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff)
        self._session = session
        self._circuits: dict[str, _Circuit] = {}

    @classmethod
    def from_app_config(cls, cfg: Mapping) -> "OrchestratorGateway":
        return cls(
            cfg.get("ORCHESTRATOR_BASE_URL", ""),
            cfg.get("ORCHESTRATOR_API_KEY", ""),
            workflow_ids=cfg.get("ORCHESTRATOR_WORKFLOW_IDS") or {},
            webhook_url=cfg.get("ORCHESTRATOR_WEBHOOK_URL", ""),
            timeout=int(cfg.get("ORCHESTRATOR_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT)),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.api_key)

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _circuit(self, key: str) -> _Circuit:
        return self._circuits.setdefault(key, _Circuit())

    def _attempt(self, method: str, url: str, json_body: dict | None) -> GatewayResult:
        """One HTTP round trip; transport errors become a failed result."""
        started = time.perf_counter()
        try:
            resp = self.session.request(
                method, url,
                headers={
                    "X-N8N-API-KEY": self.api_key,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                json=json_body,
                timeout=self.timeout,
            )
        except requests.Timeout:
            return GatewayResult.failed(f"Request timed out after {self.timeout}s")
        except requests.RequestException as exc:
            return GatewayResult.failed(str(exc)[:500])

        elapsed = int((time.perf_counter() - started) * 1000)
        if not resp.ok:
            return GatewayResult.failed(f"HTTP {resp.status_code}: {resp.text[:500]}",
                                        resp.status_code, elapsed)
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        return GatewayResult(True, resp.status_code, data, None, elapsed)

    def request(self, method: str, path: str, *, circuit_key: str,
                json_body: dict | None = None) -> GatewayResult:
        """Authenticated request with retries and the per-type circuit. Never raises."""
        if not self.enabled:
            return GatewayResult.failed("disabled")

        circuit = self._circuit(circuit_key)
        if not circuit.allows(datetime.now(timezone.utc)):
            logger.warning("Orchestrator circuit open for %s until %s",
                           circuit_key, circuit.open_until, extra=_LOG_EXTRA)
            return GatewayResult.failed(
                "Circuit breaker is open; orchestrator calls temporarily suspended")

        url = f"{self.base_url}{path}"
        retries = min(_RETRY_MAX, len(self.retry_backoff))
        result = GatewayResult.failed("Unknown error")
        for attempt in range(retries + 1):
            result = self._attempt(method, url, json_body)
            if result.ok:
                circuit.reset()
                return result
            circuit.fail(datetime.now(timezone.utc))
            logger.warning("Orchestrator call %s %s failed (attempt %d/%d): %s",
                           method, url, attempt + 1, retries + 1, result.error, extra=_LOG_EXTRA)
            if attempt < retries and self.retry_backoff[attempt]:
                time.sleep(self.retry_backoff[attempt])
        return result

    # ── Orchestrator operations ───────────────────────────────────────────────

    def trigger_workflow(self, workflow: Any) -> GatewayResult:
        """Start the n8n flow mapped to ``workflow.workflow_type``.

        The body carries the engine workflow id, its type and metadata, and the
        webhook the flow reports progress to.
        """
        workflow_type = str(workflow.workflow_type)
        flow_id = self.workflow_ids.get(workflow_type)
        if self.enabled and not flow_id:
            return GatewayResult.failed(f"No orchestrator flow configured for {workflow_type}")

        return self.request(
            "POST", f"/api/v1/workflows/{flow_id}/execute",
            circuit_key=workflow_type,
            json_body={
                "engineWorkflowId": workflow.id,
                "workflowType": workflow_type,
                "metadata": dict(workflow.metadata_json or {}),
                "webhookUrl": self.webhook_url,
                "triggeredAt": datetime.now(timezone.utc).isoformat(),
            },
        )
