"""
Workflow SLA Engine
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - sla_breach_scan: Claims newly breached tasks and notifies HIL operators
"""

from __future__ import annotations

from typing import Any

from workflow_engine.services.breach_scanner import run_breach_scan
from workflow_engine.services.scheduler_service import register_job


@register_job("sla_breach_scan", interval_setting="SLA_SCAN_INTERVAL_MINUTES", default_minutes=15)
def sla_breach_scan(app) -> dict[str, Any]:
    """Detect SLA breaches and notify HIL operators once per breach."""
    scanner = app.extensions["breach_scanner"]
    return run_breach_scan(scanner)
