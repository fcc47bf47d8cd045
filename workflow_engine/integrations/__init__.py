"""workflow_engine.integrations: external service gateway modules.

All outbound HTTP calls go through a gateway in this package, never via
bare ``requests`` calls in services. Every call is:
  - Authenticated (key injected by the gateway)
  - Retried with backoff
  - Circuit-broken to prevent cascade failures

Current gateways:
  orchestrator_gateway.OrchestratorGateway: n8n workflow orchestrator
"""
