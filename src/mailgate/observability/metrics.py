"""Prometheus metrics for security decisions.

Provides:
- ``setup_metrics(app)``: Attach prometheus-fastapi-instrumentator to a FastAPI app,
  exposing ``/metrics`` with HTTP request duration/count plus the counters below.
- ``SECURITY_DECISIONS``: Counter of validations by agent, outcome and deciding policy.
- ``POLICY_ERRORS``: Counter of policies skipped because they failed to evaluate.
- ``ROUTE_DECISIONS``: Counter of inbound messages by route.

Counters are updated where the decision is made, never by polling the audit DB.
"""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator

from mailgate.domain.models import SecurityResult

SECURITY_DECISIONS: Counter = Counter(
    "mailgate_security_decisions_total",
    "Security validations by agent, outcome and deciding policy",
    ["agent", "outcome", "policy"],
)

POLICY_ERRORS: Counter = Counter(
    "mailgate_policy_errors_total",
    "Policies skipped because they could not be evaluated",
    ["agent", "policy"],
)

ROUTE_DECISIONS: Counter = Counter(
    "mailgate_route_decisions_total",
    "Inbound messages by routing decision",
    ["route"],
)


def outcome_label(result: SecurityResult) -> str:
    """Return ``allow``, ``quarantine`` or ``block`` for *result*."""
    if result.allowed:
        return "allow"
    return "quarantine" if result.quarantine else "block"


def record_decision(agent_name: str, result: SecurityResult) -> None:
    """Increment :data:`SECURITY_DECISIONS` for one validation."""
    SECURITY_DECISIONS.labels(
        agent=agent_name,
        outcome=outcome_label(result),
        policy=result.policy or "none",
    ).inc()


def setup_metrics(app: FastAPI) -> None:
    """Instrument *app* with Prometheus HTTP metrics and expose ``/metrics``.

    Excludes health/ready/metrics endpoints from instrumentation to avoid
    noise in dashboards.

    Args:
        app: The FastAPI application to instrument.
    """
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/ready", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, should_gzip=True)
