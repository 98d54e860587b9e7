"""FastAPI admin endpoints for agent security configuration.

All routes live under ``/api/admin/security``.  When ``ADMIN_TOKEN`` is
configured every request must carry it in the ``X-Admin-Token`` header;
otherwise the routes are open and intended for a trusted network only.

The :class:`SecurityLayer` and audit logger are read from
``request.app.state.services`` so the router can be mounted on any app that
was built with :func:`mailgate.app.initialize_services`.
"""

from __future__ import annotations

import asyncio
import hmac
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import ValidationError

from mailgate.admin.schemas import (
    BulkUpdateRequest,
    BulkUpdateResponse,
    PoliciesPatch,
    SimulationRequest,
    SimulationResponse,
)
from mailgate.audit.models import EventType
from mailgate.domain.errors import InvalidPolicyChainError
from mailgate.routing.router import build_visibility_context
from mailgate.security.layer import SecurityLayer
from mailgate.security.models import AgentSecurityConfig, AgentSecurityConfigUpdate

logger = structlog.get_logger()

ADMIN_ACTOR = "admin-api"


def require_admin_token(
    request: Request,
    x_admin_token: str | None = Header(default=None),
) -> None:
    """Reject the request unless it carries the configured admin token.

    Raises:
        HTTPException: 401 if a token is configured and the header is
            missing or wrong.
    """
    settings = getattr(request.app.state, "settings", None)
    expected = settings.admin_token.get_secret_value() if settings is not None else ""
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("admin_token_rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(
    prefix="/api/admin/security",
    tags=["security"],
    dependencies=[Depends(require_admin_token)],
)


def _layer(request: Request) -> SecurityLayer:
    layer: SecurityLayer | None = request.app.state.services.get("security_layer")
    if layer is None:
        raise HTTPException(status_code=503, detail="Security layer not initialized")
    return layer


def _validation_detail(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


@router.get("/overview")
async def security_overview(request: Request) -> dict[str, Any]:
    """Return the policy catalogue, every agent's config and recent blocks."""
    return _layer(request).security_overview()


@router.get("/policies")
async def list_policies(request: Request) -> dict[str, Any]:
    """Return the available policies with descriptions."""
    return {"policies": _layer(request).policy_catalogue()}


@router.get("/agents/{agent_name}")
async def get_agent_config(agent_name: str, request: Request) -> AgentSecurityConfig:
    """Return one agent's configuration.

    Raises:
        HTTPException: 404 if the agent has never been configured.
    """
    config = _layer(request).get_agent_config(agent_name)
    if config is None:
        raise HTTPException(status_code=404, detail=f"No configuration for agent {agent_name}")
    return config


@router.put("/agents/{agent_name}")
async def put_agent_config(
    agent_name: str, body: dict[str, Any], request: Request
) -> AgentSecurityConfig:
    """Upsert an agent's configuration; omitted fields keep their values.

    Raises:
        HTTPException: 400 for unknown or duplicate policies, 422 for
            invalid field values.
    """
    try:
        update = AgentSecurityConfigUpdate.model_validate({**body, "agent_name": agent_name})
        return _layer(request).set_agent_config(update, actor=ADMIN_ACTOR)
    except InvalidPolicyChainError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc


@router.patch("/agents/{agent_name}/policies")
async def patch_agent_policies(
    agent_name: str, body: PoliciesPatch, request: Request
) -> AgentSecurityConfig:
    """Replace only an agent's policy chain.

    Raises:
        HTTPException: 400 for unknown or duplicate policies, 404 if the
            agent has never been configured.
    """
    try:
        config = _layer(request).update_agent_policies(
            agent_name, body.policies, actor=ADMIN_ACTOR
        )
    except InvalidPolicyChainError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if config is None:
        raise HTTPException(status_code=404, detail=f"No configuration for agent {agent_name}")
    return config


@router.patch("/agents")
async def bulk_update_agents(body: BulkUpdateRequest, request: Request) -> BulkUpdateResponse:
    """Apply many partial configurations; failures are reported per agent."""
    results = _layer(request).bulk_update(body.updates, actor=ADMIN_ACTOR)
    succeeded = sum(1 for r in results if r.success)
    return BulkUpdateResponse(
        results=results, succeeded=succeeded, failed=len(results) - succeeded
    )


@router.post("/agents/{agent_name}/test")
async def test_agent_policies(
    agent_name: str, body: SimulationRequest, request: Request
) -> SimulationResponse:
    """Validate a sample message without consuming rate limits or auditing.

    Raises:
        HTTPException: 400 for unknown or duplicate policies in the override,
            422 for invalid override values.
    """
    layer = _layer(request)
    stored = layer.get_agent_config(agent_name)

    config = stored
    if body.config:
        try:
            update = AgentSecurityConfigUpdate.model_validate(
                {**body.config, "agent_name": agent_name}
            )
            config = (stored or AgentSecurityConfig.defaults_for(agent_name)).merged(update)
        except InvalidPolicyChainError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc

    context = body.context
    if context is None:
        identity = body.email.to[0] if body.email.to else ""
        context = build_visibility_context(body.email, identity)

    result = await layer.simulate_request(body.email, context, agent_name, config=config)
    return SimulationResponse(agent_name=agent_name, result=result, configured=stored is not None)


@router.get("/audit")
async def audit_log(
    request: Request,
    agent: str | None = None,
    sender: str | None = None,
    event_type: EventType | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    """Return recent audit entries, newest first.

    Reads the durable audit trail when one is configured, otherwise the
    layer's in-memory log of recent decisions.
    """
    audit_logger = request.app.state.services.get("audit_logger")
    if audit_logger is None:
        entries = _layer(request).recent_decisions(limit=limit, agent_name=agent)
        return {"source": "memory", "entries": entries}

    entries = await asyncio.to_thread(
        audit_logger.query,
        agent_name=agent,
        sender=sender,
        event_type=event_type.value if event_type else None,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
    )
    return {"source": "audit_db", "entries": entries}
