"""End-to-end inbound flow: route, build context, run the secure command.

``InboundPipeline.process`` is the single entry point an ingestion
component calls per message.  It never raises; every outcome, including
unrouted mail and handler failures, comes back as a
:class:`PipelineOutcome`.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from mailgate.domain.models import EmailData, HandlerResult
from mailgate.domain.types import RouteDecision
from mailgate.observability.metrics import ROUTE_DECISIONS
from mailgate.routing.router import EmailRouter, Route, build_visibility_context
from mailgate.security.layer import SecureCommand, SecurityLayer

logger = structlog.get_logger()


class PipelineOutcome(BaseModel):
    """What happened to one inbound message."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    route: RouteDecision
    agent: str | None = None
    tenant_token: str | None = None
    result: HandlerResult | None = None

    @property
    def handled(self) -> bool:
        """Return True when a handler ran and reported success."""
        return self.result is not None and self.result.success


class InboundPipeline:
    """Route inbound email and hand it to the matching secure command.

    Args:
        router: Decides which agent family a message belongs to.
        security: Wraps handlers with policy enforcement.
        handlers: Business handlers keyed by agent name.
        agent_for_mailbox: Maps a mailbox local part or tag to the agent
            serving it; identity when omitted.
    """

    def __init__(
        self,
        router: EmailRouter,
        security: SecurityLayer,
        handlers: Mapping[str, Any],
        agent_for_mailbox: Callable[[str], str] | None = None,
    ) -> None:
        self._router = router
        self._agent_for_mailbox = agent_for_mailbox or (lambda mailbox: mailbox)
        self._commands: dict[str, SecureCommand] = {
            name: security.create_secure_command(name, handler)
            for name, handler in handlers.items()
        }

    def command_for(self, agent_name: str) -> SecureCommand | None:
        return self._commands.get(agent_name)

    def resolve_agent(self, route: Route) -> str | None:
        """Return the agent name for *route*, or None when unrouted."""
        if not route.is_routed or route.agent is None:
            return None
        return self._agent_for_mailbox(route.agent)

    async def process(self, email: EmailData, followup: bool = False) -> PipelineOutcome:
        """Route *email* and run the secure command for its agent.

        Args:
            email: The inbound message.
            followup: Dispatch to the handler's ``handle_followup`` instead of
                ``process``.
        """
        route = self._router.determine_route_by_recipient(email)
        ROUTE_DECISIONS.labels(route=route.decision.value).inc()
        log = logger.bind(message_id=email.message_id, route=route.decision.value)

        agent = self.resolve_agent(route)
        if agent is None:
            log.info("inbound_email_unrouted")
            return PipelineOutcome(message_id=email.message_id, route=route.decision)

        outcome = PipelineOutcome(
            message_id=email.message_id,
            route=route.decision,
            agent=agent,
            tenant_token=route.tenant_token,
        )

        command = self._commands.get(agent)
        if command is None:
            log.warning("no_handler_for_agent", agent=agent)
            return outcome.model_copy(
                update={
                    "result": HandlerResult(
                        success=False, message=f"No handler registered for agent {agent}"
                    )
                }
            )

        context = build_visibility_context(email, route.matched_address or "")
        if followup:
            result = await command.handle_followup(email, context)
        else:
            result = await command.process(email, context)

        log.info("inbound_email_processed", agent=agent, success=result.success)
        return outcome.model_copy(update={"result": result})
