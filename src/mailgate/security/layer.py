"""Security layer: per-agent configuration, policy enforcement, command wrapping.

The layer owns no global state.  Configuration lives in an injected
:class:`~mailgate.security.store.ConfigStore`; whether that store is safe
for concurrent readers is declared with ``store_is_atomic``.  Writes always
go through the layer's lock so read-merge-write cycles never interleave.

:meth:`SecurityLayer.validate_request` never raises.  Every outcome is
recorded in the audit trail, the Prometheus counters and a bounded
in-memory log of recent decisions.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from mailgate.audit.logger import SecurityAuditLogger
from mailgate.domain.errors import MailGateError
from mailgate.domain.models import EmailData, HandlerResult, SecurityResult, VisibilityContext
from mailgate.domain.types import POLICY_DESCRIPTIONS, PolicyName
from mailgate.observability.metrics import POLICY_ERRORS, outcome_label, record_decision
from mailgate.security.models import (
    AgentSecurityConfig,
    AgentSecurityConfigUpdate,
    BulkUpdateResult,
)
from mailgate.security.policies import (
    DEFAULT_TRUST_TIMEOUT_SECONDS,
    DEFAULT_WINDOW_SECONDS,
    PolicyDependencies,
    run_policy_chain,
)
from mailgate.security.rate_limit import RateLimitCounter
from mailgate.security.store import ConfigStore
from mailgate.security.trust import TrustStore

logger = structlog.get_logger()


@runtime_checkable
class EmailCommand(Protocol):
    """Business handler contract wrapped by :class:`SecureCommand`."""

    async def process(self, email: EmailData, context: VisibilityContext) -> HandlerResult:
        """Handle one inbound message."""
        ...


def blocked_result(agent_name: str, email: EmailData, result: SecurityResult) -> HandlerResult:
    """Build the handler-shaped failure returned when a request is denied."""
    rate_limit = result.rate_limit.model_dump(mode="json") if result.rate_limit else None
    return HandlerResult(
        success=False,
        message=(
            f"Request from {email.sender} to {agent_name} was blocked by "
            f"security policy: {result.reason}"
        ),
        data={
            "securityBlock": True,
            "quarantine": result.quarantine,
            "rateLimit": rate_limit,
            "metadata": result.metadata,
            "policy": result.policy,
        },
    )


class SecureCommand:
    """A business command that only runs after the agent's policies allow.

    On denial the wrapped command is never called.  On allow the call is
    forwarded with the exact arguments and the wrapped result is returned
    as-is.  Exceptions from the wrapped command are logged and converted to
    a failed :class:`HandlerResult`.

    Args:
        layer: The security layer that validates each request.
        agent_name: The agent whose configuration applies.
        command: The wrapped handler.
    """

    def __init__(self, layer: SecurityLayer, agent_name: str, command: Any) -> None:
        self._layer = layer
        self.agent_name = agent_name
        self.command = command

    @property
    def supports_followup(self) -> bool:
        return callable(getattr(self.command, "handle_followup", None))

    async def process(
        self, email: EmailData, context: VisibilityContext, *args: Any, **kwargs: Any
    ) -> HandlerResult:
        result = await self._layer.validate_request(email, context, self.agent_name)
        if not result.allowed:
            return blocked_result(self.agent_name, email, result)
        return await self._invoke(self.command.process, email, context, *args, **kwargs)

    async def handle_followup(
        self, email: EmailData, context: VisibilityContext, *args: Any, **kwargs: Any
    ) -> HandlerResult:
        """Validate and forward a follow-up message on an existing thread."""
        if not self.supports_followup:
            return HandlerResult(
                success=False,
                message=f"Agent {self.agent_name} does not handle follow-ups",
            )
        result = await self._layer.validate_request(email, context, self.agent_name)
        if not result.allowed:
            return blocked_result(self.agent_name, email, result)
        return await self._invoke(self.command.handle_followup, email, context, *args, **kwargs)

    async def _invoke(
        self,
        handler: Any,
        email: EmailData,
        context: VisibilityContext,
        *args: Any,
        **kwargs: Any,
    ) -> HandlerResult:
        try:
            return await handler(email, context, *args, **kwargs)
        except Exception as exc:
            logger.exception(
                "secure_command_failed",
                agent=self.agent_name,
                message_id=email.message_id,
            )
            return HandlerResult(
                success=False,
                message=f"Agent {self.agent_name} failed to process request: {exc}",
                data={"error": type(exc).__name__},
            )


class SecurityLayer:
    """Enforces per-agent security policies in front of business commands.

    Args:
        store: Where agent configurations live.
        store_is_atomic: True when the store guarantees readers never see a
            partially-written snapshot.  When False, reads also take the
            layer's lock.
        counter: Rate-limit counter; a fresh one is created when omitted.
        trust_store: Source of trust relationships for the trust policy.
        audit_logger: Durable audit trail; decisions are only kept in memory
            when omitted.
        window_seconds: Rate-limit window length.
        trust_lookup_timeout: Upper bound on a trust lookup, in seconds.
        recent_limit: How many decisions :meth:`recent_decisions` retains.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        store_is_atomic: bool = False,
        counter: RateLimitCounter | None = None,
        trust_store: TrustStore | None = None,
        audit_logger: SecurityAuditLogger | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        trust_lookup_timeout: float = DEFAULT_TRUST_TIMEOUT_SECONDS,
        recent_limit: int = 200,
    ) -> None:
        self._store = store
        self._store_is_atomic = store_is_atomic
        self._audit = audit_logger
        self._deps = PolicyDependencies(
            counter=counter,
            trust_store=trust_store,
            window_seconds=window_seconds,
            trust_lookup_timeout=trust_lookup_timeout,
        )
        self._lock = threading.Lock()
        self._recent: deque[dict[str, Any]] = deque(maxlen=recent_limit)

    @property
    def counter(self) -> RateLimitCounter:
        return self._deps.counter

    # -- Configuration -------------------------------------------------------

    def _read(self, agent_name: str) -> AgentSecurityConfig | None:
        if self._store_is_atomic:
            return self._store.get(agent_name)
        with self._lock:
            return self._store.get(agent_name)

    def get_agent_config(self, agent_name: str) -> AgentSecurityConfig | None:
        """Return the current snapshot for *agent_name*, or None if never configured."""
        return self._read(agent_name)

    def list_agent_configs(self) -> list[AgentSecurityConfig]:
        """Return every configured agent ordered by name."""
        if self._store_is_atomic:
            return self._store.list()
        with self._lock:
            return self._store.list()

    def set_agent_config(
        self,
        config: AgentSecurityConfigUpdate | AgentSecurityConfig,
        actor: str | None = None,
    ) -> AgentSecurityConfig:
        """Upsert an agent's configuration.

        Fields not set on *config* keep their previous value, or the default
        for an agent seen for the first time.

        Args:
            config: A partial update or a full snapshot.
            actor: Who made the change, recorded in the audit trail.

        Returns:
            The snapshot now stored.

        Raises:
            UnknownPolicyError: If a policy name is not recognized.
            InvalidPolicyChainError: If a policy is listed twice.
            pydantic.ValidationError: If a field value is invalid.
        """
        if isinstance(config, AgentSecurityConfig):
            config = AgentSecurityConfigUpdate.model_validate(
                config.model_dump(mode="json", exclude_unset=True)
                | {"agent_name": config.agent_name}
            )

        with self._lock:
            current = self._store.get(config.agent_name)
            base = current or AgentSecurityConfig.defaults_for(config.agent_name)
            updated = base.merged(config)
            self._store.set(updated)

        changes = config.model_dump(mode="json", exclude_unset=True, exclude={"agent_name"})
        logger.info(
            "agent_config_updated",
            agent=updated.agent_name,
            created=current is None,
            fields=sorted(changes),
        )
        self._audit_config_update(updated.agent_name, changes, actor)
        return updated

    def update_agent_policies(
        self,
        agent_name: str,
        policies: Iterable[str],
        actor: str | None = None,
    ) -> AgentSecurityConfig | None:
        """Replace only the policy chain of an existing agent.

        Returns:
            The new snapshot, or None when the agent has no configuration.

        Raises:
            UnknownPolicyError: If a policy name is not recognized.
        """
        update = AgentSecurityConfigUpdate(agent_name=agent_name, policies=list(policies))
        with self._lock:
            current = self._store.get(agent_name)
            if current is None:
                return None
            updated = current.merged(update)
            self._store.set(updated)

        logger.info(
            "agent_policies_updated",
            agent=agent_name,
            policies=[p.value for p in updated.policies],
        )
        self._audit_config_update(
            agent_name, {"policies": [p.value for p in updated.policies]}, actor
        )
        return updated

    def bulk_update(
        self,
        updates: Iterable[AgentSecurityConfigUpdate | Mapping[str, Any]],
        actor: str | None = None,
    ) -> list[BulkUpdateResult]:
        """Apply many updates independently; one failure does not stop the rest."""
        results: list[BulkUpdateResult] = []
        for item in updates:
            if isinstance(item, AgentSecurityConfigUpdate):
                agent_name = item.agent_name
            else:
                agent_name = str(item.get("agent_name", ""))
            try:
                update = (
                    item
                    if isinstance(item, AgentSecurityConfigUpdate)
                    else AgentSecurityConfigUpdate.model_validate(dict(item))
                )
                self.set_agent_config(update, actor=actor)
            except (MailGateError, ValidationError, ValueError) as exc:
                logger.warning("bulk_update_item_failed", agent=agent_name, error=str(exc))
                results.append(
                    BulkUpdateResult(agent_name=agent_name, success=False, message=str(exc))
                )
                continue
            results.append(
                BulkUpdateResult(agent_name=agent_name, success=True, message="updated")
            )
        return results

    # -- Validation ----------------------------------------------------------

    async def validate_request(
        self,
        email: EmailData,
        context: VisibilityContext,
        agent_name: str,
    ) -> SecurityResult:
        """Run *agent_name*'s policy chain against *email*.

        An agent without configuration has no policies and is allowed.  A
        configuration that cannot be read denies the request.
        """
        try:
            config = self._read(agent_name)
        except Exception:
            logger.exception("agent_config_read_failed", agent=agent_name)
            result = SecurityResult.deny("Security configuration unavailable")
            self._record(agent_name, email, result)
            return result

        if config is None:
            result = SecurityResult.allow()
        else:
            outcome = await run_policy_chain(email, context, config, self._deps)
            result = outcome.result
            for error in outcome.errors:
                POLICY_ERRORS.labels(agent=agent_name, policy=error.policy.value).inc()
                self._audit_policy_error(agent_name, email, error.policy, str(error))

        self._record(agent_name, email, result)
        return result

    async def simulate_request(
        self,
        email: EmailData,
        context: VisibilityContext,
        agent_name: str,
        config: AgentSecurityConfig | None = None,
    ) -> SecurityResult:
        """Evaluate a synthetic request without side effects.

        Uses a scratch rate-limit counter and records nothing, so operators
        can try a configuration without consuming an agent's budget.
        """
        config = config or self._read(agent_name)
        if config is None:
            return SecurityResult.allow()
        deps = PolicyDependencies(
            counter=RateLimitCounter(),
            trust_store=self._deps.trust_store,
            window_seconds=self._deps.window_seconds,
            trust_lookup_timeout=self._deps.trust_lookup_timeout,
        )
        outcome = await run_policy_chain(email, context, config, deps)
        return outcome.result

    def create_secure_command(self, agent_name: str, command: Any) -> SecureCommand:
        """Wrap *command* so it only runs when *agent_name*'s policies allow."""
        return SecureCommand(self, agent_name, command)

    # -- Reporting -----------------------------------------------------------

    def policy_catalogue(self) -> list[dict[str, str]]:
        """Return the name and description of every available policy."""
        return [
            {"name": policy.value, "description": POLICY_DESCRIPTIONS[policy]}
            for policy in PolicyName
        ]

    def recent_decisions(
        self, limit: int = 50, agent_name: str | None = None
    ) -> list[dict[str, Any]]:
        """Return the most recent decisions, newest first."""
        with self._lock:
            entries = list(self._recent)
        entries.reverse()
        if agent_name is not None:
            entries = [e for e in entries if e["agent_name"] == agent_name]
        return entries[:limit]

    def security_overview(self, recent_blocks: int = 10) -> dict[str, Any]:
        """Summarize policies, configured agents and recent denials."""
        decisions = self.recent_decisions(limit=len(self._recent) or 1)
        blocks = [d for d in decisions if not d["allowed"]]
        totals = {"allow": 0, "block": 0, "quarantine": 0}
        for d in decisions:
            totals[d["outcome"]] += 1
        return {
            "policies": self.policy_catalogue(),
            "agents": [c.model_dump(mode="json") for c in self.list_agent_configs()],
            "recent_blocks": blocks[:recent_blocks],
            "totals": totals,
        }

    # -- Recording -----------------------------------------------------------

    def _record(self, agent_name: str, email: EmailData, result: SecurityResult) -> None:
        outcome = outcome_label(result)
        entry = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "agent_name": agent_name,
            "message_id": email.message_id,
            "sender": email.sender,
            "allowed": result.allowed,
            "outcome": outcome,
            "quarantine": result.quarantine,
            "policy": result.policy,
            "reason": result.reason,
        }
        with self._lock:
            self._recent.append(entry)

        record_decision(agent_name, result)
        logger.info(
            "security_decision",
            agent=agent_name,
            message_id=email.message_id,
            outcome=outcome,
            policy=result.policy,
        )

        if self._audit is None:
            return
        try:
            self._audit.log_decision(agent_name, email.message_id, email.sender, result)
        except Exception:
            logger.exception("audit_write_failed", agent=agent_name, message_id=email.message_id)

    def _audit_policy_error(
        self, agent_name: str, email: EmailData, policy: PolicyName, error: str
    ) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log_policy_error(agent_name, email.message_id, policy.value, error)
        except Exception:
            logger.exception("audit_write_failed", agent=agent_name, message_id=email.message_id)

    def _audit_config_update(
        self, agent_name: str, changes: dict[str, Any], actor: str | None
    ) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log_config_update(agent_name, changes, actor=actor)
        except Exception:
            logger.exception("audit_write_failed", agent=agent_name)
