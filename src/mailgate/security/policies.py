"""The five security policies and the ordered chain that runs them.

Every policy is a coroutine ``(email, context, config, deps) ->
SecurityResult`` and all of them are reached through
:func:`evaluate_policy`, which dispatches over the closed
:class:`PolicyName` enum.  :func:`run_policy_chain` evaluates an agent's
configured policies front to back and returns the first denial.

A policy that raises is skipped: the error is wrapped in
:class:`PolicyEvaluationError`, logged, and evaluation continues with the
next policy.  Trust lookups that time out are not errors; they fail closed
inside the trust-relationship policy.
"""

from __future__ import annotations

from typing import NamedTuple, assert_never

import structlog

from mailgate.domain.errors import PolicyEvaluationError, TrustLookupTimeoutError
from mailgate.domain.models import EmailData, RateLimitInfo, SecurityResult, VisibilityContext
from mailgate.domain.types import PolicyName, RateLimitScope, TrustStatus
from mailgate.routing.address import canonical_address, sender_domain
from mailgate.security.content import scan_content
from mailgate.security.models import AgentSecurityConfig
from mailgate.security.rate_limit import RateLimitCounter
from mailgate.security.trust import InMemoryTrustStore, TrustStore, lookup_trust_status

logger = structlog.get_logger()

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_TRUST_TIMEOUT_SECONDS = 2.0


class PolicyDependencies:
    """Shared collaborators handed to every policy evaluation.

    Args:
        counter: The rate-limit counter shared by all agents.
        trust_store: Source of trust relationships.
        window_seconds: Rate-limit window length.
        trust_lookup_timeout: Upper bound on a trust lookup, in seconds.
    """

    def __init__(
        self,
        counter: RateLimitCounter | None = None,
        trust_store: TrustStore | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        trust_lookup_timeout: float = DEFAULT_TRUST_TIMEOUT_SECONDS,
    ) -> None:
        self.counter = counter if counter is not None else RateLimitCounter()
        self.trust_store: TrustStore = trust_store or InMemoryTrustStore()
        self.window_seconds = window_seconds
        self.trust_lookup_timeout = trust_lookup_timeout


class ChainOutcome(NamedTuple):
    """Result of a chain run plus the policies that had to be skipped."""

    result: SecurityResult
    errors: list[PolicyEvaluationError]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def rate_limit_key(config: AgentSecurityConfig, email: EmailData) -> str:
    """Build the counter key for *config*'s scope.

    Raises:
        MalformedAddressError: If a sender-scoped key is needed and the
            sender address cannot be parsed.
    """
    scope = config.rate_limit_scope
    if scope == RateLimitScope.AGENT:
        return config.agent_name
    if scope == RateLimitScope.AGENT_SENDER:
        return f"{config.agent_name}:{canonical_address(email.sender)}"
    return f"{config.agent_name}:{sender_domain(email.sender)}"


def _domain_matches(domain: str, listed: str) -> bool:
    return domain == listed or domain.endswith("." + listed)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


async def check_rate_limit(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Count this request and deny once the hourly ceiling is exceeded."""
    ceiling = config.max_requests_per_hour
    if ceiling is None:
        return SecurityResult.allow()

    key = rate_limit_key(config, email)
    count = deps.counter.increment(key, deps.window_seconds)
    info = RateLimitInfo(
        current_count=count,
        requests_allowed=ceiling,
        window_seconds=deps.window_seconds,
        reset_at=deps.counter.reset_at(key),
    )
    if count > ceiling:
        return SecurityResult.deny(
            f"Rate limit exceeded: {count}/{ceiling} requests per hour",
            rate_limit=info,
            metadata={"key": key},
        )
    return SecurityResult.allow(rate_limit=info)


async def check_domain_blacklist(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Deny senders whose domain (or a parent domain) is blacklisted."""
    domain = sender_domain(email.sender)
    for listed in config.blocked_domains or []:
        if _domain_matches(domain, listed):
            return SecurityResult.deny(
                f"Domain {domain} is blacklisted",
                metadata={"domain": domain, "matched": listed},
            )
    return SecurityResult.allow()


async def check_domain_whitelist(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Allow only whitelisted sender domains; an empty whitelist allows nobody."""
    domain = sender_domain(email.sender)
    trusted = config.trusted_domains or []
    if any(_domain_matches(domain, listed) for listed in trusted):
        return SecurityResult.allow()
    return SecurityResult.deny(
        f"Domain {domain} is not in whitelist",
        metadata={"domain": domain, "trusted_domains": list(trusted)},
    )


async def check_content(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Quarantine messages matching the suspicious-pattern catalogue."""
    scan = scan_content(email.subject, email.body)
    if not scan.suspicious:
        return SecurityResult.allow()
    return SecurityResult.deny(
        "Email flagged for suspicious content",
        quarantine=True,
        metadata={
            "matched_patterns": scan.matched_patterns,
            "categories": scan.categories,
            "content_length": scan.content_length,
        },
    )


async def check_trust_relationship(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Require the owning identity to trust the sender.

    Only enforced when ``require_trust`` is set.  ``unknown`` senders pass
    only when the agent allows self-service; a lookup that times out is
    treated as untrusted.

    The owner is ``owner_identity`` when configured, else the mailbox the
    message was routed through, else the first recipient.
    """
    if not config.require_trust:
        return SecurityResult.allow()

    owner = config.owner_identity or context.identity
    if owner is None and context.recipients:
        owner = context.recipients[0]
    if owner is None:
        status = TrustStatus.UNKNOWN
    else:
        try:
            status = await lookup_trust_status(
                deps.trust_store, owner, email.sender, deps.trust_lookup_timeout
            )
        except TrustLookupTimeoutError as exc:
            logger.warning(
                "trust_lookup_timeout",
                owner=exc.owner,
                sender=exc.sender,
                timeout=exc.timeout,
            )
            return SecurityResult.deny(
                "Unable to validate trust relationship: lookup timed out",
                metadata={"owner": owner, "trust_status": "timeout"},
            )

    metadata = {"owner": owner, "trust_status": status.value}
    if status == TrustStatus.TRUSTED:
        return SecurityResult.allow(metadata=metadata)
    if status == TrustStatus.BLOCKED:
        return SecurityResult.deny(
            f"Sender {email.sender} is blocked by {owner}", metadata=metadata
        )
    if config.allow_self_service:
        return SecurityResult.allow(metadata={**metadata, "first_contact": True})
    return SecurityResult.deny(
        "No trust relationship found. Please establish trust first.",
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def evaluate_policy(
    policy: PolicyName,
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> SecurityResult:
    """Evaluate one named policy.

    Denials are stamped with the policy name.
    """
    match policy:
        case PolicyName.RATE_LIMIT:
            result = await check_rate_limit(email, context, config, deps)
        case PolicyName.DOMAIN_BLACKLIST:
            result = await check_domain_blacklist(email, context, config, deps)
        case PolicyName.DOMAIN_WHITELIST:
            result = await check_domain_whitelist(email, context, config, deps)
        case PolicyName.CONTENT_SCANNING:
            result = await check_content(email, context, config, deps)
        case PolicyName.TRUST_RELATIONSHIP:
            result = await check_trust_relationship(email, context, config, deps)
        case _:
            assert_never(policy)

    if result.allowed:
        return result
    return result.model_copy(update={"policy": policy.value})


async def run_policy_chain(
    email: EmailData,
    context: VisibilityContext,
    config: AgentSecurityConfig,
    deps: PolicyDependencies,
) -> ChainOutcome:
    """Run *config*'s policies in order and stop at the first denial.

    An empty chain, or one where every policy allows, yields an allow.  The
    rate-limit snapshot from an allowing rate-limit policy is carried onto
    the final allow.

    Args:
        email: The inbound message.
        context: How the owning identity was addressed.
        config: The agent's configuration snapshot.
        deps: Shared collaborators.

    Returns:
        The surfaced result and any policies skipped because of errors.
    """
    errors: list[PolicyEvaluationError] = []
    rate_limit: RateLimitInfo | None = None

    for policy in config.policies:
        try:
            result = await evaluate_policy(policy, email, context, config, deps)
        except Exception as exc:
            error = PolicyEvaluationError(policy, str(exc))
            logger.warning(
                "policy_evaluation_failed",
                agent=config.agent_name,
                policy=policy.value,
                message_id=email.message_id,
                error=str(exc),
            )
            errors.append(error)
            continue

        if not result.allowed:
            logger.warning(
                "security_policy_denied",
                agent=config.agent_name,
                policy=policy.value,
                sender=email.sender,
                reason=result.reason,
            )
            return ChainOutcome(result, errors)

        if result.rate_limit is not None:
            rate_limit = result.rate_limit

    return ChainOutcome(SecurityResult.allow(rate_limit=rate_limit), errors)
