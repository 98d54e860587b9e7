"""Domain enumerations for routing and security-policy evaluation."""

from enum import StrEnum


class RouteDecision(StrEnum):
    """Logical agent families an inbound email can be routed to."""

    INTELLIGENCE = "intelligence"
    TASK = "task"
    LOAD_BALANCER = "load_balancer"
    NONE = "none"


class PolicyName(StrEnum):
    """The closed set of security policies an agent can enable."""

    RATE_LIMIT = "rate-limit"
    DOMAIN_BLACKLIST = "domain-blacklist"
    DOMAIN_WHITELIST = "domain-whitelist"
    CONTENT_SCANNING = "content-scanning"
    TRUST_RELATIONSHIP = "trust-relationship"


class TrustStatus(StrEnum):
    """Trust relationship between an owning identity and a sender."""

    TRUSTED = "trusted"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"


class RateLimitScope(StrEnum):
    """Granularity of the rate-limit counter key."""

    AGENT = "agent"
    AGENT_SENDER = "agent_sender"
    AGENT_SENDER_DOMAIN = "agent_sender_domain"


# Human-readable descriptions served by the policy catalogue.
POLICY_DESCRIPTIONS: dict[PolicyName, str] = {
    PolicyName.RATE_LIMIT: "Limits requests per rolling hour",
    PolicyName.DOMAIN_BLACKLIST: "Blocks senders from blacklisted domains",
    PolicyName.DOMAIN_WHITELIST: "Allows only senders from whitelisted domains",
    PolicyName.CONTENT_SCANNING: "Scans subject and body for suspicious patterns",
    PolicyName.TRUST_RELATIONSHIP: "Requires a trust relationship between sender and owner",
}
