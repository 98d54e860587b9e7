"""Domain types, models, and errors for the mail gateway."""

from mailgate.domain.errors import (
    InvalidPolicyChainError,
    MailGateError,
    MalformedAddressError,
    PolicyEvaluationError,
    TrustLookupTimeoutError,
    UnknownPolicyError,
)
from mailgate.domain.models import (
    EmailData,
    HandlerResult,
    RateLimitInfo,
    SecurityResult,
    VisibilityContext,
)
from mailgate.domain.types import (
    POLICY_DESCRIPTIONS,
    PolicyName,
    RateLimitScope,
    RouteDecision,
    TrustStatus,
)

__all__ = [
    "POLICY_DESCRIPTIONS",
    "EmailData",
    "HandlerResult",
    "InvalidPolicyChainError",
    "MailGateError",
    "MalformedAddressError",
    "PolicyEvaluationError",
    "PolicyName",
    "RateLimitInfo",
    "RateLimitScope",
    "RouteDecision",
    "SecurityResult",
    "TrustLookupTimeoutError",
    "TrustStatus",
    "UnknownPolicyError",
    "VisibilityContext",
]
