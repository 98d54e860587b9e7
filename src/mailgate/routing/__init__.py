"""Routing: address classification and recipient-based agent routing."""

from mailgate.routing.address import (
    NormalizedAddress,
    TaggedLocalPart,
    canonical_address,
    normalize_address,
    parse_tagged,
    sender_domain,
)
from mailgate.routing.router import (
    AgentAddressDetails,
    EmailRouter,
    Route,
    RoutingAddresses,
    build_visibility_context,
)

__all__ = [
    "AgentAddressDetails",
    "EmailRouter",
    "NormalizedAddress",
    "Route",
    "RoutingAddresses",
    "TaggedLocalPart",
    "build_visibility_context",
    "canonical_address",
    "normalize_address",
    "parse_tagged",
    "sender_domain",
]
