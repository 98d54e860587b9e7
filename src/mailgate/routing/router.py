"""Recipient-based routing of inbound email to agent families.

The router never raises on bad input: malformed recipients are logged and
skipped, and an email with no recognized recipient routes to
``RouteDecision.NONE``.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, ConfigDict, field_validator

from mailgate.domain.errors import MalformedAddressError
from mailgate.domain.models import EmailData, VisibilityContext
from mailgate.domain.types import RouteDecision
from mailgate.routing.address import (
    NormalizedAddress,
    canonical_address,
    normalize_address,
    parse_tagged,
)

logger = structlog.get_logger()

# Trailing token segments treated as an instance name (acme-corp-sales).
INSTANCE_SUFFIXES: frozenset[str] = frozenset(
    {"sales", "support", "primary", "main", "dev", "prod", "test"}
)


class RoutingAddresses(BaseModel):
    """The configured address classes the router recognizes.

    All addresses and tags are stored lower-cased.
    """

    model_config = ConfigDict(frozen=True)

    service_domain: str
    intelligence_tags: frozenset[str] = frozenset({"polly", "t5t"})
    task_tags: frozenset[str] = frozenset({"todo", "alex", "faq"})
    intelligence_addresses: frozenset[str] = frozenset()
    task_addresses: frozenset[str] = frozenset()
    agent_addresses: frozenset[str] = frozenset()

    @field_validator("service_domain")
    @classmethod
    def lower_domain(cls, v: str) -> str:
        """Lower-case and strip the service domain."""
        return v.strip().lower()

    @field_validator(
        "intelligence_tags",
        "task_tags",
        "intelligence_addresses",
        "task_addresses",
        "agent_addresses",
        mode="before",
    )
    @classmethod
    def lower_entries(cls, v: object) -> object:
        """Lower-case and strip every configured tag or address."""
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple, set, frozenset)):
            return frozenset(str(item).strip().lower() for item in v)
        return v


class Route(BaseModel):
    """A routing decision plus the recipient that produced it."""

    model_config = ConfigDict(frozen=True)

    decision: RouteDecision
    tenant_token: str | None = None
    matched_address: str | None = None
    agent: str | None = None

    @property
    def is_routed(self) -> bool:
        """Return True when some recipient matched a known address class."""
        return self.decision != RouteDecision.NONE


class AgentAddressDetails(BaseModel):
    """Tenant details decoded from a ``agent+tenant[-instance]@domain`` address."""

    model_config = ConfigDict(frozen=True)

    agent_type: str
    tenant_id: str
    instance_name: str | None = None


class EmailRouter:
    """Classify inbound email by its recipients.

    Address classes are tried in a fixed precedence; within a class the
    first recipient in To, Cc, Bcc order wins:

    1. tenant-scoped intelligence addresses (``t5t+acme@domain``)
    2. exact intelligence addresses
    3. exact task addresses, then tenant-scoped task addresses
    4. any other registered agent address (``load_balancer``)

    Args:
        addresses: The configured address classes.
    """

    def __init__(self, addresses: RoutingAddresses) -> None:
        self._addresses = addresses

    @property
    def addresses(self) -> RoutingAddresses:
        """Return the configured address classes."""
        return self._addresses

    # ------------------------------------------------------------------
    # Route determination
    # ------------------------------------------------------------------

    def determine_route_by_recipient(self, email: EmailData) -> Route:
        """Decide which agent family handles *email*.

        Args:
            email: The inbound message.

        Returns:
            The route for the first matching address class, or a route with
            ``RouteDecision.NONE`` when no recipient is recognized.
        """
        recipients = self._unique_recipients(email)

        for addr in recipients:
            tagged = self._tagged_for(addr, self._addresses.intelligence_tags)
            if tagged is not None:
                return Route(
                    decision=RouteDecision.INTELLIGENCE,
                    tenant_token=tagged[1],
                    matched_address=addr.address.lower(),
                    agent=tagged[0],
                )

        for addr in recipients:
            key = addr.address.lower()
            if key in self._addresses.intelligence_addresses:
                return Route(
                    decision=RouteDecision.INTELLIGENCE,
                    matched_address=key,
                    agent=addr.local_part.lower(),
                )

        for addr in recipients:
            key = addr.address.lower()
            if key in self._addresses.task_addresses:
                return Route(
                    decision=RouteDecision.TASK,
                    matched_address=key,
                    agent=addr.local_part.lower(),
                )

        for addr in recipients:
            tagged = self._tagged_for(addr, self._addresses.task_tags)
            if tagged is not None:
                return Route(
                    decision=RouteDecision.TASK,
                    tenant_token=tagged[1],
                    matched_address=addr.address.lower(),
                    agent=tagged[0],
                )

        for addr in recipients:
            key = addr.address.lower()
            if key in self._addresses.agent_addresses:
                return Route(
                    decision=RouteDecision.LOAD_BALANCER,
                    matched_address=key,
                    agent=addr.local_part.lower(),
                )

        logger.debug("no_route_for_recipients", message_id=email.message_id)
        return Route(decision=RouteDecision.NONE)

    # ------------------------------------------------------------------
    # Tenant tokens
    # ------------------------------------------------------------------

    def extract_tenant_token(self, address: str) -> str | None:
        """Return the tenant token of a tagged intelligence address.

        Tolerates display-name-wrapped addresses.  Returns ``None`` for
        untagged addresses, empty tokens (``t5t+@domain``), non-intelligence
        tags, other domains, and malformed input.
        """
        try:
            addr = normalize_address(address)
        except MalformedAddressError:
            return None
        tagged = self._tagged_for(addr, self._addresses.intelligence_tags)
        return tagged[1] if tagged is not None else None

    def is_tenant_scoped_intelligence_address(self, address: str) -> bool:
        """Return True if *address* is a tagged intelligence inbox."""
        return self.extract_tenant_token(address) is not None

    def get_tenant_token_from_email(self, email: EmailData) -> str | None:
        """Return the first tenant token found across To, Cc and Bcc."""
        for recipient in email.all_recipients:
            token = self.extract_tenant_token(recipient)
            if token is not None:
                return token
        return None

    def extract_agent_details(self, address: str) -> AgentAddressDetails | None:
        """Decode agent type, tenant and optional instance from a tagged address.

        ``t5t+acme-corp-sales@domain`` yields agent ``t5t``, tenant
        ``acme-corp`` and instance ``sales``; a trailing segment that is not
        a known instance name stays part of the tenant id.
        """
        try:
            addr = normalize_address(address)
        except MalformedAddressError:
            return None
        known_tags = self._addresses.intelligence_tags | self._addresses.task_tags
        tagged = self._tagged_for(addr, known_tags)
        if tagged is None:
            return None

        agent_type, token = tagged
        tenant_id, dash, suffix = token.rpartition("-")
        if dash and tenant_id and suffix.lower() in INSTANCE_SUFFIXES:
            return AgentAddressDetails(
                agent_type=agent_type, tenant_id=tenant_id, instance_name=suffix.lower()
            )
        return AgentAddressDetails(agent_type=agent_type, tenant_id=token)

    # ------------------------------------------------------------------
    # Known addresses
    # ------------------------------------------------------------------

    def known_task_addresses(self) -> frozenset[str]:
        """Return the exact-match task agent addresses."""
        return frozenset(self._addresses.task_addresses)

    def known_intelligence_addresses(self) -> frozenset[str]:
        """Return the exact-match intelligence agent addresses."""
        return frozenset(self._addresses.intelligence_addresses)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tagged_for(
        self, addr: NormalizedAddress, tags: frozenset[str]
    ) -> tuple[str, str] | None:
        if addr.domain != self._addresses.service_domain:
            return None
        tagged = parse_tagged(addr.local_part)
        if tagged is None or tagged.tag.lower() not in tags:
            return None
        return tagged.tag.lower(), tagged.token

    def _unique_recipients(self, email: EmailData) -> list[NormalizedAddress]:
        seen: set[str] = set()
        unique: list[NormalizedAddress] = []
        for raw in email.all_recipients:
            try:
                addr = normalize_address(raw)
            except MalformedAddressError:
                logger.warning(
                    "skipping_malformed_recipient",
                    message_id=email.message_id,
                    recipient=raw,
                )
                continue
            key = addr.address.lower()
            if key in seen:
                continue
            seen.add(key)
            unique.append(addr)
        return unique


def build_visibility_context(email: EmailData, identity: str) -> VisibilityContext:
    """Describe how *identity* was addressed on *email*.

    Addresses are compared in canonical form, so display names and case do
    not matter.  An identity listed in several fields gets every matching
    flag.

    Args:
        email: The inbound message.
        identity: The owning identity (usually the matched agent address).

    Returns:
        The visibility context for *identity*.
    """

    def _contains(field: tuple[str, ...], target: str) -> bool:
        for raw in field:
            try:
                if canonical_address(raw) == target:
                    return True
            except MalformedAddressError:
                continue
        return False

    try:
        target = canonical_address(identity)
    except MalformedAddressError:
        target = identity.strip().lower()

    return VisibilityContext(
        is_to=_contains(email.to, target),
        is_cc=_contains(email.cc, target),
        is_bcc=_contains(email.bcc, target),
        recipients=tuple(email.all_recipients),
        sender=email.sender,
        identity=target or None,
    )
