"""Per-agent security configuration models.

``AgentSecurityConfig`` is an immutable snapshot: updates produce a new
snapshot via :meth:`AgentSecurityConfig.merged` and stores replace whole
snapshots, so a reader never observes a partially-applied change.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from mailgate.domain.errors import InvalidPolicyChainError, UnknownPolicyError
from mailgate.domain.types import PolicyName, RateLimitScope


def parse_policy_chain(names: Iterable[str | PolicyName] | None) -> tuple[PolicyName, ...]:
    """Validate an ordered list of policy names.

    The resulting tuple is evaluated front to back and the first policy that
    denies wins; later policies are not run.

    Args:
        names: Policy names in evaluation order.  ``None`` means no policies.

    Returns:
        The policies as a tuple of :class:`PolicyName`.

    Raises:
        UnknownPolicyError: If any name is not a known policy.
        InvalidPolicyChainError: If a policy is listed twice.
    """
    if names is None:
        return ()
    if isinstance(names, str):
        raise InvalidPolicyChainError("Policies must be a list of names, not a string")

    raw = [str(n).strip() for n in names]
    valid = {p.value for p in PolicyName}
    unknown = [n for n in raw if n not in valid]
    if unknown:
        raise UnknownPolicyError(unknown)

    chain: list[PolicyName] = []
    for name in raw:
        policy = PolicyName(name)
        if policy in chain:
            raise InvalidPolicyChainError(f"Policy '{policy}' is listed more than once")
        chain.append(policy)
    return tuple(chain)


# Ordered, validated policy list -- first deny wins.
PolicyChain = Annotated[tuple[PolicyName, ...], BeforeValidator(parse_policy_chain)]


def _lower_domains(v: object) -> object:
    if v is None:
        return None
    if isinstance(v, str):
        v = [v]
    if isinstance(v, (list, tuple, set, frozenset)):
        return [str(d).strip().lower().lstrip("@") for d in v if str(d).strip()]
    return v


DomainList = Annotated[list[str] | None, BeforeValidator(_lower_domains)]


class AgentSecurityConfig(BaseModel):
    """Security configuration for one agent, keyed by ``agent_name``."""

    model_config = ConfigDict(frozen=True)

    agent_name: str
    policies: PolicyChain = ()
    custom_settings: dict[str, Any] = Field(default_factory=dict)
    max_requests_per_hour: int | None = None
    blocked_domains: DomainList = None
    trusted_domains: DomainList = None
    require_trust: bool | None = None
    allow_self_service: bool = True
    rate_limit_scope: RateLimitScope = RateLimitScope.AGENT
    owner_identity: str | None = None

    @field_validator("agent_name")
    @classmethod
    def agent_name_must_not_be_empty(cls, v: str) -> str:
        """Ensure agent_name is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("agent_name must not be empty")
        return v.strip()

    @field_validator("max_requests_per_hour")
    @classmethod
    def ceiling_must_be_positive(cls, v: int | None) -> int | None:
        """Ensure a configured ceiling is at least 1."""
        if v is not None and v < 1:
            raise ValueError("max_requests_per_hour must be at least 1")
        return v

    @classmethod
    def defaults_for(cls, agent_name: str) -> AgentSecurityConfig:
        """Return the configuration used for an agent seen for the first time."""
        return cls(agent_name=agent_name)

    def merged(self, update: AgentSecurityConfigUpdate) -> AgentSecurityConfig:
        """Return a new snapshot with the fields explicitly set on *update* applied.

        Raises:
            UnknownPolicyError: If the update names an unknown policy.
            InvalidPolicyChainError: If the update lists a policy twice.
        """
        changes = update.model_dump(exclude_unset=True, exclude={"agent_name"})
        if "policies" in changes:
            changes["policies"] = parse_policy_chain(changes["policies"])
        data = self.model_dump()
        data.update(changes)
        return AgentSecurityConfig.model_validate(data)


class AgentSecurityConfigUpdate(BaseModel):
    """A partial configuration; only fields that were set are applied.

    Policy names are validated when the update is merged, so an unknown
    name surfaces as :class:`UnknownPolicyError` rather than a schema error.
    """

    agent_name: str
    policies: list[str] | None = None
    custom_settings: dict[str, Any] | None = None
    max_requests_per_hour: int | None = None
    blocked_domains: list[str] | None = None
    trusted_domains: list[str] | None = None
    require_trust: bool | None = None
    allow_self_service: bool | None = None
    rate_limit_scope: RateLimitScope | None = None
    owner_identity: str | None = None

    @field_validator("custom_settings", "allow_self_service", "rate_limit_scope")
    @classmethod
    def explicit_null_not_allowed(cls, v: Any) -> Any:
        """Reject explicit nulls for fields whose stored value cannot be None."""
        if v is None:
            raise ValueError("field may be omitted but not set to null")
        return v


class BulkUpdateResult(BaseModel):
    """Per-agent outcome of a bulk configuration update."""

    agent_name: str
    success: bool
    message: str
