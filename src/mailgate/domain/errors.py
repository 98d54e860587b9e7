"""Domain-specific exception classes for the mail gateway."""

from mailgate.domain.types import PolicyName


class MailGateError(Exception):
    """Base class for all domain errors in the mail gateway."""


class MalformedAddressError(MailGateError):
    """Raised when an email address cannot be parsed.

    Attributes:
        address: The raw address that failed to parse.
    """

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Malformed email address: {address!r}")


class PolicyEvaluationError(MailGateError):
    """Raised when a single policy could not complete its evaluation.

    Attributes:
        policy: The policy that failed.
    """

    def __init__(self, policy: PolicyName, detail: str) -> None:
        self.policy = policy
        super().__init__(f"Policy '{policy}' could not be evaluated: {detail}")


class TrustLookupTimeoutError(MailGateError):
    """Raised when the external trust store does not answer in time.

    Attributes:
        owner: The owning identity whose trust list was queried.
        sender: The sender address being checked.
        timeout: The bound, in seconds, that was exceeded.
    """

    def __init__(self, owner: str, sender: str, timeout: float) -> None:
        self.owner = owner
        self.sender = sender
        self.timeout = timeout
        super().__init__(
            f"Trust lookup for {sender} (owner {owner}) timed out after {timeout}s"
        )


class InvalidPolicyChainError(MailGateError, ValueError):
    """Raised when an agent's policy list is rejected at configuration time."""


class UnknownPolicyError(InvalidPolicyChainError):
    """Raised when a configuration names a policy that does not exist.

    Attributes:
        names: The unrecognized policy names.
    """

    def __init__(self, names: list[str]) -> None:
        self.names = names
        valid = ", ".join(p.value for p in PolicyName)
        super().__init__(
            f"Unknown security policies: {', '.join(names)}. Valid policies: {valid}"
        )
