"""Email address normalization and plus-address recognition.

Provides helpers for:
- Stripping an optional display-name wrapper (``Jane <jane@acme.com>``)
- Splitting an address into local part and lower-cased domain
- Recognizing structured ``tag+token`` local parts used for tenant inboxes
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from mailgate.domain.errors import MalformedAddressError

_ANGLE_ADDR = re.compile(r"<([^<>]*)>")


class NormalizedAddress(BaseModel):
    """A parsed address with its domain lower-cased."""

    model_config = ConfigDict(frozen=True)

    local_part: str
    domain: str

    @property
    def address(self) -> str:
        """Return the canonical ``local@domain`` form."""
        return f"{self.local_part}@{self.domain}"


class TaggedLocalPart(BaseModel):
    """The two halves of a ``tag+token`` local part."""

    model_config = ConfigDict(frozen=True)

    tag: str
    token: str


def normalize_address(address: str) -> NormalizedAddress:
    """Parse a raw or display-name-wrapped address.

    Args:
        address: An address such as ``"jane@Acme.com"`` or
            ``"Jane Doe <jane@acme.com>"``.

    Returns:
        The address split into local part and lower-cased domain.

    Raises:
        MalformedAddressError: If no ``@`` is present, either half is empty,
            or the address contains whitespace.
    """
    if not isinstance(address, str):
        raise MalformedAddressError(repr(address))

    match = _ANGLE_ADDR.search(address)
    candidate = (match.group(1) if match else address).strip()

    local_part, sep, domain = candidate.rpartition("@")
    if not sep or not local_part or not domain:
        raise MalformedAddressError(address)
    if any(ch.isspace() for ch in candidate):
        raise MalformedAddressError(address)

    return NormalizedAddress(local_part=local_part, domain=domain.lower())


def canonical_address(address: str) -> str:
    """Return the fully lower-cased ``local@domain`` form used for matching.

    Raises:
        MalformedAddressError: If *address* cannot be parsed.
    """
    return normalize_address(address).address.lower()


def parse_tagged(local_part: str) -> TaggedLocalPart | None:
    """Split a ``tag+token`` local part on its first ``+``.

    Args:
        local_part: The local part of an address (no ``@domain``).

    Returns:
        The tag and token, or ``None`` when there is no ``+`` separator or
        either side of it is empty.
    """
    tag, sep, token = local_part.partition("+")
    if not sep or not tag or not token:
        return None
    return TaggedLocalPart(tag=tag, token=token)


def sender_domain(address: str) -> str:
    """Return the lower-cased domain of *address*.

    Raises:
        MalformedAddressError: If *address* cannot be parsed.
    """
    return normalize_address(address).domain
