"""Pydantic v2 models for inbound email, evaluation context, and decisions."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class EmailData(BaseModel):
    """One inbound message as handed over by the ingestion component.

    Created once per ingested message and never mutated.  ``sender`` is
    populated from the ``from`` key when loading raw payloads.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str
    subject: str = ""
    sender: str = Field(alias="from")
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    body: str = ""
    date: datetime = Field(default_factory=_utcnow)
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    thread_id: str | None = None

    @field_validator("message_id")
    @classmethod
    def message_id_must_not_be_empty(cls, v: str) -> str:
        """Ensure message_id is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("message_id must not be empty")
        return v

    @property
    def all_recipients(self) -> list[str]:
        """Return To, Cc and Bcc recipients in that order (raw, not de-duplicated)."""
        return [*self.to, *self.cc, *self.bcc]


class VisibilityContext(BaseModel):
    """How the owning identity was addressed on a message.

    ``identity`` is the canonical address of the mailbox the message was
    routed through, or None when nothing was matched.

    Computed per evaluation, never persisted.
    """

    model_config = ConfigDict(frozen=True)

    is_to: bool = True
    is_cc: bool = False
    is_bcc: bool = False
    recipients: tuple[str, ...] = ()
    sender: str = ""
    identity: str | None = None


class RateLimitInfo(BaseModel):
    """Counter snapshot attached to results whenever the rate-limit policy ran."""

    model_config = ConfigDict(frozen=True)

    current_count: int
    requests_allowed: int
    window_seconds: int
    reset_at: datetime | None = None


class SecurityResult(BaseModel):
    """Outcome of validating one request against an agent's policy chain.

    ``policy`` names the policy whose verdict was surfaced; it is ``None``
    for a clean allow.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str | None = None
    quarantine: bool = False
    metadata: dict[str, Any] | None = None
    rate_limit: RateLimitInfo | None = None
    policy: str | None = None

    @classmethod
    def allow(cls, **kwargs: Any) -> "SecurityResult":
        """Build an allowing result."""
        return cls(allowed=True, **kwargs)

    @classmethod
    def deny(cls, reason: str, **kwargs: Any) -> "SecurityResult":
        """Build a denying result with a human-readable *reason*."""
        return cls(allowed=False, reason=reason, **kwargs)


class HandlerResult(BaseModel):
    """Result shape returned by downstream business handlers."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    data: dict[str, Any] | None = None
