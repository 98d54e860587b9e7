"""Audit trail models for security decisions and configuration changes.

Every validation outcome (allow, block, quarantine) and every configuration
write is recorded with the agent, the message and sender involved, the
policy that decided, and a policy-specific metadata payload.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """Types of events tracked in the security audit trail."""

    SECURITY_ALLOW = "security_allow"
    SECURITY_BLOCK = "security_block"
    SECURITY_QUARANTINE = "security_quarantine"
    POLICY_ERROR = "policy_error"
    CONFIG_UPDATE = "config_update"


class AuditEntry(BaseModel):
    """A single audit trail entry.

    All fields except event_type are optional: config updates have no
    message or sender, and clean allows have no policy or reason.
    """

    event_type: EventType
    agent_name: str | None = None
    message_id: str | None = None
    sender: str | None = None
    policy: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
