"""Request and response bodies for the security admin API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from mailgate.domain.models import EmailData, SecurityResult, VisibilityContext
from mailgate.security.models import BulkUpdateResult


class PoliciesPatch(BaseModel):
    """Replacement policy chain, in evaluation order."""

    policies: list[str]


class BulkUpdateRequest(BaseModel):
    """Many partial agent configurations applied independently.

    Items stay untyped here so one malformed entry is reported in its own
    result instead of rejecting the whole request.
    """

    updates: list[dict[str, Any]] = Field(min_length=1)


class BulkUpdateResponse(BaseModel):
    results: list[BulkUpdateResult]
    succeeded: int
    failed: int


class SimulationRequest(BaseModel):
    """A synthetic message to validate against an agent's policies.

    ``context`` defaults to the first To recipient being addressed directly.
    ``config`` overrides fields of the stored configuration for this run only.
    """

    email: EmailData
    context: VisibilityContext | None = None
    config: dict[str, Any] | None = None


class SimulationResponse(BaseModel):
    agent_name: str
    result: SecurityResult
    configured: bool
