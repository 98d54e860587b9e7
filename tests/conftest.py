"""Shared pytest fixtures for the mailgate test suite."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from mailgate.domain.models import EmailData, VisibilityContext
from mailgate.routing.router import EmailRouter, RoutingAddresses
from mailgate.security.layer import SecurityLayer
from mailgate.security.store import InMemoryConfigStore
from mailgate.security.trust import InMemoryTrustStore

SERVICE_DOMAIN = "inboxleap.com"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def routing_addresses() -> RoutingAddresses:
    """The standard mailbox layout on the test service domain."""
    return RoutingAddresses(
        service_domain=SERVICE_DOMAIN,
        intelligence_addresses=[f"polly@{SERVICE_DOMAIN}", f"t5t@{SERVICE_DOMAIN}"],
        task_addresses=[f"todo@{SERVICE_DOMAIN}", f"tasks@{SERVICE_DOMAIN}"],
        agent_addresses=[f"hello@{SERVICE_DOMAIN}"],
    )


@pytest.fixture
def router(routing_addresses: RoutingAddresses) -> EmailRouter:
    return EmailRouter(routing_addresses)


@pytest.fixture
def sample_email() -> EmailData:
    """A benign message addressed to the todo agent."""
    return EmailData(
        message_id="msg-001",
        subject="Weekly planning",
        sender="user@company.com",
        to=(f"todo@{SERVICE_DOMAIN}",),
        body="Test email body",
    )


@pytest.fixture
def sample_context() -> VisibilityContext:
    return VisibilityContext(
        is_to=True,
        recipients=(f"todo@{SERVICE_DOMAIN}",),
        sender="user@company.com",
    )


@pytest.fixture
def trust_store() -> InMemoryTrustStore:
    return InMemoryTrustStore()


@pytest.fixture
def security_layer(trust_store: InMemoryTrustStore) -> SecurityLayer:
    """A layer over an empty in-memory store with no audit trail."""
    return SecurityLayer(InMemoryConfigStore(), trust_store=trust_store)


@pytest.fixture
def make_email() -> Callable[..., EmailData]:
    """Factory building an EmailData with sensible defaults."""
    return _make_email


def _make_email(
    sender: str = "user@company.com",
    subject: str = "Hello",
    body: str = "Normal email content",
    to: tuple[str, ...] = (f"todo@{SERVICE_DOMAIN}",),
    message_id: str = "msg-001",
    **kwargs: object,
) -> EmailData:
    """Build an EmailData with sensible defaults."""
    return EmailData(
        message_id=message_id,
        subject=subject,
        sender=sender,
        to=to,
        body=body,
        **kwargs,  # type: ignore[arg-type]
    )
