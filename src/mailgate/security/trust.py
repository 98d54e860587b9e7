"""Trust-relationship lookups used by the trust-relationship policy.

Provides:
- ``TrustStore``: the protocol the policy depends on.
- ``InMemoryTrustStore``: a dict-backed store for tests and single-process use.
- ``HttpTrustStore``: an httpx client for an external trust service, with
  tenacity retries on transport errors.
- ``lookup_trust_status``: a bounded wait around any store that raises
  :class:`TrustLookupTimeoutError` instead of stalling the pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mailgate.domain.errors import MalformedAddressError, TrustLookupTimeoutError
from mailgate.domain.types import TrustStatus
from mailgate.routing.address import canonical_address

logger = structlog.get_logger()


class TrustStore(Protocol):
    """Answers whether *owner* trusts *sender*."""

    async def get_trust_status(self, owner: str, sender: str) -> TrustStatus:
        """Return the trust status of *sender* for *owner*."""
        ...


def _key(address: str) -> str:
    try:
        return canonical_address(address)
    except MalformedAddressError:
        return address.strip().lower()


class InMemoryTrustStore:
    """Dict-backed trust store keyed by canonical ``(owner, sender)`` pairs."""

    def __init__(self) -> None:
        self._relationships: dict[tuple[str, str], TrustStatus] = {}

    def set_trust_status(self, owner: str, sender: str, status: TrustStatus) -> None:
        """Record *status* for the ``(owner, sender)`` pair."""
        self._relationships[(_key(owner), _key(sender))] = status

    async def get_trust_status(self, owner: str, sender: str) -> TrustStatus:
        """Return the recorded status, or ``UNKNOWN`` for a first contact."""
        return self._relationships.get((_key(owner), _key(sender)), TrustStatus.UNKNOWN)


def _log_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "trust_lookup_retrying",
        attempt=retry_state.attempt_number,
        exception=str(exception),
    )


class HttpTrustStore:
    """Trust store backed by an HTTP service.

    Issues ``GET {base_url}/trust?owner=...&sender=...`` and expects a JSON
    body ``{"status": "trusted" | "blocked" | "unknown"}``.  Transport
    errors are retried up to three times; any other failure, or an
    unrecognized status, is reported as ``UNKNOWN``.

    Args:
        base_url: Root URL of the trust service.
        client: Optional pre-configured ``httpx.AsyncClient`` (tests).
        attempts: Maximum attempts per lookup.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        attempts: int = 3,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=5.0)
        self._attempts = attempts

    async def get_trust_status(self, owner: str, sender: str) -> TrustStatus:
        """Query the trust service for ``(owner, sender)``."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential_jitter(initial=0.1, max=1, jitter=0.1),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.get(
                        f"{self._base_url}/trust",
                        params={"owner": _key(owner), "sender": _key(sender)},
                    )
                    response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("trust_lookup_failed", owner=owner, sender=sender)
            return TrustStatus.UNKNOWN

        try:
            payload = response.json()
        except ValueError:
            logger.warning("trust_lookup_invalid_json", owner=owner, sender=sender)
            return TrustStatus.UNKNOWN

        raw = str(payload.get("status", "")).lower() if isinstance(payload, dict) else ""
        try:
            return TrustStatus(raw)
        except ValueError:
            logger.warning("trust_lookup_unrecognized_status", status=raw)
            return TrustStatus.UNKNOWN

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


async def lookup_trust_status(
    store: TrustStore,
    owner: str,
    sender: str,
    timeout: float,
) -> TrustStatus:
    """Await *store* for at most *timeout* seconds.

    Args:
        store: The trust store to query.
        owner: The owning identity.
        sender: The sender address.
        timeout: Upper bound on the wait, in seconds.

    Returns:
        The status reported by the store.

    Raises:
        TrustLookupTimeoutError: If the store does not answer in time.
    """
    try:
        return await asyncio.wait_for(store.get_trust_status(owner, sender), timeout)
    except TimeoutError:
        raise TrustLookupTimeoutError(owner, sender, timeout) from None
