"""Tests for the individual security policies and the policy chain."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from mailgate.domain.models import EmailData, VisibilityContext
from mailgate.domain.types import PolicyName, RateLimitScope, TrustStatus
from mailgate.routing.router import build_visibility_context
from mailgate.security.models import AgentSecurityConfig
from mailgate.security.policies import (
    PolicyDependencies,
    evaluate_policy,
    rate_limit_key,
    run_policy_chain,
)
from mailgate.security.rate_limit import RateLimitCounter
from mailgate.security.trust import InMemoryTrustStore

PHISHING_SUBJECT = "Urgent: Transfer Bitcoin Now!"
PHISHING_BODY = "Your account will be suspended unless you click this link to verify immediately!"


class SlowTrustStore:
    """Never answers within any reasonable timeout."""

    async def get_trust_status(self, owner: str, sender: str) -> TrustStatus:
        await asyncio.sleep(10)
        return TrustStatus.TRUSTED


class ExplodingTrustStore:
    async def get_trust_status(self, owner: str, sender: str) -> TrustStatus:
        raise RuntimeError("trust backend exploded")


@pytest.fixture
def deps() -> PolicyDependencies:
    return PolicyDependencies(counter=RateLimitCounter(), trust_store=InMemoryTrustStore())


def _config(**kwargs: object) -> AgentSecurityConfig:
    return AgentSecurityConfig(agent_name="todo", **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# rate-limit
# ---------------------------------------------------------------------------


class TestRateLimitPolicy:
    @pytest.mark.anyio()
    async def test_third_request_denied_with_post_increment_count(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(policies=["rate-limit"], max_requests_per_hour=2)
        email = make_email()

        first = await evaluate_policy(PolicyName.RATE_LIMIT, email, sample_context, config, deps)
        second = await evaluate_policy(PolicyName.RATE_LIMIT, email, sample_context, config, deps)
        third = await evaluate_policy(PolicyName.RATE_LIMIT, email, sample_context, config, deps)

        assert first.allowed and second.allowed
        assert first.rate_limit is not None and first.rate_limit.current_count == 1
        assert third.allowed is False
        assert third.rate_limit is not None
        assert third.rate_limit.current_count == 3
        assert third.rate_limit.requests_allowed == 2
        assert third.reason == "Rate limit exceeded: 3/2 requests per hour"
        assert third.policy == "rate-limit"
        assert third.quarantine is False

    @pytest.mark.anyio()
    async def test_no_ceiling_allows_without_counting(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(policies=["rate-limit"])
        result = await evaluate_policy(
            PolicyName.RATE_LIMIT, make_email(), sample_context, config, deps
        )
        assert result.allowed is True
        assert result.rate_limit is None
        assert deps.counter.current_count("todo") == 0

    @pytest.mark.parametrize(
        ("scope", "expected"),
        [
            (RateLimitScope.AGENT, "todo"),
            (RateLimitScope.AGENT_SENDER, "todo:jane@acme.com"),
            (RateLimitScope.AGENT_SENDER_DOMAIN, "todo:acme.com"),
        ],
    )
    def test_key_follows_scope(
        self, scope: RateLimitScope, expected: str, make_email: Callable[..., EmailData]
    ) -> None:
        config = _config(rate_limit_scope=scope)
        assert rate_limit_key(config, make_email(sender="Jane <Jane@ACME.com>")) == expected

    def test_empty_shared_counter_is_kept(self) -> None:
        counter = RateLimitCounter()
        assert PolicyDependencies(counter=counter).counter is counter

    @pytest.mark.anyio()
    async def test_sender_scope_counts_senders_separately(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(
            policies=["rate-limit"],
            max_requests_per_hour=1,
            rate_limit_scope=RateLimitScope.AGENT_SENDER,
        )
        a = make_email(sender="a@acme.com")
        b = make_email(sender="b@acme.com")
        assert (await evaluate_policy(PolicyName.RATE_LIMIT, a, sample_context, config, deps)).allowed
        assert (await evaluate_policy(PolicyName.RATE_LIMIT, b, sample_context, config, deps)).allowed
        denied = await evaluate_policy(PolicyName.RATE_LIMIT, a, sample_context, config, deps)
        assert denied.allowed is False


# ---------------------------------------------------------------------------
# domain lists
# ---------------------------------------------------------------------------


class TestDomainPolicies:
    @pytest.mark.anyio()
    async def test_blacklisted_domain_denied(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(policies=["domain-blacklist"], blocked_domains=["evil.com"])
        result = await evaluate_policy(
            PolicyName.DOMAIN_BLACKLIST,
            make_email(sender="hacker@evil.com"),
            sample_context,
            config,
            deps,
        )
        assert result.allowed is False
        assert "evil.com is blacklisted" in (result.reason or "")
        assert result.policy == "domain-blacklist"

    @pytest.mark.anyio()
    async def test_blacklist_matches_subdomains_case_insensitively(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(blocked_domains=["Evil.COM"])
        result = await evaluate_policy(
            PolicyName.DOMAIN_BLACKLIST,
            make_email(sender="x@mail.EVIL.com"),
            sample_context,
            config,
            deps,
        )
        assert result.allowed is False
        assert result.reason == "Domain mail.evil.com is blacklisted"

    @pytest.mark.anyio()
    async def test_lookalike_domain_is_not_blacklisted(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(blocked_domains=["evil.com"])
        result = await evaluate_policy(
            PolicyName.DOMAIN_BLACKLIST,
            make_email(sender="x@notevil.com"),
            sample_context,
            config,
            deps,
        )
        assert result.allowed is True

    @pytest.mark.anyio()
    async def test_whitelist(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(policies=["domain-whitelist"], trusted_domains=["company.com"])
        denied = await evaluate_policy(
            PolicyName.DOMAIN_WHITELIST,
            make_email(sender="user@untrusted.com"),
            sample_context,
            config,
            deps,
        )
        allowed = await evaluate_policy(
            PolicyName.DOMAIN_WHITELIST,
            make_email(sender="user@company.com"),
            sample_context,
            config,
            deps,
        )
        assert denied.allowed is False
        assert "not in whitelist" in (denied.reason or "")
        assert allowed.allowed is True

    @pytest.mark.anyio()
    @pytest.mark.parametrize("trusted", [None, []])
    async def test_empty_whitelist_denies_everyone(
        self,
        trusted: list[str] | None,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(trusted_domains=trusted)
        result = await evaluate_policy(
            PolicyName.DOMAIN_WHITELIST, make_email(), sample_context, config, deps
        )
        assert result.allowed is False


# ---------------------------------------------------------------------------
# content-scanning
# ---------------------------------------------------------------------------


class TestContentPolicy:
    @pytest.mark.anyio()
    async def test_suspicious_content_is_quarantined(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        email = make_email(subject=PHISHING_SUBJECT, body=PHISHING_BODY)
        result = await evaluate_policy(
            PolicyName.CONTENT_SCANNING, email, sample_context, _config(), deps
        )
        assert result.allowed is False
        assert result.quarantine is True
        assert "suspicious content" in (result.reason or "")
        assert result.metadata
        assert result.metadata["matched_patterns"]
        assert result.metadata["content_length"] == len(PHISHING_SUBJECT) + 1 + len(PHISHING_BODY)

    @pytest.mark.anyio()
    async def test_benign_content_allowed(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        result = await evaluate_policy(
            PolicyName.CONTENT_SCANNING, make_email(), sample_context, _config(), deps
        )
        assert result.allowed is True
        assert result.quarantine is False


# ---------------------------------------------------------------------------
# trust-relationship
# ---------------------------------------------------------------------------


class TestTrustPolicy:
    @pytest.mark.anyio()
    async def test_not_enforced_without_require_trust(
        self,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        deps = PolicyDependencies(trust_store=ExplodingTrustStore())
        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, _config(), deps
        )
        assert result.allowed is True

    @pytest.mark.anyio()
    async def test_trusted_sender_allowed(
        self, sample_context: VisibilityContext, make_email: Callable[..., EmailData]
    ) -> None:
        store = InMemoryTrustStore()
        store.set_trust_status("todo@inboxleap.com", "user@company.com", TrustStatus.TRUSTED)
        deps = PolicyDependencies(trust_store=store)
        config = _config(require_trust=True, allow_self_service=False)
        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, config, deps
        )
        assert result.allowed is True
        assert result.metadata == {"owner": "todo@inboxleap.com", "trust_status": "trusted"}

    @pytest.mark.anyio()
    async def test_blocked_sender_denied_even_with_self_service(
        self, sample_context: VisibilityContext, make_email: Callable[..., EmailData]
    ) -> None:
        store = InMemoryTrustStore()
        store.set_trust_status("todo@inboxleap.com", "user@company.com", TrustStatus.BLOCKED)
        deps = PolicyDependencies(trust_store=store)
        config = _config(require_trust=True, allow_self_service=True)
        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, config, deps
        )
        assert result.allowed is False
        assert result.quarantine is False
        assert result.policy == "trust-relationship"

    @pytest.mark.anyio()
    async def test_unknown_sender_depends_on_self_service(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        open_config = _config(require_trust=True, allow_self_service=True)
        closed_config = _config(require_trust=True, allow_self_service=False)

        first_contact = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, open_config, deps
        )
        denied = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, closed_config, deps
        )

        assert first_contact.allowed is True
        assert first_contact.metadata is not None
        assert first_contact.metadata["first_contact"] is True
        assert denied.allowed is False

    @pytest.mark.anyio()
    async def test_owner_identity_overrides_first_recipient(
        self, sample_context: VisibilityContext, make_email: Callable[..., EmailData]
    ) -> None:
        store = InMemoryTrustStore()
        store.set_trust_status("boss@acme.com", "user@company.com", TrustStatus.TRUSTED)
        deps = PolicyDependencies(trust_store=store)
        config = _config(
            require_trust=True, allow_self_service=False, owner_identity="boss@acme.com"
        )
        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, config, deps
        )
        assert result.allowed is True

    @pytest.mark.anyio()
    async def test_routed_mailbox_is_owner_when_agent_is_on_cc(
        self, make_email: Callable[..., EmailData]
    ) -> None:
        store = InMemoryTrustStore()
        store.set_trust_status("alex@inboxleap.com", "friend@corp.com", TrustStatus.TRUSTED)
        deps = PolicyDependencies(trust_store=store)
        config = _config(require_trust=True, allow_self_service=False)
        email = make_email(
            sender="friend@corp.com", to=("boss@corp.com",), cc=("alex@inboxleap.com",)
        )
        context = build_visibility_context(email, "alex@inboxleap.com")

        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, email, context, config, deps
        )

        assert result.allowed is True
        assert result.metadata == {"owner": "alex@inboxleap.com", "trust_status": "trusted"}

    @pytest.mark.anyio()
    async def test_lookup_timeout_fails_closed(
        self, sample_context: VisibilityContext, make_email: Callable[..., EmailData]
    ) -> None:
        deps = PolicyDependencies(trust_store=SlowTrustStore(), trust_lookup_timeout=0.01)
        config = _config(require_trust=True, allow_self_service=True)
        result = await evaluate_policy(
            PolicyName.TRUST_RELATIONSHIP, make_email(), sample_context, config, deps
        )
        assert result.allowed is False
        assert result.quarantine is False
        assert "timed out" in (result.reason or "")


# ---------------------------------------------------------------------------
# chain
# ---------------------------------------------------------------------------


class TestPolicyChain:
    @pytest.mark.anyio()
    async def test_empty_chain_allows(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        email = make_email(sender="hacker@evil.com", subject=PHISHING_SUBJECT, body=PHISHING_BODY)
        outcome = await run_policy_chain(email, sample_context, _config(), deps)
        assert outcome.result.allowed is True
        assert outcome.errors == []

    @pytest.mark.anyio()
    async def test_configured_order_governs_evaluation(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(
            policies=["content-scanning", "domain-blacklist", "rate-limit"],
            blocked_domains=["evil.com"],
            max_requests_per_hour=100,
        )
        outcome = await run_policy_chain(
            make_email(sender="hacker@evil.com"), sample_context, config, deps
        )
        assert outcome.result.allowed is False
        assert outcome.result.policy == "domain-blacklist"
        # Short-circuited before rate-limit counted anything.
        assert deps.counter.current_count("todo") == 0

    @pytest.mark.anyio()
    async def test_first_listed_policy_wins(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        email = make_email(sender="hacker@evil.com", subject=PHISHING_SUBJECT, body=PHISHING_BODY)

        blacklist_first = _config(
            policies=["domain-blacklist", "content-scanning"], blocked_domains=["evil.com"]
        )
        content_first = _config(
            policies=["content-scanning", "domain-blacklist"], blocked_domains=["evil.com"]
        )

        a = await run_policy_chain(email, sample_context, blacklist_first, deps)
        b = await run_policy_chain(email, sample_context, content_first, deps)

        assert a.result.policy == "domain-blacklist"
        assert a.result.quarantine is False
        assert b.result.policy == "content-scanning"
        assert b.result.quarantine is True

    @pytest.mark.anyio()
    async def test_allow_carries_rate_limit_snapshot(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(policies=["rate-limit", "content-scanning"], max_requests_per_hour=5)
        outcome = await run_policy_chain(make_email(), sample_context, config, deps)
        assert outcome.result.allowed is True
        assert outcome.result.rate_limit is not None
        assert outcome.result.rate_limit.current_count == 1

    @pytest.mark.anyio()
    async def test_failing_policy_is_skipped(
        self,
        deps: PolicyDependencies,
        sample_context: VisibilityContext,
        make_email: Callable[..., EmailData],
    ) -> None:
        config = _config(
            policies=["domain-blacklist", "content-scanning"], blocked_domains=["evil.com"]
        )
        email = make_email(sender="not-an-address", subject=PHISHING_SUBJECT, body=PHISHING_BODY)

        outcome = await run_policy_chain(email, sample_context, config, deps)

        assert [e.policy for e in outcome.errors] == [PolicyName.DOMAIN_BLACKLIST]
        assert outcome.result.policy == "content-scanning"

    @pytest.mark.anyio()
    async def test_failing_trust_store_is_treated_as_pass_through(
        self, sample_context: VisibilityContext, make_email: Callable[..., EmailData]
    ) -> None:
        deps = PolicyDependencies(trust_store=ExplodingTrustStore())
        config = _config(
            policies=["trust-relationship"], require_trust=True, allow_self_service=False
        )
        outcome = await run_policy_chain(make_email(), sample_context, config, deps)
        assert outcome.result.allowed is True
        assert len(outcome.errors) == 1
