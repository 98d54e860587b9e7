"""Tests for the security admin API."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import SecretStr

from mailgate.admin.router import router
from mailgate.audit.logger import SecurityAuditLogger
from mailgate.audit.store import close_audit_db, init_audit_db
from mailgate.config import Settings
from mailgate.domain.models import EmailData, VisibilityContext
from mailgate.security.layer import SecurityLayer
from mailgate.security.models import AgentSecurityConfigUpdate
from mailgate.security.store import InMemoryConfigStore

ADMIN_TOKEN = "test-admin-token"
HEADERS = {"X-Admin-Token": ADMIN_TOKEN}
PREFIX = "/api/admin/security"


def _make_app(services: dict[str, Any], token: str = ADMIN_TOKEN) -> FastAPI:
    app = FastAPI()
    app.state.services = services
    app.state.settings = Settings(_env_file=None, admin_token=SecretStr(token))  # type: ignore[call-arg]
    app.include_router(router)
    return app


@pytest.fixture()
def layer() -> SecurityLayer:
    layer = SecurityLayer(InMemoryConfigStore())
    layer.set_agent_config(
        AgentSecurityConfigUpdate(
            agent_name="todo",
            policies=["rate-limit", "content-scanning"],
            max_requests_per_hour=50,
        )
    )
    return layer


@pytest.fixture()
def client(layer: SecurityLayer) -> TestClient:
    return TestClient(_make_app({"security_layer": layer}))


@pytest.fixture()
def audited(tmp_path: Path) -> Iterator[tuple[TestClient, SecurityLayer]]:
    conn = init_audit_db(tmp_path / "audit.db")
    audit_logger = SecurityAuditLogger(conn)
    layer = SecurityLayer(InMemoryConfigStore(), audit_logger=audit_logger)
    app = _make_app({"security_layer": layer, "audit_logger": audit_logger})
    yield TestClient(app), layer
    close_audit_db(conn)


class TestAuthentication:
    def test_missing_token(self, client: TestClient) -> None:
        assert client.get(f"{PREFIX}/policies").status_code == 401

    def test_wrong_token(self, client: TestClient) -> None:
        resp = client.get(f"{PREFIX}/policies", headers={"X-Admin-Token": "nope"})
        assert resp.status_code == 401

    def test_open_when_no_token_configured(self, layer: SecurityLayer) -> None:
        open_client = TestClient(_make_app({"security_layer": layer}, token=""))
        assert open_client.get(f"{PREFIX}/policies").status_code == 200

    def test_uninitialized_layer(self) -> None:
        bare = TestClient(_make_app({}))
        assert bare.get(f"{PREFIX}/policies", headers=HEADERS).status_code == 503


class TestReadEndpoints:
    def test_policies(self, client: TestClient) -> None:
        resp = client.get(f"{PREFIX}/policies", headers=HEADERS)
        names = [p["name"] for p in resp.json()["policies"]]
        assert names == [
            "rate-limit",
            "domain-blacklist",
            "domain-whitelist",
            "content-scanning",
            "trust-relationship",
        ]

    def test_get_agent(self, client: TestClient) -> None:
        resp = client.get(f"{PREFIX}/agents/todo", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["policies"] == ["rate-limit", "content-scanning"]
        assert resp.json()["max_requests_per_hour"] == 50

    def test_get_unknown_agent(self, client: TestClient) -> None:
        assert client.get(f"{PREFIX}/agents/ghost", headers=HEADERS).status_code == 404

    def test_overview(self, client: TestClient) -> None:
        body = client.get(f"{PREFIX}/overview", headers=HEADERS).json()
        assert [a["agent_name"] for a in body["agents"]] == ["todo"]
        assert body["recent_blocks"] == []
        assert set(body["totals"]) == {"allow", "block", "quarantine"}


class TestWriteEndpoints:
    def test_put_merges(self, client: TestClient, layer: SecurityLayer) -> None:
        resp = client.put(
            f"{PREFIX}/agents/todo",
            headers=HEADERS,
            json={"blocked_domains": ["Evil.com"]},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["blocked_domains"] == ["evil.com"]
        assert body["max_requests_per_hour"] == 50

    def test_put_creates_with_defaults(self, client: TestClient) -> None:
        resp = client.put(f"{PREFIX}/agents/faq", headers=HEADERS, json={"policies": []})
        assert resp.status_code == 200
        assert resp.json()["allow_self_service"] is True

    def test_put_unknown_policy(self, client: TestClient, layer: SecurityLayer) -> None:
        resp = client.put(
            f"{PREFIX}/agents/todo", headers=HEADERS, json={"policies": ["virus-scan"]}
        )
        assert resp.status_code == 400
        assert "virus-scan" in resp.json()["detail"]
        config = layer.get_agent_config("todo")
        assert config is not None and len(config.policies) == 2

    def test_put_invalid_value(self, client: TestClient) -> None:
        resp = client.put(
            f"{PREFIX}/agents/todo", headers=HEADERS, json={"max_requests_per_hour": 0}
        )
        assert resp.status_code == 422

    def test_patch_policies(self, client: TestClient) -> None:
        resp = client.patch(
            f"{PREFIX}/agents/todo/policies",
            headers=HEADERS,
            json={"policies": ["domain-blacklist", "rate-limit"]},
        )
        assert resp.status_code == 200
        assert resp.json()["policies"] == ["domain-blacklist", "rate-limit"]
        assert resp.json()["max_requests_per_hour"] == 50

    def test_patch_policies_unknown_agent(self, client: TestClient) -> None:
        resp = client.patch(
            f"{PREFIX}/agents/ghost/policies", headers=HEADERS, json={"policies": []}
        )
        assert resp.status_code == 404

    def test_patch_policies_duplicate(self, client: TestClient) -> None:
        resp = client.patch(
            f"{PREFIX}/agents/todo/policies",
            headers=HEADERS,
            json={"policies": ["rate-limit", "rate-limit"]},
        )
        assert resp.status_code == 400

    def test_bulk_update(self, client: TestClient) -> None:
        resp = client.patch(
            f"{PREFIX}/agents",
            headers=HEADERS,
            json={
                "updates": [
                    {"agent_name": "alex", "policies": ["trust-relationship"]},
                    {"agent_name": "faq", "policies": ["bogus"]},
                ]
            },
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        assert [r["success"] for r in body["results"]] == [True, False]

    def test_bulk_update_requires_items(self, client: TestClient) -> None:
        resp = client.patch(f"{PREFIX}/agents", headers=HEADERS, json={"updates": []})
        assert resp.status_code == 422


class TestSimulation:
    PHISHING = {
        "message_id": "sim-1",
        "from": "x@evil.com",
        "to": ["todo@inboxleap.com"],
        "subject": "Urgent: Transfer Bitcoin Now!",
        "body": "Your account will be suspended unless you click this link to verify!",
    }

    def test_uses_stored_config(self, client: TestClient) -> None:
        resp = client.post(
            f"{PREFIX}/agents/todo/test", headers=HEADERS, json={"email": self.PHISHING}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["configured"] is True
        assert body["result"]["allowed"] is False
        assert body["result"]["quarantine"] is True
        assert body["result"]["policy"] == "content-scanning"

    def test_override_does_not_persist(self, client: TestClient, layer: SecurityLayer) -> None:
        resp = client.post(
            f"{PREFIX}/agents/todo/test",
            headers=HEADERS,
            json={"email": self.PHISHING, "config": {"policies": []}},
        )
        assert resp.json()["result"]["allowed"] is True
        config = layer.get_agent_config("todo")
        assert config is not None and len(config.policies) == 2

    def test_does_not_consume_rate_limit(self, client: TestClient, layer: SecurityLayer) -> None:
        email = {**self.PHISHING, "from": "user@company.com", "subject": "Hi", "body": "Hi"}
        for _ in range(3):
            client.post(f"{PREFIX}/agents/todo/test", headers=HEADERS, json={"email": email})
        assert layer.counter.current_count("todo") == 0
        assert layer.recent_decisions() == []

    def test_bad_override(self, client: TestClient) -> None:
        resp = client.post(
            f"{PREFIX}/agents/todo/test",
            headers=HEADERS,
            json={"email": self.PHISHING, "config": {"policies": ["nope"]}},
        )
        assert resp.status_code == 400

    def test_unconfigured_agent_allows(self, client: TestClient) -> None:
        resp = client.post(
            f"{PREFIX}/agents/ghost/test", headers=HEADERS, json={"email": self.PHISHING}
        )
        body = resp.json()
        assert body["agent_name"] == "ghost"
        assert body["configured"] is False
        assert body["result"]["allowed"] is True


class TestAuditEndpoint:
    def test_memory_source_without_audit_db(
        self,
        client: TestClient,
        layer: SecurityLayer,
        sample_email: EmailData,
        sample_context: VisibilityContext,
    ) -> None:
        asyncio.run(layer.validate_request(sample_email, sample_context, "todo"))
        body = client.get(f"{PREFIX}/audit", headers=HEADERS).json()
        assert body["source"] == "memory"
        assert [e["message_id"] for e in body["entries"]] == ["msg-001"]

    def test_audit_db_source(self, audited: tuple[TestClient, SecurityLayer]) -> None:
        client, layer = audited
        client.put(
            f"{PREFIX}/agents/todo",
            headers=HEADERS,
            json={"policies": ["domain-blacklist"], "blocked_domains": ["evil.com"]},
        )

        body = client.get(
            f"{PREFIX}/audit",
            headers=HEADERS,
            params={"agent": "todo", "event_type": "config_update"},
        ).json()

        assert body["source"] == "audit_db"
        [entry] = body["entries"]
        assert entry["metadata"]["actor"] == "admin-api"

    def test_rejects_bad_limit(self, client: TestClient) -> None:
        assert client.get(f"{PREFIX}/audit", headers=HEADERS, params={"limit": 0}).status_code == 422
