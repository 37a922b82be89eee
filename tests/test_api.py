"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from intent_engine.api.app import create_app
from intent_engine.config.settings import EngineSettings
from intent_engine.identity.provider import GatewayHeaderIdentityProvider
from intent_engine.models.entities import EntityType, IndexedEntity, VectorHit
from intent_engine.pipeline.engine import build_engine


TENANT = "tenant_a"
USER = "user_1"


class _StaticIndex:
    def __init__(self, hits):
        self.hits = hits

    async def search(self, tenant_id, vector, limit, entity_types=None, min_score=0.0):
        return [
            VectorHit(entity=entity, score=score)
            for entity, score in self.hits
            if entity.tenant_id == tenant_id and (not entity_types or entity.type in entity_types)
        ][:limit]

    async def fetch(self, tenant_id, ids):
        return [e for e, _ in self.hits if e.id in ids and e.tenant_id == tenant_id]

    async def upsert(self, entity, vector):
        pass

    async def health_check(self):
        return True


def _make_engine(settings: EngineSettings):
    engine = build_engine(settings)
    engine.resolver.index = _StaticIndex([
        (IndexedEntity(id="task_1", tenant_id=TENANT, type=EntityType.TASK, title="Login bug", status="Ready"), 0.90),
        (IndexedEntity(id="sprint_12", tenant_id=TENANT, type=EntityType.SPRINT, title="Sprint 12", status="Active"), 0.95),
    ])
    service = engine.executor.service
    service.seed(TENANT, {"id": "task_1", "type": "task", "title": "Login bug", "sprint_id": "sprint_12"})
    service.seed(TENANT, {"id": "sprint_12", "type": "sprint", "title": "Sprint 12", "status": "Active"})
    return engine


def _client(**overrides):
    settings = EngineSettings(identity_mode="static", **overrides)
    return TestClient(create_app(engine=_make_engine(settings), settings=settings))


@pytest.fixture
def client():
    """Create a test client with fresh components."""
    with _client() as test_client:
        yield test_client


def _interpret(client, utterance: str, tenant_id: str = TENANT, user_id: str = USER, **kwargs):
    return client.post(
        "/v1/interpret",
        json={"utterance": utterance, "tenantId": tenant_id, "userId": user_id},
        **kwargs,
    )


class TestInterpretEndpoint:
    def test_auto_selected_action_executes(self, client):
        response = _interpret(client, "take ownership of the login bug task")

        assert response.status_code == 200
        data = response.json()
        assert data["intent"] == "take_ownership"
        assert data["autoSelect"] is True
        assert data["entities"][0]["id"] == "task_1"
        assert data["suggestedAction"]["riskLevel"] == "medium"
        assert data["state"] == "completed"
        assert data["actionResult"]["success"] is True
        assert data["interactionId"].startswith("ix_")

    def test_rate_limit_headers(self, client):
        response = _interpret(client, "close the sprint")
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
        assert "X-RateLimit-Reset" in response.headers

    def test_rate_limited(self):
        with _client(rate_limit_requests=1) as client:
            assert _interpret(client, "close the sprint").status_code == 200
            response = _interpret(client, "close the sprint")

        assert response.status_code == 429
        assert response.json()["error"]["kind"] == "RateLimited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_disable_llm_query_parameter(self, client):
        response = client.post(
            "/v1/interpret?disableLlm=true",
            json={"utterance": "close the sprint", "tenantId": TENANT, "userId": USER},
        )
        assert response.status_code == 200
        assert response.json()["degradedStages"] == []

    def test_invalid_body(self, client):
        response = _interpret(client, "")
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "InvalidParameters"
        assert response.json()["detail"]

    def test_overlong_utterance(self, client):
        assert _interpret(client, "x" * 2001).status_code == 422


class TestActEndpoint:
    def _draft(self, client) -> dict:
        response = _interpret(client, "close the sprint")
        data = response.json()
        assert data["state"] == "awaiting_confirmation"
        return data["suggestedAction"]

    def test_confirmed_action(self, client):
        command = self._draft(client)

        response = client.post("/v1/act", json={
            "actionCommand": command, "tenantId": TENANT, "userId": USER, "confirmed": True,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["actionType"] == "close_sprint"
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_unconfirmed_high_risk_conflicts(self, client):
        command = self._draft(client)

        response = client.post("/v1/act", json={
            "actionCommand": command, "tenantId": TENANT, "userId": USER,
        })

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "ConfirmationMismatch"

    def test_modified_command_conflicts(self, client):
        command = self._draft(client)
        command["entityId"] = "sprint_99"

        response = client.post("/v1/act", json={
            "actionCommand": command, "tenantId": TENANT, "userId": USER, "confirmed": True,
        })

        assert response.status_code == 409

    def test_execution_failure_is_bad_gateway(self, client):
        command = self._draft(client)
        first = client.post("/v1/act", json={
            "actionCommand": command, "tenantId": TENANT, "userId": USER, "confirmed": True,
        })
        assert first.status_code == 200

        # A fresh draft of the same command against an already closed sprint
        second_command = self._draft(client)
        response = client.post("/v1/act", json={
            "actionCommand": second_command, "tenantId": TENANT, "userId": USER, "confirmed": True,
        })

        assert response.status_code == 502
        data = response.json()
        assert data["success"] is False
        assert data["error"]["kind"] == "ExecutionFailed"


class TestGatewayIdentity:
    def setup_method(self):
        settings = EngineSettings(identity_mode="gateway")
        self.app = create_app(
            engine=_make_engine(settings),
            settings=settings,
            identity_provider=GatewayHeaderIdentityProvider(),
        )
        self.headers = {"X-Tenant-Id": TENANT, "X-User-Id": USER}

    def test_matching_headers(self):
        with TestClient(self.app) as client:
            response = _interpret(client, "close the sprint", headers=self.headers)
        assert response.status_code == 200

    def test_body_claiming_other_tenant_is_forbidden(self):
        with TestClient(self.app) as client:
            response = _interpret(client, "close the sprint", tenant_id="tenant_b", headers=self.headers)
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "IdentityMismatch"

    def test_missing_headers_are_forbidden(self):
        with TestClient(self.app) as client:
            response = _interpret(client, "close the sprint")
        assert response.status_code == 403

    def test_verify_requires_identity(self):
        with TestClient(self.app) as client:
            assert client.get("/v1/history/verify").status_code == 403
            response = client.get("/v1/history/verify", headers=self.headers)
        assert response.status_code == 200
        assert response.json()["recordCount"] == 0


class TestHistoryEndpoints:
    def test_history_lists_callers_records(self, client):
        _interpret(client, "close the sprint")
        _interpret(client, "hello there")
        _interpret(client, "hello there", user_id="user_2")

        response = client.get("/v1/history", params={"tenantId": TENANT, "userId": USER})

        assert response.status_code == 200
        records = response.json()
        assert len(records) == 2
        assert {r["user_id"] for r in records} == {USER}

    def test_analytics(self, client):
        _interpret(client, "close the sprint")
        _interpret(client, "hello there")

        response = client.get("/v1/history/analytics", params={"tenantId": TENANT, "userId": USER})

        data = response.json()
        assert data["total_interpretations"] == 2
        assert data["fallback_parses"] == 2
        assert data["intent_distribution"] == {"close_sprint": 1, "unknown": 1}

    def test_verify_chain_counts_callers_tenant(self, client):
        _interpret(client, "close the sprint")
        _interpret(client, "hello there", tenant_id="tenant_b")

        data = client.get("/v1/history/verify", params={"tenantId": TENANT, "userId": USER}).json()

        assert data == {"valid": True, "recordCount": 1}


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "intent-engine"}

    def test_ready_reports_fallback_mode(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["languageModel"]["mode"] == "fallback_only"
        assert data["vectorIndex"]["reachable"] is True
