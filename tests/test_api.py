"""
HTTP surface tests
==================

Runs the FastAPI app through its lifespan with process-local stores and a
scripted provider, checking status codes and the X-User-ID contract.
"""
import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

import main
from app.core.engine import create_chat_engine
from app.core.errors import ProviderError
from conftest import FakeProvider

USER = {"X-User-ID": "user_1"}
OTHER = {"X-User-ID": "user_2"}


def _client(engine):
    with patch.object(main.settings, "mongodb_uri", ""), \
            patch.object(main.settings, "enable_scheduler", False), \
            patch("main.create_chat_engine", return_value=engine):
        with TestClient(main.app) as client:
            yield client


@pytest.fixture
def client(engine):
    yield from _client(engine)


@pytest.fixture
def failing_client(stores):
    engine = create_chat_engine(stores=stores, provider=FakeProvider(error=ProviderError("503")))
    yield from _client(engine)


class TestServiceEndpoints:

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_health_reports_memory_store(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["database"] == "memory"
        assert body["scheduler"] == "stopped"

    def test_admin_metrics_require_token(self, client):
        with patch.object(main.settings, "admin_token", "secret"):
            assert client.get("/admin/routing/metrics").status_code == 403
            response = client.get("/admin/routing/metrics", headers={"X-Admin-Token": "secret"})

        assert response.status_code == 200
        assert "circuit_breaker" in response.json()


class TestChat:

    def test_missing_user_header(self, client):
        response = client.post("/chat", json={"message": "hello"})

        assert response.status_code == 400

    def test_invalid_user_header(self, client):
        response = client.post("/chat", json={"message": "hello"}, headers={"X-User-ID": "bad id!"})

        assert response.status_code == 400

    def test_blank_message_rejected(self, client):
        assert client.post("/chat", json={"message": "   "}, headers=USER).status_code == 422

    def test_routed_answer(self, client):
        body = client.post("/chat", json={"message": "Any tips for a healthy snack?"}, headers=USER).json()

        assert body["success"] is True
        assert body["response"] == "Eat more leafy greens."
        assert body["follow_up_questions"] == ["Want a recipe?"]
        assert body["metadata"]["routing_decision"]["tier"] == "L2"

    def test_out_of_scope(self, client):
        body = client.post("/chat", json={"message": "What's the weather today?"}, headers=USER).json()

        assert body["success"] is True
        assert body["metadata"]["cost"] == 0

    def test_provider_failure_is_a_soft_error(self, failing_client):
        response = failing_client.post("/chat", json={"message": "Any tips for a healthy snack?"}, headers=USER)

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "provider_failure"

    def test_paused_session_conflict(self, client):
        session_id = client.post("/sessions", json={}, headers=USER).json()["id"]
        client.post(f"/sessions/{session_id}/pause", headers=USER)

        response = client.post("/chat", json={"message": "hello", "session_id": session_id}, headers=USER)

        assert response.status_code == 409
        assert response.json()["error"] == "SessionPausedError"


class TestSessions:

    def test_create_list_get(self, client):
        created = client.post("/sessions", json={"session_type": "fitness_guidance"}, headers=USER).json()

        listed = client.get("/sessions", headers=USER).json()
        fetched = client.get(f"/sessions/{created['id']}", headers=USER).json()

        assert [s["id"] for s in listed["sessions"]] == [created["id"]]
        assert listed["stats"]["total_sessions"] == 1
        assert fetched["session"]["type"] == "fitness_guidance"
        assert fetched["messages"] == []

    def test_other_user_gets_404(self, client):
        session_id = client.post("/sessions", json={}, headers=USER).json()["id"]

        assert client.get(f"/sessions/{session_id}", headers=OTHER).status_code == 404
        assert client.delete(f"/sessions/{session_id}", headers=OTHER).status_code == 404

    def test_archived_session_cannot_resume(self, client):
        session_id = client.post("/sessions", json={}, headers=USER).json()["id"]
        client.post(f"/sessions/{session_id}/archive", headers=USER)

        assert client.post(f"/sessions/{session_id}/resume", headers=USER).status_code == 409

    def test_delete(self, client):
        session_id = client.post("/sessions", json={}, headers=USER).json()["id"]

        body = client.delete(f"/sessions/{session_id}", headers=USER).json()

        assert body["success"] is True
        assert client.get(f"/sessions/{session_id}", headers=USER).status_code == 404


class TestActionsAndIndexing:

    def test_unknown_message(self, client):
        response = client.post(
            "/actions/execute",
            json={"message_id": "missing", "action_index": 0, "confirmed": True},
            headers=USER,
        )

        assert response.status_code == 404

    def test_index_record(self, client):
        response = client.post(
            "/rag/index",
            json={"context_type": "workout_log", "payload": {"workout_name": "Leg day", "duration": 45}},
            headers=USER,
        )

        assert response.json()["indexed"] is True

    def test_index_rejects_bad_context_type(self, client):
        response = client.post("/rag/index", json={"context_type": "bad type!", "payload": {}}, headers=USER)

        assert response.status_code == 422


class TestDietPlanAndUsage:

    def test_no_plan_yet(self, client):
        assert client.get("/diet-plan", headers=USER).status_code == 404
        assert client.post("/diet-plan/transition", json={"choice": "maintain"}, headers=USER).status_code == 404

    def test_plan_created_from_chat(self, client):
        client.post("/chat", json={"message": "Give me a diet plan"}, headers=USER)

        body = client.get("/diet-plan", headers=USER).json()

        assert body["plan"]["phase"] == "correction"
        assert body["transition"] is None
        assert "diet plan" in body["summary"]

    def test_transition_choice_validated(self, client):
        client.post("/chat", json={"message": "Give me a diet plan"}, headers=USER)

        assert client.post("/diet-plan/transition", json={"choice": "skip"}, headers=USER).status_code == 422
        body = client.post("/diet-plan/transition", json={"choice": "maintain"}, headers=USER).json()
        assert body["plan"]["status"] == "extended"

    def test_usage(self, client):
        client.post("/chat", json={"message": "Any tips for a healthy snack?"}, headers=USER)

        body = client.get("/usage", headers=USER).json()

        assert body["ledger"]["request_count"] == 1
        assert body["ledger"]["daily_used"] > 0
        assert "total_queries" in body["smart_cache"]

    def test_health_profile_stats(self, client):
        assert client.get("/health-profile/stats", headers=USER).json()["total_metrics"] == 0
