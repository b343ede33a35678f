import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from leadflow.config import settings
from leadflow.database import get_db
from leadflow.main import app
from leadflow.routers import webhook as webhook_router
from leadflow.schemas.dispatch import DispatchResponse, TaskType
from leadflow.services.health_service import HealthCheckResult
from leadflow.services.learning_service import LearningOutcome
from leadflow.services.llm import get_llm_provider
from leadflow.services.pipeline_service import WebhookOutcome

ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db, llm):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_llm_provider] = lambda: llm
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_token():
    with patch.object(settings, "admin_token", ADMIN_TOKEN):
        yield ADMIN_TOKEN


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestWebhookVerification:
    @patch("leadflow.routers.webhook.verify_challenge", return_value="1158201444")
    def test_returns_challenge(self, mock_verify, client):
        response = client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
        )

        assert response.status_code == 200
        assert response.text == "1158201444"
        assert mock_verify.call_args[0][1:] == ("subscribe", "verify-me", "1158201444")

    @patch("leadflow.routers.webhook.verify_challenge", return_value=None)
    def test_rejects_bad_token(self, mock_verify, client):
        response = client.get("/webhook/whatsapp", params={"hub.mode": "subscribe", "hub.verify_token": "x"})
        assert response.status_code == 403


class TestWebhookReceive:
    @patch("leadflow.routers.webhook.process_webhook")
    def test_processed(self, mock_process, client):
        mock_process.return_value = WebhookOutcome(kind="events", processed=2, ai_replies=1, duplicates=1)

        response = client.post("/webhook/whatsapp", json={"event": "messages.upsert", "instance": "sales-1"})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["processed"] == 2
        assert body["ai_replies"] == 1
        assert "1 duplicate" in body["message"]

    @patch("leadflow.routers.webhook.process_webhook")
    def test_ignored(self, mock_process, client):
        mock_process.return_value = WebhookOutcome(kind="ignored", reason="unknown_format")

        body = client.post("/webhook/whatsapp", json={"foo": "bar"}).json()

        assert body["success"] is True
        assert body["message"] == "Ignored: unknown_format"

    def test_pipeline_runs_in_threadpool(self, client, db, llm):
        payload = {"event": "messages.upsert", "instance": "sales-1"}
        with patch("leadflow.routers.webhook.run_in_threadpool", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = WebhookOutcome(kind="events", processed=1)
            response = client.post("/webhook/whatsapp", json=payload)

        assert response.json()["processed"] == 1
        func, *args = mock_run.await_args[0]
        assert func is webhook_router.process_webhook
        assert args == [db, payload, llm]

    def test_invalid_json_still_200(self, client):
        response = client.post("/webhook/whatsapp", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    @patch("leadflow.routers.webhook.alert_error")
    @patch("leadflow.routers.webhook.process_webhook", side_effect=RuntimeError("boom"))
    def test_unexpected_error_still_200(self, mock_process, mock_alert, client, db):
        response = client.post("/webhook/whatsapp", json={"event": "messages.upsert", "instance": "sales-1"})

        assert response.status_code == 200
        assert response.json()["success"] is False
        db.rollback.assert_called_once()
        mock_alert.assert_called_once()


class TestDispatchEndpoint:
    def _body(self, task="chat"):
        return {"task": task, "tenant_id": str(uuid.uuid4()), "payload": {"message": "hi"}}

    @patch("leadflow.routers.dispatch.dispatch")
    def test_gate_denial_is_200(self, mock_dispatch, client):
        mock_dispatch.return_value = DispatchResponse(success=False, task=TaskType.CHAT, reason="outside_hours")

        response = client.post("/ai/dispatch", json=self._body())

        assert response.status_code == 200
        assert response.json()["reason"] == "outside_hours"

    @patch("leadflow.routers.dispatch.dispatch")
    def test_quota_is_403(self, mock_dispatch, client):
        mock_dispatch.return_value = DispatchResponse(success=False, task=TaskType.CHAT, reason="quota_exceeded")
        assert client.post("/ai/dispatch", json=self._body()).status_code == 403

    @patch("leadflow.routers.dispatch.dispatch")
    def test_rate_limit_is_429_with_retry_after(self, mock_dispatch, client):
        mock_dispatch.return_value = DispatchResponse(
            success=False, task=TaskType.CHAT, reason="rate_limited", retry_after=17
        )

        response = client.post("/ai/dispatch", json=self._body())

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"
        assert response.json()["retry_after"] == 17

    @patch("leadflow.routers.dispatch.dispatch")
    def test_user_header_is_passed(self, mock_dispatch, client, db):
        user_id = uuid.uuid4()
        mock_dispatch.return_value = DispatchResponse(success=True, task=TaskType.ANALYZE, data={})

        response = client.post("/ai/dispatch", json=self._body("analyze"), headers={"X-User-Id": str(user_id)})

        assert response.status_code == 200
        assert mock_dispatch.call_args[1]["user_id"] == user_id
        db.commit.assert_called_once()

    def test_bad_user_header(self, client):
        response = client.post("/ai/dispatch", json=self._body(), headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 400

    def test_unknown_task_rejected(self, client):
        assert client.post("/ai/dispatch", json=self._body("dance")).status_code == 422


class TestLearnEndpoint:
    @patch("leadflow.routers.dispatch.learn_from_agent_reply")
    def test_learn(self, mock_learn, client):
        mock_learn.return_value = LearningOutcome(learned=True, content_type="faq")

        response = client.post("/ai/learn", json={"tenant_id": str(uuid.uuid4()), "content": "We open at 9"})

        assert response.json() == {"learned": True, "reason": None, "content_type": "faq", "became_ready": False}

    def test_blank_content(self, client):
        response = client.post("/ai/learn", json={"tenant_id": str(uuid.uuid4()), "content": "  "})
        assert response.status_code == 400


class TestAdmin:
    def test_requires_token(self, client, admin_token):
        response = client.post(f"/admin/training/{uuid.uuid4()}/approve")
        assert response.status_code == 401

    def test_unconfigured_token(self, client):
        with patch.object(settings, "admin_token", None):
            response = client.post(f"/admin/training/{uuid.uuid4()}/approve", headers={"X-Admin-Token": "x"})
        assert response.status_code == 500

    def test_approve(self, client, db, admin_token, make_training):
        training = make_training("ready", messages_analyzed=120, confidence_score=40)
        db.query.return_value.filter.return_value.first.return_value = training

        response = client.post(f"/admin/training/{uuid.uuid4()}/approve", headers={"X-Admin-Token": admin_token})

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert training.activated_at is not None
        db.commit.assert_called_once()

    def test_invalid_transition_is_409(self, client, db, admin_token, make_training):
        db.query.return_value.filter.return_value.first.return_value = make_training("learning")

        response = client.post(f"/admin/training/{uuid.uuid4()}/approve", headers={"X-Admin-Token": admin_token})

        assert response.status_code == 409

    def test_unknown_action(self, client, admin_token):
        response = client.post(f"/admin/training/{uuid.uuid4()}/reset", headers={"X-Admin-Token": admin_token})
        assert response.status_code == 404

    @patch("leadflow.routers.admin.run_health_sweep")
    def test_health_check(self, mock_sweep, client, admin_token):
        connection_id = uuid.uuid4()
        mock_sweep.return_value = [HealthCheckResult(connection_id, "official", "down", 40, "HTTP 500")]

        response = client.post(f"/admin/health-check/{uuid.uuid4()}", headers={"X-Admin-Token": admin_token})

        body = response.json()
        assert body["checked"] == 1
        assert body["down"] == 1
        assert body["results"][0]["connection_id"] == str(connection_id)
