from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from atende.database import get_db, utcnow
from atende.main import app
from atende.models import InboundJob, Message, TrainingSource, Webhook, WebhookDeliveryLog
from atende.routers import dependencies

ADMIN = {"X-Admin-Token": "admin-secret"}


def _event(**overrides):
    event = {
        "event": "onmessage",
        "session": "aurora",
        "id": "true_5511999990000@c.us_3EB0A1",
        "from": "5511999990000@c.us",
        "body": "tem camiseta azul?",
        "type": "chat",
        "notifyName": "Maria",
    }
    event.update(overrides)
    return event


@pytest.fixture
def client(db, runtime, monkeypatch):
    def override_get_db():
        yield db

    monkeypatch.setattr(dependencies.settings, "admin_token", "admin-secret")
    app.state.runtime = runtime
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.runtime = None


class TestInbound:
    def test_queues_customer_message(self, client, db):
        response = client.post("/inbound/aurora", json=_event())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["queued"] is True
        job = db.query(InboundJob).one()
        assert str(job.id) == data["job_id"]
        assert job.session_name == "aurora"
        assert job.payload["messageData"]["from"] == "5511999990000@c.us"
        assert "X-RateLimit-Limit" in response.headers

    def test_redelivery_is_acknowledged_once(self, client, db):
        client.post("/inbound/aurora", json=_event())
        response = client.post("/inbound/aurora", json=_event())

        assert response.json() == {"success": True, "queued": False, "reason": "duplicate", "job_id": None}
        assert db.query(InboundJob).count() == 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"from": "120363025@g.us"},
            {"from": "status@broadcast"},
            {"fromMe": True},
            {"event": "onack"},
            {"subtype": "revoked"},
        ],
    )
    def test_non_customer_events_are_ignored(self, client, db, overrides):
        response = client.post("/inbound/aurora", json=_event(**overrides))

        assert response.json()["reason"] == "ignored"
        assert db.query(InboundJob).count() == 0


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.get("/admin/queue/stats").status_code == 401

    def test_wrong_token(self, client):
        assert client.get("/admin/queue/stats", headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_token_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(dependencies.settings, "admin_token", None)
        response = client.get("/admin/queue/stats", headers=ADMIN)
        assert response.status_code == 500


class TestAdmin:
    def test_queue_stats(self, client):
        client.post("/inbound/aurora", json=_event())

        response = client.get("/admin/queue/stats", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["jobs"] == {"PENDING": 1, "PROCESSING": 0, "DONE": 0, "FAILED": 0}

    def test_circuits(self, client):
        circuits = client.get("/admin/circuits", headers=ADMIN).json()["circuits"]
        assert {circuit["name"] for circuit in circuits} == {"openai", "wppconnect"}
        assert all(circuit["state"] == "CLOSED" for circuit in circuits)

    def test_run_timeouts(self, client, db, make_conversation, fake_channel):
        conversation = make_conversation(last_message_at=utcnow() - timedelta(minutes=20))
        db.add(Message(conversation_id=conversation.id, sender="AI", content="Posso ajudar em algo mais?",
                       created_at=utcnow() - timedelta(minutes=20)))
        db.commit()

        response = client.post("/admin/timeouts/run", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["checked"] == 1
        assert data["results"][0] == {
            "conversation_id": str(conversation.id),
            "action": "WARNING_SENT",
            "reason": None,
        }
        assert len(fake_channel.texts) == 1

    def test_index_unknown_agent(self, client):
        assert client.post(f"/admin/agents/{uuid4()}/index", headers=ADMIN).status_code == 404

    def test_index_agent(self, client, db, seed):
        db.add(TrainingSource(agent_id=seed.agent.id, title="Entrega", content="Fazemos entrega no bairro. " * 40))
        db.commit()

        response = client.post(f"/admin/agents/{seed.agent.id}/index", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["agent_id"] == str(seed.agent.id)
        assert data["processed"] == 1
        assert data["failed"] == 0
        assert data["chunks"] >= 1

    def test_webhook_test_delivery(self, client, db, seed, runtime):
        hook = Webhook(company_id=seed.company.id, name="ERP", url="https://erp.example.com/hooks", events=[])
        db.add(hook)
        db.commit()
        received = []

        def handler(request: httpx.Request):
            received.append(request)
            return httpx.Response(204)

        runtime.webhooks.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        response = client.post(f"/admin/webhooks/{hook.id}/test", headers=ADMIN)

        assert response.json() == {"success": True, "status_code": 204, "attempts": 1, "error": None}
        assert received[0].headers["X-Webhook-Event"] == "TEST"
        assert db.query(WebhookDeliveryLog).count() == 1

    def test_webhook_test_unknown(self, client):
        assert client.post(f"/admin/webhooks/{uuid4()}/test", headers=ADMIN).status_code == 404


class TestHealth:
    def test_ok(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert len(data["circuits"]) == 2

    def test_degraded_when_a_circuit_is_open(self, client, runtime):
        for _ in range(runtime.channel_breaker.failure_threshold):
            runtime.channel_breaker.record_failure()

        assert client.get("/health").json()["status"] == "degraded"
