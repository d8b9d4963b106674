"""API tests: the FastAPI app with in-memory store, queue and gateway, lifespan included."""
import time
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from conftest import build_flow
from core.engine import FlowEngine


@pytest.fixture
def client(settings, store, queue, gateway, http_client, ai_client):
    settings.queue.delayed_promote_interval = 0.05
    engine = FlowEngine(store=store, queue=queue, http_client=http_client, ai_client=ai_client, settings=settings)
    app = create_app(settings=settings, engine=engine, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def greeting(client, greeting_flow):
    response = client.post("/api/v1/flows", json=greeting_flow.export())
    assert response.status_code == 201
    return response.json()


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.02)


def evolution_upsert(text, jid="5511999990000@s.whatsapp.net", from_me=False, message_id="WA1"):
    return {
        "event": "messages.upsert",
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me, "id": message_id},
            "message": {"conversation": text},
        },
    }


# ──────────────────────────────────────────────────────────────
#  Health & diagnostics
# ──────────────────────────────────────────────────────────────

class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["flows_indexed"] == 0
        assert body["gateway"]["gateway"] == "memory"

    def test_queue_stats(self, client):
        assert set(client.get("/api/v1/queue/stats").json()) == {
            "flow:actions", "flow:timers", "flow:delayed", "flow:dlq",
        }


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class TestFlowEndpoints:
    def test_import_and_fetch(self, client, greeting):
        assert greeting["id"] == "greeting"
        assert greeting["version"] == 1
        assert [f["id"] for f in client.get("/api/v1/flows").json()] == ["greeting"]
        assert client.get("/api/v1/flows/greeting").json()["nodes"][1]["config"] == {"text": "Olá!"}
        assert client.get("/health").json()["flows_indexed"] == 1

    def test_export_has_no_timestamps(self, client, greeting):
        exported = client.get("/api/v1/flows/greeting/export").json()
        assert "createdAt" not in exported
        assert exported["edges"][0]["source"] == "start"

    def test_active_only_filter(self, client, greeting):
        off = build_flow("off", [("start", "START", {"triggerType": "MANUAL"})], [], is_active=False)
        client.post("/api/v1/flows", json=off.export())
        assert len(client.get("/api/v1/flows").json()) == 2
        assert [f["id"] for f in client.get("/api/v1/flows", params={"activeOnly": True}).json()] == ["greeting"]

    def test_delete(self, client, greeting):
        assert client.delete("/api/v1/flows/greeting").status_code == 204
        assert client.get("/api/v1/flows/greeting").status_code == 404
        assert client.delete("/api/v1/flows/greeting").status_code == 404

    def test_keyword_conflict(self, client, greeting, greeting_flow):
        clone = greeting_flow.model_copy(update={"id": "greeting-copy"})
        response = client.post("/api/v1/flows", json=clone.export())
        assert response.status_code == 409

    def test_missing_start_node(self, client):
        flow = build_flow("broken", [("m", "MESSAGE", {"text": "x"})], [])
        assert client.post("/api/v1/flows", json=flow.export()).status_code == 422

    def test_malformed_definition(self, client):
        response = client.post("/api/v1/flows", json={"id": "bad", "nodes": "not-a-list"})
        assert response.status_code == 422


# ──────────────────────────────────────────────────────────────
#  Inbound webhook
# ──────────────────────────────────────────────────────────────

class TestWebhook:
    def test_plain_message_starts_flow(self, client, greeting, gateway):
        body = client.post("/webhooks/messages", json={"contactId": "c1", "text": "oi"}).json()

        assert body["status"] == "processed"
        assert body["execution"]["status"] == "WAITING"
        assert body["execution"]["currentNodeId"] == "ask"
        wait_for(lambda: gateway.texts_for("c1") == ["Olá!"])

    def test_evolution_payload(self, client, greeting, gateway):
        body = client.post("/webhooks/messages", json=evolution_upsert("oi")).json()
        assert body["execution"]["contactId"] == "5511999990000"
        wait_for(lambda: len(gateway.sent) == 1)

    def test_reply_resumes_execution(self, client, greeting):
        first = client.post("/webhooks/messages", json={"contactId": "c1", "text": "oi"}).json()
        second = client.post("/webhooks/messages", json={"contactId": "c1", "text": "tudo bem"}).json()
        assert second["execution"]["id"] == first["execution"]["id"]
        assert second["execution"]["status"] == "COMPLETED"
        assert second["execution"]["contextData"]["variables"]["q"] == "tudo bem"

    def test_own_messages_ignored(self, client, greeting):
        body = client.post("/webhooks/messages", json=evolution_upsert("oi", from_me=True)).json()
        assert body == {"status": "ignored"}

    def test_duplicate_delivery_ignored(self, client, greeting):
        client.post("/webhooks/messages", json=evolution_upsert("oi", message_id="DUP"))
        body = client.post("/webhooks/messages", json=evolution_upsert("oi", message_id="DUP")).json()
        assert body == {"status": "ignored"}

    def test_unmatched_message_dropped(self, client, greeting):
        body = client.post("/webhooks/messages", json={"contactId": "c1", "text": "boa noite"}).json()
        assert body == {"status": "dropped", "contactId": "c1"}

    def test_non_object_body(self, client):
        assert client.post("/webhooks/messages", json=["oi"]).status_code == 400


# ──────────────────────────────────────────────────────────────
#  Manual trigger
# ──────────────────────────────────────────────────────────────

class TestTestTrigger:
    def test_runs_flow_for_contact(self, client, greeting, gateway):
        response = client.post("/api/v1/flows/greeting/test", json={"contactId": "c7"})
        assert response.status_code == 200
        execution = response.json()
        assert execution["contextData"]["metadata"]["isTest"] is True
        assert execution["status"] == "WAITING"
        wait_for(lambda: gateway.texts_for("c7") == ["Olá!"])

    def test_custom_start_node(self, client, greeting):
        execution = client.post(
            "/api/v1/flows/greeting/test", json={"contactId": "c7", "startNodeId": "ask"},
        ).json()
        assert execution["currentNodeId"] == "ask"

    def test_unknown_flow(self, client):
        assert client.post("/api/v1/flows/nope/test", json={"contactId": "c7"}).status_code == 404

    def test_unknown_start_node(self, client, greeting):
        response = client.post("/api/v1/flows/greeting/test", json={"contactId": "c7", "startNodeId": "zzz"})
        assert response.status_code == 422


# ──────────────────────────────────────────────────────────────
#  Executions
# ──────────────────────────────────────────────────────────────

class TestExecutionEndpoints:
    @pytest.fixture
    def waiting(self, client, greeting):
        return client.post("/webhooks/messages", json={"contactId": "c1", "text": "oi"}).json()["execution"]

    def test_get_and_list(self, client, waiting):
        assert client.get(f"/api/v1/executions/{waiting['id']}").json()["id"] == waiting["id"]
        listed = client.get("/api/v1/executions", params={"contactId": "c1", "status": "WAITING"}).json()
        assert [e["id"] for e in listed] == [waiting["id"]]
        assert client.get("/api/v1/executions", params={"status": "COMPLETED"}).json() == []
        assert client.get("/api/v1/executions", params={"flowId": "greeting"}).json()[0]["flowId"] == "greeting"

    def test_list_limit_bounds(self, client):
        assert client.get("/api/v1/executions", params={"limit": 0}).status_code == 422
        assert client.get("/api/v1/executions", params={"limit": 500}).status_code == 422

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/missing").status_code == 404
        assert client.post("/api/v1/executions/missing/cancel").status_code == 404
        assert client.post("/api/v1/executions/missing/reset").status_code == 404

    def test_cancel(self, client, waiting):
        cancelled = client.post(
            f"/api/v1/executions/{waiting['id']}/cancel", json={"reason": "cliente pediu"},
        ).json()
        assert cancelled["status"] == "ABANDONED"
        assert cancelled["contextData"]["metadata"]["cancelReason"] == "cliente pediu"

    def test_cancel_without_body(self, client, waiting):
        cancelled = client.post(f"/api/v1/executions/{waiting['id']}/cancel").json()
        assert cancelled["contextData"]["metadata"]["cancelReason"] == "cancelled_by_operator"

    def test_reset_and_restart(self, client, waiting):
        client.post("/webhooks/messages", json={"contactId": "c1", "text": "pronto"})

        reset = client.post(f"/api/v1/executions/{waiting['id']}/reset").json()
        assert reset["status"] == "PROCESSING"
        assert reset["currentNodeId"] == "start"
        assert reset["contextData"]["metadata"]["previousStatus"] == "COMPLETED"

        restarted = client.post(f"/api/v1/executions/{waiting['id']}/reset", params={"restart": True}).json()
        assert restarted["id"] == waiting["id"]
        assert restarted["status"] == "WAITING"
        assert restarted["currentNodeId"] == "ask"


# ──────────────────────────────────────────────────────────────
#  Timers
# ──────────────────────────────────────────────────────────────

class TestTimerEndpoint:
    @pytest.fixture
    def survey(self, client):
        flow = build_flow("survey", [
            ("start", "START", {"triggerType": "KEYWORD_EXACT", "keyword": "pesquisa"}),
            ("ask", "ACTION", {"actionType": "WAIT_RESPONSE", "timeout": 3600, "saveResponseAs": "nota"}),
            ("thanks", "END", {"message": "Obrigado!"}),
            ("late", "END", {"message": "Tempo esgotado"}),
        ], [("start", "ask"), ("ask", "late", "timeout"), ("ask", "thanks")])
        client.post("/api/v1/flows", json=flow.export())
        return client.post("/webhooks/messages", json={"contactId": "c1", "text": "pesquisa"}).json()["execution"]

    def test_forced_fire_takes_timeout_edge(self, client, survey, gateway):
        body = client.post(f"/api/v1/timers/{survey['id']}/fire").json()
        assert body["status"] == "fired"
        assert body["execution"]["status"] == "COMPLETED"
        assert client.get("/api/v1/queue/stats").json()["flow:delayed"] == 0
        wait_for(lambda: gateway.texts_for("c1") == ["Tempo esgotado"])

    def test_stale_job_dropped(self, client, survey):
        body = client.post(f"/api/v1/timers/{survey['id']}/fire", json={"jobId": "job_old"}).json()
        assert body == {"status": "dropped", "executionId": survey["id"]}

    def test_unknown_execution(self, client):
        assert client.post("/api/v1/timers/missing/fire").status_code == 404
