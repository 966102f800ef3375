from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from http.client import IncompleteRead

from conftest import GATEWAY_REF, cloud_status, cloud_text_message, gateway_message
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import MessageStatus, WebhookLogState
from backend.app.persistence import TransientPersistenceError
from backend.app.services.webhooks import sign_body


def _post(client: TestClient, path: str, payload, headers: dict | None = None):
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return client.post(
        path,
        content=body,
        headers={"content-type": "application/json", **(headers or {})},
    )


def test_subscription_handshake(client: TestClient) -> None:
    ok = client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
    )
    assert ok.status_code == 200
    assert ok.text == "1158201444"

    wrong = client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
    )
    assert wrong.status_code == 403


def test_handshake_rejected_when_token_unset(app_env, monkeypatch) -> None:
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "")
    client = TestClient(create_app())

    response = client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "1"},
    )
    assert response.status_code == 403


def test_cloud_message_end_to_end(client: TestClient) -> None:
    response = _post(client, "/webhook", cloud_text_message("wamid.api.1", body="Oi"))

    assert response.status_code == 200
    data = response.json()
    assert data["received"] is True
    log = client.app.state.log_store.get(data["logId"])
    assert log.processed is True
    assert log.signature_valid is True
    assert log.event_type == "messages"
    message = client.app.state.chat_store.get_message("org_1", "wamid.api.1")
    assert message.text == "Oi"


def test_redelivery_does_not_duplicate(client: TestClient) -> None:
    payload = cloud_text_message("wamid.api.2")
    first = _post(client, "/webhook", payload)
    second = _post(client, "/webhook", payload)

    assert first.json()["logId"] != second.json()["logId"]
    store = client.app.state.chat_store
    assert len(store.list_messages("org_1")) == 1
    lead = store.list_leads("org_1")[0]
    assert store.list_conversations(lead.id)[0].unread_count == 1


def test_status_update_through_api(client: TestClient) -> None:
    _post(client, "/webhook", cloud_text_message("wamid.api.3"))
    _post(client, "/webhook", cloud_status("wamid.api.3", "read"))
    _post(client, "/webhook", cloud_status("wamid.api.3", "delivered"))

    message = client.app.state.chat_store.get_message("org_1", "wamid.api.3")
    assert message.status == MessageStatus.read


def test_invalid_signature_is_acknowledged_but_not_processed(app_env, monkeypatch) -> None:
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "app-secret")
    client = TestClient(create_app())

    response = _post(
        client,
        "/webhook",
        cloud_text_message("wamid.api.4"),
        headers={"x-hub-signature-256": "sha256=" + "0" * 64},
    )

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.signature_valid is False
    assert log.processed is False
    assert client.app.state.chat_store.get_message("org_1", "wamid.api.4") is None
    assert client.app.state.log_store.list_retry_candidates(limit=10, max_attempts=3) == []


def test_valid_signature_is_processed(app_env, monkeypatch) -> None:
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "app-secret")
    client = TestClient(create_app())
    payload = cloud_text_message("wamid.api.5")
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    response = client.post(
        "/webhook",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": sign_body(body, "app-secret")},
    )

    assert response.status_code == 200
    assert client.app.state.chat_store.get_message("org_1", "wamid.api.5") is not None


def test_unparseable_body_is_stored_and_closed(client: TestClient) -> None:
    response = client.post("/webhook", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.event_type == "unparseable"
    assert log.payload == {"raw": "{not json"}
    assert log.processed is True
    assert log.processing_error == "unparseable body: JSONDecodeError"


def test_non_utf8_body_is_kept_as_latin1(client: TestClient) -> None:
    response = client.post("/webhook", content=b"\xff\xfeol\xe1", headers={"content-type": "application/json"})

    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.payload == {"raw": "\xff\xfeol\xe1"}
    assert log.processing_error == "unparseable body: UnicodeDecodeError"


def test_foreign_payload_is_logged_and_closed(client: TestClient) -> None:
    response = _post(client, "/webhook", {"object": "instagram", "entry": []})

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.processed is True
    assert log.processing_error.startswith("normalization failed")


def test_gateway_webhook_end_to_end(client: TestClient) -> None:
    response = _post(client, f"/webhook/gateway/{GATEWAY_REF}", gateway_message("GW-API-1"))

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.instance_ref == GATEWAY_REF
    assert log.processed is True
    message = client.app.state.chat_store.get_message("org_1", "GW-API-1")
    assert message.instance_id == "inst_gateway"


def test_processing_failure_is_recorded_for_retry(client: TestClient, monkeypatch) -> None:
    def failing(*args, **kwargs):
        raise TransientPersistenceError("database is locked")

    monkeypatch.setattr(client.app.state.processor, "process_payload", failing)

    response = _post(client, "/webhook", cloud_text_message("wamid.api.6"))

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.processed is False
    assert log.retry_count == 0
    assert log.processing_error == "database is locked"
    candidates = client.app.state.log_store.list_retry_candidates(limit=10, max_attempts=3)
    assert [item.id for item in candidates] == [log.id]


def test_log_store_outage_returns_503(client: TestClient, monkeypatch) -> None:
    def failing(*args, **kwargs):
        raise TransientPersistenceError("create webhook log failed: OperationalError")

    monkeypatch.setattr(client.app.state.log_store, "create", failing)

    response = _post(client, "/webhook", cloud_text_message("wamid.api.7"))

    assert response.status_code == 503


def test_retry_job_endpoint_drains_failed_rows(client: TestClient, monkeypatch) -> None:
    def failing(*args, **kwargs):
        raise TransientPersistenceError("locked")

    processor = client.app.state.processor
    original = processor.process_payload
    monkeypatch.setattr(processor, "process_payload", failing)
    response = _post(client, "/webhook", cloud_text_message("wamid.api.8"))
    log_id = response.json()["logId"]
    monkeypatch.setattr(processor, "process_payload", original)

    log = client.app.state.log_store.get(log_id)
    scheduler = client.app.state.scheduler
    result = scheduler.run_once(now=log.created_at + timedelta(minutes=5))
    assert result.succeeded == 1

    job = client.post("/jobs/webhook-retry")
    assert job.status_code == 200
    assert job.json() == {"selected": 0, "succeeded": 0, "failed": 0, "skipped": 0, "exhausted": 0}
    assert client.app.state.log_store.get(log_id).processed is True


def test_webhook_logs_listing(client: TestClient) -> None:
    _post(client, "/webhook", cloud_text_message("wamid.api.9"))
    _post(client, "/webhook", {"object": "instagram"})

    processed = client.get("/webhook-logs", params={"state": "processed"})
    errored = client.get("/webhook-logs", params={"state": "errored", "limit": 5})

    assert processed.status_code == 200
    assert len(processed.json()) == 2
    assert len(errored.json()) == 1
    log_id = errored.json()[0]["log_id"]
    single = client.get(f"/webhook-logs/{log_id}")
    assert single.status_code == 200
    assert single.json()["processing_error"].startswith("normalization failed")
    assert client.get("/webhook-logs/whl_missing").status_code == 404
    assert client.get("/webhook-logs", params={"state": "bogus"}).status_code == 422


def test_rate_limit_contract(app_env, monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    client = TestClient(create_app())
    payload = cloud_text_message("wamid.api.10")

    statuses = [
        _post(client, "/webhook?orgId=org_1", payload, headers={"x-forwarded-for": "203.0.113.7"}).status_code
        for _ in range(50)
    ]
    limited = _post(client, "/webhook?orgId=org_1", payload, headers={"x-forwarded-for": "203.0.113.7"})

    assert set(statuses) == {200}
    assert limited.status_code == 429
    body = limited.json()
    assert body["error"] == "Too Many Requests"
    assert body["limit"] == 50
    assert body["current"] == 51
    assert body["retryAfter"] >= 1
    assert "resetAt" in body
    assert limited.headers["Retry-After"] == str(body["retryAfter"])
    assert limited.headers["X-RateLimit-Limit"] == "50"
    assert limited.headers["X-RateLimit-Current"] == "51"
    assert int(limited.headers["X-RateLimit-Reset"]) > 0

    other_ip = _post(client, "/webhook?orgId=org_1", payload, headers={"x-forwarded-for": "203.0.113.8"})
    assert other_ip.status_code == 200


def test_retry_job_has_tight_burst_limit(app_env, monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    client = TestClient(create_app())

    codes = [client.post("/jobs/webhook-retry").status_code for _ in range(3)]

    assert codes == [200, 200, 429]


def test_unrecorded_signature_is_not_listed_as_forged(client: TestClient, monkeypatch) -> None:
    def failing(*args, **kwargs):
        raise TransientPersistenceError("mark webhook signature failed: OperationalError")

    log_store = client.app.state.log_store
    monkeypatch.setattr(log_store, "mark_signature", failing)

    response = _post(client, "/webhook", cloud_text_message("wamid.api.11"))

    assert response.status_code == 503
    [log] = log_store.list_logs()
    assert log.signature_valid is False
    assert log.processing_error.startswith("signature verified but not recorded")
    assert log_store.list_logs(state=WebhookLogState.invalid_signature) == []
    assert client.app.state.chat_store.get_message("org_1", "wamid.api.11") is None


def test_publisher_crash_does_not_fail_delivery(client: TestClient) -> None:
    class CrashingPublisher:
        def publish(self, channel, payload):
            raise IncompleteRead(b"")

    client.app.state.processor.publisher = CrashingPublisher()

    response = _post(client, "/webhook", cloud_text_message("wamid.api.12"))

    assert response.status_code == 200
    log = client.app.state.log_store.get(response.json()["logId"])
    assert log.processed is True
    assert log.processing_error is None


def test_rate_limit_counters_run_off_the_event_loop(app_env, monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    client = TestClient(create_app())
    backend = client.app.state.rate_limiter.backend
    on_loop = []
    original = backend.hit

    def recording_hit(key, window_seconds):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_loop.append(False)
        else:
            on_loop.append(True)
        return original(key, window_seconds)

    monkeypatch.setattr(backend, "hit", recording_hit)

    _post(client, "/webhook?orgId=org_1", cloud_text_message("wamid.api.13"))
    client.post("/jobs/webhook-retry")

    assert on_loop
    assert not any(on_loop)
