from __future__ import annotations

import json
import time
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import InstanceRegistration, Provider
from backend.app.persistence import SqlPersistence
from backend.app.services.cache import TTLCache
from backend.app.services.instances import InstanceDirectory
from backend.app.services.processor import WebhookProcessor
from backend.app.services.resolution import EntityResolver
from backend.app.store import ChatStore, WebhookLogStore

CLOUD_PHONE_NUMBER_ID = "1000001"
GATEWAY_REF = "gw-token-1"

INSTANCES = [
    {
        "id": "inst_cloud",
        "organization_id": "org_1",
        "provider": "cloud_api",
        "external_ref": CLOUD_PHONE_NUMBER_ID,
        "name": "Sales line",
    },
    {
        "id": "inst_gateway",
        "organization_id": "org_1",
        "provider": "gateway",
        "external_ref": GATEWAY_REF,
        "name": "Legacy gateway",
    },
    {
        "id": "inst_cloud_other",
        "organization_id": "org_2",
        "provider": "cloud_api",
        "external_ref": "2000002",
    },
]


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    def publish(self, channel: str, payload: dict) -> None:
        self.published.append((channel, payload))


class RecordingAlertSink:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str, dict]] = []

    def alert(self, severity: str, message: str, context: Optional[dict] = None) -> None:
        self.alerts.append((severity, message, context or {}))


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> str:
    database_url = f"sqlite:///{str(tmp_path / 'ingest.sqlite3').replace(chr(92), '/')}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_REDIS_URL", "")
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "")
    monkeypatch.setenv("GATEWAY_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "verify-me")
    monkeypatch.setenv("WHATSAPP_INSTANCES", json.dumps(INSTANCES))
    monkeypatch.setenv("CENTRIFUGO_URL", "")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "")
    return database_url


@pytest.fixture()
def client(app_env: str) -> TestClient:
    return TestClient(create_app())


@pytest.fixture()
def persistence(tmp_path) -> SqlPersistence:
    return SqlPersistence(f"sqlite:///{str(tmp_path / 'store.sqlite3').replace(chr(92), '/')}")


@pytest.fixture()
def chat_store(persistence: SqlPersistence) -> ChatStore:
    return ChatStore(persistence)


@pytest.fixture()
def log_store(persistence: SqlPersistence) -> WebhookLogStore:
    return WebhookLogStore(persistence)


@pytest.fixture()
def directory(chat_store: ChatStore) -> InstanceDirectory:
    directory = InstanceDirectory(chat_store, TTLCache(60))
    for item in INSTANCES:
        directory.register(InstanceRegistration.model_validate(item))
    return directory


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture()
def processor(
    directory: InstanceDirectory, chat_store: ChatStore, publisher: RecordingPublisher
) -> WebhookProcessor:
    return WebhookProcessor(directory, EntityResolver(chat_store), publisher)


@pytest.fixture()
def resolve_instance(directory: InstanceDirectory):
    return directory.resolve


def cloud_text_message(
    message_id: str,
    wa_id: str = "5511999990001",
    body: str = "hello there",
    *,
    timestamp: Any = None,
    name: Optional[str] = "Maria",
    phone_number_id: str = CLOUD_PHONE_NUMBER_ID,
) -> dict:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": phone_number_id},
        "messages": [
            {
                "id": message_id,
                "from": wa_id,
                "timestamp": str(int(time.time())) if timestamp is None else timestamp,
                "type": "text",
                "text": {"body": body},
            }
        ],
    }
    if name:
        value["contacts"] = [{"wa_id": wa_id, "profile": {"name": name}}]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}],
    }


def cloud_status(
    message_id: str,
    status: str,
    *,
    phone_number_id: str = CLOUD_PHONE_NUMBER_ID,
    errors: Optional[list] = None,
) -> dict:
    item: dict[str, Any] = {
        "id": message_id,
        "status": status,
        "timestamp": str(int(time.time())),
        "recipient_id": "5511999990001",
    }
    if errors:
        item["errors"] = errors
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": phone_number_id},
                            "statuses": [item],
                        },
                    }
                ],
            }
        ],
    }


def gateway_message(
    message_id: str,
    chat_id: str = "5511988887777@s.whatsapp.net",
    text: str = "oi, tudo bem?",
    *,
    from_me: bool = False,
    edited: bool = False,
    timestamp_ms: Optional[int] = None,
    owner: Optional[str] = None,
) -> dict:
    body: dict[str, Any] = {
        "EventType": "messages",
        "chat": {"wa_chatid": chat_id, "name": "Joao", "phone": "+55 11 98888-7777"},
        "message": {
            "messageid": message_id,
            "chatid": chat_id,
            "fromMe": from_me,
            "messageType": "Conversation",
            "messageTimestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            "text": text,
            "senderName": "Joao S.",
        },
    }
    if edited:
        body["message"]["edited"] = "true"
    if owner:
        body["owner"] = owner
    return body
