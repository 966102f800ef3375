from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from backend.app.observability import MetricsRegistry
from backend.app.persistence import SqlPersistence
from backend.app.services.alerts import build_alert_sink
from backend.app.services.cache import TTLCache
from backend.app.services.instances import InstanceDirectory, parse_instance_registrations
from backend.app.services.processor import WebhookProcessor
from backend.app.services.realtime import build_publisher
from backend.app.services.resolution import EntityResolver
from backend.app.services.retry import WebhookRetryScheduler
from backend.app.settings import Settings
from backend.app.store import ChatStore, WebhookLogStore


@dataclass
class Services:
    persistence: SqlPersistence
    chat_store: ChatStore
    log_store: WebhookLogStore
    directory: InstanceDirectory
    processor: WebhookProcessor
    scheduler: WebhookRetryScheduler


def build_services(settings: Settings, *, metrics: Optional[MetricsRegistry] = None) -> Services:
    """Wire the ingestion pipeline shared by the API process and the retry runner."""
    persistence = SqlPersistence(settings.database_url, timeout_seconds=settings.db_timeout_seconds)
    chat_store = ChatStore(persistence)
    log_store = WebhookLogStore(persistence)
    directory = InstanceDirectory(chat_store, TTLCache(settings.instance_cache_ttl_seconds))
    for registration in parse_instance_registrations(settings.whatsapp_instances_json):
        directory.register(registration)

    processor = WebhookProcessor(
        directory,
        EntityResolver(chat_store),
        build_publisher(
            settings.centrifugo_url,
            settings.centrifugo_api_key,
            timeout_seconds=settings.publish_timeout_seconds,
        ),
    )
    scheduler = WebhookRetryScheduler(
        log_store,
        processor,
        build_alert_sink(settings.alert_webhook_url, timeout_seconds=settings.publish_timeout_seconds),
        base_interval_seconds=settings.retry_base_interval_seconds,
        max_attempts=settings.retry_max_attempts,
        batch_size=settings.retry_batch_size,
        lease_seconds=settings.retry_lease_seconds,
        metrics=metrics,
    )
    return Services(
        persistence=persistence,
        chat_store=chat_store,
        log_store=log_store,
        directory=directory,
        processor=processor,
        scheduler=scheduler,
    )
