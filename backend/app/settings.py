from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_db_path: str
    database_url: str
    db_timeout_seconds: int
    whatsapp_app_secret: str
    whatsapp_verify_token: str
    gateway_webhook_secret: str
    whatsapp_instances_json: str
    instance_cache_ttl_seconds: int
    retry_base_interval_seconds: int
    retry_max_attempts: int
    retry_batch_size: int
    retry_lease_seconds: int
    rate_limit_enabled: bool
    rate_limit_redis_url: str
    centrifugo_url: str
    centrifugo_api_key: str
    publish_timeout_seconds: int
    alert_webhook_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv(
        "PERSISTENCE_DB_PATH", "data/whatsapp_ingest.sqlite3"
    ).strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        db_timeout_seconds=max(1, min(60, _int_env("DB_TIMEOUT_SECONDS", 5))),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", "").strip(),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip(),
        gateway_webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET", "").strip(),
        whatsapp_instances_json=os.getenv("WHATSAPP_INSTANCES", "").strip(),
        instance_cache_ttl_seconds=max(0, _int_env("INSTANCE_CACHE_TTL_SECONDS", 60)),
        retry_base_interval_seconds=max(1, _int_env("RETRY_BASE_INTERVAL_SECONDS", 300)),
        retry_max_attempts=max(1, _int_env("RETRY_MAX_ATTEMPTS", 3)),
        retry_batch_size=max(1, min(500, _int_env("RETRY_BATCH_SIZE", 50))),
        retry_lease_seconds=max(10, _int_env("RETRY_LEASE_SECONDS", 120)),
        rate_limit_enabled=_bool_env("RATE_LIMIT_ENABLED", True),
        rate_limit_redis_url=os.getenv("RATE_LIMIT_REDIS_URL", "").strip(),
        centrifugo_url=os.getenv("CENTRIFUGO_URL", "").strip(),
        centrifugo_api_key=os.getenv("CENTRIFUGO_API_KEY", "").strip(),
        publish_timeout_seconds=max(1, min(30, _int_env("PUBLISH_TIMEOUT_SECONDS", 3))),
        alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL", "").strip(),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
