from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError


class TransientPersistenceError(Exception):
    """Store failure that may succeed when retried (lock timeout, lost connection)."""


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    # IntegrityError carries unique-constraint semantics and is handled by callers
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise TransientPersistenceError(f"{operation} failed: {exc.__class__.__name__}") from exc


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _connect_args(database_url: str, timeout_seconds: int) -> dict:
    if database_url.startswith("sqlite"):
        return {"timeout": timeout_seconds, "check_same_thread": False}
    if database_url.startswith("postgresql"):
        return {"connect_timeout": timeout_seconds}
    return {}


class SqlPersistence:
    """
    Engine and schema shared by the chat store and the webhook log.
    Works with SQLite and PostgreSQL URLs; uniqueness is enforced by the schema.
    """

    def __init__(self, database_url: str, *, timeout_seconds: int = 5) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
            connect_args=_connect_args(self.database_url, timeout_seconds),
        )
        self.metadata = MetaData()
        self.instances = Table(
            "instances",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("organization_id", String(120), nullable=False),
            Column("provider", String(30), nullable=False),
            Column("external_ref", String(255), nullable=False),
            Column("name", String(120), nullable=True),
            Column("created_at", DateTime, nullable=False),
            UniqueConstraint("provider", "external_ref", name="uq_instances_provider_ref"),
        )
        self.leads = Table(
            "leads",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("organization_id", String(120), nullable=False),
            Column("remote_jid", String(255), nullable=False),
            Column("phone", String(32), nullable=True),
            Column("name", String(255), nullable=True),
            Column("first_source", String(50), nullable=False),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint("organization_id", "remote_jid", name="uq_leads_org_remote_jid"),
            UniqueConstraint("organization_id", "phone", name="uq_leads_org_phone"),
        )
        self.conversations = Table(
            "conversations",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("organization_id", String(120), nullable=False),
            Column("lead_id", String(40), nullable=False),
            Column("instance_id", String(120), nullable=False),
            Column("status", String(20), nullable=False),
            Column("unread_count", Integer, nullable=False, default=0),
            Column("last_message_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint("lead_id", "instance_id", name="uq_conversations_lead_instance"),
        )
        self.tickets = Table(
            "tickets",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("organization_id", String(120), nullable=False),
            Column("conversation_id", String(40), nullable=False),
            Column("lead_id", String(40), nullable=False),
            Column("status", String(20), nullable=False),
            Column("created_at", DateTime, nullable=False),
            Column("closed_at", DateTime, nullable=True),
            Index("ix_tickets_conversation", "conversation_id"),
            Index(
                "uq_tickets_open_per_conversation",
                "conversation_id",
                unique=True,
                sqlite_where=text("status = 'OPEN'"),
                postgresql_where=text("status = 'OPEN'"),
            ),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("organization_id", String(120), nullable=False),
            Column("provider_message_id", String(255), nullable=False),
            Column("instance_id", String(120), nullable=False),
            Column("lead_id", String(40), nullable=False),
            Column("conversation_id", String(40), nullable=False),
            Column("ticket_id", String(40), nullable=False),
            Column("direction", String(10), nullable=False),
            Column("sender_type", String(10), nullable=False),
            Column("sender_name", String(255), nullable=True),
            Column("content_type", String(50), nullable=False),
            Column("text", Text, nullable=False),
            Column("media_url", Text, nullable=True),
            Column("media_mime_type", String(120), nullable=True),
            Column("media_size_bytes", Integer, nullable=True),
            Column("media_duration_seconds", Integer, nullable=True),
            Column("status", String(20), nullable=False),
            Column("sent_at", DateTime, nullable=False),
            Column("conversation_counted", Boolean, nullable=False, default=False),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint(
                "organization_id",
                "provider_message_id",
                name="uq_messages_org_provider_message",
            ),
            Index("ix_messages_ticket", "ticket_id"),
        )
        self.webhook_logs = Table(
            "webhook_logs",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("provider", String(30), nullable=False),
            Column("instance_ref", String(255), nullable=True),
            Column("event_type", String(80), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("processed", Boolean, nullable=False, default=False),
            Column("signature_valid", Boolean, nullable=False, default=False),
            Column("retry_count", Integer, nullable=False, default=0),
            Column("last_retry_at", DateTime, nullable=True),
            Column("processing_error", Text, nullable=True),
            Column("processed_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("lease_owner", String(80), nullable=True),
            Column("lease_expires_at", DateTime, nullable=True),
            Index(
                "ix_webhook_logs_retry",
                "processed",
                "signature_valid",
                "retry_count",
                "created_at",
            ),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False
